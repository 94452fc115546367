# zkgate/__init__.py
"""Zero-knowledge identity-verification gateway."""

__version__ = "0.1.0"
