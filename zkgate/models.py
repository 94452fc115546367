# zkgate/models.py
from sqlalchemy import Column, String, DateTime, Integer, JSON
import datetime
import uuid
from zkgate.db import Base


def gen_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class ConsumedProof(Base):
    """One row per proof nullifier that has already been accepted once."""
    __tablename__ = "consumed_proofs"
    nullifier = Column(String, primary_key=True)
    attestation_id = Column(Integer, nullable=True)
    consumed_at = Column(DateTime, default=utcnow)


class Audit(Base):
    __tablename__ = "audit"
    event_id = Column(String, primary_key=True, default=gen_uuid)
    actor = Column(String)
    action = Column(String)
    target = Column(String)
    ts = Column(DateTime, default=utcnow)
    meta = Column(JSON, default=dict)
