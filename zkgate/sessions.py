# zkgate/sessions.py
"""
Session broker. Mints the descriptor a relier renders as a QR code; the
prover reads it, builds a proof out of band and posts it to the endpoint.

Nothing is stored: the correlation id is random and the descriptor is signed
so a relier can tell it came from this gateway.
"""
import logging
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union
from urllib.parse import urlparse

from zkgate import utils
from zkgate.errors import ConfigurationError
from zkgate.schemas import AttestationKind, VerificationSession, normalize_countries

logger = logging.getLogger(__name__)

SCOPE_PATTERN = re.compile(r"^[a-z0-9-]{1,31}$")
ENDPOINT_TYPES = {"https", "staging_https"}
USER_ID_TYPES = {"uuid", "hex"}
FLAG_DISCLOSURES = {"nationality", "gender", "issuingState", "ofac"}
MAX_USER_DEFINED_DATA = 64


def validate_scope(scope_id) -> str:
    if not isinstance(scope_id, str) or not scope_id.strip():
        raise ConfigurationError("scopeId is required")
    if not SCOPE_PATTERN.match(scope_id):
        raise ConfigurationError(
            "scopeId must be 1-31 characters of lowercase letters, digits and '-'"
        )
    return scope_id


def validate_endpoint(endpoint, endpoint_type: str) -> str:
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ConfigurationError("endpoint is required")
    if endpoint_type not in ENDPOINT_TYPES:
        raise ConfigurationError(f"unsupported endpointType: {endpoint_type}")
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"endpoint is not an absolute http(s) URL: {endpoint}")
    if endpoint_type == "https" and parsed.scheme != "https":
        raise ConfigurationError("endpointType 'https' requires an https endpoint")
    return endpoint


def normalize_disclosures(requested: Union[Dict[str, Any], Iterable[str], None]) -> Dict[str, Any]:
    """Accept {"minimumAge": 18, "nationality": true} or ["nationality", ...]."""
    if requested is None:
        return {}
    if not isinstance(requested, dict):
        if not isinstance(requested, (list, tuple, set, frozenset)):
            raise ConfigurationError("requestedDisclosures must be an object or a list of names")
        if not all(isinstance(name, str) for name in requested):
            raise ConfigurationError("requestedDisclosures list must contain attribute names")
        requested = {name: True for name in requested}
    disclosures: Dict[str, Any] = {}
    for name, value in requested.items():
        if name == "minimumAge":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 150:
                raise ConfigurationError("minimumAge must be an integer between 0 and 150")
            disclosures[name] = value
        elif name == "excludedCountries":
            try:
                disclosures[name] = list(normalize_countries(value))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"excludedCountries must be a list of country codes: {e}") from e
        elif name in FLAG_DISCLOSURES:
            if not isinstance(value, bool):
                raise ConfigurationError(f"{name} must be a boolean flag")
            if value:
                disclosures[name] = True
        else:
            raise ConfigurationError(f"unknown disclosure: {name}")
    return disclosures


def normalize_kinds(kinds) -> tuple:
    if not kinds:
        raise ConfigurationError("at least one attestation kind is required")
    normalized = set()
    for kind in kinds:
        try:
            if isinstance(kind, bool):
                raise ValueError(kind)
            normalized.add(int(AttestationKind(int(kind))))
        except (TypeError, ValueError):
            raise ConfigurationError(f"unknown attestation kind: {kind!r}") from None
    return tuple(sorted(normalized))


class SessionBroker:

    def __init__(self, endpoint: str, sign_key: str, app_name: str = "zkgate",
                 endpoint_type: str = "staging_https", user_id_type: str = "uuid",
                 scopes: Optional[Iterable[str]] = None):
        if user_id_type not in USER_ID_TYPES:
            raise ConfigurationError(f"unsupported userIdType: {user_id_type}")
        self.endpoint = validate_endpoint(endpoint, endpoint_type)
        self.endpoint_type = endpoint_type
        self.user_id_type = user_id_type
        self.app_name = app_name
        self._sign_key = sign_key
        # scopes the verifier is bound to; None accepts any well-formed scope
        self.scopes = frozenset(validate_scope(s) for s in scopes) if scopes is not None else None

    @classmethod
    def from_settings(cls, settings) -> "SessionBroker":
        return cls(
            endpoint=settings.endpoint,
            sign_key=settings.sign_key,
            app_name=settings.app_name,
            endpoint_type=settings.endpoint_type,
            user_id_type=settings.user_id_type,
            scopes=(settings.scope,),
        )

    def new_correlation_id(self) -> str:
        if self.user_id_type == "hex":
            return "0x" + secrets.token_hex(32)
        return str(uuid.uuid4())

    def create_session(self, scope_id, requested_disclosures, attestation_kinds,
                       user_defined_data: Optional[str] = None) -> VerificationSession:
        scope_id = validate_scope(scope_id)
        if self.scopes is not None and scope_id not in self.scopes:
            raise ConfigurationError(f"scopeId {scope_id!r} is not served by this gateway")
        disclosures = normalize_disclosures(requested_disclosures)
        kinds = normalize_kinds(attestation_kinds)
        if user_defined_data is not None and len(user_defined_data) > MAX_USER_DEFINED_DATA:
            raise ConfigurationError(
                f"userDefinedData is limited to {MAX_USER_DEFINED_DATA} characters"
            )

        fields = dict(
            scope_id=scope_id,
            correlation_user_id=self.new_correlation_id(),
            endpoint=self.endpoint,
            endpoint_type=self.endpoint_type,
            user_id_type=self.user_id_type,
            app_name=self.app_name,
            requested_disclosures=disclosures,
            attestation_kinds=kinds,
            user_defined_data=user_defined_data,
            created_at=datetime.now(timezone.utc),
        )
        unsigned = VerificationSession(**fields)
        signature = utils.sign_token(unsigned.to_wire(), self._sign_key)
        session = VerificationSession(**fields, signature=signature)
        logger.info("session minted scope=%s correlation=%s",
                    scope_id, utils.hash_value(session.correlation_user_id)[:12])
        return session

    def check_signature(self, descriptor: dict) -> bool:
        """True when descriptor was signed by this broker and is unchanged."""
        body = {k: v for k, v in descriptor.items() if k != "signature"}
        body["signature"] = None
        claims = utils.verify_token(descriptor.get("signature") or "", self._sign_key)
        return bool(claims) and claims == body
