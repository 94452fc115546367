# zkgate/schemas.py
import re
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

COUNTRY_CODE = re.compile(r"^[A-Z]{2,3}$")
FIELD_ELEMENT = re.compile(r"^[0-9]+$")

# disclosable attribute -> DisclosureOutput fields it releases
DISCLOSABLE = {
    "minimumAge": ("minimum_age", "older_than"),
    "nationality": ("nationality",),
    "gender": ("gender",),
    "issuingState": ("issuing_state",),
    "ofac": ("ofac",),
}


class AttestationKind(IntEnum):
    PASSPORT = 1
    EU_ID_CARD = 2
    AADHAAR = 3
    BIOMETRIC_ID = 4


class ReasonCode(str, Enum):
    OK = "OK"
    MALFORMED_REQUEST = "MALFORMED_REQUEST"
    # crypto-invalid family
    INVALID_PROOF = "INVALID_PROOF"
    ATTESTATION_MISMATCH = "ATTESTATION_MISMATCH"
    UNSUPPORTED_ATTESTATION = "UNSUPPORTED_ATTESTATION"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    CONTEXT_MISMATCH = "CONTEXT_MISMATCH"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    PROOF_REPLAYED = "PROOF_REPLAYED"
    VERIFICATION_TIMEOUT = "VERIFICATION_TIMEOUT"
    POLICY_VIOLATION = "POLICY_VIOLATION"


class VerificationState(str, Enum):
    RECEIVED = "RECEIVED"
    CRYPTO_VALID = "CRYPTO_VALID"
    CRYPTO_INVALID = "CRYPTO_INVALID"
    POLICY_ALLOWED = "POLICY_ALLOWED"
    POLICY_DENIED = "POLICY_DENIED"


class ViolationKind(str, Enum):
    # declaration order is the reporting order
    MINIMUM_AGE = "MINIMUM_AGE"
    EXCLUDED_COUNTRY = "EXCLUDED_COUNTRY"
    SANCTIONS_MATCH = "SANCTIONS_MATCH"
    ATTESTATION_KIND = "ATTESTATION_KIND"


def normalize_countries(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    codes = set()
    for raw in value:
        code = str(raw).strip().upper()
        if not COUNTRY_CODE.match(code):
            raise ValueError(f"invalid country code: {raw!r}")
        codes.add(code)
    return tuple(sorted(codes))


def normalize_attestation_kinds(value) -> Tuple[int, ...]:
    kinds = set()
    for raw in value or ():
        if isinstance(raw, bool):
            raise ValueError("attestation kind must be an integer")
        kinds.add(int(AttestationKind(int(raw))))
    return tuple(sorted(kinds))


class Policy(BaseModel):
    """A named, versioned disclosure policy."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = "default"
    version: int = 1
    minimum_age: Optional[int] = Field(default=None, alias="minimumAge", ge=0, le=150)
    excluded_countries: Tuple[str, ...] = Field(default=(), alias="excludedCountries")
    sanctions_screen: bool = Field(default=False, alias="ofac")
    accepted_attestation_kinds: Tuple[int, ...] = Field(
        default=(1, 2, 3), alias="acceptedAttestationKinds"
    )
    # attributes released to the relier; None releases everything the proof carries
    disclosures: Optional[Tuple[str, ...]] = None

    @field_validator("excluded_countries", mode="before")
    @classmethod
    def _countries(cls, value):
        return normalize_countries(value)

    @field_validator("accepted_attestation_kinds", mode="before")
    @classmethod
    def _kinds(cls, value):
        return normalize_attestation_kinds(value)

    @field_validator("disclosures", mode="before")
    @classmethod
    def _disclosures(cls, value):
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("disclosures must be a list of attribute names")
        unknown = [name for name in value if name not in DISCLOSABLE]
        if unknown:
            raise ValueError(f"unknown disclosure: {unknown[0]!r}")
        return tuple(sorted(set(value)))


class DisclosureOutput(BaseModel):
    """Attributes decoded from a proof that passed the cryptographic check."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    nullifier: str
    attestation_id: int = Field(alias="attestationId")
    user_identifier: Optional[str] = Field(default=None, alias="userIdentifier")
    minimum_age: Optional[int] = Field(default=None, alias="minimumAge")
    older_than: Optional[bool] = Field(default=None, alias="olderThan")
    nationality: Optional[str] = None
    gender: Optional[str] = None
    issuing_state: Optional[str] = Field(default=None, alias="issuingState")
    ofac: Optional[bool] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def restrict(self, released) -> "DisclosureOutput":
        """Copy with only the released attributes; nullifier, attestationId and userIdentifier stay."""
        if released is None:
            return self
        hidden = {
            field for name, fields in DISCLOSABLE.items() if name not in released for field in fields
        }
        return self.model_copy(update={field: None for field in hidden})


class PolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    violations: Tuple[ViolationKind, ...] = ()


class ProofSubmission(BaseModel):
    """Body of POST /verify. All four fields are required and non-empty."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    attestation_kind: int = Field(alias="attestationId", gt=0)
    proof_blob: Union[str, Dict[str, Any]] = Field(alias="proof")
    public_signals: Tuple[str, ...] = Field(alias="publicSignals", min_length=1)
    user_context_data: str = Field(alias="userContextData")

    @field_validator("attestation_kind", mode="before")
    @classmethod
    def _no_bool(cls, value):
        if isinstance(value, bool):
            raise ValueError("attestationId must be an integer")
        return value

    @field_validator("proof_blob")
    @classmethod
    def _proof_present(cls, value):
        if isinstance(value, str):
            value = value.strip()
        if not value:
            raise ValueError("proof must not be empty")
        return value

    @field_validator("public_signals", mode="before")
    @classmethod
    def _signals(cls, value):
        if not isinstance(value, (list, tuple)):
            raise ValueError("publicSignals must be a list")
        signals = []
        for item in value:
            if isinstance(item, bool):
                raise ValueError("public signals must be field elements")
            text = str(item).strip()
            if not FIELD_ELEMENT.match(text):
                raise ValueError(f"public signal is not a decimal field element: {item!r}")
            signals.append(text)
        return tuple(signals)

    @field_validator("user_context_data")
    @classmethod
    def _context_present(cls, value):
        if not value.strip():
            raise ValueError("userContextData must not be empty")
        return value


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    state: VerificationState
    reason_code: ReasonCode
    disclosure: Optional[DisclosureOutput] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class SessionRequest(BaseModel):
    """Body of POST /session."""

    model_config = ConfigDict(populate_by_name=True)

    scope_id: Optional[str] = Field(default=None, alias="scopeId")
    requested_disclosures: Union[Dict[str, Any], list] = Field(
        default_factory=dict, alias="requestedDisclosures"
    )
    attestation_kinds: list = Field(alias="attestationKinds")
    user_defined_data: Optional[str] = Field(default=None, alias="userDefinedData")


class VerificationSession(BaseModel):
    """What the relier encodes into the QR code shown to the prover."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    scope_id: str = Field(alias="scopeId")
    correlation_user_id: str = Field(alias="correlationUserId")
    endpoint: str
    endpoint_type: str = Field(alias="endpointType")
    user_id_type: str = Field(alias="userIdType")
    app_name: str = Field(alias="appName")
    version: int = 2
    requested_disclosures: Dict[str, Any] = Field(alias="requestedDisclosures")
    attestation_kinds: Tuple[int, ...] = Field(alias="attestationKinds")
    user_defined_data: Optional[str] = Field(default=None, alias="userDefinedData")
    created_at: datetime = Field(alias="createdAt")
    signature: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ProfileOut(BaseModel):
    success: bool
    subjectKey: str
    profile: Dict[str, Any]
    cached: bool


def describe_errors(exc) -> list:
    """Flatten a pydantic ValidationError into JSON-safe {field, message} items."""
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
