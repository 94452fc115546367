# zkgate/mock_proofs.py
"""
Mock-passport proof backend for development and tests.

Real deployments plug in a ProofCheck backed by the wallet vendor's verifier.
Here the "proof" is a JWT signed by a trusted mock issuer that commits to the
public signals, so every failure mode of a real verifier (tampered signals,
wrong document type, wrong scope, wrong user context, expired credential)
can still be exercised end to end.

Public signal layout (decimal field elements):
  0 nullifier          5 older-than flag (0/1)
  1 attestation id     6 nationality (packed ASCII, 0 = undisclosed)
  2 user-context hash  7 gender
  3 scope hash         8 issuing state
  4 proven min. age    9 OFAC screen (0 undisclosed, 1 clear, 2 match)
"""
import hashlib
import secrets
import time
from enum import IntEnum
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from zkgate import utils
from zkgate.schemas import AttestationKind, DisclosureOutput, ReasonCode
from zkgate.verifier import ProofCheck, ProofCheckFailed


class Signal(IntEnum):
    NULLIFIER = 0
    ATTESTATION_ID = 1
    USER_CONTEXT = 2
    SCOPE = 3
    MINIMUM_AGE = 4
    OLDER_THAN = 5
    NATIONALITY = 6
    GENDER = 7
    ISSUING_STATE = 8
    OFAC = 9


SIGNAL_COUNT = len(Signal)
OFAC_UNDISCLOSED, OFAC_CLEAR, OFAC_MATCH = 0, 1, 2


def signals_digest(public_signals) -> str:
    return hashlib.sha256(",".join(public_signals).encode()).hexdigest()


def decode_disclosure(public_signals, user_identifier: Optional[str] = None) -> DisclosureOutput:
    try:
        min_age = int(public_signals[Signal.MINIMUM_AGE])
        ofac = int(public_signals[Signal.OFAC])
        return DisclosureOutput(
            nullifier=public_signals[Signal.NULLIFIER],
            attestation_id=int(public_signals[Signal.ATTESTATION_ID]),
            user_identifier=user_identifier,
            minimum_age=min_age or None,
            older_than=bool(int(public_signals[Signal.OLDER_THAN])) if min_age else None,
            nationality=utils.unpack_ascii(public_signals[Signal.NATIONALITY]),
            gender=utils.unpack_ascii(public_signals[Signal.GENDER]),
            issuing_state=utils.unpack_ascii(public_signals[Signal.ISSUING_STATE]),
            ofac=None if ofac == OFAC_UNDISCLOSED else ofac == OFAC_MATCH,
        )
    except (ValueError, OverflowError) as e:
        raise ProofCheckFailed(ReasonCode.INVALID_PROOF, "public signals could not be decoded") from e


class SignedSignalsProofCheck(ProofCheck):

    def __init__(self, trusted_key: str, scope: str, supported_kinds=None):
        self._trusted_key = trusted_key
        self.scope_hash = utils.field_hash(scope)
        self.supported_kinds = set(supported_kinds or (int(k) for k in AttestationKind))

    def verify(self, attestation_kind, proof, public_signals, user_context_data):
        if attestation_kind not in self.supported_kinds:
            raise ProofCheckFailed(ReasonCode.UNSUPPORTED_ATTESTATION,
                                   f"attestation kind {attestation_kind} is not supported")
        if len(public_signals) != SIGNAL_COUNT:
            raise ProofCheckFailed(ReasonCode.INVALID_PROOF,
                                   f"expected {SIGNAL_COUNT} public signals, got {len(public_signals)}")
        if not isinstance(proof, str):
            raise ProofCheckFailed(ReasonCode.INVALID_PROOF, "mock backend expects a signed proof token")

        try:
            claims = jwt.decode(proof, self._trusted_key, algorithms=[utils.JWT_ALG])
        except ExpiredSignatureError:
            raise ProofCheckFailed(ReasonCode.CREDENTIAL_EXPIRED, "underlying credential has expired") from None
        except JWTError:
            raise ProofCheckFailed(ReasonCode.INVALID_PROOF, "proof signature is invalid") from None

        if claims.get("sig") != signals_digest(public_signals):
            raise ProofCheckFailed(ReasonCode.INVALID_PROOF, "proof does not commit to these public signals")
        if claims.get("att") != attestation_kind or public_signals[Signal.ATTESTATION_ID] != str(attestation_kind):
            raise ProofCheckFailed(ReasonCode.ATTESTATION_MISMATCH,
                                   "proof was not generated for the claimed attestation kind")
        if public_signals[Signal.SCOPE] != self.scope_hash:
            raise ProofCheckFailed(ReasonCode.SCOPE_MISMATCH, "proof is bound to a different scope")
        if public_signals[Signal.USER_CONTEXT] != utils.field_hash(user_context_data):
            raise ProofCheckFailed(ReasonCode.CONTEXT_MISMATCH, "proof is bound to a different session")

        return decode_disclosure(public_signals, user_identifier=claims.get("uid"))


class MockProver:
    """Builds /verify bodies the way a wallet in mock-passport mode would."""

    def __init__(self, trusted_key: str, scope: str):
        self._trusted_key = trusted_key
        self.scope = scope

    def issue(self, user_context_data: str, attestation_id: int = 1, user_identifier: str = None,
              minimum_age: int = None, older_than: bool = None, nationality: str = None,
              gender: str = None, issuing_state: str = None, ofac: bool = None,
              nullifier: str = None, expires_in: int = 3600) -> dict:
        if older_than is None:
            older_than = minimum_age is not None
        if ofac is None:
            ofac_signal = OFAC_UNDISCLOSED
        else:
            ofac_signal = OFAC_MATCH if ofac else OFAC_CLEAR
        signals = [
            nullifier or str(secrets.randbits(248) | 1),
            str(attestation_id),
            utils.field_hash(user_context_data),
            utils.field_hash(self.scope),
            str(minimum_age or 0),
            "1" if (minimum_age and older_than) else "0",
            utils.pack_ascii(nationality),
            utils.pack_ascii(gender),
            utils.pack_ascii(issuing_state),
            str(ofac_signal),
        ]
        now = int(time.time())
        claims = {
            "att": attestation_id,
            "sig": signals_digest(signals),
            "iat": now,
            "exp": now + expires_in,
        }
        if user_identifier:
            claims["uid"] = user_identifier
        return {
            "attestationId": attestation_id,
            "proof": jwt.encode(claims, self._trusted_key, algorithm=utils.JWT_ALG),
            "publicSignals": signals,
            "userContextData": user_context_data,
        }
