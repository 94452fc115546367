# zkgate/verifier.py
"""
Proof verification.

A submission moves RECEIVED -> CRYPTO_VALID | CRYPTO_INVALID, and a
cryptographically valid one then moves to POLICY_ALLOWED | POLICY_DENIED.
The cryptographic check itself is an injected ProofCheck; the verifier only
orders the steps, tracks consumed proofs and classifies the outcome.
"""
import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.exc import IntegrityError

from zkgate import models
from zkgate.errors import MalformedRequest, VerificationTimeout
from zkgate.policy import PolicyStore
from zkgate.schemas import (
    DisclosureOutput,
    ProofSubmission,
    ReasonCode,
    VerificationResult,
    VerificationState,
)

logger = logging.getLogger(__name__)

CATEGORIES = {
    ReasonCode.OK: "Verified",
    ReasonCode.MALFORMED_REQUEST: "MalformedRequest",
    ReasonCode.POLICY_VIOLATION: "PolicyViolation",
    ReasonCode.VERIFICATION_TIMEOUT: "VerificationTimeout",
}


def category(reason_code: ReasonCode) -> str:
    return CATEGORIES.get(reason_code, "CryptoInvalid")


class ProofCheckFailed(Exception):
    """Raised by a ProofCheck when a proof does not verify."""

    def __init__(self, reason_code: ReasonCode, message: str = "", details: dict = None):
        super().__init__(message or reason_code.value)
        self.reason_code = reason_code
        self.message = message or reason_code.value
        self.details = details or {}


class ProofCheck(ABC):
    """
    Trusted cryptographic primitive: verifies a proof and decodes its public
    signals. Implementations raise ProofCheckFailed on any failure.
    """

    @abstractmethod
    def verify(self, attestation_kind: int, proof, public_signals, user_context_data: str) -> DisclosureOutput:
        """Return the decoded disclosure or raise ProofCheckFailed."""


class ReplayStore(ABC):
    """One-time-use tracking of proof nullifiers."""

    @abstractmethod
    def claim(self, nullifier: str, attestation_id: Optional[int] = None) -> bool:
        """Atomically mark nullifier consumed. False if it already was."""


class InMemoryReplayStore(ReplayStore):

    def __init__(self):
        self._seen = set()
        self._lock = threading.Lock()

    def claim(self, nullifier, attestation_id=None):
        with self._lock:
            if nullifier in self._seen:
                return False
            self._seen.add(nullifier)
            return True


class SqlReplayStore(ReplayStore):
    """Consumed nullifiers in the consumed_proofs table; the primary key does the check-and-set."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def claim(self, nullifier, attestation_id=None):
        db = self._session_factory()
        try:
            db.add(models.ConsumedProof(nullifier=nullifier, attestation_id=attestation_id))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()


class ProofVerifier:

    def __init__(self, proof_check: ProofCheck, policies: PolicyStore,
                 policy_name: str = "default", replay_store: Optional[ReplayStore] = None):
        self.proof_check = proof_check
        self.policies = policies
        self.policy_name = policy_name
        self.replay_store = replay_store
        # fail at startup rather than on the first request
        self.policies.get(policy_name)

    @staticmethod
    def require_complete(submission: ProofSubmission) -> None:
        missing = [
            name for name, value in (
                ("attestationId", submission.attestation_kind),
                ("proof", submission.proof_blob),
                ("publicSignals", submission.public_signals),
                ("userContextData", submission.user_context_data),
            ) if not value
        ]
        if missing:
            raise MalformedRequest(
                "Proof, publicSignals, attestationId and userContextData are required",
                {"missing": missing},
            )

    def verify(self, submission: ProofSubmission) -> VerificationResult:
        self.require_complete(submission)
        state = VerificationState.RECEIVED
        logger.debug("verification %s attestation=%s", state.value, submission.attestation_kind)

        try:
            disclosure = self.proof_check.verify(
                submission.attestation_kind,
                submission.proof_blob,
                list(submission.public_signals),
                submission.user_context_data,
            )
        except ProofCheckFailed as e:
            return self._crypto_invalid(e.reason_code, e.message, e.details)

        if disclosure.attestation_id != submission.attestation_kind:
            return self._crypto_invalid(
                ReasonCode.ATTESTATION_MISMATCH, "decoded attestation does not match the claimed kind"
            )
        if self.replay_store is not None and not self.replay_store.claim(
                disclosure.nullifier, disclosure.attestation_id):
            return self._crypto_invalid(ReasonCode.PROOF_REPLAYED, "proof has already been used")

        state = VerificationState.CRYPTO_VALID
        policy = self.policies.get(self.policy_name)
        decision = self.policies.evaluate(self.policy_name, disclosure, submission.attestation_kind)
        # rules see everything the proof proved; the relier only gets what the policy releases
        released = disclosure.restrict(policy.disclosures)
        if decision.allowed:
            state = VerificationState.POLICY_ALLOWED
            logger.info("verification %s policy=%s", state.value, policy.name)
            return VerificationResult(
                valid=True,
                state=state,
                reason_code=ReasonCode.OK,
                disclosure=released,
                details={"policy": policy.name, "policyVersion": policy.version},
            )

        state = VerificationState.POLICY_DENIED
        violations = [v.value for v in decision.violations]
        logger.info("verification %s policy=%s violations=%s", state.value, policy.name, violations)
        return VerificationResult(
            valid=False,
            state=state,
            reason_code=ReasonCode.POLICY_VIOLATION,
            disclosure=released,
            details={"policy": policy.name, "policyVersion": policy.version, "violations": violations},
        )

    async def verify_async(self, submission: ProofSubmission, timeout: Optional[float] = None) -> VerificationResult:
        """Run verify() on a worker thread, bounded by timeout seconds."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.verify, submission), timeout)
        except asyncio.TimeoutError:
            logger.warning("verification timed out after %ss", timeout)
            raise VerificationTimeout(f"proof verification exceeded {timeout}s") from None

    @staticmethod
    def _crypto_invalid(reason_code: ReasonCode, message: str, details: dict = None) -> VerificationResult:
        logger.info("verification %s reason=%s", VerificationState.CRYPTO_INVALID.value, reason_code.value)
        return VerificationResult(
            valid=False,
            state=VerificationState.CRYPTO_INVALID,
            reason_code=reason_code,
            details=dict(details or {}, message=message),
        )
