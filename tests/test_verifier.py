import asyncio
import time

import pytest

from zkgate.db import init_db, make_engine, make_session_factory
from zkgate.errors import ConfigurationError, MalformedRequest, VerificationTimeout
from zkgate.mock_proofs import MockProver, Signal, SignedSignalsProofCheck
from zkgate.policy import PolicyStore
from zkgate.schemas import (
    DisclosureOutput,
    Policy,
    ProofSubmission,
    ReasonCode,
    VerificationState,
)
from zkgate.verifier import (
    InMemoryReplayStore,
    ProofCheck,
    ProofCheckFailed,
    ProofVerifier,
    ReplayStore,
    SqlReplayStore,
)

KEY = "verifier-test-key"
SCOPE = "verifier-test"


class CannedProofCheck(ProofCheck):
    """Returns a fixed disclosure, or fails with a fixed reason."""

    def __init__(self, disclosure=None, failure=None, delay=0.0):
        self.disclosure = disclosure
        self.failure = failure
        self.delay = delay
        self.calls = 0

    def verify(self, attestation_kind, proof, public_signals, user_context_data):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.failure:
            raise ProofCheckFailed(self.failure)
        return self.disclosure


def submission(**kwargs) -> ProofSubmission:
    body = {"attestationId": 1, "proof": "p", "publicSignals": ["1", "2"], "userContextData": "ctx"}
    body.update(kwargs)
    return ProofSubmission.model_validate(body)


def store() -> PolicyStore:
    return PolicyStore([Policy(name="default", minimum_age=18, excluded_countries=["PRK"], sanctions_screen=True)])


ADULT = DisclosureOutput(nullifier="42", attestation_id=1, minimum_age=18, older_than=True, nationality="DEU")


def test_valid_proof_is_allowed() -> None:
    verifier = ProofVerifier(CannedProofCheck(ADULT), store())
    result = verifier.verify(submission())
    assert result.valid
    assert result.state == VerificationState.POLICY_ALLOWED
    assert result.reason_code == ReasonCode.OK
    assert result.disclosure == ADULT
    assert result.details == {"policy": "default", "policyVersion": 1}


def test_crypto_failure_exposes_no_disclosure() -> None:
    check = CannedProofCheck(failure=ReasonCode.INVALID_PROOF)
    result = ProofVerifier(check, store()).verify(submission())
    assert not result.valid
    assert result.state == VerificationState.CRYPTO_INVALID
    assert result.reason_code == ReasonCode.INVALID_PROOF
    assert result.disclosure is None


def test_policy_denial_lists_violations_and_keeps_disclosure() -> None:
    minor = ADULT.model_copy(update={"older_than": False})
    result = ProofVerifier(CannedProofCheck(minor), store()).verify(submission())
    assert not result.valid
    assert result.state == VerificationState.POLICY_DENIED
    assert result.reason_code == ReasonCode.POLICY_VIOLATION
    assert result.details["violations"] == ["MINIMUM_AGE"]
    assert result.disclosure == minor


def test_decoded_attestation_must_match_claim() -> None:
    result = ProofVerifier(CannedProofCheck(ADULT), store()).verify(submission(attestationId=2))
    assert result.reason_code == ReasonCode.ATTESTATION_MISMATCH


def test_incomplete_submission_never_reaches_proof_check() -> None:
    check = CannedProofCheck(ADULT)
    verifier = ProofVerifier(check, store())
    incomplete = ProofSubmission.model_construct(
        attestation_kind=1, proof_blob="", public_signals=("1",), user_context_data="ctx"
    )
    with pytest.raises(MalformedRequest) as info:
        verifier.verify(incomplete)
    assert info.value.details == {"missing": ["proof"]}
    assert check.calls == 0


def test_same_submission_twice_gives_same_outcome() -> None:
    verifier = ProofVerifier(CannedProofCheck(ADULT), store())
    assert verifier.verify(submission()) == verifier.verify(submission())


def test_replayed_proof_is_rejected() -> None:
    verifier = ProofVerifier(CannedProofCheck(ADULT), store(), replay_store=InMemoryReplayStore())
    assert verifier.verify(submission()).valid
    second = verifier.verify(submission())
    assert second.state == VerificationState.CRYPTO_INVALID
    assert second.reason_code == ReasonCode.PROOF_REPLAYED
    assert second.disclosure is None


def test_sql_replay_store(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'replay.db'}")
    init_db(engine)
    replay = SqlReplayStore(make_session_factory(engine))
    assert replay.claim("n-1", 1)
    assert not replay.claim("n-1", 1)
    assert replay.claim("n-2", 1)


def test_unknown_policy_fails_at_construction() -> None:
    with pytest.raises(ConfigurationError):
        ProofVerifier(CannedProofCheck(ADULT), store(), policy_name="missing")


def test_verify_async_times_out() -> None:
    verifier = ProofVerifier(CannedProofCheck(ADULT, delay=0.5), store())
    with pytest.raises(VerificationTimeout):
        asyncio.run(verifier.verify_async(submission(), timeout=0.05))


def test_verify_async_returns_result() -> None:
    verifier = ProofVerifier(CannedProofCheck(ADULT), store())
    result = asyncio.run(verifier.verify_async(submission(), timeout=5))
    assert result.valid


# --- mock-passport backend

@pytest.fixture
def mock_check():
    return SignedSignalsProofCheck(KEY, SCOPE)


@pytest.fixture
def mock_prover():
    return MockProver(KEY, SCOPE)


def run_check(check, body):
    sub = ProofSubmission.model_validate(body)
    return check.verify(sub.attestation_kind, sub.proof_blob, list(sub.public_signals), sub.user_context_data)


def test_mock_backend_decodes_disclosure(mock_check, mock_prover) -> None:
    body = mock_prover.issue("ctx-1", minimum_age=18, nationality="FRA", gender="F",
                             ofac=False, user_identifier="user-1")
    out = run_check(mock_check, body)
    assert out.attestation_id == 1
    assert out.user_identifier == "user-1"
    assert out.minimum_age == 18
    assert out.older_than is True
    assert out.nationality == "FRA"
    assert out.gender == "F"
    assert out.issuing_state is None
    assert out.ofac is False
    assert out.nullifier == body["publicSignals"][Signal.NULLIFIER]


def test_mock_backend_undisclosed_fields_stay_empty(mock_check, mock_prover) -> None:
    out = run_check(mock_check, mock_prover.issue("ctx", nationality="ITA"))
    assert out.to_wire().keys() == {"nullifier", "attestationId", "nationality"}


def test_mock_backend_rejects_tampered_signals(mock_check, mock_prover) -> None:
    body = mock_prover.issue("ctx", minimum_age=18, older_than=False)
    body["publicSignals"][Signal.OLDER_THAN] = "1"
    with pytest.raises(ProofCheckFailed) as info:
        run_check(mock_check, body)
    assert info.value.reason_code == ReasonCode.INVALID_PROOF


@pytest.mark.parametrize("mutate, reason", [
    (lambda b: b.update(attestationId=2), ReasonCode.ATTESTATION_MISMATCH),
    (lambda b: b.update(userContextData="someone-else"), ReasonCode.CONTEXT_MISMATCH),
    (lambda b: b.update(proof=b["proof"] + "x"), ReasonCode.INVALID_PROOF),
    (lambda b: b.update(publicSignals=b["publicSignals"][:5]), ReasonCode.INVALID_PROOF),
    (lambda b: b.update(proof={"a": [1], "b": [2], "c": [3]}), ReasonCode.INVALID_PROOF),
    (lambda b: b.update(attestationId=9), ReasonCode.UNSUPPORTED_ATTESTATION),
])
def test_mock_backend_failure_reasons(mock_check, mock_prover, mutate, reason) -> None:
    body = mock_prover.issue("ctx", minimum_age=18)
    mutate(body)
    with pytest.raises(ProofCheckFailed) as info:
        run_check(mock_check, body)
    assert info.value.reason_code == reason


def test_mock_backend_expired_credential(mock_check, mock_prover) -> None:
    body = mock_prover.issue("ctx", minimum_age=18, expires_in=-60)
    with pytest.raises(ProofCheckFailed) as info:
        run_check(mock_check, body)
    assert info.value.reason_code == ReasonCode.CREDENTIAL_EXPIRED


def test_mock_backend_wrong_scope(mock_check) -> None:
    body = MockProver(KEY, "another-scope").issue("ctx", minimum_age=18)
    with pytest.raises(ProofCheckFailed) as info:
        run_check(mock_check, body)
    assert info.value.reason_code == ReasonCode.SCOPE_MISMATCH


def test_mock_backend_untrusted_issuer(mock_check) -> None:
    body = MockProver("not-the-trusted-key", SCOPE).issue("ctx", minimum_age=18)
    with pytest.raises(ProofCheckFailed) as info:
        run_check(mock_check, body)
    assert info.value.reason_code == ReasonCode.INVALID_PROOF


def test_proof_check_without_verify_cannot_be_built() -> None:
    class Incomplete(ProofCheck):
        pass

    with pytest.raises(TypeError):
        Incomplete()


def test_replay_store_without_claim_cannot_be_built() -> None:
    class Incomplete(ReplayStore):
        pass

    with pytest.raises(TypeError):
        Incomplete()


def test_released_disclosure_follows_policy() -> None:
    policies = PolicyStore([Policy(name="default", minimum_age=18, excluded_countries=["PRK"],
                                   sanctions_screen=True, disclosures=["minimumAge"])])
    full = ADULT.model_copy(update={"gender": "F", "ofac": False, "user_identifier": "user-1"})
    result = ProofVerifier(CannedProofCheck(full), policies).verify(submission())
    assert result.valid
    assert result.disclosure.to_wire() == {
        "nullifier": "42", "attestationId": 1, "userIdentifier": "user-1",
        "minimumAge": 18, "olderThan": True,
    }


def test_withheld_attributes_still_reach_the_rules() -> None:
    policies = PolicyStore([Policy(name="default", excluded_countries=["PRK"], disclosures=[])])
    north = ADULT.model_copy(update={"nationality": "PRK"})
    result = ProofVerifier(CannedProofCheck(north), policies).verify(submission())
    assert result.details["violations"] == ["EXCLUDED_COUNTRY"]
    assert result.disclosure.nationality is None
