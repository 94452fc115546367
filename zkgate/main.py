# zkgate/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from zkgate import models, utils
from zkgate.config import Settings, load_settings
from zkgate.db import init_db, make_engine, make_session_factory
from zkgate.errors import (
    ConfigurationError,
    MalformedRequest,
    UpstreamFetchError,
    VerificationTimeout,
)
from zkgate.mock_proofs import SignedSignalsProofCheck
from zkgate.policy import PolicyStore
from zkgate.profiles import HttpProfileFetcher, ProfileCache
from zkgate.schemas import (
    ProfileOut,
    ProofSubmission,
    ReasonCode,
    SessionRequest,
    VerificationResult,
    VerificationState,
    describe_errors,
)
from zkgate.sessions import SessionBroker
from zkgate.verifier import ProofVerifier, SqlReplayStore, category

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Proof, publicSignals, attestationId and userContextData are required"
REASONS = {
    "CryptoInvalid": "Proof verification failed",
    "PolicyViolation": "Disclosure does not satisfy the verification policy",
}


def verification_body(result: VerificationResult) -> dict:
    """Shape a VerificationResult into the /verify wire protocol."""
    if result.valid:
        return {
            "status": "success",
            "result": True,
            "credentialSubject": result.disclosure.to_wire(),
        }
    details = dict(result.details)
    if result.state == VerificationState.POLICY_DENIED and result.disclosure is not None:
        # returned for audit only, never an authorization grant
        details["disclosure"] = result.disclosure.to_wire()
    kind = category(result.reason_code)
    return {
        "status": "error",
        "result": False,
        "reason": REASONS.get(kind, "Verification failed"),
        "error_code": result.reason_code.value,
        "category": kind,
        "details": details,
    }


def create_app(settings: Settings = None, proof_check=None, profile_fetcher=None,
               replay_store=None) -> FastAPI:
    """
    Build the gateway. Everything process-scoped (policies, broker, verifier,
    profile cache) is constructed here once and only read afterwards.
    """
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = make_engine(settings.database_url)
    SessionLocal = make_session_factory(engine)

    policies = PolicyStore.from_settings(settings)
    broker = SessionBroker.from_settings(settings)
    verifier = ProofVerifier(
        proof_check or SignedSignalsProofCheck(settings.trusted_key, settings.scope),
        policies,
        policy_name=settings.policy_name,
        replay_store=replay_store or SqlReplayStore(SessionLocal),
    )
    fetcher = profile_fetcher or HttpProfileFetcher(settings.profile_upstream, settings.upstream_timeout)
    profiles = ProfileCache(fetcher, ttl=settings.profile_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        logger.info("zkgate ready scope=%s endpoint=%s policy=%s",
                    settings.scope, settings.endpoint, settings.policy_name)
        yield
        if hasattr(fetcher, "aclose"):
            await fetcher.aclose()
        engine.dispose()

    app = FastAPI(title="zkgate - ZK Identity Verification Gateway", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.policies = policies
    app.state.broker = broker
    app.state.verifier = verifier
    app.state.profiles = profiles
    app.state.engine = engine
    app.state.session_factory = SessionLocal

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def record_audit(actor: str, action: str, target: str, meta: dict):
        db = SessionLocal()
        try:
            db.add(models.Audit(actor=actor, action=action, target=target, meta=meta))
            db.commit()
        finally:
            db.close()

    # --- Error shaping
    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        return JSONResponse(
            {"reasonCode": "ConfigurationError", "message": exc.message, "details": exc.details},
            status_code=400,
        )

    @app.exception_handler(MalformedRequest)
    async def malformed_request(request: Request, exc: MalformedRequest):
        return JSONResponse(
            {"message": exc.message, "error_code": exc.code, "details": exc.details},
            status_code=404,
        )

    @app.exception_handler(VerificationTimeout)
    async def verification_timeout(request: Request, exc: VerificationTimeout):
        return JSONResponse({
            "status": "error",
            "result": False,
            "reason": exc.message,
            "error_code": ReasonCode.VERIFICATION_TIMEOUT.value,
            "category": category(ReasonCode.VERIFICATION_TIMEOUT),
            "details": {"retryable": exc.retryable},
        })

    @app.exception_handler(UpstreamFetchError)
    async def upstream_error(request: Request, exc: UpstreamFetchError):
        return JSONResponse(
            {"success": False, "error_code": exc.code, "reason": exc.message, "retryable": exc.retryable},
            status_code=502,
        )

    @app.exception_handler(Exception)
    async def unknown_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            {"status": "error", "result": False, "reason": "Unknown error", "error_code": "UNKNOWN_ERROR"},
            status_code=500,
        )

    # --- Liveness
    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "zkgate",
        }

    # --- Session: descriptor for the relier's QR code
    @app.post("/session", status_code=201)
    async def create_session(request: Request):
        try:
            payload = SessionRequest.model_validate(await request.json())
        except ValueError as e:
            # ValidationError and JSONDecodeError are both ValueErrors
            details = {"errors": describe_errors(e)} if isinstance(e, ValidationError) else {}
            raise ConfigurationError("invalid session request", details) from e
        session = broker.create_session(
            settings.scope if payload.scope_id is None else payload.scope_id,
            payload.requested_disclosures,
            payload.attestation_kinds,
            user_defined_data=payload.user_defined_data,
        )
        await asyncio.to_thread(
            record_audit, "relier", "create_session", session.scope_id,
            {"correlation": utils.hash_value(session.correlation_user_id)},
        )
        return JSONResponse(session.to_wire(), status_code=201)

    # --- Verify: called by the prover's wallet
    @app.post("/verify")
    async def verify(request: Request):
        try:
            submission = ProofSubmission.model_validate(await request.json())
        except ValueError as e:
            details = {"errors": describe_errors(e)} if isinstance(e, ValidationError) else {}
            raise MalformedRequest(MISSING_FIELDS_MESSAGE, details) from e

        result = await verifier.verify_async(submission, timeout=settings.verify_timeout)
        meta = {"state": result.state.value, "reason": result.reason_code.value,
                "attestationId": submission.attestation_kind}
        if result.disclosure is not None:
            meta["nullifier"] = utils.hash_value(result.disclosure.nullifier)
        try:
            await asyncio.to_thread(record_audit, "prover", "verify", result.reason_code.value, meta)
        except SQLAlchemyError:
            # nullifier is already consumed, so the decision stands
            logger.exception("audit write failed for verify state=%s", result.state.value)
        return JSONResponse(verification_body(result), status_code=200)

    # --- Profile enrichment (display only)
    @app.get("/profile/{subject_key}", response_model=ProfileOut)
    async def get_profile(subject_key: str):
        document, cached = await profiles.lookup(subject_key)
        return {"success": True, "subjectKey": subject_key, "profile": document, "cached": cached}

    @app.delete("/profile/{subject_key}")
    async def clear_profile(subject_key: str):
        profiles.clear(subject_key)
        return {"ok": True}

    @app.delete("/profile")
    async def clear_profiles():
        profiles.clear()
        return {"ok": True}

    # --- Policies
    @app.get("/policies/{name}")
    def get_policy(name: str):
        try:
            policy = policies.get(name)
        except ConfigurationError:
            raise HTTPException(404, "policy not found")
        return policy.model_dump(by_alias=True)

    return app


app = create_app()
