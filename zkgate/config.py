# zkgate/config.py
import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_list(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return int(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration. Built once at startup, never mutated."""

    scope: str = "self-zkverify-workshop"
    endpoint: str = "http://localhost:3000/verify"
    endpoint_type: str = "staging_https"
    app_name: str = "zkgate"
    user_id_type: str = "uuid"

    policy_name: str = "default"
    policy_file: Optional[str] = None
    minimum_age: Optional[int] = 18
    excluded_countries: Tuple[str, ...] = ()
    ofac: bool = False
    attestation_kinds: Tuple[int, ...] = (1, 2, 3)
    disclosures: Tuple[str, ...] = ("minimumAge", "nationality", "gender")

    trusted_key: str = "dev-trusted-key"
    sign_key: str = "dev-secret-key"
    database_url: str = "sqlite:///./zkgate.db"

    profile_upstream: str = "http://localhost:3030/api"
    profile_ttl: float = 300.0
    upstream_timeout: float = 10.0
    verify_timeout: float = 30.0

    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        scope=os.environ.get("ZKGATE_SCOPE", Settings.scope),
        endpoint=os.environ.get("ZKGATE_ENDPOINT", Settings.endpoint),
        endpoint_type=os.environ.get("ZKGATE_ENDPOINT_TYPE", Settings.endpoint_type),
        app_name=os.environ.get("ZKGATE_APP_NAME", Settings.app_name),
        user_id_type=os.environ.get("ZKGATE_USER_ID_TYPE", Settings.user_id_type),
        policy_name=os.environ.get("ZKGATE_POLICY", Settings.policy_name),
        policy_file=os.environ.get("ZKGATE_POLICY_FILE") or None,
        minimum_age=_env_optional_int("ZKGATE_MINIMUM_AGE", Settings.minimum_age),
        excluded_countries=_env_list("ZKGATE_EXCLUDED_COUNTRIES"),
        ofac=_env_bool("ZKGATE_OFAC", False),
        attestation_kinds=tuple(int(k) for k in _env_list("ZKGATE_ATTESTATION_KINDS", "1,2,3")),
        disclosures=_env_list("ZKGATE_DISCLOSURES", ",".join(Settings.disclosures)),
        trusted_key=os.environ.get("ZKGATE_TRUSTED_KEY", Settings.trusted_key),
        sign_key=os.environ.get("ZKGATE_SIGN_KEY", Settings.sign_key),
        database_url=os.environ.get("DATABASE_URL", Settings.database_url),
        profile_upstream=os.environ.get("ZKGATE_PROFILE_UPSTREAM", Settings.profile_upstream),
        profile_ttl=float(os.environ.get("ZKGATE_PROFILE_TTL", Settings.profile_ttl)),
        upstream_timeout=float(os.environ.get("ZKGATE_UPSTREAM_TIMEOUT", Settings.upstream_timeout)),
        verify_timeout=float(os.environ.get("ZKGATE_VERIFY_TIMEOUT", Settings.verify_timeout)),
        cors_origins=_env_list("ZKGATE_CORS_ORIGINS", "*"),
        log_level=os.environ.get("ZKGATE_LOG_LEVEL", Settings.log_level).upper(),
    )
