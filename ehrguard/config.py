from __future__ import annotations

import json
import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Asymmetric signature families accepted for bearer tokens. HMAC algorithms are
# excluded so a public key can never be used as a shared secret.
ASYMMETRIC_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "ES256",
        "ES384",
        "ES512",
    }
)

CANONICAL_ROLES = ("patient", "receptionist", "nurse", "doctor", "admin")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    """Accept JSON arrays or comma separated strings for list settings."""
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the EHR security core."""

    # storage
    database_url: str = env_field("postgresql://localhost:5432/ehr", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(None, "MEMORY_STORE_PATH")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(False, "TEST_MODE")

    # bearer token verification
    idp_issuer: str = env_field("http://localhost:8000", "IDP_ISSUER")
    idp_jwks_url: str | None = env_field(
        None,
        "IDP_JWKS_URL",
        description="Remote signing-key endpoint; unset uses the built-in provider keys",
    )
    idp_audience: str | None = env_field(None, "IDP_AUDIENCE")
    idp_groups_claim: str = env_field("cognito:groups", "IDP_GROUPS_CLAIM")
    idp_role_claim: str = env_field("custom:role", "IDP_ROLE_CLAIM")
    jwt_algorithms: List[str] = env_field(["RS256"], "JWT_ALGORITHMS")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    jwks_cache_ttl_seconds: int = env_field(600, "JWKS_CACHE_TTL_SECONDS", gt=0)
    jwks_fetch_timeout_seconds: float = env_field(3.0, "JWKS_FETCH_TIMEOUT_SECONDS", gt=0)
    jwks_min_refresh_interval_seconds: int = env_field(
        30, "JWKS_MIN_REFRESH_INTERVAL_SECONDS", ge=0
    )

    # built-in identity provider
    local_idp_issuer: str | None = env_field(
        None,
        "LOCAL_IDP_ISSUER",
        description="Issuer of tokens minted by the login endpoints; unset uses IDP_ISSUER",
    )
    idp_signing_key_pem: str | None = env_field(None, "IDP_SIGNING_KEY_PEM")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    login_session_ttl_minutes: int = env_field(10, "LOGIN_SESSION_TTL_MINUTES", gt=0)

    # field encryption
    field_encryption_secret: str | None = env_field(None, "FIELD_ENCRYPTION_SECRET")

    # multi-factor
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS", gt=0)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", gt=0)
    mfa_required_roles: List[str] = env_field(
        ["doctor", "nurse", "receptionist", "admin"], "MFA_REQUIRED_ROLES"
    )
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("EHR System", "WEBAUTHN_RP_NAME")
    webauthn_origin: str = env_field("http://localhost:3000", "WEBAUTHN_ORIGIN")
    webauthn_challenge_ttl_seconds: int = env_field(
        300, "WEBAUTHN_CHALLENGE_TTL_SECONDS", gt=0
    )

    # audit
    audit_write_timeout_seconds: float = env_field(
        3.0, "AUDIT_WRITE_TIMEOUT_SECONDS", gt=0
    )

    # rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=0)
    mfa_rate_limit_per_minute: int = env_field(5, "MFA_RATE_LIMIT_PER_MINUTE", ge=0)

    # SMTP
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("EHR System", "EMAIL_FROM_NAME")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithms", "mfa_required_roles", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("jwt_algorithms")
    @classmethod
    def _validate_algorithms(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one signature algorithm is required")
        normalized = [alg.strip().upper() for alg in value]
        rejected = [alg for alg in normalized if alg not in ASYMMETRIC_ALGORITHMS]
        if rejected:
            raise ValueError(
                f"unsupported token algorithms {rejected}; only asymmetric algorithms are allowed"
            )
        return normalized

    @field_validator("mfa_required_roles")
    @classmethod
    def _validate_mfa_roles(cls, value: List[str]) -> List[str]:
        normalized = [role.strip().lower() for role in value]
        unknown = [role for role in normalized if role not in CANONICAL_ROLES]
        if unknown:
            raise ValueError(f"unknown roles in MFA_REQUIRED_ROLES: {unknown}")
        return normalized

    @field_validator("webauthn_origin")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/") if value else value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
