from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

import httpx

from ehrguard.config import Settings, get_settings, reset_settings_cache
from ehrguard.logging import get_logger
from ehrguard.service.access import AccessControl
from ehrguard.service.audit import AuditQueryService, AuditSink
from ehrguard.service.cipher import FieldCipher, ScryptKeyProvider
from ehrguard.service.email import EmailService
from ehrguard.service.identity import LocalIdentityProvider
from ehrguard.service.otp import OTPChallengeService
from ehrguard.service.passkeys import PasskeyService
from ehrguard.service.records import RecordService
from ehrguard.service.roles import RoleResolver
from ehrguard.service.sessions import SessionIssuer
from ehrguard.service.tokens import IssuerRoutedVerifier, RemoteSigningKeySet, TokenVerifier
from ehrguard.service.users import UserAdminService
from ehrguard.storage.memory import MemoryStore
from ehrguard.storage.postgres import PostgresStore
from ehrguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns every collaborator of the service and their lifecycle.

    Nothing here is created lazily at module import; the app lifespan builds a
    runtime on startup and calls ``shutdown`` on exit.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(state_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits are per process until Redis is reachable.",
                )

        if not self.settings.field_encryption_secret:
            raise RuntimeError("FIELD_ENCRYPTION_SECRET must be set to encrypt patient data")
        self.cipher = FieldCipher(ScryptKeyProvider(self.settings.field_encryption_secret))

        self.audit = AuditSink(self.store, timeout_seconds=self.settings.audit_write_timeout_seconds)
        self.audit_query = AuditQueryService(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )

        self.identity = LocalIdentityProvider(self.store, self.settings)
        self._http_client: Optional[httpx.Client] = None
        self.local_key_set = self.identity.key_set()
        local_verifier = self._verifier_for(self.local_key_set, self.identity.issuer)
        self.remote_key_set: Optional[RemoteSigningKeySet] = None
        if self.settings.idp_jwks_url:
            if http_client is None:
                self._http_client = httpx.Client(
                    timeout=self.settings.jwks_fetch_timeout_seconds
                )
            self.remote_key_set = RemoteSigningKeySet(
                self.settings.idp_jwks_url,
                http_client=http_client or self._http_client,
                cache_ttl_seconds=self.settings.jwks_cache_ttl_seconds,
                min_refresh_interval_seconds=self.settings.jwks_min_refresh_interval_seconds,
            )
            # Tokens from the login endpoints stay valid next to the external provider's
            self.verifier = IssuerRoutedVerifier(
                [
                    self._verifier_for(self.remote_key_set, self.settings.idp_issuer),
                    local_verifier,
                ]
            )
        else:
            self.verifier = local_verifier
        self.resolver = RoleResolver(
            groups_claim=self.settings.idp_groups_claim,
            role_claim=self.settings.idp_role_claim,
        )
        self.access = AccessControl(self.verifier, self.resolver, self.audit)

        self.otp = OTPChallengeService(
            self.store,
            self.email,
            ttl_seconds=self.settings.otp_ttl_seconds,
            max_attempts=self.settings.otp_max_attempts,
            mfa_required_roles=self.settings.mfa_required_roles,
        )
        self.passkeys = PasskeyService(
            self.store,
            rp_id=self.settings.webauthn_rp_id,
            rp_name=self.settings.webauthn_rp_name,
            origin=self.settings.webauthn_origin,
            challenge_ttl_seconds=self.settings.webauthn_challenge_ttl_seconds,
        )
        self.sessions = SessionIssuer(
            self.store,
            self.identity,
            self.resolver,
            self.otp,
            self.passkeys,
            self.audit,
            login_session_ttl_minutes=self.settings.login_session_ttl_minutes,
        )
        self.records = RecordService(self.store, self.cipher, self.resolver)
        self.users = UserAdminService(self.store, self.identity, self.resolver, self.email)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            remote_jwks=self.remote_key_set is not None,
            mfa_required_roles=self.settings.mfa_required_roles,
        )

    def _verifier_for(self, key_set, issuer: str) -> TokenVerifier:
        return TokenVerifier(
            key_set,
            issuer=issuer,
            audience=self.settings.idp_audience,
            algorithms=self.settings.jwt_algorithms,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )

    def close_resources(self) -> None:
        """Release synchronous resources: signing-key client and store pool."""
        if self.remote_key_set is not None:
            self.remote_key_set.close()
        if self._http_client is not None:
            self._http_client.close()
        self.store.close()

    async def shutdown(self) -> None:
        await self.audit.drain()
        if self.cache is not None:
            await self.cache.close()
        self.close_resources()
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close_resources()
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit through Redis, or per process without it.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    reset_seconds)``. A non-positive limit disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
