from __future__ import annotations

import asyncio
import hmac
import secrets
from typing import Any, Dict, Iterable, Optional

from ehrguard.logging import get_logger
from ehrguard.service.email import EmailService, mask_email
from ehrguard.service.errors import (
    ChallengeExpiredOrMissingError,
    InvalidCodeError,
    TooManyAttemptsError,
)
from ehrguard.storage.models import User

logger = get_logger(__name__)

OTP_METHOD = "email_otp"
NO_CHALLENGE_MESSAGE = "No valid verification code found or code has expired"
TOO_MANY_ATTEMPTS_MESSAGE = "Maximum verification attempts exceeded. Please request a new code."


def generate_otp() -> str:
    """Uniform six-digit code in 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


class OTPChallengeService:
    """Email one-time-code challenges for roles that must pass a second factor.

    A user has at most one live challenge: ``init`` discards any unverified
    predecessor. ``verify`` consumes the challenge on success; wrong codes bump
    the attempt counter through a compare-and-swap so parallel verifies cannot
    both spend the same attempt.
    """

    def __init__(
        self,
        store,
        email: EmailService,
        *,
        ttl_seconds: int = 300,
        max_attempts: int = 3,
        mfa_required_roles: Iterable[str] = ("doctor", "nurse", "receptionist", "admin"),
    ):
        self.store = store
        self.email = email
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.mfa_required_roles = frozenset(mfa_required_roles)

    def requires_mfa(self, role_name: Optional[str]) -> bool:
        return role_name in self.mfa_required_roles

    async def init(
        self,
        user: User,
        role_name: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.requires_mfa(role_name):
            return {"mfa_required": False}
        removed = self.store.delete_unverified_otp_challenges(user.id)
        if removed:
            logger.info("otp_challenges_replaced", user_id=user.id, count=removed)
        code = generate_otp()
        self.store.create_otp_challenge(
            user.id,
            code,
            ttl_seconds=self.ttl_seconds,
            max_attempts=self.max_attempts,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        sent = await asyncio.to_thread(
            self.email.send_otp_email,
            user.email,
            code,
            user.full_name or user.username,
            ttl_minutes=max(self.ttl_seconds // 60, 1),
        )
        if not sent:
            # Delivery is best-effort; the caller may request a new code
            logger.warning("otp_delivery_failed", user_id=user.id)
        logger.info("otp_issued", user_id=user.id, expires_in=self.ttl_seconds)
        return {
            "mfa_required": True,
            "email": mask_email(user.email),
            "expires_in": self.ttl_seconds,
        }

    async def verify(self, user_id: str, code: str) -> Dict[str, Any]:
        submitted = (code or "").strip().encode("utf-8")
        while True:
            challenge = self.store.get_active_otp_challenge(user_id)
            if not challenge:
                raise ChallengeExpiredOrMissingError(NO_CHALLENGE_MESSAGE)
            if challenge.attempts >= challenge.max_attempts:
                logger.warning("otp_attempts_exhausted", user_id=user_id)
                raise TooManyAttemptsError(TOO_MANY_ATTEMPTS_MESSAGE)
            if hmac.compare_digest(submitted, challenge.code.encode("utf-8")):
                if not self.store.mark_otp_verified(challenge.id):
                    raise ChallengeExpiredOrMissingError(NO_CHALLENGE_MESSAGE)
                self.store.record_mfa_success(user_id, OTP_METHOD)
                logger.info("otp_verified", user_id=user_id)
                return {"verified": True, "method": OTP_METHOD}
            attempts = self.store.increment_otp_attempts(challenge.id, challenge.attempts)
            if attempts is None:
                # Lost the race against a parallel verify; re-read the counter
                continue
            remaining = max(challenge.max_attempts - attempts, 0)
            logger.warning("otp_invalid_code", user_id=user_id, attempts_remaining=remaining)
            raise InvalidCodeError(
                f"Invalid verification code. {remaining} attempt(s) remaining.",
                detail={"attempts_remaining": remaining},
            )

    def status(self, user: User, role_name: Optional[str]) -> Dict[str, Any]:
        settings = self.store.get_mfa_settings(user.id)
        passkeys = self.store.list_webauthn_credentials(user.id)
        return {
            "mfa_required": self.requires_mfa(role_name),
            "mfa_enabled": settings.mfa_enabled if settings else True,
            "preferred_method": settings.preferred_method if settings else OTP_METHOD,
            "email_verified": user.email_verified,
            "last_mfa_at": settings.last_mfa_at.isoformat()
            if settings and settings.last_mfa_at
            else None,
            "last_mfa_method": settings.last_mfa_method if settings else None,
            "passkeys_registered": len(passkeys),
        }
