from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

from ehrguard.logging import get_logger
from ehrguard.service.audit import AuditSink
from ehrguard.service.errors import (
    AuthenticationError,
    ChallengeExpiredOrMissingError,
    ServiceError,
    ValidationError,
)
from ehrguard.service.identity import IdentityProvider, ensure_password_policy
from ehrguard.service.otp import OTP_METHOD, OTPChallengeService
from ehrguard.service.passkeys import PasskeyService
from ehrguard.service.roles import Principal, RoleResolver
from ehrguard.storage.models import AuditEntry, LoginSession, User, utcnow

logger = get_logger(__name__)

NEW_PASSWORD_REQUIRED = "NEW_PASSWORD_REQUIRED"
AUTH_RESOURCE = "auth"


class SessionIssuer:
    """Login state machine.

    ``CredentialsSubmitted`` ends in one of three places: a forced password
    change (challenge, no tokens), a pending MFA login session, or issued
    tokens. Pending sessions complete through the OTP or WebAuthn ceremony.
    Every terminal success and every credential rejection is audited.
    """

    def __init__(
        self,
        store,
        identity: IdentityProvider,
        resolver: RoleResolver,
        otp: OTPChallengeService,
        passkeys: PasskeyService,
        audit: AuditSink,
        *,
        login_session_ttl_minutes: int = 10,
    ):
        self.store = store
        self.identity = identity
        self.resolver = resolver
        self.otp = otp
        self.passkeys = passkeys
        self.audit = audit
        self.login_session_ttl_minutes = login_session_ttl_minutes

    def principal_for(self, user: User) -> Principal:
        return self.resolver.principal(self.identity.claims_for(user))

    def _audit(
        self,
        action: str,
        status: str,
        *,
        user: Optional[User] = None,
        principal: Optional[Principal] = None,
        attempted: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
        resource_type: str = AUTH_RESOURCE,
    ) -> None:
        self.audit.record(
            AuditEntry(
                action=action,
                resource_type=resource_type,
                user_id=user.id if user else None,
                user_email=user.email if user else attempted,
                user_role=principal.role_name if principal else None,
                ip_address=ip_addr,
                user_agent=user_agent,
                status=status,
                error_message=error_message,
            )
        )

    # login
    async def login(
        self,
        username: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not username or not password:
            raise ValidationError("Username and password are required")
        try:
            outcome = await asyncio.to_thread(self.identity.authenticate, username, password)
        except AuthenticationError as exc:
            self._audit(
                "LOGIN",
                "failed",
                attempted=username,
                ip_addr=ip_addr,
                user_agent=user_agent,
                error_message=exc.message,
            )
            logger.warning("login_failed", reason=exc.error_code)
            raise
        if outcome.new_password_required:
            logger.info("login_password_change_required", user_id=outcome.user.id)
            return {
                "challenge_name": NEW_PASSWORD_REQUIRED,
                "session": outcome.challenge_session,
                "message": "Password change required on first login",
            }
        return self._after_credentials(outcome.user, ip_addr=ip_addr, user_agent=user_agent)

    async def complete_new_password(
        self,
        username: str,
        session: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not username or not session:
            raise ValidationError("Username and session are required")
        ensure_password_policy(new_password)
        try:
            outcome = await asyncio.to_thread(
                self.identity.respond_to_new_password, username, session, new_password
            )
        except AuthenticationError as exc:
            self._audit(
                "LOGIN",
                "failed",
                attempted=username,
                ip_addr=ip_addr,
                user_agent=user_agent,
                error_message=exc.message,
            )
            logger.warning("password_challenge_failed", reason=exc.error_code)
            raise
        self._audit(
            "CHANGE_PASSWORD",
            "success",
            user=outcome.user,
            principal=self.principal_for(outcome.user),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return self._after_credentials(outcome.user, ip_addr=ip_addr, user_agent=user_agent)

    def _after_credentials(
        self, user: User, *, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> Dict[str, Any]:
        principal = self.principal_for(user)
        if not self.otp.requires_mfa(principal.role_name):
            return self._complete(user, principal, ip_addr=ip_addr, user_agent=user_agent)
        session = self.store.create_login_session(
            user.id,
            ttl_minutes=self.login_session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_required=True,
        )
        logger.info("login_mfa_required", user_id=user.id, role=principal.role_name)
        return {
            "mfa_required": True,
            "session_id": session.id,
            "mfa_methods": [OTP_METHOD],
            "expires_at": session.expires_at.isoformat(),
        }

    def _complete(
        self,
        user: User,
        principal: Principal,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> Dict[str, Any]:
        tokens = self.identity.issue_tokens(user)
        self.store.record_login(user.id)
        self._audit(
            "LOGIN",
            "success",
            user=user,
            principal=principal,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        logger.info("login_completed", user_id=user.id, role=principal.role_name)
        return {
            **tokens,
            "user": {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "name": user.full_name,
                "role": principal.role_name,
            },
        }

    # pending MFA logins
    def _pending(self, session_id: str) -> Tuple[LoginSession, User]:
        session = self.store.get_login_session(session_id) if session_id else None
        if not session or session.expires_at <= utcnow():
            raise ChallengeExpiredOrMissingError("Login session expired or not found")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            self.store.delete_login_session(session.id)
            raise ChallengeExpiredOrMissingError("Login session expired or not found")
        return session, user

    async def init_mfa(
        self,
        session_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        _, user = self._pending(session_id)
        principal = self.principal_for(user)
        return await self.otp.init(
            user, principal.role_name, ip_addr=ip_addr, user_agent=user_agent
        )

    async def verify_mfa(
        self,
        session_id: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        session, user = self._pending(session_id)
        principal = self.principal_for(user)
        if not code:
            raise ValidationError("Verification code is required", detail={"field": "code"})
        try:
            await self.otp.verify(user.id, code)
        except ServiceError as exc:
            self._audit(
                "MFA_VERIFY",
                "failed",
                user=user,
                principal=principal,
                ip_addr=ip_addr,
                user_agent=user_agent,
                error_message=exc.message,
            )
            raise
        self._audit(
            "MFA_VERIFY",
            "success",
            user=user,
            principal=principal,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.store.delete_login_session(session.id)
        return self._complete(user, principal, ip_addr=ip_addr, user_agent=user_agent)

    async def passkey_login(
        self,
        login: str,
        credential: Any,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            user = await asyncio.to_thread(self.passkeys.finish_authentication, login, credential)
        except ServiceError as exc:
            self._audit(
                "WEBAUTHN_LOGIN",
                "failed",
                attempted=login,
                ip_addr=ip_addr,
                user_agent=user_agent,
                error_message=exc.message,
            )
            raise
        principal = self.principal_for(user)
        self._audit(
            "WEBAUTHN_LOGIN",
            "success",
            user=user,
            principal=principal,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return self._complete(user, principal, ip_addr=ip_addr, user_agent=user_agent)

    # token maintenance
    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        if not refresh_token:
            raise ValidationError("Refresh token is required", detail={"field": "refresh_token"})
        return await asyncio.to_thread(self.identity.refresh, refresh_token)

    async def change_password(
        self, principal: Principal, old_password: str, new_password: str
    ) -> Dict[str, Any]:
        if not old_password or not new_password:
            raise ValidationError("Old password and new password are required")
        await asyncio.to_thread(
            self.identity.change_password, principal.subject, old_password, new_password
        )
        return {"changed": True}
