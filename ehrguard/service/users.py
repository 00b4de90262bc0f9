from __future__ import annotations

from typing import Any, Dict, Optional

from ehrguard.logging import get_logger
from ehrguard.service.errors import ForbiddenError, NotFoundError, ValidationError
from ehrguard.service.identity import ROLE_GROUPS
from ehrguard.service.roles import RoleResolver
from ehrguard.storage.models import User

logger = get_logger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class UserAdminService:
    """Account administration behind the admin endpoints.

    Disabling an account also discards its pending logins and MFA challenges,
    so a half-finished login cannot be completed afterwards. Refresh is
    refused for inactive accounts by the identity provider.
    """

    def __init__(self, store, identity, resolver: RoleResolver, email=None):
        self.store = store
        self.identity = identity
        self.resolver = resolver
        self.email = email

    def _view(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "full_name": user.full_name,
            "role": self.resolver.for_user(user),
            "is_active": user.is_active,
            "force_password_change": user.force_password_change,
            "created_at": _iso(user.created_at),
            "last_login_at": _iso(user.last_login_at),
        }

    def _load(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        if role is not None and role not in ROLE_GROUPS:
            raise ValidationError(
                f"Role must be one of: {', '.join(ROLE_GROUPS)}", detail={"field": "role"}
            )
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", detail={"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must be non-negative", detail={"field": "offset"})
        users, total = self.store.list_users(role=role, search=search, limit=limit, offset=offset)
        return {
            "users": [self._view(u) for u in users],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(users) < total,
            },
        }

    def disable_user(self, user_id: str) -> Dict[str, Any]:
        user = self._load(user_id)
        if self.resolver.for_user(user) == "admin":
            raise ForbiddenError("Cannot disable admin accounts")
        user = self.store.set_user_active(user.id, False) or user
        sessions = self.store.delete_login_sessions_for_user(user.id)
        self.store.delete_unverified_otp_challenges(user.id)
        self.store.take_webauthn_challenge(user.id)
        logger.info("user_disabled", user_id=user.id, pending_logins_dropped=sessions)
        return self._view(user)

    def reset_password(
        self, user_id: str, temporary_password: Optional[str] = None, *, notify: bool = True
    ) -> Dict[str, Any]:
        user = self._load(user_id)
        if not user.is_active:
            raise ValidationError("Cannot reset the password of a disabled account")
        password = self.identity.reset_password(user.id, temporary_password)
        # Pending logins were started with the old password
        self.store.delete_login_sessions_for_user(user.id)
        email_sent = False
        if notify and self.email is not None:
            email_sent = self.email.send_account_created(user.email, user.username, password)
            if not email_sent:
                logger.warning("password_reset_email_not_sent", user_id=user.id)
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "temporary_password": password,
            "email_sent": email_sent,
            "note": "User must change password on next login",
        }
