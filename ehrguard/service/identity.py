from __future__ import annotations

import base64
import hashlib
import json
import re
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ehrguard.config import Settings
from ehrguard.logging import get_logger
from ehrguard.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    ValidationError,
)
from ehrguard.service.tokens import StaticSigningKeySet
from ehrguard.storage.errors import ConstraintViolation
from ehrguard.storage.models import User

logger = get_logger(__name__)

PASSWORD_SPECIALS = "@$!%*?&#"
INVALID_CREDENTIALS_MESSAGE = "Invalid username or password"

# Group names as provisioned in the directory; resolve() maps "Doctors" to "doctor"
ROLE_GROUPS = {
    "patient": "Patients",
    "receptionist": "Receptionists",
    "nurse": "Nurses",
    "doctor": "Doctors",
    "admin": "Admins",
}


def password_policy_errors(password: Optional[str]) -> List[str]:
    if not password:
        return ["Password is required"]
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not any(ch in PASSWORD_SPECIALS for ch in password):
        errors.append(
            f"Password must contain at least one special character ({PASSWORD_SPECIALS})"
        )
    return errors


def ensure_password_policy(password: Optional[str], field: str = "new_password") -> None:
    errors = password_policy_errors(password)
    if errors:
        raise ValidationError(
            "Password does not meet requirements", detail={"field": field, "errors": errors}
        )


def generate_temporary_password(length: int = 12) -> str:
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, PASSWORD_SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


@dataclass
class AuthOutcome:
    """Result of a credential check against the identity provider."""

    user: User
    new_password_required: bool = False
    challenge_session: Optional[str] = None


class IdentityProvider(Protocol):
    def authenticate(self, login: str, password: str) -> AuthOutcome: ...

    def respond_to_new_password(
        self, login: str, session: str, new_password: str
    ) -> AuthOutcome: ...

    def issue_tokens(self, user: User) -> Dict[str, Any]: ...

    def refresh(self, refresh_token: str) -> Dict[str, Any]: ...

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None: ...

    def create_user(
        self,
        username: str,
        email: str,
        role: str,
        *,
        full_name: Optional[str] = None,
        temporary_password: Optional[str] = None,
    ) -> Tuple[User, str]: ...

    def reset_password(self, user_id: str, temporary_password: Optional[str] = None) -> str: ...

    def claims_for(self, user: User) -> Dict[str, Any]: ...

    def jwks(self) -> Dict[str, Any]: ...


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class LocalIdentityProvider:
    """Built-in identity provider backed by the application store.

    Passwords are argon2id hashes. Tokens are RS256 JWTs whose claims mirror a
    hosted user pool (``token_use``, groups claim, optional custom role) so the
    same verifier and role resolver handle both. The signing key comes from
    ``IDP_SIGNING_KEY_PEM`` or is generated per process.
    """

    def __init__(self, store, settings: Settings, *, private_key: Optional[rsa.RSAPrivateKey] = None):
        self.store = store
        self.settings = settings
        self._hasher = PasswordHasher(type=Type.ID)
        self._private_key = private_key or self._load_private_key(settings)
        self._public_jwk = json.loads(
            jwt.algorithms.RSAAlgorithm.to_jwk(self._private_key.public_key())
        )
        self.kid = self._thumbprint(self._public_jwk)
        self.issuer = settings.local_idp_issuer or settings.idp_issuer

    @staticmethod
    def _load_private_key(settings: Settings) -> rsa.RSAPrivateKey:
        if settings.idp_signing_key_pem:
            key = serialization.load_pem_private_key(
                settings.idp_signing_key_pem.encode("utf-8"), password=None
            )
            if not isinstance(key, rsa.RSAPrivateKey):
                raise ValueError("IDP_SIGNING_KEY_PEM must be an RSA private key")
            return key
        logger.warning("idp_signing_key_generated", reason="IDP_SIGNING_KEY_PEM not set")
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @staticmethod
    def _thumbprint(jwk: Dict[str, Any]) -> str:
        """RFC 7638 JWK thumbprint."""
        canonical = json.dumps(
            {"e": jwk["e"], "kty": jwk["kty"], "n": jwk["n"]}, separators=(",", ":"), sort_keys=True
        )
        return _b64url(hashlib.sha256(canonical.encode("utf-8")).digest())

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [{**self._public_jwk, "kid": self.kid, "use": "sig", "alg": "RS256"}]}

    def key_set(self) -> StaticSigningKeySet:
        return StaticSigningKeySet.from_jwks(self.jwks())

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), "argon2id"

    def _verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # tokens
    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _sign(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(payload, self._private_key, algorithm="RS256", headers={"kid": self.kid})

    def _decode_own(self, token: str, token_use: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._private_key.public_key(),
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"require": ["exp", "iss", "sub"], "verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(reason=type(exc).__name__) from exc
        if claims.get("token_use") != token_use:
            raise InvalidTokenError(reason="wrong_token_use")
        return claims

    def claims_for(self, user: User) -> Dict[str, Any]:
        claims: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            self.settings.idp_groups_claim: list(user.groups),
        }
        if user.custom_role:
            claims[self.settings.idp_role_claim] = user.custom_role
        if user.full_name:
            claims["name"] = user.full_name
        return claims

    def issue_tokens(self, user: User, *, include_refresh: bool = True) -> Dict[str, Any]:
        now = self._now()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        base = {
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            **self.claims_for(user),
        }
        if self.settings.idp_audience:
            base["aud"] = self.settings.idp_audience
        tokens: Dict[str, Any] = {
            "access_token": self._sign({**base, "token_use": "access", "jti": str(uuid.uuid4())}),
            "id_token": self._sign({**base, "token_use": "id"}),
            "token_type": "Bearer",
            "expires_in": int(ttl.total_seconds()),
        }
        if include_refresh:
            refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
            tokens["refresh_token"] = self._sign(
                {
                    "iss": self.issuer,
                    "sub": user.id,
                    "iat": int(now.timestamp()),
                    "exp": int(refresh_exp.timestamp()),
                    "token_use": "refresh",
                    "jti": str(uuid.uuid4()),
                }
            )
        return tokens

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        claims = self._decode_own(refresh_token, "refresh")
        user = self.store.get_user(claims["sub"])
        if not user or not user.is_active:
            raise InvalidTokenError(reason="user_inactive")
        return self.issue_tokens(user, include_refresh=False)

    def _challenge_session(self, user: User) -> str:
        now = self._now()
        return self._sign(
            {
                "iss": self.issuer,
                "sub": user.id,
                "iat": int(now.timestamp()),
                "exp": int(
                    (now + timedelta(minutes=self.settings.login_session_ttl_minutes)).timestamp()
                ),
                "token_use": "password_challenge",
            }
        )

    # flows
    def authenticate(self, login: str, password: str) -> AuthOutcome:
        user = self.store.find_user_by_login(login)
        if not user or not user.is_active or not self._verify_password(user.id, password):
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if user.force_password_change:
            return AuthOutcome(
                user=user,
                new_password_required=True,
                challenge_session=self._challenge_session(user),
            )
        return AuthOutcome(user=user)

    def respond_to_new_password(self, login: str, session: str, new_password: str) -> AuthOutcome:
        try:
            claims = self._decode_own(session, "password_challenge")
        except InvalidTokenError:
            raise AuthenticationError("Invalid or expired session")
        user = self.store.find_user_by_login(login)
        if not user or user.id != claims["sub"] or not user.is_active:
            raise AuthenticationError("Invalid or expired session")
        ensure_password_policy(new_password)
        self._set_password(user.id, new_password)
        user = self.store.set_force_password_change(user.id, False) or user
        logger.info("password_challenge_completed", user_id=user.id)
        return AuthOutcome(user=user)

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        if not self._verify_password(user_id, old_password):
            raise AuthenticationError("Invalid old password")
        ensure_password_policy(new_password)
        self._set_password(user_id, new_password)
        logger.info("password_changed", user_id=user_id)

    def create_user(
        self,
        username: str,
        email: str,
        role: str,
        *,
        full_name: Optional[str] = None,
        temporary_password: Optional[str] = None,
    ) -> Tuple[User, str]:
        group = ROLE_GROUPS.get(role)
        if group is None:
            raise ValidationError(
                f"Role must be one of: {', '.join(ROLE_GROUPS)}", detail={"field": "role"}
            )
        password = temporary_password or generate_temporary_password()
        ensure_password_policy(password, field="temporary_password")
        try:
            user = self.store.create_user(
                username,
                email,
                full_name=full_name,
                groups=[group],
                custom_role=role,
                email_verified=True,
                force_password_change=True,
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "username")
            raise ConflictError(
                f"{field.capitalize()} already exists", detail={"field": field}
            ) from exc
        self._set_password(user.id, password)
        logger.info("user_created", user_id=user.id, role=role)
        return user, password

    def reset_password(self, user_id: str, temporary_password: Optional[str] = None) -> str:
        """Replace the password with a temporary one the user must change at next login."""
        password = temporary_password or generate_temporary_password()
        ensure_password_policy(password, field="temporary_password")
        self._set_password(user_id, password)
        self.store.set_force_password_change(user_id, True)
        logger.info("password_reset_by_admin", user_id=user_id)
        return password
