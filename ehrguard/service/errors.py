from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in logs:
    - validation_error (400)
    - challenge_expired (400)
    - unauthorized (401)
    - invalid_token (401)
    - invalid_code (401)
    - credential_compromised (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - too_many_attempts (429)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ChallengeExpiredOrMissingError(ServiceError):
    """No live challenge to verify against: never issued, expired or consumed (400)."""
    status_code = 400
    error_code = "challenge_expired"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Bearer token is malformed, expired, or its signature cannot be verified (401)."""
    error_code = "invalid_token"

    def __init__(self, reason: str = "invalid_token", **kwargs) -> None:
        super().__init__("Unauthorized - Invalid token", **kwargs)
        self.reason = reason


class InvalidCodeError(AuthenticationError):
    """Submitted one-time code does not match; the attempt was counted (401)."""
    error_code = "invalid_code"


class CredentialCompromisedError(AuthenticationError):
    """Authenticator signature counter did not advance; possible cloned credential (401)."""
    error_code = "credential_compromised"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TooManyAttemptsError(ServiceError):
    """Attempt ceiling already reached for the current challenge (429)."""
    status_code = 429
    error_code = "too_many_attempts"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ChallengeExpiredOrMissingError",
    "AuthenticationError",
    "InvalidTokenError",
    "InvalidCodeError",
    "CredentialCompromisedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "TooManyAttemptsError",
    "RateLimitedError",
    "ServerError",
]
