from __future__ import annotations

import threading
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx
import jwt

from ehrguard.logging import get_logger
from ehrguard.service.errors import InvalidTokenError

logger = get_logger(__name__)


class SigningKeyUnavailable(Exception):
    """No usable public key for the requested ``kid``."""


def _parse_jwks(document: Any) -> Dict[str, jwt.PyJWK]:
    if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
        raise SigningKeyUnavailable("key set document has no 'keys' array")
    keys: Dict[str, jwt.PyJWK] = {}
    for entry in document["keys"]:
        if not isinstance(entry, dict):
            continue
        kid = entry.get("kid")
        if not kid or entry.get("use", "sig") != "sig":
            continue
        try:
            keys[kid] = jwt.PyJWK(entry)
        except jwt.PyJWKError as exc:
            logger.warning("jwks_key_skipped", kid=kid, error=str(exc))
    return keys


class StaticSigningKeySet:
    """Signing keys held in-process, used with the built-in identity provider."""

    def __init__(self, keys: Mapping[str, jwt.PyJWK]):
        self._keys = dict(keys)

    @classmethod
    def from_jwks(cls, document: Dict[str, Any]) -> "StaticSigningKeySet":
        return cls(_parse_jwks(document))

    def get_key(self, kid: str) -> jwt.PyJWK:
        key = self._keys.get(kid)
        if key is None:
            raise SigningKeyUnavailable(f"unknown key id {kid}")
        return key

    def close(self) -> None:
        return None


class RemoteSigningKeySet:
    """Public keys fetched from an identity provider's JWKS endpoint.

    Keys are cached by ``kid`` and refreshed after ``cache_ttl_seconds``. An
    unknown ``kid`` triggers a refetch, at most once per
    ``min_refresh_interval_seconds``. When the endpoint cannot be reached and
    nothing is cached, lookups raise ``SigningKeyUnavailable``.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 3.0,
        cache_ttl_seconds: int = 600,
        min_refresh_interval_seconds: int = 30,
    ):
        self.jwks_url = jwks_url
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self.cache_ttl_seconds = cache_ttl_seconds
        self.min_refresh_interval_seconds = min_refresh_interval_seconds
        self._lock = threading.Lock()
        self._keys: Dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._last_attempt: Optional[float] = None

    def _fetch(self) -> Dict[str, jwt.PyJWK]:
        try:
            resp = self._client.get(self.jwks_url)
            resp.raise_for_status()
            document = resp.json()
        except httpx.HTTPError as exc:
            raise SigningKeyUnavailable(f"key set fetch failed: {exc}") from exc
        except ValueError as exc:
            raise SigningKeyUnavailable("key set response is not JSON") from exc
        keys = _parse_jwks(document)
        if not keys:
            raise SigningKeyUnavailable("key set contains no usable signing keys")
        return keys

    def _refresh(self, now: float) -> None:
        self._last_attempt = now
        try:
            keys = self._fetch()
        except SigningKeyUnavailable as exc:
            if not self._keys:
                logger.error("jwks_fetch_failed", url=self.jwks_url, error=str(exc))
                raise
            logger.warning("jwks_refresh_failed_using_cache", url=self.jwks_url, error=str(exc))
            return
        self._keys = keys
        self._fetched_at = now
        logger.info("jwks_refreshed", url=self.jwks_url, key_count=len(keys))

    def _may_refetch(self, now: float) -> bool:
        if self._last_attempt is None:
            return True
        return now - self._last_attempt >= self.min_refresh_interval_seconds

    def get_key(self, kid: str) -> jwt.PyJWK:
        with self._lock:
            now = time.monotonic()
            expired = self._fetched_at is None or now - self._fetched_at >= self.cache_ttl_seconds
            if (expired or kid not in self._keys) and self._may_refetch(now):
                self._refresh(now)
            key = self._keys.get(kid)
        if key is None:
            raise SigningKeyUnavailable(f"unknown key id {kid}")
        return key

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class TokenVerifier:
    """Verify bearer JWTs against an issuer's signing keys; fail closed."""

    def __init__(
        self,
        key_set,
        *,
        issuer: str,
        audience: Optional[str] = None,
        algorithms: Sequence[str] = ("RS256",),
        leeway_seconds: int = 30,
    ):
        self.key_set = key_set
        self.issuer = issuer
        self.audience = audience
        self.algorithms = tuple(algorithms)
        self.leeway_seconds = leeway_seconds

    def _reject(self, reason: str, **context: Any) -> InvalidTokenError:
        logger.info("token_rejected", reason=reason, **context)
        return InvalidTokenError(reason=reason)

    def _check_audience(self, claims: Dict[str, Any]) -> None:
        if self.audience is None:
            return
        # Access tokens from some providers carry client_id instead of aud
        aud = claims.get("aud", claims.get("client_id"))
        accepted = aud if isinstance(aud, list) else [aud]
        if self.audience not in accepted:
            raise self._reject("invalid_audience")

    def verify(self, token: str, *, token_uses: Iterable[str] = ("access", "id")) -> Dict[str, Any]:
        if not token:
            raise self._reject("missing_token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            raise self._reject("malformed_token")

        alg = header.get("alg")
        if alg not in self.algorithms:
            raise self._reject("algorithm_not_allowed", alg=str(alg))
        kid = header.get("kid")
        if not kid or not isinstance(kid, str):
            raise self._reject("missing_kid")

        try:
            signing_key = self.key_set.get_key(kid)
        except SigningKeyUnavailable as exc:
            raise self._reject("signing_key_unavailable", kid=kid, error=str(exc)) from exc

        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=[alg],
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iss", "sub"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError:
            raise self._reject("expired")
        except jwt.ImmatureSignatureError:
            raise self._reject("not_yet_valid")
        except jwt.InvalidIssuerError:
            raise self._reject("invalid_issuer")
        except jwt.MissingRequiredClaimError as exc:
            raise self._reject("missing_claim", claim=exc.claim)
        except jwt.PyJWTError:
            raise self._reject("invalid_signature")

        self._check_audience(claims)
        allowed_uses = tuple(token_uses)
        if allowed_uses and claims.get("token_use") not in allowed_uses:
            raise self._reject("wrong_token_use", token_use=str(claims.get("token_use")))
        return claims


class IssuerRoutedVerifier:
    """Accept tokens from several issuers, each checked against its own keys.

    The unverified ``iss`` claim only selects candidates; every candidate
    still verifies signature, issuer, expiry and audience itself. A candidate
    that does not hold the token's ``kid`` passes it on to the next one.
    """

    def __init__(self, verifiers: Sequence[TokenVerifier]):
        if not verifiers:
            raise ValueError("at least one verifier is required")
        self.verifiers = list(verifiers)

    @property
    def issuers(self) -> List[str]:
        return [verifier.issuer for verifier in self.verifiers]

    def verify(self, token: str, *, token_uses: Iterable[str] = ("access", "id")) -> Dict[str, Any]:
        if not token:
            return self.verifiers[0].verify(token, token_uses=token_uses)
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            logger.info("token_rejected", reason="malformed_token")
            raise InvalidTokenError(reason="malformed_token")

        candidates = [v for v in self.verifiers if v.issuer == unverified.get("iss")]
        if not candidates:
            logger.info("token_rejected", reason="invalid_issuer")
            raise InvalidTokenError(reason="invalid_issuer")
        for verifier in candidates[:-1]:
            try:
                return verifier.verify(token, token_uses=token_uses)
            except InvalidTokenError as exc:
                if exc.reason != "signing_key_unavailable":
                    raise
        return candidates[-1].verify(token, token_uses=token_uses)
