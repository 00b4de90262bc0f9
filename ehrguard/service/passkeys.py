from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ehrguard.logging import get_logger
from ehrguard.service.errors import (
    AuthenticationError,
    ChallengeExpiredOrMissingError,
    ConflictError,
    CredentialCompromisedError,
    NotFoundError,
    ValidationError,
)
from ehrguard.storage.errors import ConstraintViolation
from ehrguard.storage.models import User, WebAuthnChallenge, WebAuthnCredential, utcnow

logger = get_logger(__name__)

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
WEBAUTHN_METHOD = "webauthn"

CredentialPayload = Union[str, Dict[str, Any]]


def sign_count_advanced(stored: int, reported: int) -> bool:
    """Authenticators that report counters must strictly increase them.

    A pair of zeros means the authenticator does not implement a counter.
    """
    if stored == 0 and reported == 0:
        return True
    return reported > stored


def _credential_id_of(credential: CredentialPayload) -> Optional[str]:
    if isinstance(credential, str):
        try:
            credential = json.loads(credential)
        except ValueError:
            return None
    if not isinstance(credential, dict):
        return None
    return credential.get("id") or credential.get("rawId")


def _serialize_credential(cred: WebAuthnCredential) -> Dict[str, Any]:
    return {
        "id": cred.credential_id,
        "device_name": cred.device_name,
        "device_type": cred.device_type,
        "backed_up": cred.backed_up,
        "created_at": cred.created_at.isoformat(),
        "last_used_at": cred.last_used_at.isoformat() if cred.last_used_at else None,
    }


class PasskeyService:
    """WebAuthn registration and assertion ceremonies.

    Each user holds at most one outstanding challenge; starting a ceremony
    replaces it and finishing one (successfully or not) consumes it.
    """

    def __init__(
        self,
        store,
        *,
        rp_id: str,
        rp_name: str,
        origin: str,
        challenge_ttl_seconds: int = 300,
    ):
        self.store = store
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.challenge_ttl_seconds = challenge_ttl_seconds

    def _store_challenge(self, user_id: str, challenge: bytes, ceremony: str) -> None:
        now = utcnow()
        self.store.save_webauthn_challenge(
            WebAuthnChallenge(
                user_id=user_id,
                challenge=bytes_to_base64url(challenge),
                ceremony=ceremony,
                created_at=now,
                expires_at=now + timedelta(seconds=self.challenge_ttl_seconds),
            )
        )

    def _take_challenge(self, user_id: str, ceremony: str) -> bytes:
        # Single use: removed before verification, whatever the outcome
        challenge = self.store.take_webauthn_challenge(user_id)
        if not challenge or challenge.ceremony != ceremony:
            raise ChallengeExpiredOrMissingError("No pending WebAuthn challenge")
        if challenge.expires_at <= utcnow():
            raise ChallengeExpiredOrMissingError("WebAuthn challenge has expired")
        return base64url_to_bytes(challenge.challenge)

    def start_registration(self, user: User) -> Dict[str, Any]:
        existing = self.store.list_webauthn_credentials(user.id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode("utf-8"),
            user_name=user.username,
            user_display_name=user.full_name or user.username,
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id))
                for c in existing
            ],
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            attestation=AttestationConveyancePreference.NONE,
            timeout=self.challenge_ttl_seconds * 1000,
        )
        self._store_challenge(user.id, options.challenge, REGISTRATION)
        logger.info("webauthn_registration_started", user_id=user.id, excluded=len(existing))
        return json.loads(options_to_json(options))

    def finish_registration(
        self, user: User, credential: CredentialPayload, device_name: Optional[str] = None
    ) -> Dict[str, Any]:
        if not credential:
            raise ValidationError("credential is required", detail={"field": "credential"})
        expected_challenge = self._take_challenge(user.id, REGISTRATION)
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except (InvalidRegistrationResponse, ValueError, KeyError) as exc:
            logger.warning("webauthn_registration_rejected", user_id=user.id, error=str(exc))
            raise ValidationError("WebAuthn registration verification failed") from exc

        device_type = getattr(verified.credential_device_type, "value", None)
        record = WebAuthnCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            user_id=user.id,
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            device_type=device_type,
            device_name=device_name or "Passkey",
            aaguid=verified.aaguid,
            backed_up=bool(verified.credential_backed_up),
        )
        try:
            self.store.add_webauthn_credential(record)
        except ConstraintViolation as exc:
            raise ConflictError("Credential already registered") from exc
        logger.info("webauthn_credential_registered", user_id=user.id, device_type=device_type)
        return _serialize_credential(record)

    def start_authentication(self, login: str) -> Dict[str, Any]:
        user = self.store.find_user_by_login(login) if login else None
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        credentials = self.store.list_webauthn_credentials(user.id)
        if not credentials:
            raise NotFoundError("No passkeys registered for this user")
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id))
                for c in credentials
            ],
            user_verification=UserVerificationRequirement.PREFERRED,
            timeout=self.challenge_ttl_seconds * 1000,
        )
        self._store_challenge(user.id, options.challenge, AUTHENTICATION)
        return {
            "options": json.loads(options_to_json(options)),
            "user": {"username": user.username, "name": user.full_name},
        }

    def finish_authentication(self, login: str, credential: CredentialPayload) -> User:
        user = self.store.find_user_by_login(login) if login else None
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        expected_challenge = self._take_challenge(user.id, AUTHENTICATION)
        credential_id = _credential_id_of(credential)
        stored = self.store.get_webauthn_credential(credential_id) if credential_id else None
        if not stored or stored.user_id != user.id or not stored.is_active:
            raise AuthenticationError("Unknown or inactive credential")
        try:
            # Counter is checked below so that a regression gets its own error
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(stored.public_key),
                credential_current_sign_count=0,
            )
        except (InvalidAuthenticationResponse, ValueError, KeyError) as exc:
            logger.warning("webauthn_assertion_rejected", user_id=user.id, error=str(exc))
            raise AuthenticationError("WebAuthn verification failed") from exc

        if not sign_count_advanced(stored.sign_count, verified.new_sign_count):
            logger.error(
                "webauthn_counter_regression",
                user_id=user.id,
                credential_id=stored.credential_id,
                stored=stored.sign_count,
                reported=verified.new_sign_count,
            )
            raise CredentialCompromisedError(
                "Authenticator counter did not advance; credential may be cloned"
            )
        self.store.update_webauthn_sign_count(stored.credential_id, verified.new_sign_count)
        self.store.record_mfa_success(user.id, WEBAUTHN_METHOD)
        logger.info("webauthn_authenticated", user_id=user.id)
        return user

    def list_credentials(self, user_id: str) -> List[Dict[str, Any]]:
        return [_serialize_credential(c) for c in self.store.list_webauthn_credentials(user_id)]

    def delete_credential(self, user_id: str, credential_id: str) -> Dict[str, Any]:
        if not self.store.deactivate_webauthn_credential(user_id, credential_id):
            raise NotFoundError("Credential not found")
        logger.info("webauthn_credential_deactivated", user_id=user_id)
        return {"id": credential_id, "deleted": True}
