from __future__ import annotations

import os
import threading
from typing import Any, Dict, Iterable, Optional, Protocol

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ehrguard.logging import get_logger
from ehrguard.service.access import (
    can_view_diagnosis_summary,
    can_view_full_diagnosis,
    can_view_sensitive_ids,
)
from ehrguard.service.roles import Principal

logger = get_logger(__name__)

DIAGNOSIS_SUMMARY_MAX_LENGTH = 100
DIAGNOSIS_SUMMARY_NOTE = "Summary only - Full diagnosis restricted to doctors"
SENSITIVE_PATIENT_FIELDS = ("national_id", "insurance_number")
_SENTENCE_TERMINATORS = ".。,，\n"


class KeyProvider(Protocol):
    def key(self) -> bytes: ...


class ScryptKeyProvider:
    """Derive the 32-byte field key from a secret with scrypt (N=2**14, r=8, p=1).

    Derivation runs once per process, on first use, under a lock.
    """

    def __init__(self, secret: str, salt: bytes = b"salt"):
        if not secret:
            raise ValueError("field encryption secret must be non-empty")
        self._secret = secret.encode("utf-8")
        self._salt = salt
        self._key: Optional[bytes] = None
        self._lock = threading.Lock()

    def key(self) -> bytes:
        if self._key is None:
            with self._lock:
                if self._key is None:
                    kdf = Scrypt(salt=self._salt, length=32, n=2**14, r=8, p=1)
                    self._key = kdf.derive(self._secret)
        return self._key


class FieldCipher:
    """AES-256-CBC encryption for individual PII fields.

    Ciphertexts are ``<iv hex>:<ciphertext hex>`` with a fresh random IV per
    call. Decryption never raises: anything that cannot be decrypted yields
    ``None``.
    """

    def __init__(self, key_provider: KeyProvider):
        self.key_provider = key_provider

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        iv = os.urandom(16)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self.key_provider.key()), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value or not isinstance(value, str):
            return None
        iv_hex, sep, ct_hex = value.partition(":")
        if not sep:
            logger.warning("field_decrypt_failed", reason="malformed")
            return None
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
            decryptor = Cipher(
                algorithms.AES(self.key_provider.key()), modes.CBC(iv)
            ).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("field_decrypt_failed", reason=type(exc).__name__)
            return None

    def encrypt_fields(self, data: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Replace each present ``field`` with ``field_encrypted``."""
        result = dict(data)
        for name in fields:
            if result.get(name):
                result[f"{name}_encrypted"] = self.encrypt(result.pop(name))
        return result

    def decrypt_fields(self, data: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Replace each present ``field_encrypted`` with its plaintext ``field``."""
        result = dict(data)
        for name in fields:
            encrypted = result.pop(f"{name}_encrypted", None)
            if encrypted:
                result[name] = self.decrypt(encrypted)
        return result


def summarize_diagnosis(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    if len(text) <= DIAGNOSIS_SUMMARY_MAX_LENGTH:
        return text
    end = next((i for i, ch in enumerate(text) if ch in _SENTENCE_TERMINATORS), -1)
    if 0 < end <= DIAGNOSIS_SUMMARY_MAX_LENGTH:
        return text[: end + 1] + " (...)"
    return text[:DIAGNOSIS_SUMMARY_MAX_LENGTH] + "..."


def project_diagnosis(
    view: Dict[str, Any],
    encrypted: Optional[str],
    principal: Principal,
    cipher: FieldCipher,
) -> Dict[str, Any]:
    """Return ``view`` with the diagnosis shaped for the caller's role.

    Doctors get the plaintext, nurses a summary with a note, everyone else
    nothing. The ciphertext is never part of the result.
    """
    result = {k: v for k, v in view.items() if k not in ("diagnosis", "diagnosis_encrypted")}
    if not encrypted:
        return result
    if not (can_view_full_diagnosis(principal) or can_view_diagnosis_summary(principal)):
        return result
    plaintext = cipher.decrypt(encrypted)
    if plaintext is None:
        return result
    if can_view_full_diagnosis(principal):
        result["diagnosis"] = plaintext
    else:
        result["diagnosis"] = summarize_diagnosis(plaintext)
        result["diagnosis_note"] = DIAGNOSIS_SUMMARY_NOTE
    return result


def project_identifiers(
    view: Dict[str, Any],
    encrypted: Dict[str, Optional[str]],
    principal: Principal,
    cipher: FieldCipher,
) -> Dict[str, Any]:
    """Attach decrypted national id / insurance number for roles allowed to see them.

    ``encrypted`` holds the stored ``<field>_encrypted`` columns.
    """
    hidden = set(SENSITIVE_PATIENT_FIELDS) | {f"{f}_encrypted" for f in SENSITIVE_PATIENT_FIELDS}
    result = {k: v for k, v in view.items() if k not in hidden}
    if not can_view_sensitive_ids(principal):
        return result
    decrypted = cipher.decrypt_fields(encrypted, SENSITIVE_PATIENT_FIELDS)
    for name in SENSITIVE_PATIENT_FIELDS:
        if decrypted.get(name) is not None:
            result[name] = decrypted[name]
    return result
