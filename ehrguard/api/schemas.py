from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class Envelope(BaseModel):
    """Response envelope shared by every endpoint, success or failure."""

    success: bool
    message: str
    data: Optional[Any] = None
    details: Optional[Any] = None
    timestamp: str = Field(default_factory=_now_iso)


def ok(data: Any = None, message: str = "Success") -> Envelope:
    return Envelope(success=True, message=message, data=data)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._@-]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("username is required")
    if len(normalized) > 128:
        raise ValueError("username must be at most 128 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError("username may contain letters, digits and . _ @ - only")
    return normalized


# auth
class LoginRequest(BaseModel):
    username: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_login(cls, value: str) -> str:
        return _validate_username(value)


class NewPasswordRequest(BaseModel):
    username: str = Field(..., max_length=254)
    session: str = Field(..., min_length=1, max_length=4096)
    new_password: str = Field(..., max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_login(cls, value: str) -> str:
        return _validate_username(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


# multi-factor
class MFAInitRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)


class MFAVerifyRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=10)


class WebAuthnRegisterFinishRequest(BaseModel):
    credential: Dict[str, Any]
    device_name: Optional[str] = Field(default=None, max_length=100)


class WebAuthnAuthStartRequest(BaseModel):
    username: str = Field(..., max_length=254)

    @field_validator("username")
    @classmethod
    def _validate_login(cls, value: str) -> str:
        return _validate_username(value)


class WebAuthnAuthFinishRequest(BaseModel):
    username: str = Field(..., max_length=254)
    credential: Union[Dict[str, Any], str]

    @field_validator("username")
    @classmethod
    def _validate_login(cls, value: str) -> str:
        return _validate_username(value)


# administration
class AdminCreateUserRequest(BaseModel):
    username: str = Field(..., max_length=128)
    email: str
    full_name: str = Field(..., min_length=1, max_length=200)
    role: Literal["patient", "receptionist", "nurse", "doctor", "admin"]

    @field_validator("username")
    @classmethod
    def _validate_new_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminPasswordResetRequest(BaseModel):
    temporary_password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    notify: bool = True


# clinical data
class PatientCreateRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    date_of_birth: date
    gender: Literal["male", "female", "other"]
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = None
    address: Optional[str] = Field(default=None, max_length=500)
    national_id: Optional[str] = Field(default=None, max_length=64)
    insurance_number: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_patient_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return value


class MedicalRecordCreateRequest(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    chief_complaint: str = Field(..., min_length=1, max_length=2000)
    visit_date: Optional[datetime] = None
    diagnosis: Optional[str] = Field(default=None, max_length=10000)
    treatment_plan: Optional[str] = Field(default=None, max_length=10000)
    doctor_notes: Optional[str] = Field(default=None, max_length=10000)


class MedicalRecordUpdateRequest(BaseModel):
    chief_complaint: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    diagnosis: Optional[str] = Field(default=None, max_length=10000)
    treatment_plan: Optional[str] = Field(default=None, max_length=10000)
    doctor_notes: Optional[str] = Field(default=None, max_length=10000)
    status: Optional[Literal["active", "closed", "deleted"]] = None


class VitalSignsCreateRequest(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    record_id: Optional[str] = Field(default=None, max_length=64)
    temperature: Optional[float] = Field(default=None, ge=25, le=45)
    blood_pressure_systolic: Optional[int] = Field(default=None, ge=40, le=300)
    blood_pressure_diastolic: Optional[int] = Field(default=None, ge=20, le=200)
    heart_rate: Optional[int] = Field(default=None, ge=20, le=300)
    respiratory_rate: Optional[int] = Field(default=None, ge=1, le=100)
    oxygen_saturation: Optional[float] = Field(default=None, ge=0, le=100)
    height: Optional[float] = Field(default=None, gt=0, le=300)
    weight: Optional[float] = Field(default=None, gt=0, le=700)
    notes: Optional[str] = Field(default=None, max_length=2000)
