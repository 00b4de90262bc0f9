from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """External user record; the principal is rebuilt from tokens, not from here."""

    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    groups: List[str] = field(default_factory=list)
    custom_role: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    force_password_change: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class LoginSession:
    """Pending login between credential check and MFA completion."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    mfa_required: bool = True
    mfa_verified: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 10,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        mfa_required: bool = True,
    ) -> "LoginSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_required=mfa_required,
            mfa_verified=not mfa_required,
        )


@dataclass
class OTPChallenge:
    id: str
    user_id: str
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    verified: bool = False
    verified_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class MFASettings:
    user_id: str
    mfa_enabled: bool = True
    preferred_method: str = "email_otp"
    last_mfa_at: Optional[datetime] = None
    last_mfa_method: Optional[str] = None


@dataclass
class WebAuthnChallenge:
    """Server challenge for one ceremony; ``challenge`` is base64url encoded."""

    user_id: str
    challenge: str
    ceremony: str
    created_at: datetime
    expires_at: datetime


@dataclass
class WebAuthnCredential:
    """Registered authenticator. ``credential_id`` and ``public_key`` are base64url."""

    credential_id: str
    user_id: str
    public_key: str
    sign_count: int = 0
    device_type: Optional[str] = None
    device_name: Optional[str] = None
    aaguid: Optional[str] = None
    backed_up: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class AuditEntry:
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    patient_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_data: Dict | None = None
    status: str = "success"
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Patient:
    id: str
    full_name: str
    date_of_birth: str
    gender: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    national_id_encrypted: Optional[str] = None
    insurance_number_encrypted: Optional[str] = None
    user_id: Optional[str] = None
    created_by: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class MedicalRecord:
    id: str
    patient_id: str
    doctor_id: str
    chief_complaint: str
    visit_date: datetime = field(default_factory=utcnow)
    diagnosis_encrypted: Optional[str] = None
    treatment_plan: Optional[str] = None
    doctor_notes: Optional[str] = None
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class VitalSigns:
    """One set of measurements; ``measured_by`` is the recording clinician."""

    id: str
    patient_id: str
    measured_by: str
    record_id: Optional[str] = None
    temperature: Optional[float] = None
    blood_pressure_systolic: Optional[int] = None
    blood_pressure_diastolic: Optional[int] = None
    heart_rate: Optional[int] = None
    respiratory_rate: Optional[int] = None
    oxygen_saturation: Optional[float] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    bmi: Optional[float] = None
    notes: Optional[str] = None
    measured_at: datetime = field(default_factory=utcnow)
