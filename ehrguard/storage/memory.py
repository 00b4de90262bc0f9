from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ehrguard.logging import get_logger
from ehrguard.storage.errors import ConstraintViolation
from ehrguard.storage.models import (
    AuditEntry,
    LoginSession,
    MedicalRecord,
    MFASettings,
    OTPChallenge,
    Patient,
    User,
    VitalSigns,
    WebAuthnChallenge,
    WebAuthnCredential,
    utcnow,
)

_UPDATABLE_RECORD_FIELDS = frozenset(
    {"chief_complaint", "diagnosis_encrypted", "treatment_plan", "doctor_notes", "status"}
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments.

    When ``state_path`` is given every mutation is flushed to a JSON file and
    reloaded on the next start.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.login_sessions: Dict[str, LoginSession] = {}
        self.otp_challenges: Dict[str, OTPChallenge] = {}
        self.mfa_settings: Dict[str, MFASettings] = {}
        self.webauthn_challenges: Dict[str, WebAuthnChallenge] = {}
        self.webauthn_credentials: Dict[str, WebAuthnCredential] = {}
        self.audit_entries: List[AuditEntry] = []
        self.patients: Dict[str, Patient] = {}
        self.medical_records: Dict[str, MedicalRecord] = {}
        self.vital_signs: Dict[str, VitalSigns] = {}
        # RLock so helpers can re-enter from within a locked section
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # lifecycle
    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users / credentials
    def create_user(
        self,
        username: str,
        email: str,
        *,
        full_name: Optional[str] = None,
        groups: Optional[List[str]] = None,
        custom_role: Optional[str] = None,
        is_active: bool = True,
        email_verified: bool = False,
        force_password_change: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(u.username.lower() == username.lower() for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(u.email.lower() == email.lower() for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                full_name=full_name,
                groups=list(groups or []),
                custom_role=custom_role,
                is_active=is_active,
                email_verified=email_verified,
                force_password_change=force_password_change,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            lowered = username.lower()
            return next((u for u in self.users.values() if u.username.lower() == lowered), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            lowered = email.lower()
            return next((u for u in self.users.values() if u.email.lower() == lowered), None)

    def find_user_by_login(self, login: str) -> Optional[User]:
        """Resolve a login identifier that may be either a username or an email."""
        with self._data_lock:
            return self.get_user_by_username(login) or self.get_user_by_email(login)

    def set_force_password_change(self, user_id: str, required: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.force_password_change = required
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            self._persist_state()
            return user

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        """Newest first; ``role`` matches the provisioned role, ``search`` name or email."""
        with self._data_lock:
            needle = search.lower() if search else None
            rows = [
                u
                for u in self.users.values()
                if (role is None or u.custom_role == role)
                and (
                    needle is None
                    or needle in u.email.lower()
                    or needle in (u.full_name or "").lower()
                )
            ]
            rows.sort(key=lambda u: u.created_at, reverse=True)
            return rows[offset : offset + limit], len(rows)

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at or utcnow()
            self._persist_state()

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # pending logins
    def create_login_session(
        self,
        user_id: str,
        ttl_minutes: int = 10,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        mfa_required: bool = True,
    ) -> LoginSession:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = LoginSession.new(
                user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                mfa_required=mfa_required,
            )
            self.login_sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_login_session(self, session_id: str) -> Optional[LoginSession]:
        with self._data_lock:
            return self.login_sessions.get(session_id)

    def delete_login_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.login_sessions.pop(session_id, None):
                self._persist_state()

    def delete_login_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            pending = [sid for sid, s in self.login_sessions.items() if s.user_id == user_id]
            for sid in pending:
                self.login_sessions.pop(sid, None)
            if pending:
                self._persist_state()
            return len(pending)

    # one-time passwords
    def delete_unverified_otp_challenges(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                cid
                for cid, ch in self.otp_challenges.items()
                if ch.user_id == user_id and not ch.verified
            ]
            for cid in stale:
                self.otp_challenges.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def create_otp_challenge(
        self,
        user_id: str,
        code: str,
        *,
        ttl_seconds: int,
        max_attempts: int,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OTPChallenge:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            now = utcnow()
            challenge = OTPChallenge(
                id=str(uuid.uuid4()),
                user_id=user_id,
                code=code,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
                max_attempts=max_attempts,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            self.otp_challenges[challenge.id] = challenge
            self._persist_state()
            return challenge

    def get_active_otp_challenge(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[OTPChallenge]:
        now = now or utcnow()
        with self._data_lock:
            live = [
                ch
                for ch in self.otp_challenges.values()
                if ch.user_id == user_id and not ch.verified and not ch.is_expired(now)
            ]
            if not live:
                return None
            latest = max(live, key=lambda ch: ch.created_at)
            # Callers get a snapshot; mutations go through the CAS helpers below
            return OTPChallenge(**asdict(latest))

    def increment_otp_attempts(self, challenge_id: str, expected_attempts: int) -> Optional[int]:
        """Compare-and-swap the attempt counter; ``None`` if another verify won the race."""
        with self._data_lock:
            challenge = self.otp_challenges.get(challenge_id)
            if not challenge or challenge.attempts != expected_attempts:
                return None
            challenge.attempts += 1
            self._persist_state()
            return challenge.attempts

    def mark_otp_verified(self, challenge_id: str, verified_at: Optional[datetime] = None) -> bool:
        with self._data_lock:
            challenge = self.otp_challenges.get(challenge_id)
            if not challenge or challenge.verified:
                return False
            challenge.verified = True
            challenge.verified_at = verified_at or utcnow()
            self._persist_state()
            return True

    def get_mfa_settings(self, user_id: str) -> Optional[MFASettings]:
        with self._data_lock:
            return self.mfa_settings.get(user_id)

    def record_mfa_success(
        self, user_id: str, method: str, at: Optional[datetime] = None
    ) -> MFASettings:
        with self._data_lock:
            settings = self.mfa_settings.get(user_id) or MFASettings(user_id=user_id)
            settings.last_mfa_at = at or utcnow()
            settings.last_mfa_method = method
            self.mfa_settings[user_id] = settings
            self._persist_state()
            return settings

    # webauthn
    def save_webauthn_challenge(self, challenge: WebAuthnChallenge) -> None:
        with self._data_lock:
            self.webauthn_challenges[challenge.user_id] = challenge
            self._persist_state()

    def take_webauthn_challenge(self, user_id: str) -> Optional[WebAuthnChallenge]:
        """Remove and return the pending challenge; a second caller gets ``None``."""
        with self._data_lock:
            challenge = self.webauthn_challenges.pop(user_id, None)
            if challenge:
                self._persist_state()
            return challenge

    def add_webauthn_credential(self, credential: WebAuthnCredential) -> WebAuthnCredential:
        with self._data_lock:
            if credential.credential_id in self.webauthn_credentials:
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            self.webauthn_credentials[credential.credential_id] = credential
            self._persist_state()
            return credential

    def list_webauthn_credentials(self, user_id: str) -> List[WebAuthnCredential]:
        with self._data_lock:
            creds = [
                c
                for c in self.webauthn_credentials.values()
                if c.user_id == user_id and c.is_active
            ]
            return sorted(creds, key=lambda c: c.created_at, reverse=True)

    def get_webauthn_credential(self, credential_id: str) -> Optional[WebAuthnCredential]:
        with self._data_lock:
            return self.webauthn_credentials.get(credential_id)

    def update_webauthn_sign_count(
        self, credential_id: str, sign_count: int, used_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            cred = self.webauthn_credentials.get(credential_id)
            if not cred:
                return
            cred.sign_count = sign_count
            cred.last_used_at = used_at or utcnow()
            self._persist_state()

    def deactivate_webauthn_credential(self, user_id: str, credential_id: str) -> bool:
        with self._data_lock:
            cred = self.webauthn_credentials.get(credential_id)
            if not cred or cred.user_id != user_id or not cred.is_active:
                return False
            cred.is_active = False
            self._persist_state()
            return True

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()

    def list_audit_entries(
        self,
        *,
        user_email: Optional[str] = None,
        user_role: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        status: Optional[str] = None,
        patient_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditEntry], int]:
        with self._data_lock:
            results = []
            for entry in self.audit_entries:
                if user_email and user_email.lower() not in (entry.user_email or "").lower():
                    continue
                if user_role and entry.user_role != user_role:
                    continue
                if action and entry.action != action:
                    continue
                if resource_type and entry.resource_type != resource_type:
                    continue
                if status and entry.status != status:
                    continue
                if patient_id and entry.patient_id != patient_id:
                    continue
                if start and entry.timestamp < start:
                    continue
                if end and entry.timestamp > end:
                    continue
                results.append(entry)
            results.sort(key=lambda e: e.timestamp, reverse=True)
            return results[offset : offset + limit], len(results)

    def audit_statistics(self, since: datetime) -> Dict[str, int]:
        with self._data_lock:
            recent = [e for e in self.audit_entries if e.timestamp >= since]
            return {
                "total_logs": len(recent),
                "unique_users": len({e.user_email for e in recent if e.user_email}),
                "successful_actions": sum(1 for e in recent if e.status == "success"),
                "failed_actions": sum(1 for e in recent if e.status == "failed"),
                "denied_actions": sum(1 for e in recent if e.status == "denied"),
            }

    # patients / medical records
    def create_patient(
        self,
        full_name: str,
        date_of_birth: str,
        gender: str,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
        national_id_encrypted: Optional[str] = None,
        insurance_number_encrypted: Optional[str] = None,
        user_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Patient:
        with self._data_lock:
            if user_id and user_id not in self.users:
                raise ConstraintViolation("linked user does not exist", {"user_id": user_id})
            patient = Patient(
                id=str(uuid.uuid4()),
                full_name=full_name,
                date_of_birth=date_of_birth,
                gender=gender,
                phone=phone,
                email=email,
                address=address,
                national_id_encrypted=national_id_encrypted,
                insurance_number_encrypted=insurance_number_encrypted,
                user_id=user_id,
                created_by=created_by,
            )
            self.patients[patient.id] = patient
            self._persist_state()
            return patient

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        with self._data_lock:
            patient = self.patients.get(patient_id)
            if not patient or not patient.is_active:
                return None
            return patient

    def create_medical_record(
        self,
        patient_id: str,
        doctor_id: str,
        chief_complaint: str,
        *,
        visit_date: Optional[datetime] = None,
        diagnosis_encrypted: Optional[str] = None,
        treatment_plan: Optional[str] = None,
        doctor_notes: Optional[str] = None,
    ) -> MedicalRecord:
        with self._data_lock:
            if not self.get_patient(patient_id):
                raise ConstraintViolation("patient does not exist", {"patient_id": patient_id})
            record = MedicalRecord(
                id=str(uuid.uuid4()),
                patient_id=patient_id,
                doctor_id=doctor_id,
                chief_complaint=chief_complaint,
                visit_date=visit_date or utcnow(),
                diagnosis_encrypted=diagnosis_encrypted,
                treatment_plan=treatment_plan,
                doctor_notes=doctor_notes,
            )
            self.medical_records[record.id] = record
            self._persist_state()
            return record

    def get_medical_record(self, record_id: str) -> Optional[MedicalRecord]:
        with self._data_lock:
            return self.medical_records.get(record_id)

    def list_medical_records(
        self, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[MedicalRecord], int]:
        with self._data_lock:
            rows = [
                r
                for r in self.medical_records.values()
                if r.patient_id == patient_id and r.status != "deleted"
            ]
            rows.sort(key=lambda r: r.visit_date, reverse=True)
            return rows[offset : offset + limit], len(rows)

    def update_medical_record(self, record_id: str, updates: Dict[str, Any]) -> Optional[MedicalRecord]:
        with self._data_lock:
            record = self.medical_records.get(record_id)
            if not record:
                return None
            for name, value in updates.items():
                if name not in _UPDATABLE_RECORD_FIELDS:
                    raise ValueError(f"field {name} cannot be updated")
                setattr(record, name, value)
            record.updated_at = utcnow()
            self._persist_state()
            return record

    def create_vital_signs(self, vitals: VitalSigns) -> VitalSigns:
        with self._data_lock:
            if not self.get_patient(vitals.patient_id):
                raise ConstraintViolation(
                    "patient does not exist", {"patient_id": vitals.patient_id}
                )
            record = self.medical_records.get(vitals.record_id) if vitals.record_id else None
            if vitals.record_id and (not record or record.patient_id != vitals.patient_id):
                raise ConstraintViolation(
                    "medical record does not exist", {"record_id": vitals.record_id}
                )
            self.vital_signs[vitals.id] = vitals
            self._persist_state()
            return vitals

    def list_vital_signs(
        self, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[VitalSigns], int]:
        with self._data_lock:
            rows = [v for v in self.vital_signs.values() if v.patient_id == patient_id]
            rows.sort(key=lambda v: v.measured_at, reverse=True)
            return rows[offset : offset + limit], len(rows)

    # persistence
    _COLLECTIONS = {
        "users": (User, "id"),
        "login_sessions": (LoginSession, "id"),
        "otp_challenges": (OTPChallenge, "id"),
        "mfa_settings": (MFASettings, "user_id"),
        "webauthn_challenges": (WebAuthnChallenge, "user_id"),
        "webauthn_credentials": (WebAuthnCredential, "credential_id"),
        "patients": (Patient, "id"),
        "medical_records": (MedicalRecord, "id"),
        "vital_signs": (VitalSigns, "id"),
    }

    @staticmethod
    def _serialize(obj: Any) -> Dict[str, Any]:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: type, raw: Dict[str, Any]) -> Any:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in raw:
                continue
            value = raw[f.name]
            if isinstance(value, str) and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state: Dict[str, Any] = {
            name: [self._serialize(obj) for obj in getattr(self, name).values()]
            for name in self._COLLECTIONS
        }
        state["credentials"] = [
            {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
            for user_id, creds in self.credentials.items()
        ]
        state["audit_entries"] = [self._serialize(e) for e in self.audit_entries]
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(self.state_path))
            raise

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        for name, (cls, key) in self._COLLECTIONS.items():
            loaded = [self._deserialize(cls, raw) for raw in data.get(name, [])]
            setattr(self, name, {getattr(obj, key): obj for obj in loaded})
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.audit_entries = [
            self._deserialize(AuditEntry, raw) for raw in data.get("audit_entries", [])
        ]
        return True
