from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ehrguard.logging import get_logger
from ehrguard.storage.errors import ConstraintViolation, StoreUnavailable
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

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "login_session",
    "otp_challenge",
    "user_mfa_settings",
    "webauthn_challenge",
    "webauthn_credential",
    "audit_log",
    "patient",
    "medical_record",
    "vital_signs",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for identities, MFA state, audit trail and records."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Refuse to serve requests against a database without the EHR schema."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            full_name=row.get("full_name"),
            groups=list(row.get("groups") or []),
            custom_role=row.get("custom_role"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            force_password_change=row.get("force_password_change", False),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            meta=meta or {},
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code=row["code"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=row.get("attempts", 0),
            max_attempts=row.get("max_attempts", 3),
            verified=row.get("verified", False),
            verified_at=row.get("verified_at"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> WebAuthnCredential:
        return WebAuthnCredential(
            credential_id=row["credential_id"],
            user_id=str(row["user_id"]),
            public_key=row["public_key"],
            sign_count=row.get("sign_count", 0),
            device_type=row.get("device_type"),
            device_name=row.get("device_name"),
            aaguid=row.get("aaguid"),
            backed_up=row.get("backed_up", False),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEntry:
        request_data = row.get("request_data")
        if isinstance(request_data, str):
            request_data = json.loads(request_data)
        return AuditEntry(
            id=str(row["id"]),
            action=row["action"],
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            user_email=row.get("user_email"),
            user_role=row.get("user_role"),
            patient_id=str(row["patient_id"]) if row.get("patient_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            request_data=request_data,
            status=row.get("status", "success"),
            error_message=row.get("error_message"),
            timestamp=row["timestamp"],
        )

    @staticmethod
    def _patient_from_row(row: Dict[str, Any]) -> Patient:
        return Patient(
            id=str(row["id"]),
            full_name=row["full_name"],
            date_of_birth=str(row["date_of_birth"]),
            gender=row["gender"],
            phone=row.get("phone"),
            email=row.get("email"),
            address=row.get("address"),
            national_id_encrypted=row.get("national_id_encrypted"),
            insurance_number_encrypted=row.get("insurance_number_encrypted"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            created_by=str(row["created_by"]) if row.get("created_by") else None,
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> MedicalRecord:
        return MedicalRecord(
            id=str(row["id"]),
            patient_id=str(row["patient_id"]),
            doctor_id=str(row["doctor_id"]),
            chief_complaint=row["chief_complaint"],
            visit_date=row.get("visit_date") or utcnow(),
            diagnosis_encrypted=row.get("diagnosis_encrypted"),
            treatment_plan=row.get("treatment_plan"),
            doctor_notes=row.get("doctor_notes"),
            status=row.get("status", "active"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _vitals_from_row(row: Dict[str, Any]) -> VitalSigns:
        def number(name: str):
            value = row.get(name)
            return float(value) if value is not None else None

        return VitalSigns(
            id=str(row["id"]),
            patient_id=str(row["patient_id"]),
            measured_by=str(row["measured_by"]),
            record_id=str(row["record_id"]) if row.get("record_id") else None,
            temperature=number("temperature"),
            blood_pressure_systolic=row.get("blood_pressure_systolic"),
            blood_pressure_diastolic=row.get("blood_pressure_diastolic"),
            heart_rate=row.get("heart_rate"),
            respiratory_rate=row.get("respiratory_rate"),
            oxygen_saturation=number("oxygen_saturation"),
            height=number("height"),
            weight=number("weight"),
            bmi=number("bmi"),
            notes=row.get("notes"),
            measured_at=row.get("measured_at") or utcnow(),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, full_name, groups, custom_role,
                                          is_active, email_verified, force_password_change, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        full_name,
                        list(groups or []),
                        custom_role,
                        is_active,
                        email_verified,
                        force_password_change,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_login(self, login: str) -> Optional[User]:
        """Resolve a login identifier that may be either a username or an email."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE lower(username) = lower(%s) OR lower(email) = lower(%s)
                ORDER BY (lower(username) = lower(%s)) DESC
                LIMIT 1
                """,
                (login, login, login),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_force_password_change(self, user_id: str, required: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET force_password_change = %s WHERE id = %s RETURNING *",
                (required, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        """Newest first; ``role`` matches the provisioned role, ``search`` name or email."""
        conditions = []
        params: List[Any] = []
        if role:
            conditions.append("custom_role = %s")
            params.append(role)
        if search:
            conditions.append("(full_name ILIKE %s OR email ILIKE %s)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS total FROM app_user {where}", params
            ).fetchone()["total"]
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._user_from_row(row) for row in rows], total

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

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
        sess = LoginSession.new(
            user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_required=mfa_required,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_session (id, user_id, created_at, expires_at, user_agent,
                                               ip_addr, mfa_required, mfa_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        sess.mfa_required,
                        sess.mfa_verified,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_login_session(self, session_id: str) -> Optional[LoginSession]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return LoginSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            mfa_required=row.get("mfa_required", True),
            mfa_verified=row.get("mfa_verified", False),
        )

    def delete_login_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_session WHERE id = %s", (session_id,))

    def delete_login_sessions_for_user(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute("DELETE FROM login_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    # one-time passwords
    def delete_unverified_otp_challenges(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_challenge WHERE user_id = %s AND verified = FALSE",
                (user_id,),
            )
            return result.rowcount

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_challenge (id, user_id, code, created_at, expires_at, attempts,
                                               max_attempts, verified, ip_addr, user_agent)
                    VALUES (%s, %s, %s, %s, %s, 0, %s, FALSE, %s, %s)
                    """,
                    (
                        challenge.id,
                        user_id,
                        code,
                        challenge.created_at,
                        challenge.expires_at,
                        max_attempts,
                        ip_addr,
                        user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return challenge

    def get_active_otp_challenge(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE user_id = %s AND verified = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, now or utcnow()),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, challenge_id: str, expected_attempts: int) -> Optional[int]:
        """Compare-and-swap the attempt counter; ``None`` if another verify won the race."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET attempts = attempts + 1
                WHERE id = %s AND attempts = %s
                RETURNING attempts
                """,
                (challenge_id, expected_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def mark_otp_verified(self, challenge_id: str, verified_at: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE otp_challenge SET verified = TRUE, verified_at = %s
                WHERE id = %s AND verified = FALSE
                """,
                (verified_at or utcnow(), challenge_id),
            )
            return result.rowcount > 0

    def get_mfa_settings(self, user_id: str) -> Optional[MFASettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_settings WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return MFASettings(
            user_id=str(row["user_id"]),
            mfa_enabled=row.get("mfa_enabled", True),
            preferred_method=row.get("preferred_method", "email_otp"),
            last_mfa_at=row.get("last_mfa_at"),
            last_mfa_method=row.get("last_mfa_method"),
        )

    def record_mfa_success(
        self, user_id: str, method: str, at: Optional[datetime] = None
    ) -> MFASettings:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_mfa_settings (user_id, last_mfa_at, last_mfa_method)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET last_mfa_at = EXCLUDED.last_mfa_at,
                    last_mfa_method = EXCLUDED.last_mfa_method
                RETURNING *
                """,
                (user_id, at or utcnow(), method),
            ).fetchone()
        return MFASettings(
            user_id=str(row["user_id"]),
            mfa_enabled=row.get("mfa_enabled", True),
            preferred_method=row.get("preferred_method", "email_otp"),
            last_mfa_at=row.get("last_mfa_at"),
            last_mfa_method=row.get("last_mfa_method"),
        )

    # webauthn
    def save_webauthn_challenge(self, challenge: WebAuthnChallenge) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO webauthn_challenge (user_id, challenge, ceremony, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET challenge = EXCLUDED.challenge,
                    ceremony = EXCLUDED.ceremony,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                """,
                (
                    challenge.user_id,
                    challenge.challenge,
                    challenge.ceremony,
                    challenge.created_at,
                    challenge.expires_at,
                ),
            )

    def take_webauthn_challenge(self, user_id: str) -> Optional[WebAuthnChallenge]:
        """Remove and return the pending challenge; a second caller gets ``None``."""
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM webauthn_challenge WHERE user_id = %s RETURNING *", (user_id,)
            ).fetchone()
        if not row:
            return None
        return WebAuthnChallenge(
            user_id=str(row["user_id"]),
            challenge=row["challenge"],
            ceremony=row["ceremony"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def add_webauthn_credential(self, credential: WebAuthnCredential) -> WebAuthnCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO webauthn_credential (credential_id, user_id, public_key, sign_count,
                                                     device_type, device_name, aaguid, backed_up,
                                                     is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.credential_id,
                        credential.user_id,
                        credential.public_key,
                        credential.sign_count,
                        credential.device_type,
                        credential.device_name,
                        credential.aaguid,
                        credential.backed_up,
                        credential.is_active,
                        credential.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("credential already registered", {"field": "credential_id"})
        return credential

    def list_webauthn_credentials(self, user_id: str) -> List[WebAuthnCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM webauthn_credential
                WHERE user_id = %s AND is_active = TRUE
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._credential_from_row(row) for row in rows]

    def get_webauthn_credential(self, credential_id: str) -> Optional[WebAuthnCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webauthn_credential WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_webauthn_sign_count(
        self, credential_id: str, sign_count: int, used_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE webauthn_credential SET sign_count = %s, last_used_at = %s
                WHERE credential_id = %s
                """,
                (sign_count, used_at or utcnow(), credential_id),
            )

    def deactivate_webauthn_credential(self, user_id: str, credential_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE webauthn_credential SET is_active = FALSE
                WHERE credential_id = %s AND user_id = %s AND is_active = TRUE
                """,
                (credential_id, user_id),
            )
            return result.rowcount > 0

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, action, resource_type, resource_id, user_id, user_email,
                                       user_role, patient_id, ip_address, user_agent, request_data,
                                       status, error_message, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    entry.user_id,
                    entry.user_email,
                    entry.user_role,
                    entry.patient_id,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.request_data) if entry.request_data is not None else None,
                    entry.status,
                    entry.error_message,
                    entry.timestamp,
                ),
            )

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
        clauses: List[str] = []
        params: List[Any] = []
        if user_email:
            clauses.append("user_email ILIKE %s")
            params.append(f"%{user_email}%")
        for column, value in (
            ("user_role", user_role),
            ("action", action),
            ("resource_type", resource_type),
            ("status", status),
            ("patient_id", patient_id),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if start:
            clauses.append("timestamp >= %s")
            params.append(start)
        if end:
            clauses.append("timestamp <= %s")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_log {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._audit_from_row(row) for row in rows], int(total_row["total"])

    def audit_statistics(self, since: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_logs,
                       COUNT(DISTINCT user_email) AS unique_users,
                       COUNT(*) FILTER (WHERE status = 'success') AS successful_actions,
                       COUNT(*) FILTER (WHERE status = 'failed') AS failed_actions,
                       COUNT(*) FILTER (WHERE status = 'denied') AS denied_actions
                FROM audit_log
                WHERE timestamp >= %s
                """,
                (since,),
            ).fetchone()
        return {key: int(row[key] or 0) for key in row}

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
        if user_id and not _is_uuid(user_id):
            raise ConstraintViolation("linked user does not exist", {"user_id": user_id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO patient (id, full_name, date_of_birth, gender, phone, email, address,
                                         national_id_encrypted, insurance_number_encrypted,
                                         user_id, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        full_name,
                        date_of_birth,
                        gender,
                        phone,
                        email,
                        address,
                        national_id_encrypted,
                        insurance_number_encrypted,
                        user_id,
                        created_by,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("linked user does not exist", {"user_id": user_id})
        return self._patient_from_row(row)

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        if not _is_uuid(patient_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM patient WHERE id = %s AND is_active = TRUE", (patient_id,)
            ).fetchone()
        return self._patient_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO medical_record (id, patient_id, doctor_id, chief_complaint, visit_date,
                                                diagnosis_encrypted, treatment_plan, doctor_notes)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        patient_id,
                        doctor_id,
                        chief_complaint,
                        visit_date or utcnow(),
                        diagnosis_encrypted,
                        treatment_plan,
                        doctor_notes,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("patient does not exist", {"patient_id": patient_id})
        return self._record_from_row(row)

    def get_medical_record(self, record_id: str) -> Optional[MedicalRecord]:
        if not _is_uuid(record_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM medical_record WHERE id = %s", (record_id,)
            ).fetchone()
        return self._record_from_row(row) if row else None

    def list_medical_records(
        self, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[MedicalRecord], int]:
        if not _is_uuid(patient_id):
            return [], 0
        with self._connect() as conn:
            total = conn.execute(
                "SELECT count(*) AS total FROM medical_record WHERE patient_id = %s AND status <> 'deleted'",
                (patient_id,),
            ).fetchone()["total"]
            rows = conn.execute(
                """
                SELECT * FROM medical_record
                WHERE patient_id = %s AND status <> 'deleted'
                ORDER BY visit_date DESC
                LIMIT %s OFFSET %s
                """,
                (patient_id, limit, offset),
            ).fetchall()
        return [self._record_from_row(row) for row in rows], total

    def update_medical_record(self, record_id: str, updates: Dict[str, Any]) -> Optional[MedicalRecord]:
        if not _is_uuid(record_id):
            return None
        unknown = set(updates) - _UPDATABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be updated: {sorted(unknown)}")
        if not updates:
            return self.get_medical_record(record_id)
        # Column names come from the allow-list above, values stay parameterized
        assignments = ", ".join(f"{name} = %s" for name in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE medical_record SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                [*updates.values(), record_id],
            ).fetchone()
        return self._record_from_row(row) if row else None

    def create_vital_signs(self, vitals: VitalSigns) -> VitalSigns:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO vital_signs (id, patient_id, record_id, measured_by, temperature,
                                             blood_pressure_systolic, blood_pressure_diastolic,
                                             heart_rate, respiratory_rate, oxygen_saturation,
                                             height, weight, bmi, notes, measured_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        vitals.id,
                        vitals.patient_id,
                        vitals.record_id,
                        vitals.measured_by,
                        vitals.temperature,
                        vitals.blood_pressure_systolic,
                        vitals.blood_pressure_diastolic,
                        vitals.heart_rate,
                        vitals.respiratory_rate,
                        vitals.oxygen_saturation,
                        vitals.height,
                        vitals.weight,
                        vitals.bmi,
                        vitals.notes,
                        vitals.measured_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "patient or medical record does not exist",
                {"patient_id": vitals.patient_id, "record_id": vitals.record_id},
            )
        return self._vitals_from_row(row)

    def list_vital_signs(
        self, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[VitalSigns], int]:
        if not _is_uuid(patient_id):
            return [], 0
        with self._connect() as conn:
            total = conn.execute(
                "SELECT count(*) AS total FROM vital_signs WHERE patient_id = %s", (patient_id,)
            ).fetchone()["total"]
            rows = conn.execute(
                """
                SELECT * FROM vital_signs
                WHERE patient_id = %s
                ORDER BY measured_at DESC
                LIMIT %s OFFSET %s
                """,
                (patient_id, limit, offset),
            ).fetchall()
        return [self._vitals_from_row(row) for row in rows], total
