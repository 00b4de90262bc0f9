"""Tests for the login state machine."""

from datetime import timedelta

import pytest

from ehrguard.service.errors import (
    AuthenticationError,
    ChallengeExpiredOrMissingError,
    InvalidCodeError,
    InvalidTokenError,
    ValidationError,
)
from ehrguard.service.sessions import NEW_PASSWORD_REQUIRED
from ehrguard.storage.models import utcnow

PASSWORD = "Str0ng!Passw0rd"


def audit_rows(runtime, action):
    return [e for e in runtime.store.audit_entries if e.action == action]


class TestLogin:
    async def test_patient_gets_tokens_without_mfa(self, runtime, make_user):
        patient = make_user("patient", password=PASSWORD)
        result = await runtime.sessions.login(patient.username, PASSWORD, ip_addr="203.0.113.5")
        await runtime.audit.drain()

        assert result["token_type"] == "Bearer"
        assert result["user"]["role"] == "patient"
        assert "refresh_token" in result
        claims = runtime.verifier.verify(result["access_token"])
        assert claims["sub"] == patient.id
        assert runtime.store.get_user(patient.id).last_login_at is not None

        rows = audit_rows(runtime, "LOGIN")
        assert [(r.status, r.user_role, r.ip_address) for r in rows] == [
            ("success", "patient", "203.0.113.5")
        ]

    @pytest.mark.parametrize("role", ["doctor", "nurse", "receptionist", "admin"])
    async def test_staff_get_pending_mfa_session(self, runtime, make_user, role):
        user = make_user(role, password=PASSWORD)
        result = await runtime.sessions.login(user.email, PASSWORD)
        await runtime.audit.drain()

        assert result["mfa_required"] is True
        assert result["mfa_methods"] == ["email_otp"]
        assert "access_token" not in result
        session = runtime.store.get_login_session(result["session_id"])
        assert session.user_id == user.id
        assert session.mfa_verified is False
        assert audit_rows(runtime, "LOGIN") == []

    async def test_passkey_does_not_complete_pending_session(self, runtime, make_user):
        from ehrguard.storage.models import WebAuthnCredential

        doctor = make_user("doctor", password=PASSWORD)
        runtime.store.add_webauthn_credential(
            WebAuthnCredential(credential_id="cred", user_id=doctor.id, public_key="pk")
        )
        result = await runtime.sessions.login(doctor.username, PASSWORD)
        assert result["mfa_methods"] == ["email_otp"]

    async def test_bad_password_is_audited_without_password(self, runtime, make_user):
        user = make_user("doctor", password=PASSWORD)
        with pytest.raises(AuthenticationError) as exc:
            await runtime.sessions.login(user.username, "Wrong!Passw0rd", ip_addr="198.51.100.7")
        await runtime.audit.drain()

        assert exc.value.message == "Invalid username or password"
        rows = audit_rows(runtime, "LOGIN")
        assert len(rows) == 1
        assert rows[0].status == "failed"
        assert rows[0].user_email == user.username
        assert rows[0].ip_address == "198.51.100.7"
        assert "Wrong!Passw0rd" not in repr(rows[0])

    async def test_unknown_user_matches_bad_password(self, runtime):
        with pytest.raises(AuthenticationError) as exc:
            await runtime.sessions.login("ghost@example.com", PASSWORD)
        assert exc.value.message == "Invalid username or password"

    async def test_inactive_user_rejected(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        user.is_active = False
        with pytest.raises(AuthenticationError):
            await runtime.sessions.login(user.username, PASSWORD)

    async def test_missing_fields(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.sessions.login("", "")


class TestForcedPasswordChange:
    async def test_challenge_then_new_password(self, runtime, make_user):
        user = make_user("nurse", password="Temp!Pass123", force_password_change=True)

        challenge = await runtime.sessions.login(user.username, "Temp!Pass123")
        assert challenge["challenge_name"] == NEW_PASSWORD_REQUIRED
        assert challenge["message"] == "Password change required on first login"
        assert "access_token" not in challenge

        result = await runtime.sessions.complete_new_password(
            user.username, challenge["session"], "Brand!New123"
        )
        await runtime.audit.drain()
        assert result["mfa_required"] is True
        assert runtime.store.get_user(user.id).force_password_change is False
        assert [r.status for r in audit_rows(runtime, "CHANGE_PASSWORD")] == ["success"]

        again = await runtime.sessions.login(user.username, "Brand!New123")
        assert again["mfa_required"] is True

    async def test_weak_new_password(self, runtime, make_user):
        user = make_user("patient", password="Temp!Pass123", force_password_change=True)
        challenge = await runtime.sessions.login(user.username, "Temp!Pass123")
        with pytest.raises(ValidationError) as exc:
            await runtime.sessions.complete_new_password(user.username, challenge["session"], "weak")
        assert exc.value.detail["errors"][0] == "Password must be at least 8 characters long"

    async def test_session_bound_to_user(self, runtime, make_user):
        first = make_user("patient", password="Temp!Pass123", force_password_change=True)
        second = make_user("patient", password="Temp!Pass123", force_password_change=True)
        challenge = await runtime.sessions.login(first.username, "Temp!Pass123")
        with pytest.raises(AuthenticationError) as exc:
            await runtime.sessions.complete_new_password(
                second.username, challenge["session"], "Brand!New123"
            )
        assert exc.value.message == "Invalid or expired session"
        await runtime.audit.drain()
        rows = audit_rows(runtime, "LOGIN")
        assert [(r.status, r.user_email, r.user_id) for r in rows] == [
            ("failed", second.username, None)
        ]
        assert audit_rows(runtime, "CHANGE_PASSWORD") == []

    async def test_access_token_is_not_a_challenge_session(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        tokens = runtime.identity.issue_tokens(user)
        with pytest.raises(AuthenticationError):
            await runtime.sessions.complete_new_password(
                user.username, tokens["access_token"], "Brand!New123"
            )


class TestMFACompletion:
    async def test_otp_completes_login(self, runtime, make_user, latest_otp):
        doctor = make_user("doctor", password=PASSWORD)
        pending = await runtime.sessions.login(doctor.username, PASSWORD)

        sent = await runtime.sessions.init_mfa(pending["session_id"])
        assert sent["email"].endswith("@example.com")
        assert sent["expires_in"] == 300

        result = await runtime.sessions.verify_mfa(pending["session_id"], latest_otp(doctor.id))
        await runtime.audit.drain()

        assert result["user"]["role"] == "doctor"
        assert runtime.verifier.verify(result["access_token"])["sub"] == doctor.id
        assert runtime.store.get_login_session(pending["session_id"]) is None
        assert [r.status for r in audit_rows(runtime, "MFA_VERIFY")] == ["success"]
        assert [r.status for r in audit_rows(runtime, "LOGIN")] == ["success"]

    async def test_wrong_code_is_audited(self, runtime, make_user, latest_otp):
        nurse = make_user("nurse", password=PASSWORD)
        pending = await runtime.sessions.login(nurse.username, PASSWORD)
        await runtime.sessions.init_mfa(pending["session_id"])
        code = latest_otp(nurse.id)

        with pytest.raises(InvalidCodeError):
            await runtime.sessions.verify_mfa(
                pending["session_id"], "000000" if code != "000000" else "111111"
            )
        await runtime.audit.drain()

        assert [r.status for r in audit_rows(runtime, "MFA_VERIFY")] == ["failed"]
        assert audit_rows(runtime, "LOGIN") == []
        assert runtime.store.get_login_session(pending["session_id"]) is not None

    async def test_expired_login_session(self, runtime, make_user):
        doctor = make_user("doctor", password=PASSWORD)
        pending = await runtime.sessions.login(doctor.username, PASSWORD)
        runtime.store.login_sessions[pending["session_id"]].expires_at = utcnow() - timedelta(
            seconds=1
        )
        with pytest.raises(ChallengeExpiredOrMissingError) as exc:
            await runtime.sessions.init_mfa(pending["session_id"])
        assert exc.value.message == "Login session expired or not found"

    async def test_unknown_login_session(self, runtime):
        with pytest.raises(ChallengeExpiredOrMissingError):
            await runtime.sessions.verify_mfa("00000000-0000-0000-0000-000000000000", "123456")


class TestTokenMaintenance:
    async def test_refresh_issues_new_access_token(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        tokens = runtime.identity.issue_tokens(user)
        refreshed = await runtime.sessions.refresh(tokens["refresh_token"])
        assert "refresh_token" not in refreshed
        assert runtime.verifier.verify(refreshed["access_token"])["sub"] == user.id

    async def test_access_token_cannot_refresh(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        tokens = runtime.identity.issue_tokens(user)
        with pytest.raises(InvalidTokenError):
            await runtime.sessions.refresh(tokens["access_token"])

    async def test_refresh_for_deactivated_user(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        tokens = runtime.identity.issue_tokens(user)
        user.is_active = False
        with pytest.raises(InvalidTokenError):
            await runtime.sessions.refresh(tokens["refresh_token"])

    async def test_change_password(self, runtime, make_user):
        user = make_user("patient", password=PASSWORD)
        principal = runtime.sessions.principal_for(user)

        with pytest.raises(AuthenticationError) as exc:
            await runtime.sessions.change_password(principal, "Wrong!Pass1", "Another!Pass1")
        assert exc.value.message == "Invalid old password"

        with pytest.raises(ValidationError):
            await runtime.sessions.change_password(principal, PASSWORD, "short")

        assert await runtime.sessions.change_password(principal, PASSWORD, "Another!Pass1") == {
            "changed": True
        }
        result = await runtime.sessions.login(user.username, "Another!Pass1")
        assert "access_token" in result
