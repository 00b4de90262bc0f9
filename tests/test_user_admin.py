"""Tests for account administration."""

from datetime import timedelta

import pytest

from ehrguard.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from ehrguard.storage.models import WebAuthnChallenge, utcnow

PASSWORD = "Str0ng!Passw0rd"


class TestDisable:
    async def test_discards_pending_mfa_state(self, runtime, make_user):
        nurse = make_user("nurse", password=PASSWORD)
        pending = await runtime.sessions.login(nurse.username, PASSWORD)
        await runtime.sessions.init_mfa(pending["session_id"])
        now = utcnow()
        runtime.store.save_webauthn_challenge(
            WebAuthnChallenge(
                user_id=nurse.id,
                challenge="abc",
                ceremony="authentication",
                created_at=now,
                expires_at=now + timedelta(minutes=5),
            )
        )

        view = runtime.users.disable_user(nurse.id)

        assert view["is_active"] is False
        assert view["role"] == "nurse"
        assert runtime.store.get_login_session(pending["session_id"]) is None
        assert runtime.store.get_active_otp_challenge(nurse.id) is None
        assert runtime.store.webauthn_challenges.get(nurse.id) is None

    async def test_refresh_refused_after_disable(self, runtime, make_user):
        patient = make_user("patient", password=PASSWORD)
        tokens = await runtime.sessions.login(patient.username, PASSWORD)
        runtime.users.disable_user(patient.id)
        with pytest.raises(InvalidTokenError):
            await runtime.sessions.refresh(tokens["refresh_token"])

    def test_admin_and_unknown(self, runtime, make_user):
        admin = make_user("admin")
        with pytest.raises(ForbiddenError):
            runtime.users.disable_user(admin.id)
        with pytest.raises(NotFoundError):
            runtime.users.disable_user("missing")


class TestResetPassword:
    def test_disabled_account_is_not_reset(self, runtime, make_user):
        doctor = make_user("doctor")
        runtime.store.set_user_active(doctor.id, False)
        with pytest.raises(ValidationError):
            runtime.users.reset_password(doctor.id)

    def test_supplied_password_must_meet_policy(self, runtime, make_user):
        doctor = make_user("doctor")
        with pytest.raises(ValidationError) as exc:
            runtime.users.reset_password(doctor.id, "short")
        assert exc.value.detail["field"] == "temporary_password"
        assert runtime.store.get_user(doctor.id).force_password_change is False


class TestListing:
    def test_pagination_bounds(self, runtime):
        with pytest.raises(ValidationError):
            runtime.users.list_users(limit=0)
        with pytest.raises(ValidationError):
            runtime.users.list_users(offset=-1)

    def test_has_more(self, runtime, make_user):
        for _ in range(3):
            make_user("receptionist")
        page = runtime.users.list_users(role="receptionist", limit=2)
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["has_more"] is True
        assert len(page["users"]) == 2
