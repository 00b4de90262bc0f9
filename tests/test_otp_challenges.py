"""Tests for the email one-time-code challenge state machine."""

from datetime import timedelta

import pytest

from ehrguard.service.errors import (
    ChallengeExpiredOrMissingError,
    InvalidCodeError,
    TooManyAttemptsError,
)
from ehrguard.service.otp import OTP_METHOD, OTPChallengeService, generate_otp
from ehrguard.storage.memory import MemoryStore
from ehrguard.storage.models import utcnow


class RecordingEmail:
    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def send_otp_email(self, to_email, code, user_name="User", *, ttl_minutes=5):
        self.sent.append({"to": to_email, "code": code, "name": user_name, "ttl": ttl_minutes})
        return self.deliver


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def otp(store, email):
    return OTPChallengeService(store, email, ttl_seconds=300, max_attempts=3)


@pytest.fixture
def doctor(store):
    return store.create_user(
        "drhouse", "gregory@example.com", full_name="Gregory House", groups=["Doctors"]
    )


def wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestGenerate:
    def test_six_digit_range(self):
        for _ in range(500):
            code = generate_otp()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestInit:
    async def test_issues_code_and_masks_email(self, otp, store, email, doctor):
        result = await otp.init(doctor, "doctor", ip_addr="10.1.1.1")
        assert result == {"mfa_required": True, "email": "gr***@example.com", "expires_in": 300}
        assert len(email.sent) == 1
        assert email.sent[0]["to"] == "gregory@example.com"
        assert email.sent[0]["name"] == "Gregory House"
        assert email.sent[0]["ttl"] == 5
        challenge = store.get_active_otp_challenge(doctor.id)
        assert challenge.code == email.sent[0]["code"]
        assert challenge.attempts == 0
        assert challenge.max_attempts == 3
        assert challenge.ip_addr == "10.1.1.1"

    async def test_patient_bypasses(self, otp, store, email, doctor):
        assert await otp.init(doctor, "patient") == {"mfa_required": False}
        assert email.sent == []
        assert store.get_active_otp_challenge(doctor.id) is None

    async def test_reinit_replaces_previous_challenge(self, otp, store, email, doctor):
        await otp.init(doctor, "doctor")
        await otp.init(doctor, "doctor")
        live = [c for c in store.otp_challenges.values() if c.user_id == doctor.id]
        assert len(live) == 1
        assert live[0].code == email.sent[-1]["code"]

    async def test_delivery_failure_still_creates_challenge(self, store, doctor):
        otp = OTPChallengeService(store, RecordingEmail(deliver=False))
        result = await otp.init(doctor, "nurse")
        assert result["mfa_required"] is True
        assert store.get_active_otp_challenge(doctor.id) is not None

    def test_role_gating(self, otp):
        for role in ("doctor", "nurse", "receptionist", "admin"):
            assert otp.requires_mfa(role)
        assert not otp.requires_mfa("patient")
        assert not otp.requires_mfa(None)


class TestVerify:
    async def test_correct_code_succeeds_once(self, otp, store, email, doctor):
        await otp.init(doctor, "doctor")
        code = email.sent[-1]["code"]

        assert await otp.verify(doctor.id, code) == {"verified": True, "method": OTP_METHOD}
        settings = store.get_mfa_settings(doctor.id)
        assert settings.last_mfa_method == OTP_METHOD
        assert settings.last_mfa_at is not None

        with pytest.raises(ChallengeExpiredOrMissingError):
            await otp.verify(doctor.id, code)

    async def test_code_is_trimmed(self, otp, email, doctor):
        await otp.init(doctor, "doctor")
        result = await otp.verify(doctor.id, f"  {email.sent[-1]['code']} ")
        assert result["verified"] is True

    async def test_wrong_codes_count_down_then_lock(self, otp, email, doctor):
        await otp.init(doctor, "doctor")
        code = email.sent[-1]["code"]

        remaining = []
        for _ in range(3):
            with pytest.raises(InvalidCodeError) as exc:
                await otp.verify(doctor.id, wrong(code))
            remaining.append(exc.value.detail["attempts_remaining"])
        assert remaining == [2, 1, 0]
        assert exc.value.message == "Invalid verification code. 0 attempt(s) remaining."

        with pytest.raises(TooManyAttemptsError) as exc:
            await otp.verify(doctor.id, code)
        assert exc.value.status_code == 429

    async def test_exhausted_challenge_does_not_count_further(self, otp, store, email, doctor):
        await otp.init(doctor, "doctor")
        code = email.sent[-1]["code"]
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await otp.verify(doctor.id, wrong(code))
        for _ in range(2):
            with pytest.raises(TooManyAttemptsError):
                await otp.verify(doctor.id, wrong(code))
        assert store.get_active_otp_challenge(doctor.id).attempts == 3

    async def test_new_code_after_lockout(self, otp, email, doctor):
        await otp.init(doctor, "doctor")
        old = email.sent[-1]["code"]
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await otp.verify(doctor.id, wrong(old))
        await otp.init(doctor, "doctor")
        assert (await otp.verify(doctor.id, email.sent[-1]["code"]))["verified"] is True

    async def test_expired_challenge(self, otp, store, email, doctor):
        await otp.init(doctor, "doctor")
        for challenge in store.otp_challenges.values():
            challenge.expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(ChallengeExpiredOrMissingError) as exc:
            await otp.verify(doctor.id, email.sent[-1]["code"])
        assert exc.value.message == "No valid verification code found or code has expired"
        assert exc.value.status_code == 400

    async def test_no_challenge(self, otp, doctor):
        with pytest.raises(ChallengeExpiredOrMissingError):
            await otp.verify(doctor.id, "123456")

    async def test_lost_counter_race_is_retried(self, email):
        class RacingStore(MemoryStore):
            """A parallel verify spends an attempt between our read and our write."""

            raced = False

            def increment_otp_attempts(self, challenge_id, expected_attempts):
                if not self.raced:
                    self.raced = True
                    super().increment_otp_attempts(challenge_id, expected_attempts)
                    return None
                return super().increment_otp_attempts(challenge_id, expected_attempts)

        racing = RacingStore()
        user = racing.create_user("nurse1", "nurse1@example.com", groups=["Nurses"])
        otp = OTPChallengeService(racing, email, max_attempts=3)
        await otp.init(user, "nurse")

        with pytest.raises(InvalidCodeError) as exc:
            await otp.verify(user.id, wrong(email.sent[-1]["code"]))
        assert exc.value.detail["attempts_remaining"] == 1
        assert racing.get_active_otp_challenge(user.id).attempts == 2


class TestStatus:
    async def test_status_after_verification(self, otp, store, email, doctor):
        before = otp.status(doctor, "doctor")
        assert before["mfa_required"] is True
        assert before["last_mfa_at"] is None
        assert before["passkeys_registered"] == 0

        await otp.init(doctor, "doctor")
        await otp.verify(doctor.id, email.sent[-1]["code"])
        after = otp.status(doctor, "doctor")
        assert after["last_mfa_method"] == OTP_METHOD
        assert after["last_mfa_at"] is not None
        assert after["preferred_method"] == OTP_METHOD

    def test_patient_status(self, otp, doctor):
        assert otp.status(doctor, "patient")["mfa_required"] is False
