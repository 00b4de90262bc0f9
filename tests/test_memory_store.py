"""Tests for the in-memory store and its JSON persistence."""

from datetime import timedelta

import pytest

from ehrguard.storage.errors import ConstraintViolation
from ehrguard.storage.memory import MemoryStore
from ehrguard.storage.models import (
    AuditEntry,
    VitalSigns,
    WebAuthnChallenge,
    WebAuthnCredential,
    utcnow,
)


def test_users_are_unique_case_insensitively():
    store = MemoryStore()
    store.create_user("Alice", "alice@example.com")
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("alice", "other@example.com")
    assert exc.value.detail == {"field": "username"}
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("bob", "ALICE@example.com")
    assert exc.value.detail == {"field": "email"}


def test_find_user_by_username_or_email():
    store = MemoryStore()
    user = store.create_user("carol", "carol@example.com")
    assert store.find_user_by_login("CAROL").id == user.id
    assert store.find_user_by_login("carol@example.com").id == user.id
    assert store.find_user_by_login("nobody") is None


def test_password_requires_existing_user():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_otp_attempt_counter_is_compare_and_swap():
    store = MemoryStore()
    user = store.create_user("dave", "dave@example.com")
    challenge = store.create_otp_challenge(user.id, "123456", ttl_seconds=300, max_attempts=3)
    assert store.increment_otp_attempts(challenge.id, 0) == 1
    assert store.increment_otp_attempts(challenge.id, 0) is None
    assert store.increment_otp_attempts(challenge.id, 1) == 2


def test_active_challenge_is_a_snapshot():
    store = MemoryStore()
    user = store.create_user("erin", "erin@example.com")
    store.create_otp_challenge(user.id, "123456", ttl_seconds=300, max_attempts=3)
    snapshot = store.get_active_otp_challenge(user.id)
    snapshot.attempts = 99
    assert store.get_active_otp_challenge(user.id).attempts == 0


def test_verified_or_expired_challenges_are_not_active():
    store = MemoryStore()
    user = store.create_user("frank", "frank@example.com")
    challenge = store.create_otp_challenge(user.id, "123456", ttl_seconds=300, max_attempts=3)
    assert store.mark_otp_verified(challenge.id) is True
    assert store.mark_otp_verified(challenge.id) is False
    assert store.get_active_otp_challenge(user.id) is None

    store.create_otp_challenge(user.id, "654321", ttl_seconds=300, max_attempts=3)
    later = utcnow() + timedelta(seconds=301)
    assert store.get_active_otp_challenge(user.id, now=later) is None


def test_list_users_filters_by_role_and_search():
    store = MemoryStore()
    store.create_user("kim", "kim@clinic.org", full_name="Kim Park", custom_role="nurse")
    store.create_user("lee", "lee@clinic.org", full_name="Lee Chan", custom_role="doctor")
    store.create_user("mo", "mo@example.com", full_name="Mo Park", custom_role="doctor")

    users, total = store.list_users(role="doctor")
    assert total == 2
    assert {u.username for u in users} == {"lee", "mo"}

    users, total = store.list_users(search="PARK")
    assert {u.username for u in users} == {"kim", "mo"}

    users, total = store.list_users(search="clinic.org", limit=1)
    assert total == 2
    assert len(users) == 1


def test_disabling_user_and_dropping_pending_logins():
    store = MemoryStore()
    user = store.create_user("nina", "nina@example.com")
    other = store.create_user("omar", "omar@example.com")
    store.create_login_session(user.id)
    store.create_login_session(user.id)
    kept = store.create_login_session(other.id)

    assert store.set_user_active(user.id, False).is_active is False
    assert store.set_user_active("missing", False) is None
    assert store.delete_login_sessions_for_user(user.id) == 2
    assert store.delete_login_sessions_for_user(user.id) == 0
    assert store.get_login_session(kept.id) is not None


def test_webauthn_challenge_is_taken_once():
    store = MemoryStore()
    user = store.create_user("pat", "pat@example.com")
    now = utcnow()
    store.save_webauthn_challenge(
        WebAuthnChallenge(
            user_id=user.id,
            challenge="abc",
            ceremony="authentication",
            created_at=now,
            expires_at=now + timedelta(minutes=5),
        )
    )
    assert store.take_webauthn_challenge(user.id).challenge == "abc"
    assert store.take_webauthn_challenge(user.id) is None


def test_patient_link_requires_existing_user():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.create_patient("Quinn", "1975-03-03", "male", user_id="missing")


def test_vital_signs_must_match_patient_record():
    store = MemoryStore()
    patient = store.create_patient("Rita", "1965-07-07", "female")
    other = store.create_patient("Sam", "1970-08-08", "male")
    record = store.create_medical_record(other.id, "doc", "cough")

    with pytest.raises(ConstraintViolation):
        store.create_vital_signs(
            VitalSigns(id="v1", patient_id=patient.id, measured_by="n", record_id=record.id)
        )
    with pytest.raises(ConstraintViolation):
        store.create_vital_signs(VitalSigns(id="v2", patient_id="missing", measured_by="n"))

    now = utcnow()
    store.create_vital_signs(
        VitalSigns(
            id="v3",
            patient_id=patient.id,
            measured_by="n",
            heart_rate=70,
            measured_at=now - timedelta(hours=1),
        )
    )
    store.create_vital_signs(
        VitalSigns(id="v4", patient_id=patient.id, measured_by="n", heart_rate=80, measured_at=now)
    )
    rows, total = store.list_vital_signs(patient.id)
    assert total == 2
    assert [v.id for v in rows] == ["v4", "v3"]


def test_medical_records_listing_skips_deleted_and_sorts_by_visit():
    store = MemoryStore()
    patient = store.create_patient("Grace", "1990-01-01", "female")
    now = utcnow()
    older = store.create_medical_record(
        patient.id, "doc", "headache", visit_date=now - timedelta(days=2)
    )
    newer = store.create_medical_record(patient.id, "doc", "fever", visit_date=now)
    gone = store.create_medical_record(patient.id, "doc", "typo", visit_date=now)
    store.update_medical_record(gone.id, {"status": "deleted"})

    records, total = store.list_medical_records(patient.id)
    assert total == 2
    assert [r.id for r in records] == [newer.id, older.id]

    page, total = store.list_medical_records(patient.id, limit=1, offset=1)
    assert [r.id for r in page] == [older.id]
    assert total == 2


def test_medical_record_requires_active_patient():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.create_medical_record("missing", "doc", "cough")


def test_update_rejects_unknown_fields():
    store = MemoryStore()
    patient = store.create_patient("Heidi", "1980-05-05", "female")
    record = store.create_medical_record(patient.id, "doc", "cough")
    with pytest.raises(ValueError):
        store.update_medical_record(record.id, {"doctor_id": "someone-else"})
    assert store.update_medical_record("missing", {"status": "closed"}) is None


def test_state_survives_restart(tmp_path):
    path = tmp_path / "state" / "ehr.json"
    store = MemoryStore(state_path=str(path))
    user = store.create_user("ivan", "ivan@example.com", groups=["Doctors"], custom_role="doctor")
    store.save_password(user.id, "hash-value", "argon2id")
    store.record_mfa_success(user.id, "email_otp")
    store.add_webauthn_credential(
        WebAuthnCredential(credential_id="cred", user_id=user.id, public_key="pk", sign_count=7)
    )
    patient = store.create_patient(
        "Judy", "2000-02-02", "female", national_id_encrypted="00:11", user_id=user.id
    )
    record = store.create_medical_record(patient.id, user.id, "rash", diagnosis_encrypted="aa:bb")
    store.append_audit_entry(AuditEntry(action="LOGIN", user_email="ivan@example.com"))

    reloaded = MemoryStore(state_path=str(path))
    restored = reloaded.get_user(user.id)
    assert restored.groups == ["Doctors"]
    assert restored.created_at == user.created_at
    assert reloaded.get_password_record(user.id) == ("hash-value", "argon2id")
    assert reloaded.get_mfa_settings(user.id).last_mfa_method == "email_otp"
    assert reloaded.get_webauthn_credential("cred").sign_count == 7
    assert reloaded.get_patient(patient.id).national_id_encrypted == "00:11"
    restored_record = reloaded.get_medical_record(record.id)
    assert restored_record.diagnosis_encrypted == "aa:bb"
    assert restored_record.visit_date == record.visit_date
    entries, total = reloaded.list_audit_entries()
    assert total == 1
    assert entries[0].user_email == "ivan@example.com"
