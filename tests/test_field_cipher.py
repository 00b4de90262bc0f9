"""Tests for field encryption, diagnosis summaries and role projections."""

import pytest

from ehrguard.service.cipher import (
    DIAGNOSIS_SUMMARY_NOTE,
    FieldCipher,
    ScryptKeyProvider,
    project_diagnosis,
    project_identifiers,
    summarize_diagnosis,
)
from ehrguard.service.roles import Principal, Role


@pytest.fixture(scope="module")
def cipher():
    return FieldCipher(ScryptKeyProvider("unit-test-secret"))


def principal(role: Role) -> Principal:
    return Principal(
        subject=f"sub-{role.label}",
        email=None,
        username=role.label,
        role_name=role.label,
        role=role,
    )


class TestKeyDerivation:
    def test_key_is_32_bytes_and_stable(self):
        provider = ScryptKeyProvider("secret")
        first = provider.key()
        assert len(first) == 32
        assert provider.key() is first
        assert ScryptKeyProvider("secret").key() == first

    def test_different_secret_different_key(self):
        assert ScryptKeyProvider("a").key() != ScryptKeyProvider("b").key()

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            ScryptKeyProvider("")


class TestEncryptDecrypt:
    def test_round_trip_unicode(self, cipher):
        text = "Hypertension stage 2, điều trị bằng thuốc"
        assert cipher.decrypt(cipher.encrypt(text)) == text

    def test_fresh_iv_per_call(self, cipher):
        first = cipher.encrypt("same text")
        second = cipher.encrypt("same text")
        assert first != second
        assert cipher.decrypt(first) == cipher.decrypt(second) == "same text"

    def test_ciphertext_format(self, cipher):
        iv_hex, sep, ct_hex = cipher.encrypt("x").partition(":")
        assert sep == ":"
        assert len(bytes.fromhex(iv_hex)) == 16
        assert len(bytes.fromhex(ct_hex)) % 16 == 0

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_input_not_encrypted(self, cipher, value):
        assert cipher.encrypt(value) is None

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "no-separator",
            "zz:zz",
            "abcd:",
            "00" * 16 + ":" + "00" * 15,
            "00" * 16 + ":" + "not-hex",
        ],
    )
    def test_malformed_input_yields_none(self, cipher, value):
        assert cipher.decrypt(value) is None

    def test_wrong_key_never_returns_plaintext(self, cipher):
        encrypted = cipher.encrypt("Type 2 diabetes")
        other = FieldCipher(ScryptKeyProvider("another-secret"))
        assert other.decrypt(encrypted) != "Type 2 diabetes"

    def test_field_helpers(self, cipher):
        encrypted = cipher.encrypt_fields(
            {"national_id": "079123456789", "insurance_number": "", "name": "A"},
            ["national_id", "insurance_number"],
        )
        assert "national_id" not in encrypted
        assert "insurance_number_encrypted" not in encrypted
        assert encrypted["name"] == "A"
        decrypted = cipher.decrypt_fields(encrypted, ["national_id", "insurance_number"])
        assert decrypted["national_id"] == "079123456789"


class TestSummarizeDiagnosis:
    def test_short_text_unchanged(self):
        text = "a" * 50
        assert summarize_diagnosis(text) == text

    def test_exactly_limit_unchanged(self):
        text = "b" * 100
        assert summarize_diagnosis(text) == text

    def test_cut_at_first_terminator(self):
        text = "c" * 40 + "," + "d" * 109
        assert len(text) == 150
        assert summarize_diagnosis(text) == "c" * 40 + ", (...)"

    def test_period_and_fullwidth_terminators(self):
        assert summarize_diagnosis("Acute bronchitis. " + "x" * 120) == "Acute bronchitis. (...)"
        assert summarize_diagnosis("Viêm phế quản。" + "y" * 120) == "Viêm phế quản。 (...)"

    def test_hard_cut_without_early_terminator(self):
        text = "e" * 120 + ". tail" + "f" * 24
        assert summarize_diagnosis(text) == "e" * 100 + "..."

    def test_empty(self):
        assert summarize_diagnosis(None) is None
        assert summarize_diagnosis("") is None


class TestProjectDiagnosis:
    LONG = "Community acquired pneumonia, right lower lobe, " + "with pleural effusion " * 6

    def test_doctor_gets_plaintext(self, cipher):
        view = project_diagnosis({"id": "r"}, cipher.encrypt(self.LONG), principal(Role.DOCTOR), cipher)
        assert view["diagnosis"] == self.LONG
        assert "diagnosis_note" not in view

    def test_nurse_gets_summary_and_note(self, cipher):
        view = project_diagnosis({"id": "r"}, cipher.encrypt(self.LONG), principal(Role.NURSE), cipher)
        assert view["diagnosis"] == "Community acquired pneumonia, (...)"
        assert view["diagnosis_note"] == DIAGNOSIS_SUMMARY_NOTE

    @pytest.mark.parametrize("role", [Role.RECEPTIONIST, Role.PATIENT, Role.ADMIN])
    def test_other_roles_get_nothing(self, cipher, role):
        view = project_diagnosis(
            {"id": "r", "diagnosis_encrypted": "iv:ct"}, cipher.encrypt(self.LONG), principal(role), cipher
        )
        assert view == {"id": "r"}

    def test_undecryptable_field_is_omitted(self, cipher):
        view = project_diagnosis({"id": "r"}, "garbage", principal(Role.DOCTOR), cipher)
        assert view == {"id": "r"}


class TestProjectIdentifiers:
    def test_staff_see_identifiers(self, cipher):
        encrypted = cipher.encrypt_fields(
            {"national_id": "079123456789", "insurance_number": "HS4010123456789"},
            ["national_id", "insurance_number"],
        )
        for role in (Role.RECEPTIONIST, Role.NURSE, Role.DOCTOR):
            view = project_identifiers({"id": "p"}, encrypted, principal(role), cipher)
            assert view["national_id"] == "079123456789"
            assert view["insurance_number"] == "HS4010123456789"

    def test_patient_sees_no_identifiers(self, cipher):
        encrypted = {"national_id_encrypted": cipher.encrypt("079123456789")}
        view = project_identifiers(
            {"id": "p", "national_id_encrypted": "x"}, encrypted, principal(Role.PATIENT), cipher
        )
        assert view == {"id": "p"}

    def test_missing_identifier_left_out(self, cipher):
        encrypted = {"national_id_encrypted": None, "insurance_number_encrypted": "broken"}
        view = project_identifiers({"id": "p"}, encrypted, principal(Role.DOCTOR), cipher)
        assert view == {"id": "p"}
