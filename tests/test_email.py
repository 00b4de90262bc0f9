import smtplib

import pytest

from ehrguard.service import email as email_module
from ehrguard.service.email import EmailService, mask_email


@pytest.mark.parametrize(
    "address,masked",
    [
        ("doctor@example.com", "do***@example.com"),
        ("ab@example.com", "ab***@example.com"),
    ],
)
def test_mask_email(address, masked):
    assert mask_email(address) == masked


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def explode(*args, **kwargs):
        raise AssertionError("SMTP must not be used without configuration")

    monkeypatch.setattr(email_module.smtplib, "SMTP", explode)
    service = EmailService()
    assert service.is_configured is False
    assert service.send_otp_email("nurse@example.com", "123456", "Nurse Joy") is True


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipient, message):
        FakeSMTP.sent.append((sender, recipient, message))


def test_otp_email_over_starttls(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    assert service.send_otp_email("nurse@example.com", "654321", "<b>Joy</b>") is True
    sender, recipient, message = FakeSMTP.sent[0]
    assert (sender, recipient) == ("noreply@example.com", "nurse@example.com")
    assert "Login Verification Code" in message


def test_delivery_failure_returns_false(monkeypatch):
    class Refusing(FakeSMTP):
        def sendmail(self, sender, recipient, message):
            raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})

    monkeypatch.setattr(email_module.smtplib, "SMTP", Refusing)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.send_account_created("x@example.com", "x", "Temp!Pass123") is False


def test_connection_error_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.send_otp_email("x@example.com", "111111") is False
