from __future__ import annotations

import html
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from ehrguard.logging import get_logger

logger = get_logger(__name__)

_MASK_PATTERN = re.compile(r"^(.{2})(.*)(@.*)$")


def mask_email(email: str) -> str:
    """``doctor@example.com`` -> ``do***@example.com``."""
    return _MASK_PATTERN.sub(r"\1***\3", email)


class EmailService:
    """Transactional mail for login verification codes and new accounts.

    When SMTP is not configured messages are not sent; only their subject and
    masked recipient are logged.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "EHR System",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent, False otherwise."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure and socket timeouts
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp_email(
        self, to_email: str, otp: str, user_name: str = "User", *, ttl_minutes: int = 5
    ) -> bool:
        subject = "EHR System - Login Verification Code"
        safe_name = html.escape(user_name)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #374151; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 40px; font-weight: bold; color: #667eea; letter-spacing: 12px; font-family: 'Courier New', monospace; }}
        .notice {{ background: #fef3c7; border-left: 4px solid #f59e0b; padding: 16px; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #9ca3af; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>EHR System</h1>
        <p>Hello <strong>{safe_name}</strong>,</p>
        <p>You have requested to log in to the EHR System. Please use the following verification code:</p>
        <p class="code">{otp}</p>
        <div class="notice">
            <p>This code expires in <strong>{ttl_minutes} minutes</strong>.<br>
            Never share this code with anyone.<br>
            If you didn't request this, please ignore this email.</p>
        </div>
        <div class="footer">
            <p>This is an automated message from EHR System. Please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""EHR System - Login Verification

Hello {user_name},

Your verification code is: {otp}

This code expires in {ttl_minutes} minutes.
Never share this code with anyone.

---
EHR System
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_account_created(self, to_email: str, username: str, temporary_password: str) -> bool:
        """Deliver the temporary password for an account created by an administrator."""
        subject = "EHR System - Your account has been created"

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #374151;">
    <h1>Welcome to the EHR System</h1>
    <p>An administrator created an account for you.</p>
    <p>Username: <strong>{html.escape(username)}</strong><br>
    Temporary password: <strong>{html.escape(temporary_password)}</strong></p>
    <p>You will be asked to choose a new password the first time you sign in.</p>
</body>
</html>
"""

        text_body = f"""Welcome to the EHR System

An administrator created an account for you.

Username: {username}
Temporary password: {temporary_password}

You will be asked to choose a new password the first time you sign in.
"""

        return self._send_email(to_email, subject, html_body, text_body)
