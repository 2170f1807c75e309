from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from uniupdates.logging import get_logger
from uniupdates.storage.models import OTP_PURPOSE_PASSWORD_RESET

logger = get_logger(__name__)

_OTP_SUBJECTS = {
    OTP_PURPOSE_PASSWORD_RESET: "Your UniUpdates password reset code",
}
_DEFAULT_OTP_SUBJECT = "Your UniUpdates verification code"


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which is what development and test runs rely on.
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
        from_name: str = "UniUpdates",
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

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(
        self,
        to_email: str,
        code: str,
        *,
        purpose: str,
        ttl_minutes: int,
        name: Optional[str] = None,
    ) -> bool:
        """Deliver a one-time passcode."""
        subject = _OTP_SUBJECTS.get(purpose, _DEFAULT_OTP_SUBJECT)
        greeting = f"Dear {name}," if name else "Hello,"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <p>{greeting}</p>
    <p>Your one-time code is:</p>
    <h2 style="letter-spacing: 4px;">{code}</h2>
    <p>It is valid for {ttl_minutes} minutes and can be used once. Do not share it with anyone.</p>
    <p>If you did not request this, you can safely ignore this email.</p>
</body>
</html>
"""
        text_body = (
            f"{greeting}\n\nYour one-time code is: {code}\n\n"
            f"It is valid for {ttl_minutes} minutes and can be used once.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
