from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from sentinelid.logging import get_logger
from sentinelid.service.errors import ServerError

logger = get_logger(__name__)

# purpose -> (subject, lead sentence)
_PURPOSE_COPY = {
    "email_verification": (
        "Verify your email address",
        "Use this code to verify your email address and continue registration.",
    ),
    "registration": (
        "Activate your account",
        "Use this code to activate your account.",
    ),
    "login_mfa": (
        "Your sign-in verification code",
        "Use this code to complete your sign-in.",
    ),
}

_TEXT_TEMPLATE = """{subject}

{lead}

    {code}

This code expires in {minutes} minutes. Never share it with anyone.
If you did not request it, ignore this message.

{sender}
"""

_HTML_TEMPLATE = """<!DOCTYPE html>
<html><body style="font-family: sans-serif; color: #1f2933;">
  <h2>{subject}</h2>
  <p>{lead}</p>
  <p style="font-size: 28px; letter-spacing: 6px; font-weight: 700;">{code}</p>
  <p>This code expires in {minutes} minutes. Never share it with anyone.</p>
  <p>If you did not request it, ignore this message.</p>
  <p style="font-size: 12px; color: #5b6470;">{sender}</p>
</body></html>
"""


def redact_address(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Delivers one-time codes over SMTP.

    STARTTLS on the submission port by default, implicit TLS when
    ``smtp_use_tls`` is false. Without an SMTP host the send is only logged
    (recipient redacted, no code) and counts as delivered.
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
        from_name: str = "Defence Incident Portal",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def compose(self, to_email: str, code: str, purpose: str, expires_minutes: int) -> EmailMessage:
        subject, lead = _PURPOSE_COPY.get(purpose, _PURPOSE_COPY["login_mfa"])
        fields = dict(
            subject=subject, lead=lead, code=code, minutes=expires_minutes, sender=self.from_name
        )
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(_TEXT_TEMPLATE.format(**fields))
        message.add_alternative(_HTML_TEMPLATE.format(**fields), subtype="html")
        return message

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        server.starttls(context=context)
        return server

    def _send_email(self, message: EmailMessage) -> bool:
        """Hand the message to the relay. Returns False on any transport failure."""
        to = redact_address(str(message["To"]))
        if not self.is_configured:
            logger.info("email_dev_mode", to=to, subject=message["Subject"])
            return True
        try:
            with self._open() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=to, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=to, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                to=to,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=to, subject=message["Subject"])
        return True

    def send_otp(
        self, to_email: str, code: str, purpose: str, *, expires_minutes: int = 5
    ) -> None:
        """Deliver a one-time code; raises ServerError when delivery fails."""
        message = self.compose(to_email, code, purpose, expires_minutes)
        if not self._send_email(message):
            raise ServerError("Unable to deliver verification code", error_code="SERVER_ERROR")
