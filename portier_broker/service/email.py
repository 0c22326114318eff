from __future__ import annotations

import asyncio
import smtplib
import ssl
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional, Protocol, Tuple

from portier_broker.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfirmationMessage:
    to_email: str
    link: str
    code: str
    locale: Optional[str] = None


class EmailDispatcher(Protocol):
    async def send_confirmation(
        self, to_email: str, link: str, code: str, locale: Optional[str] = None
    ) -> bool:
        """Deliver a confirmation message; False when delivery failed."""


def parse_smtp_server(value: Optional[str], use_tls: bool) -> Tuple[Optional[str], int]:
    """Split ``host[:port]``; the port defaults to 587 (STARTTLS) or 465 (SSL)."""
    default_port = 587 if use_tls else 465
    if not value:
        return None, default_port
    host, sep, port = value.rpartition(":")
    if sep and port.isdigit() and host:
        return host, int(port)
    return value, default_port


class EmailService:
    """Sends confirmation emails over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured and ``dev_mode`` is set; such
      messages are also kept in ``outbox`` so local runs and tests can read the
      code. Without ``dev_mode`` an unconfigured service reports every send as
      failed.
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
        from_name: str = "Portier",
        outbox_size: int = 100,
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.dev_mode = dev_mode
        self.outbox: Deque[ConfirmationMessage] = deque(maxlen=outbox_size)

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain", "utf-8"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def build_confirmation(self, link: str, code: str) -> Tuple[str, str]:
        subject = f"Finish logging in - {self.from_name}"
        text_body = (
            "Use this link to finish logging in:\n\n"
            f"{link}\n\n"
            "Or enter this code on the login page:\n\n"
            f"{code}\n\n"
            "If you did not try to log in, you can ignore this message.\n"
        )
        return subject, text_body

    async def send_confirmation(
        self, to_email: str, link: str, code: str, locale: Optional[str] = None
    ) -> bool:
        """Deliver the confirmation link and code; never retries."""
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("email_not_configured", to=self._redact_email(to_email))
                return False
            # Dev mode: log the email instead of sending
            self.outbox.append(ConfirmationMessage(to_email, link, code, locale))
            logger.info("email_dev_mode", to=self._redact_email(to_email), locale=locale)
            return True
        subject, text_body = self.build_confirmation(link, code)
        return await asyncio.to_thread(self._send_email, to_email, subject, text_body)
