"""
SMTP email delivery.

Messages are handed to an SMTP server with ``smtplib``; the caller gets back
the Message-ID that was assigned. Async callers go through ``send_email``,
which runs the blocking SMTP exchange in a worker thread.
"""

import asyncio
import smtplib
from email.message import EmailMessage as MIMEMessage
from email.utils import formataddr, make_msgid

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from perdexa.platform.exceptions import EmailDeliveryError
from perdexa.platform.settings import settings

logger = structlog.get_logger(__name__)


class SMTPConfig(BaseModel):
    """SMTP connection parameters."""

    model_config = ConfigDict(validate_assignment=True)

    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    use_ssl: bool = False
    from_email: str
    from_name: str | None = None
    timeout: int = 30

    @classmethod
    def from_settings(cls) -> "SMTPConfig":
        return cls(
            host=settings.email.smtp_host,
            port=settings.email.smtp_port,
            username=settings.email.smtp_username,
            password=settings.email.smtp_password,
            use_tls=settings.email.use_tls,
            use_ssl=settings.email.use_ssl,
            from_email=settings.email.from_address,
            from_name=settings.email.from_name,
            timeout=settings.email.timeout,
        )


class EmailMessage(BaseModel):
    """An outgoing email with a text part and an optional HTML alternative."""

    to: list[str] = Field(..., min_length=1)
    subject: str
    text_body: str = ""
    html_body: str | None = None
    reply_to: str | None = None

    @field_validator("to", mode="before")
    @classmethod
    def _single_recipient(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [value]
        return value


class EmailService:
    """Sends ``EmailMessage`` objects through one SMTP server."""

    def __init__(self, config: SMTPConfig):
        self.config = config

    def _build(self, message: EmailMessage) -> MIMEMessage:
        mime = MIMEMessage()
        mime["Subject"] = message.subject
        mime["From"] = formataddr((self.config.from_name or "", self.config.from_email))
        mime["To"] = ", ".join(message.to)
        if message.reply_to:
            mime["Reply-To"] = message.reply_to
        domain = self.config.from_email.rpartition("@")[2] or None
        mime["Message-ID"] = make_msgid(domain=domain)

        mime.set_content(message.text_body or "")
        if message.html_body:
            mime.add_alternative(message.html_body, subtype="html")
        return mime

    def send(self, message: EmailMessage) -> str:
        """Deliver ``message`` and return its Message-ID.

        Raises:
            EmailDeliveryError: Connection, authentication or delivery failed
        """
        mime = self._build(message)
        server: smtplib.SMTP | None = None
        try:
            if self.config.use_ssl:
                server = smtplib.SMTP_SSL(
                    self.config.host, self.config.port, timeout=self.config.timeout
                )
            else:
                server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout)
                if self.config.use_tls:
                    server.starttls()

            if self.config.username and self.config.password:
                server.login(self.config.username, self.config.password)

            server.send_message(mime)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email.send.failed",
                to=message.to,
                subject=message.subject,
                error=str(e),
            )
            raise EmailDeliveryError(f"Failed to send email: {e}") from e
        finally:
            if server is not None:
                try:
                    server.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.debug("email.quit.failed", error=str(e))

        message_id = str(mime["Message-ID"])
        logger.info("email.sent", to=message.to, subject=message.subject, message_id=message_id)
        return message_id


_email_service: EmailService | None = None


def get_email_service() -> EmailService:
    """Get global email service instance (singleton)."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService(SMTPConfig.from_settings())
    return _email_service


def set_email_service(service: EmailService | None) -> None:
    """Replace the global email service (mainly for testing)."""
    global _email_service
    _email_service = service


async def send_email(message: EmailMessage) -> str | None:
    """Send without blocking the event loop. Returns None when email is disabled."""
    if not settings.email.enabled:
        logger.info("email.disabled", to=message.to, subject=message.subject)
        return None
    return await asyncio.to_thread(get_email_service().send, message)


__all__ = [
    "SMTPConfig",
    "EmailMessage",
    "EmailService",
    "get_email_service",
    "set_email_service",
    "send_email",
]
