"""Outgoing email: SMTP delivery and message templates."""

from perdexa.platform.communications.email_service import (
    EmailMessage,
    EmailService,
    SMTPConfig,
    get_email_service,
    send_email,
)

__all__ = ["EmailMessage", "EmailService", "SMTPConfig", "get_email_service", "send_email"]
