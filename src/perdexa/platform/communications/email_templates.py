"""Jinja2-rendered transactional emails."""

from datetime import datetime
from decimal import Decimal
from functools import lru_cache

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

from perdexa.platform.communications.email_service import EmailMessage
from perdexa.platform.settings import settings


@lru_cache(maxsize=1)
def get_template_environment() -> Environment:
    return Environment(
        loader=PackageLoader("perdexa.platform.communications", "templates"),
        autoescape=select_autoescape(["html"]),
        undefined=StrictUndefined,
        trim_blocks=True,
    )


def _render(template: str, to: str | list[str], subject: str, **context) -> EmailMessage:
    env = get_template_environment()
    context.setdefault("app_name", settings.app_name)
    return EmailMessage(
        to=to,
        subject=subject,
        text_body=env.get_template(f"{template}.txt").render(**context),
        html_body=env.get_template(f"{template}.html").render(**context),
    )


def welcome_email(email: str, name: str | None) -> EmailMessage:
    return _render(
        "welcome",
        email,
        f"Welcome to {settings.app_name}",
        name=name or email,
        email=email,
        login_url=f"{settings.public_base_url.rstrip('/')}/login",
    )


def password_reset_email(email: str, name: str | None, reset_url: str) -> EmailMessage:
    return _render(
        "password_reset",
        email,
        "Password reset",
        name=name or email,
        reset_url=reset_url,
        expires_minutes=settings.auth.password_reset_expire_minutes,
    )


def payment_request_email(
    to: str,
    month_key: str,
    user_id: str,
    user_email: str | None,
    tenant_id: str | None,
    amount: Decimal,
    requested_at: datetime,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> EmailMessage:
    currency = settings.billing.default_currency
    return _render(
        "payment_request",
        to,
        f"Payment request: {user_email or user_id} - {month_key} ({amount} {currency})",
        month_key=month_key,
        user_id=user_id,
        user_email=user_email,
        tenant_id=tenant_id,
        amount=amount,
        currency=currency,
        requested_at=requested_at.isoformat(timespec="seconds"),
        ip_address=ip_address,
        user_agent=user_agent,
    )
