"""
Tests for password reset tokens.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from perdexa.platform.auth.core import verify_password
from perdexa.platform.auth.models import PasswordResetToken
from perdexa.platform.auth.password_reset import (
    build_reset_url,
    create_reset_token,
    hash_reset_token,
    request_password_reset,
    reset_password,
)
from perdexa.platform.communications.email_service import get_email_service
from perdexa.platform.db import utcnow
from perdexa.platform.exceptions import (
    EmailDeliveryError,
    InvalidToken,
    TokenExpired,
    ValidationError,
)

pytestmark = pytest.mark.unit


async def _token_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(PasswordResetToken))


class TestRequestPasswordReset:
    async def test_sends_link(self, db_session, make_user, email_outbox):
        user = await make_user(email="reset@example.com")

        await request_password_reset(db_session, "  RESET@example.com ")

        assert len(email_outbox) == 1
        message = email_outbox[0]
        assert message.to == ["reset@example.com"]
        assert "/reset-password?token=" in message.text_body
        record = await db_session.scalar(select(PasswordResetToken))
        assert record.user_id == user.id
        assert record.used_at is None

    async def test_unknown_email_is_silent(self, db_session, email_outbox):
        await request_password_reset(db_session, "nobody@example.com")
        assert email_outbox == []
        assert await _token_count(db_session) == 0

    async def test_inactive_user_still_gets_link(self, db_session, make_user, email_outbox):
        await make_user(email="off@example.com", is_active=False)
        await request_password_reset(db_session, "off@example.com")
        assert len(email_outbox) == 1

    async def test_known_email_sends_rendered_link(self, db_session, make_user, email_outbox):
        await make_user(email="known@example.com", name="Known")
        await request_password_reset(db_session, "known@example.com")
        assert email_outbox[0].subject == "Password reset"
        assert "Known" in email_outbox[0].text_body

    async def test_delivery_failure_propagates(self, db_session, make_user, email_outbox):
        await make_user(email="mail@example.com")
        get_email_service().send.side_effect = EmailDeliveryError("smtp down")

        with pytest.raises(EmailDeliveryError):
            await request_password_reset(db_session, "mail@example.com")

    async def test_new_request_replaces_old_token(self, db_session, make_user):
        user = await make_user()
        await create_reset_token(db_session, user)
        await create_reset_token(db_session, user)
        assert await _token_count(db_session) == 1


class TestResetPassword:
    async def test_consumes_token(self, db_session, make_user):
        user = await make_user(email="me@example.com", must_change_password=True)
        token = await create_reset_token(db_session, user)

        updated = await reset_password(db_session, "me@example.com", token, "brand-new-pw")

        assert verify_password("brand-new-pw", updated.password_hash)
        assert updated.must_change_password is False
        record = await db_session.scalar(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == hash_reset_token(token)
            )
        )
        assert record.used_at is not None

    async def test_token_cannot_be_reused(self, db_session, make_user):
        user = await make_user(email="me@example.com")
        token = await create_reset_token(db_session, user)
        await reset_password(db_session, "me@example.com", token, "first-new")

        with pytest.raises(TokenExpired):
            await reset_password(db_session, "me@example.com", token, "second-new")

    async def test_expired_token(self, db_session, make_user):
        user = await make_user(email="me@example.com")
        token = await create_reset_token(db_session, user, now=utcnow() - timedelta(days=1))

        with pytest.raises(TokenExpired) as exc_info:
            await reset_password(db_session, "me@example.com", token, "brand-new-pw")
        assert exc_info.value.status_code == 400

    async def test_unknown_token(self, db_session, make_user):
        await make_user(email="me@example.com")
        with pytest.raises(InvalidToken):
            await reset_password(db_session, "me@example.com", "0" * 64, "brand-new-pw")

    async def test_token_of_other_user(self, db_session, make_user):
        other = await make_user(email="other@example.com")
        await make_user(email="me@example.com")
        token = await create_reset_token(db_session, other)

        with pytest.raises(InvalidToken):
            await reset_password(db_session, "me@example.com", token, "brand-new-pw")

    async def test_short_password(self, db_session, make_user):
        user = await make_user(email="me@example.com")
        token = await create_reset_token(db_session, user)
        with pytest.raises(ValidationError):
            await reset_password(db_session, "me@example.com", token, "123")


def test_reset_url_carries_token_and_email():
    url = build_reset_url("a+b@example.com", "abc")
    assert url.endswith("/reset-password?token=abc&email=a%2Bb%40example.com")
