"""
Platform exceptions.

Every failure a guard or service can signal is a ``PerdexaError`` carrying a
machine-readable code and the HTTP status it maps to. The API layer renders
them through ``perdexa.platform.exception_handlers``.
"""

from typing import Any


class PerdexaError(Exception):
    """
    Base platform error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    default_code = "server_error"
    default_status = 500
    default_message = "Unexpected error"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_code
        self.status_code = status_code or self.default_status
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        payload: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.context:
            payload["context"] = self.context
        if self.recovery_hint:
            payload["recovery_hint"] = self.recovery_hint
        return payload


# ============================================
# Authentication / authorization (401, 403, 400)
# ============================================


class Unauthenticated(PerdexaError):
    default_code = "unauthorized"
    default_status = 401
    default_message = "Authentication required"


class Forbidden(PerdexaError):
    default_code = "forbidden"
    default_status = 403
    default_message = "Insufficient permissions"


class ForbiddenOtherTenant(Forbidden):
    default_code = "forbidden_other_tenant"
    default_message = "Cannot act on another tenant"


class NoTenant(PerdexaError):
    """The user belongs to no tenant at all."""

    default_code = "no_tenant"
    default_status = 401
    default_message = "No tenant is associated with this account"


class TenantNotSelected(PerdexaError):
    default_code = "tenant_not_selected"
    default_status = 400
    default_message = "No tenant selected for this session"


# ============================================
# Resource errors
# ============================================


class NotFound(PerdexaError):
    default_code = "not_found"
    default_status = 404
    default_message = "Resource not found"


class Conflict(PerdexaError):
    """Unique-constraint style conflicts."""

    default_code = "conflict"
    default_status = 409
    default_message = "Resource already exists"


class ValidationError(PerdexaError):
    default_code = "validation_error"
    default_status = 422
    default_message = "Invalid input"


class BadRequest(PerdexaError):
    """A precondition on the request does not hold."""

    default_code = "bad_request"
    default_status = 400
    default_message = "Bad request"


class UserInactive(BadRequest):
    default_code = "user_inactive"
    default_message = "User is deactivated"


class NotImpersonating(BadRequest):
    default_code = "not_impersonated"
    default_message = "Current session is not an impersonation"


class AdminNotActive(BadRequest):
    default_code = "admin_not_active"
    default_message = "Impersonating administrator is no longer active"


class InvalidToken(BadRequest):
    default_code = "invalid_token"
    default_message = "Token is invalid"


class TokenExpired(BadRequest):
    default_code = "token_expired"
    default_message = "Token has expired or was already used"


# ============================================
# Subscription gating (402)
# ============================================


class PaymentRequired(PerdexaError):
    default_code = "payment_required"
    default_status = 402
    default_message = "Subscription payment is required"


class TrialExpired(PaymentRequired):
    default_code = "trial_expired"
    default_message = "Free trial has ended"


class SubscriptionInactive(PaymentRequired):
    default_code = "inactive"
    default_message = "Subscription is not active"


# ============================================
# Infrastructure
# ============================================


class EmailDeliveryError(PerdexaError):
    default_code = "email_send_failed"
    default_status = 502
    default_message = "Email could not be sent"


__all__ = [
    "PerdexaError",
    "Unauthenticated",
    "Forbidden",
    "ForbiddenOtherTenant",
    "NoTenant",
    "TenantNotSelected",
    "NotFound",
    "Conflict",
    "ValidationError",
    "BadRequest",
    "UserInactive",
    "NotImpersonating",
    "AdminNotActive",
    "InvalidToken",
    "TokenExpired",
    "PaymentRequired",
    "TrialExpired",
    "SubscriptionInactive",
    "EmailDeliveryError",
]
