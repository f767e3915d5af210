"""Entitlement error taxonomy.

Each error carries the HTTP status it maps to and a stable error_code so
checkout and admin endpoints can return structured, actionable responses.
The webhook endpoint never surfaces these to the provider.
"""

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base class for typed entitlement failures."""

    status_code = 500
    error_code = "ENTITLEMENT_ERROR"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.retryable:
            body["retryable"] = True
        body.update(self.context)
        return body


class ValidationError(EntitlementError, ValueError):
    """Bad input or a transition whose precondition does not hold. Not retried."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFound(EntitlementError, LookupError):
    status_code = 404
    error_code = "NOT_FOUND"


class InsufficientCredits(EntitlementError):
    """Business rule: the account cannot afford the requested consumption."""

    status_code = 402
    error_code = "INSUFFICIENT_CREDITS"

    def __init__(self, remaining: int, requested: int, upgrade_url: Optional[str] = None):
        super().__init__(
            f"Insufficient credits: {remaining} remaining, {requested} requested",
            remaining=remaining,
            requested=requested,
            upgrade_url=upgrade_url or "/#pricing",
        )
        self.remaining = remaining
        self.requested = requested


class EmailInUse(EntitlementError):
    status_code = 409
    error_code = "EMAIL_IN_USE"


class ConcurrencyConflict(EntitlementError):
    """Lost a single-writer race. Callers re-read and retry once."""

    status_code = 409
    error_code = "CONCURRENCY_CONFLICT"


class ProvisioningFailed(EntitlementError):
    """External plan creation failed. Nothing was persisted."""

    status_code = 502
    error_code = "PROVISIONING_FAILED"

    def __init__(self, plan_type: str, cause: Any):
        super().__init__(
            f"Failed to provision billing plan {plan_type}: {cause}",
            plan_type=plan_type,
            cause=str(cause),
        )
        self.plan_type = plan_type
        self.cause = cause


class ProviderUnavailable(EntitlementError):
    """Timeout or 5xx from the billing provider. Safe to retry the outer operation."""

    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"
    retryable = True
