"""Errors surfaced by the entitlement and billing layers."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class BillingError(Exception):
    """Base error carrying an API-facing code and status."""

    code = "billing_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.retryable:
            body["retryable"] = True
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class VerificationFailed(BillingError):
    """Webhook signature or timestamp could not be verified."""

    code = "webhook_verification_failed"
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientCredits(BillingError):
    """A consume call asked for more credits than the balance holds."""

    code = "insufficient_credits"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, user_id: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"User {user_id} has {available} credit(s); {requested} requested",
            detail={"requested": requested, "available": available},
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class RecordNotFound(BillingError, LookupError):
    """No entitlement record (or no subscription on it) exists for the user."""

    code = "billing_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class CheckoutNotCompleted(BillingError):
    """A checkout session was confirmed before the provider marked it paid."""

    code = "checkout_not_completed"
    status_code = status.HTTP_409_CONFLICT


class ConditionalUpdateLost(BillingError):
    """Optimistic update kept losing to concurrent writers."""

    code = "conditional_update_lost"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ExternalProviderUnreachable(BillingError):
    """The payment provider could not be queried; local state is untouched."""

    code = "provider_unreachable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class BillingNotConfigured(BillingError):
    """A required billing setting (webhook secret, provider key) is missing."""

    code = "billing_not_configured"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


__all__ = [
    "BillingError",
    "BillingNotConfigured",
    "CheckoutNotCompleted",
    "ConditionalUpdateLost",
    "ExternalProviderUnreachable",
    "InsufficientCredits",
    "RecordNotFound",
    "VerificationFailed",
]
