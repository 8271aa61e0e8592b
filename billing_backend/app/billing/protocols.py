"""Collaborator interfaces used by the billing services."""
from __future__ import annotations

from typing import Dict, Optional, Protocol

from .models import (
    BillingAuditEvent,
    CheckoutSession,
    CheckoutSessionSnapshot,
    PaymentFailure,
    Product,
    ProviderSubscriptionStatus,
)


class SubscriptionProvider(Protocol):
    """External payment processor integration.

    Implementations raise
    :class:`~billing_backend.app.entitlements.exceptions.ExternalProviderUnreachable`
    when the provider cannot be queried.
    """

    def get_subscription_status(self, subscription_id: str) -> ProviderSubscriptionStatus:
        """Return the provider's authoritative view of a subscription."""

    def resume_subscription(self, subscription_id: str) -> ProviderSubscriptionStatus:
        """Undo a cancel-at-period-end request."""

    def cancel_subscription(self, subscription_id: str, *, immediate: bool = False) -> ProviderSubscriptionStatus:
        """Cancel at period end, or right away when ``immediate`` is set."""

    def get_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        """Fetch a checkout session to confirm a purchase."""

    def create_checkout_session(
        self,
        *,
        user_id: str,
        product: Product,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create a provider checkout session."""

    def create_portal_session(self, *, subscription_id: str, return_url: str) -> CheckoutSession:
        """Create a provider managed billing portal session."""


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


__all__ = ["BillingEventLogger", "BillingNotifier", "SubscriptionProvider"]
