"""Payment provider adapters."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

import stripe

from ..entitlements.exceptions import ExternalProviderUnreachable, RecordNotFound
from .models import (
    ACTIVE_STATUSES,
    CheckoutSession,
    CheckoutSessionSnapshot,
    Product,
    ProviderSubscriptionStatus,
)
from .protocols import SubscriptionProvider

logger = logging.getLogger("billing")


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _plain(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return {str(key): str(item) for key, item in dict(value).items()}


def _product(value: Optional[str]) -> Optional[Product]:
    if not value:
        return None
    try:
        return Product(value)
    except ValueError:
        return None


class LocalSandboxSubscriptionProvider(SubscriptionProvider):
    """In-process provider for local development and tests.

    Subscriptions and checkout sessions live in memory. ``unreachable`` makes
    every call fail the way a provider outage would.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: Dict[str, ProviderSubscriptionStatus] = {}
        self._sessions: Dict[str, CheckoutSessionSnapshot] = {}
        self.unreachable = False

    def set_subscription(
        self,
        subscription_id: str,
        *,
        status: str = "active",
        canceled_at: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
    ) -> ProviderSubscriptionStatus:
        snapshot = ProviderSubscriptionStatus(
            subscription_id=subscription_id,
            active=status in ACTIVE_STATUSES and not cancel_at_period_end,
            status=status,
            canceled_at=canceled_at,
            cancel_at_period_end=cancel_at_period_end,
        )
        with self._lock:
            self._subscriptions[subscription_id] = snapshot
        return snapshot

    def complete_checkout_session(
        self, session_id: str, *, subscription_id: Optional[str] = None
    ) -> CheckoutSessionSnapshot:
        """Mark a sandbox checkout as paid, creating its subscription for ``plus``."""

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise RecordNotFound(f"Checkout session {session_id} not found")
            if session.product == Product.PLUS and subscription_id is None:
                subscription_id = f"sub_{uuid4().hex[:16]}"
            session = session.model_copy(
                update={"status": "complete", "payment_status": "paid", "subscription_id": subscription_id}
            )
            self._sessions[session_id] = session
        if subscription_id:
            self.set_subscription(subscription_id)
        return session

    def get_subscription_status(self, subscription_id: str) -> ProviderSubscriptionStatus:
        self._check_reachable()
        with self._lock:
            snapshot = self._subscriptions.get(subscription_id)
        if snapshot is None:
            raise RecordNotFound(f"Subscription {subscription_id} not found")
        return snapshot

    def resume_subscription(self, subscription_id: str) -> ProviderSubscriptionStatus:
        current = self.get_subscription_status(subscription_id)
        if current.status not in ACTIVE_STATUSES:
            raise ValueError(f"Subscription {subscription_id} can no longer be resumed")
        return self.set_subscription(subscription_id, status=current.status)

    def cancel_subscription(self, subscription_id: str, *, immediate: bool = False) -> ProviderSubscriptionStatus:
        current = self.get_subscription_status(subscription_id)
        if current.status not in ACTIVE_STATUSES:
            return current
        now = datetime.now(timezone.utc)
        if immediate:
            return self.set_subscription(subscription_id, status="canceled", canceled_at=now)
        return self.set_subscription(
            subscription_id, status=current.status, canceled_at=now, cancel_at_period_end=True
        )

    def get_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        self._check_reachable()
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise RecordNotFound(f"Checkout session {session_id} not found")
        return session

    def create_checkout_session(
        self,
        *,
        user_id: str,
        product: Product,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        self._check_reachable()
        session_id = f"cs_{uuid4().hex}"
        snapshot = CheckoutSessionSnapshot(
            session_id=session_id,
            status="open",
            payment_status="unpaid",
            user_id=user_id,
            product=product,
            metadata={**(metadata or {}), "product": product.value, "user_id": user_id},
        )
        with self._lock:
            self._sessions[session_id] = snapshot
        return CheckoutSession(
            session_id=session_id,
            url=f"https://billing.local/checkout/{session_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        )

    def create_portal_session(self, *, subscription_id: str, return_url: str) -> CheckoutSession:
        self._check_reachable()
        session_id = f"ps_{uuid4().hex}"
        return CheckoutSession(
            session_id=session_id,
            url=f"https://billing.local/portal/{subscription_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
        )

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise ExternalProviderUnreachable("Sandbox provider is unreachable")


class StripeSubscriptionProvider(SubscriptionProvider):
    """Provider backed by the Stripe API."""

    def __init__(self, api_key: str, *, prices: Optional[Mapping[str, str]] = None) -> None:
        if not api_key:
            raise ValueError("Stripe API key is required")
        stripe.api_key = api_key
        self._prices = dict(prices or {})

    def get_subscription_status(self, subscription_id: str) -> ProviderSubscriptionStatus:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise RecordNotFound(f"Subscription {subscription_id} not found") from exc
            raise self._unreachable("retrieve subscription", exc) from exc
        except stripe.StripeError as exc:
            raise self._unreachable("retrieve subscription", exc) from exc
        return self._to_status(subscription)

    def resume_subscription(self, subscription_id: str) -> ProviderSubscriptionStatus:
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as exc:
            raise self._unreachable("resume subscription", exc) from exc
        logger.info("Resumed Stripe subscription %s", subscription_id)
        return self._to_status(subscription)

    def cancel_subscription(self, subscription_id: str, *, immediate: bool = False) -> ProviderSubscriptionStatus:
        try:
            if immediate:
                subscription = stripe.Subscription.cancel(subscription_id)
            else:
                subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            raise self._unreachable("cancel subscription", exc) from exc
        logger.info("Canceled Stripe subscription %s immediate=%s", subscription_id, immediate)
        return self._to_status(subscription)

    def get_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            raise self._unreachable("retrieve checkout session", exc) from exc

        metadata = _plain(getattr(session, "metadata", None))
        subscription = getattr(session, "subscription", None)
        if subscription is not None and not isinstance(subscription, str):
            subscription = getattr(subscription, "id", None)
        return CheckoutSessionSnapshot(
            session_id=session.id,
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            user_id=getattr(session, "client_reference_id", None) or metadata.get("user_id"),
            product=_product(metadata.get("product")),
            subscription_id=subscription,
            metadata=metadata,
        )

    def create_checkout_session(
        self,
        *,
        user_id: str,
        product: Product,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        price = self._prices.get(product.value)
        if not price:
            raise ValueError(f"No Stripe price configured for product {product.value}")

        session_metadata = {**(metadata or {}), "product": product.value, "user_id": user_id}
        try:
            session = stripe.checkout.Session.create(
                mode="subscription" if product == Product.PLUS else "payment",
                line_items=[{"price": price, "quantity": 1}],
                client_reference_id=user_id,
                metadata=session_metadata,
                success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            raise self._unreachable("create checkout session", exc) from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url,
            expires_at=_from_epoch(getattr(session, "expires_at", None)),
        )

    def create_portal_session(self, *, subscription_id: str, return_url: str) -> CheckoutSession:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            customer = subscription.customer
            if not isinstance(customer, str):
                customer = customer.id
            session = stripe.billing_portal.Session.create(customer=customer, return_url=return_url)
        except stripe.StripeError as exc:
            raise self._unreachable("create portal session", exc) from exc
        return CheckoutSession(session_id=session.id, url=session.url)

    @staticmethod
    def _to_status(subscription: Any) -> ProviderSubscriptionStatus:
        status = getattr(subscription, "status", None) or "unknown"
        cancel_at_period_end = bool(getattr(subscription, "cancel_at_period_end", False))
        return ProviderSubscriptionStatus(
            subscription_id=subscription.id,
            active=status in ACTIVE_STATUSES and not cancel_at_period_end,
            status=status,
            canceled_at=_from_epoch(getattr(subscription, "canceled_at", None)),
            cancel_at_period_end=cancel_at_period_end,
            current_period_end=_from_epoch(getattr(subscription, "current_period_end", None)),
        )

    @staticmethod
    def _unreachable(action: str, exc: Exception) -> ExternalProviderUnreachable:
        logger.warning("Stripe failed to %s: %s", action, exc)
        return ExternalProviderUnreachable(f"Payment provider failed to {action}")


__all__ = ["LocalSandboxSubscriptionProvider", "StripeSubscriptionProvider"]
