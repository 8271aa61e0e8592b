"""Re-derives local entitlement state from the payment provider."""
from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterator, Optional

from ..entitlements.exceptions import CheckoutNotCompleted, ExternalProviderUnreachable, RecordNotFound
from ..entitlements.models import EntitlementRecord, SubscriptionState
from ..entitlements.store import EntitlementStore
from .models import (
    ACTIVE_STATUSES,
    BillingEventType,
    ProcessingOutcome,
    ProcessingResult,
    Product,
    ProviderSubscriptionStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionDiagnosis,
    VerifiedEvent,
)
from .processor import EventProcessor
from .protocols import SubscriptionProvider

logger = logging.getLogger("billing")


class KeyedLock:
    """Per-key mutual exclusion; locks for idle keys are discarded."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def is_in_sync(record: EntitlementRecord, status: ProviderSubscriptionStatus) -> bool:
    """Return whether ``record`` already reflects the provider's view."""

    if status.active:
        return (
            record.subscription_active
            and record.provider_subscription_id == status.subscription_id
            and record.canceled_at is None
        )
    canceled_at_matches = status.canceled_at is None or record.canceled_at == status.canceled_at
    if _is_pending_cancel(status):
        return (
            record.state == SubscriptionState.CANCELING
            and record.provider_subscription_id == status.subscription_id
            and canceled_at_matches
        )
    return (
        not record.subscription_active
        and record.provider_subscription_id != status.subscription_id
        and record.canceled_at is not None
        and canceled_at_matches
    )


def _is_pending_cancel(status: ProviderSubscriptionStatus) -> bool:
    return not status.active and status.cancel_at_period_end and status.status in ACTIVE_STATUSES


def _observed(status: ProviderSubscriptionStatus) -> str:
    if status.active:
        return "active"
    return "canceling" if _is_pending_cancel(status) else "canceled"


def reconciliation_event_id(record: EntitlementRecord, status: ProviderSubscriptionStatus) -> str:
    """Derive a deterministic event id for correcting ``record`` towards ``status``.

    The local fingerprint is part of the digest: the same divergence seen by
    concurrent or repeated runs maps to one id, while a later divergence
    from a different local state gets a fresh one.
    """

    observed = _observed(status)
    fingerprint = "|".join(
        [
            str(record.subscription_active),
            record.provider_subscription_id or "",
            _iso(record.active_since),
            _iso(record.canceled_at),
        ]
    )
    material = "|".join([status.subscription_id, observed, _iso(status.canceled_at), fingerprint])
    return "reconcile:" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


class ReconciliationService:
    """Resolves divergence between local records and the provider.

    Every correction is expressed as a synthesized event and fed through the
    :class:`EventProcessor`, so webhooks, reconciliation and manual recovery
    share one mutation path and one idempotency guard.
    """

    def __init__(
        self,
        store: EntitlementStore,
        processor: EventProcessor,
        provider: SubscriptionProvider,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._provider = provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLock()

    def reconcile(self, user_id: str, *, subscription_id: Optional[str] = None) -> ReconciliationResult:
        with self._locks.hold(user_id):
            record = self._store.get(user_id)
            target = subscription_id or (record.provider_subscription_id if record else None)
            if not target:
                raise RecordNotFound(f"No subscription reference to reconcile for user {user_id}")
            if record is None:
                record = self._store.create_if_absent(user_id)

            status = self._provider.get_subscription_status(target)
            if is_in_sync(record, status):
                logger.info("Reconcile user=%s subscription=%s already in sync", user_id, target)
                return ReconciliationResult(
                    user_id=user_id,
                    outcome=ReconciliationOutcome.IN_SYNC,
                    provider_status=status,
                    record=record,
                )

            event = self._synthesize(record, status)
            processing = self._processor.process(event)
            outcome = {
                ProcessingOutcome.APPLIED: ReconciliationOutcome.UPDATED,
                ProcessingOutcome.DUPLICATE: ReconciliationOutcome.DUPLICATE,
            }.get(processing.outcome, ReconciliationOutcome.SKIPPED)
            logger.info(
                "Reconcile user=%s subscription=%s provider_active=%s outcome=%s",
                user_id,
                target,
                status.active,
                outcome.value,
            )
            return ReconciliationResult(
                user_id=user_id,
                outcome=outcome,
                provider_status=status,
                record=processing.record or record,
                processing=processing,
            )

    def manually_activate(
        self,
        user_id: str,
        *,
        session_id: str,
        product: Product = Product.PLUS,
        subscription_id: Optional[str] = None,
    ) -> ProcessingResult:
        """Apply a checkout whose webhook never arrived.

        The checkout session id keys the change, so a late webhook for the
        same session becomes a duplicate.
        """

        if not session_id:
            raise ValueError("session_id is required")
        if product == Product.PLUS and not subscription_id:
            raise ValueError("subscription_id is required to activate a subscription")

        logger.info("Manual activation user=%s session=%s product=%s", user_id, session_id, product.value)
        event = VerifiedEvent(
            id=f"manual:activate:{session_id}",
            type=BillingEventType.CHECKOUT_COMPLETED.value,
            data={
                "id": session_id,
                "client_reference_id": user_id,
                "subscription": subscription_id,
                "metadata": {"product": product.value, "user_id": user_id, "source": "manual"},
            },
        )
        return self._processor.process(event)

    def manually_cancel(self, user_id: str) -> ProcessingResult:
        with self._locks.hold(user_id):
            record = self._store.get(user_id)
            if record is None or not record.provider_subscription_id:
                raise RecordNotFound(f"No subscription found to cancel for user {user_id}")

            subscription_id = record.provider_subscription_id
            logger.info("Manual cancellation user=%s subscription=%s", user_id, subscription_id)
            event = VerifiedEvent(
                id=f"manual:cancel:{subscription_id}:{_iso(record.active_since) or 'never'}",
                type=BillingEventType.SUBSCRIPTION_CANCELED.value,
                data={"user_id": user_id, "subscription_id": subscription_id, "source": "manual"},
            )
            return self._processor.process(event)

    def reactivate(self, user_id: str) -> ReconciliationResult:
        record = self._store.get(user_id)
        if record is None or not record.provider_subscription_id:
            raise RecordNotFound(f"No subscription found to reactivate for user {user_id}")

        subscription_id = record.provider_subscription_id
        logger.info("Reactivating subscription %s user=%s", subscription_id, user_id)
        self._provider.resume_subscription(subscription_id)
        return self.reconcile(user_id, subscription_id=subscription_id)

    def cancel(self, user_id: str, *, immediate: bool = False) -> ReconciliationResult:
        """Cancel the user's subscription with the provider and converge on the result."""

        record = self._store.get(user_id)
        if record is None or not record.provider_subscription_id:
            raise RecordNotFound(f"No subscription found to cancel for user {user_id}")

        subscription_id = record.provider_subscription_id
        logger.info("Canceling subscription %s user=%s immediate=%s", subscription_id, user_id, immediate)
        self._provider.cancel_subscription(subscription_id, immediate=immediate)
        return self.reconcile(user_id, subscription_id=subscription_id)

    def confirm_checkout_session(self, user_id: str, session_id: str) -> ProcessingResult:
        """Apply a checkout the client reports as finished, after asking the provider."""

        snapshot = self._provider.get_checkout_session(session_id)
        if snapshot.user_id and snapshot.user_id != user_id:
            raise PermissionError("Checkout session belongs to another user")
        if not snapshot.is_paid:
            raise CheckoutNotCompleted(
                "Checkout session not completed",
                detail={"status": snapshot.status, "payment_status": snapshot.payment_status},
            )
        if snapshot.product is None:
            raise ValueError("Checkout session has no product")

        event = VerifiedEvent(
            id=f"confirm:{session_id}",
            type=BillingEventType.CHECKOUT_COMPLETED.value,
            data={
                "id": session_id,
                "client_reference_id": user_id,
                "subscription": snapshot.subscription_id,
                "metadata": {**snapshot.metadata, "product": snapshot.product.value, "user_id": user_id},
            },
        )
        return self._processor.process(event)

    def diagnose(self, user_id: str) -> SubscriptionDiagnosis:
        record = self._store.get(user_id)
        if record is None or not record.provider_subscription_id:
            return SubscriptionDiagnosis(user_id=user_id, record=record)

        try:
            status = self._provider.get_subscription_status(record.provider_subscription_id)
        except (ExternalProviderUnreachable, RecordNotFound) as exc:
            return SubscriptionDiagnosis(user_id=user_id, record=record, provider_error=exc.message)

        needs_sync = not is_in_sync(record, status)
        if not needs_sync:
            action = "no_action"
        elif status.active:
            action = "mark_active"
        else:
            action = "mark_canceling" if _is_pending_cancel(status) else "mark_canceled"
        return SubscriptionDiagnosis(
            user_id=user_id,
            record=record,
            provider_status=status,
            needs_sync=needs_sync,
            sync_action=action,
        )

    def _synthesize(self, record: EntitlementRecord, status: ProviderSubscriptionStatus) -> VerifiedEvent:
        event_type = (
            BillingEventType.SUBSCRIPTION_ACTIVE if status.active else BillingEventType.SUBSCRIPTION_CANCELED
        )
        data = {
            "user_id": record.user_id,
            "subscription_id": status.subscription_id,
            "source": "reconcile",
        }
        if _is_pending_cancel(status):
            data["cancel_at_period_end"] = True
        if status.canceled_at is not None:
            data["canceled_at"] = status.canceled_at.isoformat()
        return VerifiedEvent(
            id=reconciliation_event_id(record, status),
            type=event_type.value,
            data=data,
            created_at=self._clock(),
        )


__all__ = ["KeyedLock", "ReconciliationService", "is_in_sync", "reconciliation_event_id"]
