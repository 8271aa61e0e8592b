"""Event-driven state machine that mutates entitlement records."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from ..entitlements.models import EntitlementRecord, SubscriptionState
from ..entitlements.store import EntitlementStore
from .ledger import grant_mutation
from .models import (
    ACTIVE_STATUSES,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventType,
    PaymentFailure,
    ProcessingOutcome,
    ProcessingResult,
    Product,
    VerifiedEvent,
)
from .protocols import BillingEventLogger, BillingNotifier

logger = logging.getLogger("billing")

Effect = Callable[[EntitlementRecord], Optional[EntitlementRecord]]

_SUBSCRIPTION_EVENTS = {
    BillingEventType.SUBSCRIPTION_UPDATED,
    BillingEventType.SUBSCRIPTION_DELETED,
}
_INVOICE_EVENTS = {
    BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
    BillingEventType.INVOICE_PAYMENT_FAILED,
}
_SYNTHESIZED_EVENTS = {
    BillingEventType.SUBSCRIPTION_ACTIVE,
    BillingEventType.SUBSCRIPTION_CANCELED,
}


def checkout_idempotency_key(session_id: str) -> str:
    """Checkout completions are keyed by session so every delivery path dedupes."""

    return f"checkout:{session_id}"


def _no_effect(record: EntitlementRecord) -> Optional[EntitlementRecord]:
    return None


@dataclass(frozen=True)
class _Plan:
    user_id: Optional[str]
    idempotency_key: str
    effect: Effect = _no_effect
    audit_type: Optional[BillingAuditEventType] = None
    subscription_id: Optional[str] = None
    payment_failure: Optional[Dict[str, Any]] = None
    record_key: bool = True


class _TrackedEffect:
    """Wraps an effect so the caller learns whether the winning write changed state."""

    def __init__(self, effect: Effect, idempotency_key: str) -> None:
        self._effect = effect
        self._key = idempotency_key
        self.applied = False

    def __call__(self, record: EntitlementRecord) -> EntitlementRecord:
        updated = self._effect(record)
        self.applied = updated is not None
        return (updated or record).with_processed(self._key)


class EventProcessor:
    """Applies verified provider events, synthesized reconciliation events and
    manual recovery events to entitlement records.

    Each event is applied at most once per user: the effect and the
    idempotency key are written in the same conditional update, which only
    succeeds while the key is still absent from ``processed_event_ids``.
    """

    def __init__(
        self,
        store: EntitlementStore,
        *,
        event_logger: Optional[BillingEventLogger] = None,
        notifier: Optional[BillingNotifier] = None,
        credits_per_purchase: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._event_logger = event_logger
        self._notifier = notifier
        self._credits_per_purchase = max(1, credits_per_purchase)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process(self, event: VerifiedEvent) -> ProcessingResult:
        plan = self._plan(event, self._clock())
        if plan.user_id is None:
            logger.warning("Could not route billing event %s type=%s to a user", event.id, event.type)
            return ProcessingResult(
                event_id=event.id,
                idempotency_key=plan.idempotency_key,
                outcome=ProcessingOutcome.UNROUTED,
            )

        current = self._store.create_if_absent(plan.user_id)
        if current.has_processed(plan.idempotency_key):
            logger.info("Skipping duplicate billing event %s user=%s", event.id, plan.user_id)
            return self._result(event, plan, ProcessingOutcome.DUPLICATE, current)
        if not plan.record_key:
            return self._result(event, plan, ProcessingOutcome.IGNORED, current)

        tracked = _TrackedEffect(plan.effect, plan.idempotency_key)
        key = plan.idempotency_key
        update = self._store.try_conditional_update(
            plan.user_id,
            lambda record: not record.has_processed(key),
            tracked,
        )
        if not update.applied:
            logger.info("Concurrent delivery already applied billing event %s user=%s", event.id, plan.user_id)
            return self._result(event, plan, ProcessingOutcome.DUPLICATE, update.record)

        record = update.record
        if tracked.applied:
            logger.info(
                "Applied billing event %s type=%s user=%s state=%s credits=%s",
                event.id,
                event.type,
                plan.user_id,
                record.state.value,
                record.file_credits,
            )
            self._audit(event, plan, record)
            outcome = ProcessingOutcome.APPLIED
        else:
            logger.info("Recorded billing event %s type=%s user=%s without state change", event.id, event.type, plan.user_id)
            outcome = ProcessingOutcome.IGNORED

        if plan.payment_failure is not None and self._notifier is not None:
            self._notifier.notify_payment_failure(
                PaymentFailure(user_id=plan.user_id, occurred_at=self._clock(), **plan.payment_failure)
            )
        return self._result(event, plan, outcome, record)

    def _result(
        self,
        event: VerifiedEvent,
        plan: _Plan,
        outcome: ProcessingOutcome,
        record: EntitlementRecord,
    ) -> ProcessingResult:
        return ProcessingResult(
            event_id=event.id,
            idempotency_key=plan.idempotency_key,
            outcome=outcome,
            user_id=plan.user_id,
            record=record,
        )

    def _audit(self, event: VerifiedEvent, plan: _Plan, record: EntitlementRecord) -> None:
        if self._event_logger is None or plan.audit_type is None:
            return
        self._event_logger.log(
            BillingAuditEvent(
                event_type=plan.audit_type,
                user_id=record.user_id,
                source_event_id=event.id,
                subscription_id=plan.subscription_id or record.provider_subscription_id,
                metadata={"state": record.state.value, "file_credits": str(record.file_credits)},
                occurred_at=self._clock(),
            )
        )

    def _plan(self, event: VerifiedEvent, now: datetime) -> _Plan:
        event_type = event.event_type
        data = event.data
        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            return self._plan_checkout(event, data, now)
        if event_type in _SUBSCRIPTION_EVENTS:
            return self._plan_subscription_change(event, event_type, data, now)
        if event_type in _INVOICE_EVENTS:
            return self._plan_invoice(event, event_type, data, now)
        if event_type in _SYNTHESIZED_EVENTS:
            return self._plan_synthesized(event, event_type, data, now)

        logger.info("Unhandled billing event type %s (%s)", event.type, event.id)
        return _Plan(user_id=_user_from_metadata(data), idempotency_key=event.id)

    def _plan_checkout(self, event: VerifiedEvent, data: Mapping[str, Any], now: datetime) -> _Plan:
        metadata = _metadata(data)
        user_id = _clean(data.get("client_reference_id")) or _clean(metadata.get("user_id"))
        session_id = _clean(data.get("id"))
        if not session_id:
            logger.warning("Checkout event %s has no session id", event.id)
            return _Plan(user_id=user_id, idempotency_key=event.id)

        key = checkout_idempotency_key(session_id)
        try:
            product = Product(metadata.get("product", ""))
        except ValueError:
            logger.warning("Checkout session %s has unsupported product %r", session_id, metadata.get("product"))
            return _Plan(user_id=user_id, idempotency_key=key)

        if product == Product.PLUS:
            subscription_id = _reference(data.get("subscription"))
            if not subscription_id:
                # Left unrecorded so manual activation of the session can still apply.
                logger.warning("Checkout session %s completed without a subscription reference", session_id)
                return _Plan(user_id=user_id, idempotency_key=key, record_key=False)

            def activate(record: EntitlementRecord) -> Optional[EntitlementRecord]:
                return record.evolve(
                    subscription_active=True,
                    active_since=now,
                    canceled_at=None,
                    provider_subscription_id=subscription_id,
                    last_payment_at=now,
                )

            return _Plan(
                user_id=user_id,
                idempotency_key=key,
                effect=activate,
                audit_type=BillingAuditEventType.SUBSCRIPTION_ACTIVATED,
                subscription_id=subscription_id,
            )

        if product == Product.FILE_CREDIT:
            amount = _positive_int(metadata.get("credits")) or self._credits_per_purchase
            return _Plan(
                user_id=user_id,
                idempotency_key=key,
                effect=grant_mutation(amount, now),
                audit_type=BillingAuditEventType.CREDITS_GRANTED,
            )

        def grant_founder(record: EntitlementRecord) -> Optional[EntitlementRecord]:
            if record.founder_supporter:
                return None
            return record.evolve(founder_supporter=True, founder_since=now, last_payment_at=now)

        return _Plan(
            user_id=user_id,
            idempotency_key=key,
            effect=grant_founder,
            audit_type=BillingAuditEventType.FOUNDER_GRANTED,
        )

    def _plan_subscription_change(
        self,
        event: VerifiedEvent,
        event_type: BillingEventType,
        data: Mapping[str, Any],
        now: datetime,
    ) -> _Plan:
        subscription_id = _clean(data.get("id"))
        user_id = self._user_for_subscription(subscription_id) or _user_from_metadata(data)
        canceled_at = _parse_timestamp(data.get("canceled_at"))

        if event_type == BillingEventType.SUBSCRIPTION_DELETED:

            def cancel(record: EntitlementRecord) -> Optional[EntitlementRecord]:
                if not subscription_id or record.provider_subscription_id != subscription_id:
                    return None
                return record.evolve(
                    subscription_active=False,
                    canceled_at=canceled_at or now,
                    provider_subscription_id=None,
                )

            return _Plan(
                user_id=user_id,
                idempotency_key=event.id,
                effect=cancel,
                audit_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                subscription_id=subscription_id,
            )

        cancel_at_period_end = bool(data.get("cancel_at_period_end"))
        status = _clean(data.get("status"))

        def update(record: EntitlementRecord) -> Optional[EntitlementRecord]:
            if not subscription_id or record.provider_subscription_id != subscription_id:
                return None
            if cancel_at_period_end:
                if record.state == SubscriptionState.CANCELING and canceled_at in (None, record.canceled_at):
                    return None
                return record.evolve(subscription_active=False, canceled_at=canceled_at or now)
            if not cancel_at_period_end and status in ACTIVE_STATUSES and record.state == SubscriptionState.CANCELING:
                return record.evolve(subscription_active=True, canceled_at=None)
            return None

        audit_type = (
            BillingAuditEventType.SUBSCRIPTION_CANCELING
            if cancel_at_period_end
            else BillingAuditEventType.SUBSCRIPTION_ACTIVATED
        )
        return _Plan(
            user_id=user_id,
            idempotency_key=event.id,
            effect=update,
            audit_type=audit_type,
            subscription_id=subscription_id,
        )

    def _plan_invoice(
        self,
        event: VerifiedEvent,
        event_type: BillingEventType,
        data: Mapping[str, Any],
        now: datetime,
    ) -> _Plan:
        subscription_id = _reference(data.get("subscription"))
        user_id = self._user_for_subscription(subscription_id) or _user_from_metadata(data)

        if event_type == BillingEventType.INVOICE_PAYMENT_SUCCEEDED:

            def record_payment(record: EntitlementRecord) -> Optional[EntitlementRecord]:
                if not record.subscription_active or record.provider_subscription_id != subscription_id:
                    return None
                return record.evolve(last_payment_at=now)

            return _Plan(
                user_id=user_id,
                idempotency_key=event.id,
                effect=record_payment,
                audit_type=BillingAuditEventType.PAYMENT_SUCCEEDED,
                subscription_id=subscription_id,
            )

        # Payment failures never revoke access; customer.subscription.deleted does.
        logger.warning("Payment failed for subscription %s user=%s", subscription_id, user_id)
        failure = {
            "subscription_id": subscription_id or "",
            "invoice_id": _clean(data.get("id")),
            "amount_due": _positive_int(data.get("amount_due")) or 0,
            "currency": (_clean(data.get("currency")) or "eur").upper(),
        }
        return _Plan(
            user_id=user_id,
            idempotency_key=event.id,
            subscription_id=subscription_id,
            payment_failure=failure,
        )

    def _plan_synthesized(
        self,
        event: VerifiedEvent,
        event_type: BillingEventType,
        data: Mapping[str, Any],
        now: datetime,
    ) -> _Plan:
        user_id = _clean(data.get("user_id"))
        subscription_id = _clean(data.get("subscription_id"))

        if event_type == BillingEventType.SUBSCRIPTION_ACTIVE:

            def activate(record: EntitlementRecord) -> Optional[EntitlementRecord]:
                if not subscription_id:
                    return None
                already_active = record.subscription_active and record.active_since is not None
                return record.evolve(
                    subscription_active=True,
                    provider_subscription_id=subscription_id,
                    canceled_at=None,
                    active_since=record.active_since if already_active else now,
                )

            return _Plan(
                user_id=user_id,
                idempotency_key=event.id,
                effect=activate,
                audit_type=BillingAuditEventType.SUBSCRIPTION_ACTIVATED,
                subscription_id=subscription_id,
            )

        canceled_at = _parse_timestamp(data.get("canceled_at"))
        # A pending cancellation keeps the subscription reference so it can be resumed.
        pending = bool(data.get("cancel_at_period_end")) and subscription_id is not None

        def cancel(record: EntitlementRecord) -> Optional[EntitlementRecord]:
            if record.provider_subscription_id not in (None, subscription_id):
                return None
            return record.evolve(
                subscription_active=False,
                canceled_at=canceled_at or now,
                provider_subscription_id=subscription_id if pending else None,
            )

        return _Plan(
            user_id=user_id,
            idempotency_key=event.id,
            effect=cancel,
            audit_type=(
                BillingAuditEventType.SUBSCRIPTION_CANCELING if pending else BillingAuditEventType.SUBSCRIPTION_CANCELED
            ),
            subscription_id=subscription_id,
        )

    def _user_for_subscription(self, subscription_id: Optional[str]) -> Optional[str]:
        if not subscription_id:
            return None
        record = self._store.find_by_subscription_id(subscription_id)
        return record.user_id if record else None


def _clean(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _reference(value: object) -> Optional[str]:
    """Provider references arrive either as ids or as expanded objects."""

    if isinstance(value, Mapping):
        return _clean(value.get("id"))
    return _clean(value)


def _metadata(data: Mapping[str, Any]) -> Dict[str, str]:
    value = data.get("metadata")
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _user_from_metadata(data: Mapping[str, Any]) -> Optional[str]:
    return _clean(data.get("client_reference_id")) or _clean(_metadata(data).get("user_id"))


def _positive_int(value: object) -> Optional[int]:
    try:
        number = int(str(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return _to_datetime(value)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Ignoring unparseable timestamp %r in billing event", value)
        return None


def _to_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


__all__ = ["EventProcessor", "checkout_idempotency_key"]
