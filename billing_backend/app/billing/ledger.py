"""Atomic grant and consume operations on a user's file credit balance."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..entitlements.exceptions import InsufficientCredits
from ..entitlements.models import (
    UNLIMITED,
    ConsumeResult,
    CreditBalance,
    EntitlementRecord,
    RecordMutation,
)
from ..entitlements.store import EntitlementStore
from .models import BillingAuditEvent, BillingAuditEventType
from .protocols import BillingEventLogger

logger = logging.getLogger("billing")


def grant_mutation(amount: int, now: datetime) -> RecordMutation:
    """Return a mutation adding ``amount`` credits and stamping the payment time."""

    if amount < 1:
        raise ValueError("amount must be >= 1")

    def _grant(record: EntitlementRecord) -> EntitlementRecord:
        return record.evolve(file_credits=record.file_credits + amount, last_payment_at=now)

    return _grant


class CreditLedger:
    """Grants and consumes metered credits.

    Active subscribers have unlimited usage, so consumption never touches
    their balance. For everyone else the decrement is conditional on the
    balance still covering the request at write time, which keeps the
    balance non-negative no matter how many callers race.
    """

    def __init__(
        self,
        store: EntitlementStore,
        *,
        event_logger: Optional[BillingEventLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._event_logger = event_logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def grant(self, user_id: str, amount: int) -> EntitlementRecord:
        mutation = grant_mutation(amount, self._clock())
        self._store.create_if_absent(user_id)
        record = self._store.apply_update(user_id, mutation)
        logger.info("Granted %s credit(s) user=%s balance=%s", amount, user_id, record.file_credits)
        self._log(BillingAuditEventType.CREDITS_GRANTED, user_id, amount, record)
        return record

    def consume(self, user_id: str, amount: int = 1) -> ConsumeResult:
        if amount < 1:
            raise ValueError("amount must be >= 1")

        if self._store.get(user_id) is None:
            raise InsufficientCredits(user_id, requested=amount, available=0)

        result = self._store.try_conditional_update(
            user_id,
            lambda record: not record.subscription_active and record.file_credits >= amount,
            lambda record: record.evolve(file_credits=record.file_credits - amount),
        )
        if result.applied:
            self._log(BillingAuditEventType.CREDITS_CONSUMED, user_id, amount, result.record)
            return ConsumeResult(consumed=True, remaining=result.record.file_credits)
        if result.record.subscription_active:
            return ConsumeResult(consumed=False, remaining=UNLIMITED)
        raise InsufficientCredits(user_id, requested=amount, available=result.record.file_credits)

    def balance(self, user_id: str) -> CreditBalance:
        record = self._store.get(user_id)
        if record is None:
            return 0
        if record.subscription_active:
            return UNLIMITED
        return record.file_credits

    def _log(
        self,
        event_type: BillingAuditEventType,
        user_id: str,
        amount: int,
        record: EntitlementRecord,
    ) -> None:
        if self._event_logger is None:
            return
        self._event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                user_id=user_id,
                metadata={"amount": str(amount), "balance": str(record.file_credits)},
            )
        )


__all__ = ["CreditLedger", "grant_mutation"]
