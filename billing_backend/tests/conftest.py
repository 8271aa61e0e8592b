from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from billing_backend.app.billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    EventProcessor,
    PaymentFailure,
    VerifiedEvent,
)
from billing_backend.app.entitlements import InMemoryEntitlementStore


class SteppingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.payment_failures: list[PaymentFailure] = []

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        self.payment_failures.append(failure)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: list[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


def make_event(event_id: str, event_type: str, data: Dict[str, Any]) -> VerifiedEvent:
    return VerifiedEvent(id=event_id, type=event_type, data=data)


def checkout_event(
    event_id: str,
    *,
    user_id: str,
    session_id: str,
    product: str = "plus",
    subscription_id: Optional[str] = "sub_1",
    **metadata: str,
) -> VerifiedEvent:
    return make_event(
        event_id,
        "checkout.session.completed",
        {
            "id": session_id,
            "client_reference_id": user_id,
            "subscription": subscription_id,
            "metadata": {"product": product, "user_id": user_id, **metadata},
        },
    )


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def store(clock):
    return InMemoryEntitlementStore(max_attempts=50, clock=clock)


@pytest.fixture
def event_logger():
    return FakeEventLogger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def processor(store, event_logger, notifier, clock):
    return EventProcessor(store, event_logger=event_logger, notifier=notifier, credits_per_purchase=1, clock=clock)
