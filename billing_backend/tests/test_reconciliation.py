"""Tests for reconciliation and manual recovery."""
from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from billing_backend.app.billing import (
    ProcessingOutcome,
    Product,
    ReconciliationOutcome,
    ReconciliationService,
)
from billing_backend.app.billing.provider import LocalSandboxSubscriptionProvider
from billing_backend.app.entitlements import (
    CheckoutNotCompleted,
    ExternalProviderUnreachable,
    RecordNotFound,
    SubscriptionState,
)

from conftest import checkout_event


CANCELED_AT = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def provider():
    return LocalSandboxSubscriptionProvider()


@pytest.fixture
def reconciliation(store, processor, provider, clock):
    return ReconciliationService(store, processor, provider, clock=clock)


def _subscribe(processor, provider, user_id="user-1", subscription_id="sub_1"):
    provider.set_subscription(subscription_id)
    processor.process(checkout_event(f"evt_{user_id}", user_id=user_id, session_id=f"cs_{user_id}", subscription_id=subscription_id))


def test_missed_cancellation_converges_then_stays_in_sync(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", status="canceled", canceled_at=CANCELED_AT)

    first = reconciliation.reconcile("user-1")

    assert first.outcome == ReconciliationOutcome.UPDATED
    assert first.processing.event_id.startswith("reconcile:")
    record = store.get("user-1")
    assert record.state == SubscriptionState.CANCELED
    assert record.canceled_at == CANCELED_AT

    with pytest.raises(RecordNotFound):
        reconciliation.reconcile("user-1")

    second = reconciliation.reconcile("user-1", subscription_id="sub_1")
    assert second.outcome == ReconciliationOutcome.IN_SYNC
    assert store.get("user-1").version == record.version


def test_in_sync_subscription_emits_nothing(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    version = store.get("user-1").version

    result = reconciliation.reconcile("user-1")

    assert result.outcome == ReconciliationOutcome.IN_SYNC
    assert result.processing is None
    assert store.get("user-1").version == version


def test_missed_activation_is_applied(reconciliation, provider, store):
    provider.set_subscription("sub_7")

    result = reconciliation.reconcile("user-2", subscription_id="sub_7")

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert store.get("user-2").state == SubscriptionState.ACTIVE
    assert store.get("user-2").provider_subscription_id == "sub_7"


def test_pending_cancellation_keeps_subscription_reference(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", cancel_at_period_end=True, canceled_at=CANCELED_AT)

    result = reconciliation.reconcile("user-1")

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert store.get("user-1").state == SubscriptionState.CANCELING
    assert reconciliation.reconcile("user-1").outcome == ReconciliationOutcome.IN_SYNC


def test_concurrent_reconciles_apply_once(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", status="canceled", canceled_at=CANCELED_AT)
    barrier = threading.Barrier(4)
    outcomes = []

    def run():
        barrier.wait()
        outcomes.append(reconciliation.reconcile("user-1", subscription_id="sub_1").outcome)

    threads = [threading.Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ReconciliationOutcome.UPDATED) == 1
    assert outcomes.count(ReconciliationOutcome.IN_SYNC) == 3
    assert store.get("user-1").state == SubscriptionState.CANCELED


def test_provider_outage_leaves_record_untouched(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    before = store.get("user-1")
    provider.unreachable = True

    with pytest.raises(ExternalProviderUnreachable) as excinfo:
        reconciliation.reconcile("user-1")

    assert excinfo.value.retryable is True
    assert store.get("user-1") == before


def test_reconcile_without_subscription_reference_raises(reconciliation, store):
    store.create_if_absent("user-1")

    with pytest.raises(RecordNotFound):
        reconciliation.reconcile("user-1")


def test_manual_activation_dedupes_with_late_webhook(reconciliation, processor, store):
    manual = reconciliation.manually_activate("user-1", session_id="cs_late", subscription_id="sub_late")

    assert manual.outcome == ProcessingOutcome.APPLIED
    assert manual.idempotency_key == "checkout:cs_late"

    webhook = processor.process(
        checkout_event("evt_late", user_id="user-1", session_id="cs_late", subscription_id="sub_late")
    )

    assert webhook.outcome == ProcessingOutcome.DUPLICATE
    assert store.get("user-1").state == SubscriptionState.ACTIVE


def test_manual_activation_of_plus_requires_subscription(reconciliation):
    with pytest.raises(ValueError):
        reconciliation.manually_activate("user-1", session_id="cs_1", product=Product.PLUS)


def test_manual_credit_activation(reconciliation, store):
    result = reconciliation.manually_activate("user-1", session_id="cs_file", product=Product.FILE_CREDIT)

    assert result.outcome == ProcessingOutcome.APPLIED
    assert store.get("user-1").file_credits == 1


def test_manual_cancel_is_idempotent(reconciliation, processor, provider, store):
    _subscribe(processor, provider)

    first = reconciliation.manually_cancel("user-1")

    assert first.outcome == ProcessingOutcome.APPLIED
    assert first.event_id.startswith("manual:cancel:sub_1:")
    assert store.get("user-1").state == SubscriptionState.CANCELED
    with pytest.raises(RecordNotFound):
        reconciliation.manually_cancel("user-1")


def test_manual_cancel_without_record_raises(reconciliation):
    with pytest.raises(RecordNotFound):
        reconciliation.manually_cancel("ghost")


def test_reactivate_resumes_pending_cancellation(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", cancel_at_period_end=True, canceled_at=CANCELED_AT)
    reconciliation.reconcile("user-1")

    result = reconciliation.reactivate("user-1")

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert result.provider_status.active is True
    assert store.get("user-1").state == SubscriptionState.ACTIVE


def test_confirm_checkout_session_applies_paid_session(reconciliation, provider, store):
    session = provider.create_checkout_session(
        user_id="user-1",
        product=Product.FILE_CREDIT,
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )
    with pytest.raises(CheckoutNotCompleted):
        reconciliation.confirm_checkout_session("user-1", session.session_id)

    provider.complete_checkout_session(session.session_id)
    first = reconciliation.confirm_checkout_session("user-1", session.session_id)
    second = reconciliation.confirm_checkout_session("user-1", session.session_id)

    assert first.outcome == ProcessingOutcome.APPLIED
    assert second.outcome == ProcessingOutcome.DUPLICATE
    assert store.get("user-1").file_credits == 1


def test_confirm_checkout_session_rejects_other_users(reconciliation, provider):
    session = provider.create_checkout_session(
        user_id="user-1",
        product=Product.PLUS,
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )
    provider.complete_checkout_session(session.session_id)

    with pytest.raises(PermissionError):
        reconciliation.confirm_checkout_session("user-2", session.session_id)


def test_diagnose_reports_divergence_without_writing(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", status="canceled", canceled_at=CANCELED_AT)
    version = store.get("user-1").version

    diagnosis = reconciliation.diagnose("user-1")

    assert diagnosis.needs_sync is True
    assert diagnosis.sync_action == "mark_canceled"
    assert store.get("user-1").version == version


def test_diagnose_reports_provider_errors(reconciliation, processor, provider):
    _subscribe(processor, provider)
    provider.unreachable = True

    diagnosis = reconciliation.diagnose("user-1")

    assert diagnosis.provider_error
    assert diagnosis.needs_sync is False


def test_diagnose_without_subscription(reconciliation):
    diagnosis = reconciliation.diagnose("ghost")

    assert diagnosis.record is None
    assert diagnosis.sync_action == "no_action"


def test_manual_cancel_adopts_provider_cancellation_time(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    reconciliation.manually_cancel("user-1")
    provider.set_subscription("sub_1", status="canceled", canceled_at=CANCELED_AT)
    assert store.get("user-1").canceled_at != CANCELED_AT

    first = reconciliation.reconcile("user-1", subscription_id="sub_1")

    assert first.outcome == ReconciliationOutcome.UPDATED
    assert store.get("user-1").state == SubscriptionState.CANCELED
    assert store.get("user-1").canceled_at == CANCELED_AT
    assert reconciliation.reconcile("user-1", subscription_id="sub_1").outcome == ReconciliationOutcome.IN_SYNC


def test_pending_cancellation_with_new_cancellation_time_is_refreshed(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    provider.set_subscription("sub_1", cancel_at_period_end=True, canceled_at=CANCELED_AT)
    reconciliation.reconcile("user-1")
    later = datetime(2024, 3, 1, tzinfo=timezone.utc)
    provider.set_subscription("sub_1", cancel_at_period_end=True, canceled_at=later)

    result = reconciliation.reconcile("user-1")

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert store.get("user-1").state == SubscriptionState.CANCELING
    assert store.get("user-1").canceled_at == later


def test_cancel_at_period_end_keeps_subscription_reference(reconciliation, processor, provider, store):
    _subscribe(processor, provider)

    result = reconciliation.cancel("user-1")

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert provider.get_subscription_status("sub_1").cancel_at_period_end is True
    record = store.get("user-1")
    assert record.state == SubscriptionState.CANCELING
    assert record.provider_subscription_id == "sub_1"

    resumed = reconciliation.reactivate("user-1")
    assert resumed.outcome == ReconciliationOutcome.UPDATED
    assert store.get("user-1").state == SubscriptionState.ACTIVE


def test_immediate_cancel_ends_subscription(reconciliation, processor, provider, store):
    _subscribe(processor, provider)

    result = reconciliation.cancel("user-1", immediate=True)

    assert result.outcome == ReconciliationOutcome.UPDATED
    assert provider.get_subscription_status("sub_1").status == "canceled"
    record = store.get("user-1")
    assert record.state == SubscriptionState.CANCELED
    assert record.provider_subscription_id is None
    with pytest.raises(RecordNotFound):
        reconciliation.cancel("user-1")


def test_cancel_during_provider_outage_leaves_record_untouched(reconciliation, processor, provider, store):
    _subscribe(processor, provider)
    before = store.get("user-1")
    provider.unreachable = True

    with pytest.raises(ExternalProviderUnreachable):
        reconciliation.cancel("user-1")

    assert store.get("user-1") == before


def test_cancel_without_subscription_raises(reconciliation):
    with pytest.raises(RecordNotFound):
        reconciliation.cancel("ghost")


def test_manual_activation_applies_after_checkout_without_subscription(reconciliation, processor, store):
    skipped = processor.process(
        checkout_event("evt_1", user_id="user-1", session_id="cs_1", subscription_id=None)
    )
    assert skipped.outcome == ProcessingOutcome.IGNORED

    manual = reconciliation.manually_activate("user-1", session_id="cs_1", subscription_id="sub_1")

    assert manual.outcome == ProcessingOutcome.APPLIED
    assert store.get("user-1").state == SubscriptionState.ACTIVE
    assert store.get("user-1").provider_subscription_id == "sub_1"
