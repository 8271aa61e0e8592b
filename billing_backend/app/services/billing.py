"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingEventLogger,
    BillingNotifier,
    BillingService,
    CreditLedger,
    EventProcessor,
    PaymentFailure,
    ReconciliationService,
    SubscriptionProvider,
    WebhookVerifier,
    load_billing_config,
)
from ..billing.provider import LocalSandboxSubscriptionProvider, StripeSubscriptionProvider
from ..entitlements import EntitlementStore, InMemoryEntitlementStore


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        logger.warning(
            "Payment failure for user %s subscription %s invoice=%s amount=%s %s",
            failure.user_id,
            failure.subscription_id,
            failure.invoice_id,
            failure.amount_due,
            failure.currency,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s subscription=%s source=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.subscription_id,
            event.source_event_id,
            event.metadata,
        )


def build_store(config: BillingConfig) -> EntitlementStore:
    if config.store_backend == "memory":
        logger.warning("Using in-memory entitlement store; records are lost on restart")
        return InMemoryEntitlementStore(max_attempts=config.max_update_attempts)
    if config.store_backend != "postgres":
        raise ValueError(f"Unknown billing store backend: {config.store_backend}")

    from ..entitlements.repository import PostgresEntitlementStore

    store = PostgresEntitlementStore(max_attempts=config.max_update_attempts)
    if config.auto_create_schema:
        store.ensure_schema()
    return store


def build_provider(config: BillingConfig) -> SubscriptionProvider:
    if config.provider_name == "stripe":
        return StripeSubscriptionProvider(config.stripe_secret_key or "", prices=config.stripe_prices)
    if config.provider_name == "sandbox":
        return LocalSandboxSubscriptionProvider()
    raise ValueError(f"Unknown billing provider: {config.provider_name}")


def build_billing_service(
    config: BillingConfig,
    *,
    store: Optional[EntitlementStore] = None,
    provider: Optional[SubscriptionProvider] = None,
) -> BillingService:
    store = store if store is not None else build_store(config)
    provider = provider if provider is not None else build_provider(config)
    event_logger = LoggingBillingEventLogger()
    processor = EventProcessor(
        store,
        event_logger=event_logger,
        notifier=LoggingBillingNotifier(),
        credits_per_purchase=config.credits_per_purchase,
    )
    return BillingService(
        config=config,
        store=store,
        provider=provider,
        verifier=WebhookVerifier(config.webhook_secret, tolerance_seconds=config.webhook_tolerance_seconds),
        processor=processor,
        ledger=CreditLedger(store, event_logger=event_logger),
        reconciliation=ReconciliationService(store, processor, provider),
    )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = load_billing_config()
    service = build_billing_service(config)
    logger.info(
        "Billing service ready store=%s provider=%s webhook_secret=%s",
        config.store_backend,
        config.provider_name,
        "set" if config.webhook_secret else "missing",
    )
    return service


__all__ = [
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "build_billing_service",
    "build_provider",
    "build_store",
    "get_billing_service",
]
