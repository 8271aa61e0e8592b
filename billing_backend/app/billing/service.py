"""Facade composing the billing components behind one object for the routes."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Dict, Optional

from ..entitlements.exceptions import BillingNotConfigured, RecordNotFound
from ..entitlements.models import ConsumeResult, CreditBalance, EntitlementRecord
from ..entitlements.store import EntitlementStore
from .config import BillingConfig
from .ledger import CreditLedger
from .models import (
    CheckoutSession,
    ProcessingResult,
    Product,
    ReconciliationResult,
    SubscriptionDiagnosis,
)
from .processor import EventProcessor
from .protocols import SubscriptionProvider
from .reconciliation import ReconciliationService
from .webhooks import WebhookVerifier

logger = logging.getLogger("billing")

# ``slots`` for dataclasses needs Python 3.10.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class BillingService:
    """Entry point for webhooks, credit usage, checkout and manual recovery."""

    config: BillingConfig
    store: EntitlementStore
    provider: SubscriptionProvider
    verifier: WebhookVerifier
    processor: EventProcessor
    ledger: CreditLedger
    reconciliation: ReconciliationService

    def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> ProcessingResult:
        if not self.verifier.configured:
            raise BillingNotConfigured("Webhook secret is not configured")
        event = self.verifier.verify(raw_payload, signature_header)
        logger.info("Received billing webhook %s type=%s", event.id, event.type)
        return self.processor.process(event)

    def get_status(self, user_id: str) -> EntitlementRecord:
        """Return the user's record, or an unsaved empty one when none exists."""

        record = self.store.get(user_id)
        return record if record is not None else EntitlementRecord.new(user_id)

    def consume_credit(self, user_id: str, amount: int = 1) -> ConsumeResult:
        return self.ledger.consume(user_id, amount)

    def grant_credits(self, user_id: str, amount: int) -> EntitlementRecord:
        return self.ledger.grant(user_id, amount)

    def credit_balance(self, user_id: str) -> CreditBalance:
        return self.ledger.balance(user_id)

    def create_checkout_session(
        self,
        *,
        user_id: str,
        product: Product,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        session = self.provider.create_checkout_session(
            user_id=user_id,
            product=product,
            success_url=self.config.success_url,
            cancel_url=self.config.cancel_url,
            metadata=metadata,
        )
        logger.info("Created checkout session %s user=%s product=%s", session.session_id, user_id, product.value)
        return session

    def create_portal_session(self, user_id: str) -> CheckoutSession:
        record = self.store.get(user_id)
        if record is None or not record.provider_subscription_id:
            raise RecordNotFound(f"User {user_id} has no subscription to manage")
        return self.provider.create_portal_session(
            subscription_id=record.provider_subscription_id,
            return_url=self.config.portal_return_url,
        )

    def confirm_checkout_session(self, user_id: str, session_id: str) -> ProcessingResult:
        return self.reconciliation.confirm_checkout_session(user_id, session_id)

    def manually_activate(
        self,
        user_id: str,
        *,
        session_id: str,
        product: Product = Product.PLUS,
        subscription_id: Optional[str] = None,
    ) -> ProcessingResult:
        return self.reconciliation.manually_activate(
            user_id, session_id=session_id, product=product, subscription_id=subscription_id
        )

    def manually_cancel(self, user_id: str) -> ProcessingResult:
        return self.reconciliation.manually_cancel(user_id)

    def reconcile(self, user_id: str, *, subscription_id: Optional[str] = None) -> ReconciliationResult:
        return self.reconciliation.reconcile(user_id, subscription_id=subscription_id)

    def reactivate(self, user_id: str) -> ReconciliationResult:
        return self.reconciliation.reactivate(user_id)

    def cancel_subscription(self, user_id: str, *, immediate: bool = False) -> ReconciliationResult:
        return self.reconciliation.cancel(user_id, immediate=immediate)

    def diagnose(self, user_id: str) -> SubscriptionDiagnosis:
        return self.reconciliation.diagnose(user_id)

    def configuration_summary(self) -> Dict[str, object]:
        """Presence flags only; secrets are never echoed."""

        return {
            "webhook_secret_configured": self.verifier.configured,
            "provider": self.config.provider_name,
            "provider_key_configured": bool(self.config.stripe_secret_key),
            "store": self.config.store_backend,
            "webhook_tolerance_seconds": self.config.webhook_tolerance_seconds,
            "credits_per_purchase": self.config.credits_per_purchase,
            "configured_prices": sorted(self.config.stripe_prices),
        }


__all__ = ["BillingService"]
