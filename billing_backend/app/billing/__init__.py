"""Billing domain package: webhook intake, credit ledger and reconciliation."""

from .config import BillingConfig, load_billing_config
from .ledger import CreditLedger
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventType,
    CheckoutSession,
    CheckoutSessionSnapshot,
    PaymentFailure,
    ProcessingOutcome,
    ProcessingResult,
    Product,
    ProviderSubscriptionStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionDiagnosis,
    VerifiedEvent,
)
from .processor import EventProcessor, checkout_idempotency_key
from .protocols import BillingEventLogger, BillingNotifier, SubscriptionProvider
from .reconciliation import ReconciliationService
from .service import BillingService
from .webhooks import SIGNATURE_HEADER, WebhookVerifier, sign_webhook_payload, verify_webhook

__all__ = [
    "SIGNATURE_HEADER",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingEventLogger",
    "BillingEventType",
    "BillingNotifier",
    "BillingService",
    "CheckoutSession",
    "CheckoutSessionSnapshot",
    "CreditLedger",
    "EventProcessor",
    "PaymentFailure",
    "ProcessingOutcome",
    "ProcessingResult",
    "Product",
    "ProviderSubscriptionStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReconciliationService",
    "SubscriptionDiagnosis",
    "SubscriptionProvider",
    "VerifiedEvent",
    "WebhookVerifier",
    "checkout_idempotency_key",
    "load_billing_config",
    "sign_webhook_payload",
    "verify_webhook",
]
