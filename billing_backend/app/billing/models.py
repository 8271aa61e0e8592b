"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import EntitlementRecord


class Product(str, Enum):
    """Products sold through provider checkout sessions."""

    PLUS = "plus"
    FILE_CREDIT = "file"
    FOUNDER = "founder"


class BillingEventType(str, Enum):
    """Event types that the application reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    # Synthesized by reconciliation and manual recovery, never sent by the provider.
    SUBSCRIPTION_ACTIVE = "entitlement.subscription_active"
    SUBSCRIPTION_CANCELED = "entitlement.subscription_canceled"

    @classmethod
    def parse(cls, value: str) -> Optional["BillingEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class VerifiedEvent(BaseModel):
    """Provider notification whose signature and freshness were confirmed."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def event_type(self) -> Optional[BillingEventType]:
        return BillingEventType.parse(self.type)


class ProcessingOutcome(str, Enum):
    """How the event processor disposed of an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNROUTED = "unrouted"


class ProcessingResult(BaseModel):
    """Result of feeding one event through the event processor."""

    event_id: str
    idempotency_key: Optional[str] = None
    outcome: ProcessingOutcome
    user_id: Optional[str] = None
    record: Optional[EntitlementRecord] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELING = "subscription_canceling"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    CREDITS_GRANTED = "credits_granted"
    CREDITS_CONSUMED = "credits_consumed"
    FOUNDER_GRANTED = "founder_granted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    user_id: str
    source_event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentFailure(BaseModel):
    """A failed subscription payment reported by the provider."""

    user_id: str
    subscription_id: str
    invoice_id: Optional[str] = None
    amount_due: int = 0
    currency: str = "EUR"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


# Provider statuses that still grant access.
ACTIVE_STATUSES = frozenset({"active", "trialing"})


class ProviderSubscriptionStatus(BaseModel):
    """Authoritative subscription state as reported by the provider."""

    subscription_id: str
    active: bool
    status: str = "active"
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSessionSnapshot(BaseModel):
    """Provider view of a checkout session, used to confirm purchases."""

    session_id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    user_id: Optional[str] = None
    product: Optional[Product] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid" or self.status == "complete"


class CheckoutSession(BaseModel):
    """Return value of a checkout or portal session creation request."""

    session_id: str
    url: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationOutcome(str, Enum):
    """Possible results of reconciling a user with the provider."""

    IN_SYNC = "in_sync"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class ReconciliationResult(BaseModel):
    """Outcome of a reconciliation attempt."""

    user_id: str
    outcome: ReconciliationOutcome
    provider_status: ProviderSubscriptionStatus
    record: EntitlementRecord
    processing: Optional[ProcessingResult] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionDiagnosis(BaseModel):
    """Read-only comparison between local entitlement state and the provider."""

    user_id: str
    record: Optional[EntitlementRecord] = None
    provider_status: Optional[ProviderSubscriptionStatus] = None
    provider_error: Optional[str] = None
    needs_sync: bool = False
    sync_action: str = "no_action"

    model_config = ConfigDict(frozen=True)
