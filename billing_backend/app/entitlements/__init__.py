"""Entitlement records and their storage."""

from .exceptions import (
    BillingError,
    BillingNotConfigured,
    CheckoutNotCompleted,
    ConditionalUpdateLost,
    ExternalProviderUnreachable,
    InsufficientCredits,
    RecordNotFound,
    VerificationFailed,
)
from .models import (
    UNLIMITED,
    ConsumeResult,
    CreditBalance,
    EntitlementRecord,
    RecordMutation,
    RecordPredicate,
    SubscriptionState,
    UpdateResult,
)
from .store import CompareAndSwapStore, EntitlementStore, InMemoryEntitlementStore

__all__ = [
    "UNLIMITED",
    "BillingError",
    "BillingNotConfigured",
    "CheckoutNotCompleted",
    "CompareAndSwapStore",
    "ConditionalUpdateLost",
    "ConsumeResult",
    "CreditBalance",
    "EntitlementRecord",
    "EntitlementStore",
    "ExternalProviderUnreachable",
    "InMemoryEntitlementStore",
    "InsufficientCredits",
    "RecordMutation",
    "RecordNotFound",
    "RecordPredicate",
    "SubscriptionState",
    "UpdateResult",
    "VerificationFailed",
]
