"""Domain models for per-user entitlement records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, FrozenSet, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionState(str, Enum):
    """Lifecycle position of a user's subscription."""

    NO_SUBSCRIPTION = "no_subscription"
    ACTIVE = "active"
    CANCELING = "canceling"
    CANCELED = "canceled"


class EntitlementRecord(BaseModel):
    """Persisted subscription status and credit balance for a single user."""

    user_id: str = Field(min_length=1)
    subscription_active: bool = False
    active_since: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    file_credits: int = Field(default=0, ge=0)
    last_payment_at: Optional[datetime] = None
    processed_event_ids: FrozenSet[str] = Field(default_factory=frozenset)
    founder_supporter: bool = False
    founder_since: Optional[datetime] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _active_requires_subscription(self) -> "EntitlementRecord":
        if self.subscription_active and not self.provider_subscription_id:
            raise ValueError("an active subscription requires provider_subscription_id")
        return self

    @classmethod
    def new(cls, user_id: str, *, now: Optional[datetime] = None) -> "EntitlementRecord":
        timestamp = now or datetime.now(timezone.utc)
        return cls(user_id=user_id, created_at=timestamp, updated_at=timestamp)

    @property
    def state(self) -> SubscriptionState:
        if self.subscription_active:
            return SubscriptionState.ACTIVE
        if self.canceled_at is not None:
            if self.provider_subscription_id:
                return SubscriptionState.CANCELING
            return SubscriptionState.CANCELED
        return SubscriptionState.NO_SUBSCRIPTION

    def has_processed(self, event_id: str) -> bool:
        return event_id in self.processed_event_ids

    def evolve(self, **changes: object) -> "EntitlementRecord":
        """Return a validated copy with ``changes`` applied.

        Unlike ``model_copy`` this re-runs validation, so a mutation can never
        produce a negative balance or an active subscription without a
        provider reference.
        """

        data = self.model_dump()
        data.update(changes)
        return EntitlementRecord.model_validate(data)

    def with_processed(self, event_id: str) -> "EntitlementRecord":
        return self.evolve(processed_event_ids=self.processed_event_ids | {event_id})


RecordMutation = Callable[[EntitlementRecord], EntitlementRecord]
RecordPredicate = Callable[[EntitlementRecord], bool]


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a conditional update: applied, or the predicate failed."""

    applied: bool
    record: EntitlementRecord

    @property
    def predicate_failed(self) -> bool:
        return not self.applied


UNLIMITED = "unlimited"

CreditBalance = Union[int, str]


class ConsumeResult(BaseModel):
    """Result of a credit consumption attempt."""

    consumed: bool
    remaining: CreditBalance

    model_config = ConfigDict(frozen=True)
