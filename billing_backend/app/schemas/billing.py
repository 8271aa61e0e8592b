"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    CheckoutSession,
    ProcessingResult,
    Product,
    ReconciliationResult,
    SubscriptionDiagnosis,
)
from ..entitlements.models import UNLIMITED, ConsumeResult, EntitlementRecord


class EntitlementStatusResponse(BaseModel):
    user_id: str = Field(alias="userId")
    state: str
    subscription_active: bool = Field(alias="subscriptionActive")
    active_since: Optional[datetime] = Field(alias="activeSince", default=None)
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    provider_subscription_id: Optional[str] = Field(alias="providerSubscriptionId", default=None)
    file_credits: int = Field(alias="fileCredits")
    credit_balance: Union[int, str] = Field(alias="creditBalance")
    last_payment_at: Optional[datetime] = Field(alias="lastPaymentAt", default=None)
    founder_supporter: bool = Field(alias="founderSupporter", default=False)
    founder_since: Optional[datetime] = Field(alias="founderSince", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: EntitlementRecord) -> "EntitlementStatusResponse":
        return cls(
            user_id=record.user_id,
            state=record.state.value,
            subscription_active=record.subscription_active,
            active_since=record.active_since,
            canceled_at=record.canceled_at,
            provider_subscription_id=record.provider_subscription_id,
            file_credits=record.file_credits,
            credit_balance=UNLIMITED if record.subscription_active else record.file_credits,
            last_payment_at=record.last_payment_at,
            founder_supporter=record.founder_supporter,
            founder_since=record.founder_since,
        )


class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


class ConsumeResponse(BaseModel):
    consumed: bool
    remaining: Union[int, str]

    @classmethod
    def from_result(cls, result: ConsumeResult) -> "ConsumeResponse":
        return cls(consumed=result.consumed, remaining=result.remaining)


class CheckoutSessionRequest(BaseModel):
    product: Product
    metadata: Dict[str, str] = Field(default_factory=dict)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(session_id=session.session_id, url=session.url, expires_at=session.expires_at)


class ConfirmSessionRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ManualActivateRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)
    product: Product = Product.PLUS
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SyncRequest(BaseModel):
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CancelRequest(BaseModel):
    immediate: bool = False


class ProcessingResponse(BaseModel):
    event_id: str = Field(alias="eventId")
    outcome: str
    status: Optional[EntitlementStatusResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ProcessingResult) -> "ProcessingResponse":
        return cls(
            event_id=result.event_id,
            outcome=result.outcome.value,
            status=EntitlementStatusResponse.from_record(result.record) if result.record else None,
        )


class SyncResponse(BaseModel):
    outcome: str
    provider_status: str = Field(alias="providerStatus")
    provider_active: bool = Field(alias="providerActive")
    status: EntitlementStatusResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "SyncResponse":
        return cls(
            outcome=result.outcome.value,
            provider_status=result.provider_status.status,
            provider_active=result.provider_status.active,
            status=EntitlementStatusResponse.from_record(result.record),
        )


class DiagnosisResponse(BaseModel):
    user_id: str = Field(alias="userId")
    local: Optional[EntitlementStatusResponse] = None
    provider_status: Optional[str] = Field(alias="providerStatus", default=None)
    provider_active: Optional[bool] = Field(alias="providerActive", default=None)
    provider_error: Optional[str] = Field(alias="providerError", default=None)
    needs_sync: bool = Field(alias="needsSync")
    sync_action: str = Field(alias="syncAction")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_diagnosis(cls, diagnosis: SubscriptionDiagnosis) -> "DiagnosisResponse":
        provider = diagnosis.provider_status
        return cls(
            user_id=diagnosis.user_id,
            local=EntitlementStatusResponse.from_record(diagnosis.record) if diagnosis.record else None,
            provider_status=provider.status if provider else None,
            provider_active=provider.active if provider else None,
            provider_error=diagnosis.provider_error,
            needs_sync=diagnosis.needs_sync,
            sync_action=diagnosis.sync_action,
        )


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str


class DebugConfigResponse(BaseModel):
    webhook_secret_configured: bool = Field(alias="webhookSecretConfigured")
    provider: str
    provider_key_configured: bool = Field(alias="providerKeyConfigured")
    store: str
    webhook_tolerance_seconds: int = Field(alias="webhookToleranceSeconds")
    credits_per_purchase: int = Field(alias="creditsPerPurchase")
    configured_prices: List[str] = Field(alias="configuredPrices", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "CancelRequest",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "ConfirmSessionRequest",
    "ConsumeRequest",
    "ConsumeResponse",
    "DebugConfigResponse",
    "DiagnosisResponse",
    "EntitlementStatusResponse",
    "ManualActivateRequest",
    "ProcessingResponse",
    "SyncRequest",
    "SyncResponse",
    "WebhookAck",
]
