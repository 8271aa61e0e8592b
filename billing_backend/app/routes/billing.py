"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..billing.webhooks import SIGNATURE_HEADER
from ..entitlements.exceptions import BillingError
from ..schemas.billing import (
    CancelRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ConfirmSessionRequest,
    ConsumeRequest,
    ConsumeResponse,
    DebugConfigResponse,
    DiagnosisResponse,
    EntitlementStatusResponse,
    ManualActivateRequest,
    ProcessingResponse,
    SyncRequest,
    SyncResponse,
    WebhookAck,
)
from ..services.billing import get_billing_service

try:  # pragma: no cover - resolve context when imported from FastAPI app
    from billing_backend import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "billing_backend":
        raise
    from ... import app_context  # type: ignore[no-redef]


logger = logging.getLogger("billing")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
ADMIN_ROLE = "admin"


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _is_admin(user: Any) -> bool:
    return getattr(user, "role", None) == ADMIN_ROLE


def _ensure_can_manage(user: Any, user_id: str) -> None:
    if str(user.id) != user_id and not _is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot manage billing for another user",
        )


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, BillingError):
        return exc.to_http_exception()
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
) -> WebhookAck:
    raw_payload = await request.body()
    service = get_billing_service()
    try:
        result = await run_in_threadpool(service.handle_webhook, raw_payload, signature)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except Exception:
        logger.exception("Unexpected error while handling billing webhook")
        raise
    return WebhookAck(received=True, outcome=result.outcome.value)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutSessionResponse:
    service = get_billing_service()
    try:
        session = service.create_checkout_session(
            user_id=str(current_user.id),
            product=payload.product,
            metadata=payload.metadata,
        )
    except (BillingError, ValueError) as exc:
        raise _translate(exc) from exc
    return CheckoutSessionResponse.from_session(session)


@router.post("/portal-session", response_model=CheckoutSessionResponse)
def create_portal_session(*, current_user=Depends(_get_current_user)) -> CheckoutSessionResponse:
    service = get_billing_service()
    try:
        session = service.create_portal_session(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutSessionResponse.from_session(session)


@router.post("/confirm-session", response_model=ProcessingResponse)
def confirm_checkout_session(
    payload: ConfirmSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ProcessingResponse:
    service = get_billing_service()
    try:
        result = service.confirm_checkout_session(str(current_user.id), payload.session_id)
    except (BillingError, PermissionError, ValueError) as exc:
        raise _translate(exc) from exc
    return ProcessingResponse.from_result(result)


@router.post("/credits/consume", response_model=ConsumeResponse)
def consume_credit(
    payload: ConsumeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ConsumeResponse:
    service = get_billing_service()
    try:
        result = service.consume_credit(str(current_user.id), payload.amount)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ConsumeResponse.from_result(result)


@router.get("/users/{user_id}/status", response_model=EntitlementStatusResponse)
def get_entitlement_status(user_id: str, *, current_user=Depends(_get_current_user)) -> EntitlementStatusResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    return EntitlementStatusResponse.from_record(service.get_status(user_id))


@router.get("/users/{user_id}/diagnosis", response_model=DiagnosisResponse)
def diagnose_subscription(user_id: str, *, current_user=Depends(_get_current_user)) -> DiagnosisResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    return DiagnosisResponse.from_diagnosis(service.diagnose(user_id))


@router.post("/users/{user_id}/activate", response_model=ProcessingResponse)
def activate_subscription(
    user_id: str,
    payload: ManualActivateRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ProcessingResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    logger.info("Manual activation requested user=%s by=%s", user_id, current_user.id)
    try:
        result = service.manually_activate(
            user_id,
            session_id=payload.session_id,
            product=payload.product,
            subscription_id=payload.subscription_id,
        )
    except (BillingError, ValueError) as exc:
        raise _translate(exc) from exc
    return ProcessingResponse.from_result(result)


@router.post("/users/{user_id}/cancel", response_model=ProcessingResponse)
def cancel_subscription(user_id: str, *, current_user=Depends(_get_current_user)) -> ProcessingResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    logger.info("Manual cancellation requested user=%s by=%s", user_id, current_user.id)
    try:
        result = service.manually_cancel(user_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ProcessingResponse.from_result(result)


@router.post("/users/{user_id}/sync", response_model=SyncResponse)
def sync_subscription(
    user_id: str,
    payload: Optional[SyncRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> SyncResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    subscription_id = payload.subscription_id if payload else None
    if subscription_id and not _is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can sync against an explicit subscription",
        )
    try:
        result = service.reconcile(user_id, subscription_id=subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SyncResponse.from_result(result)


@router.post("/users/{user_id}/reactivate", response_model=SyncResponse)
def reactivate_subscription(user_id: str, *, current_user=Depends(_get_current_user)) -> SyncResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    try:
        result = service.reactivate(user_id)
    except (BillingError, ValueError) as exc:
        raise _translate(exc) from exc
    return SyncResponse.from_result(result)


@router.post("/users/{user_id}/cancel-subscription", response_model=SyncResponse)
def request_cancellation(
    user_id: str,
    payload: Optional[CancelRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> SyncResponse:
    _ensure_can_manage(current_user, user_id)
    service = get_billing_service()
    immediate = payload.immediate if payload else False
    logger.info("Provider cancellation requested user=%s by=%s immediate=%s", user_id, current_user.id, immediate)
    try:
        result = service.cancel_subscription(user_id, immediate=immediate)
    except (BillingError, ValueError) as exc:
        raise _translate(exc) from exc
    return SyncResponse.from_result(result)


@router.get("/debug/config", response_model=DebugConfigResponse)
def debug_config(*, current_user=Depends(_get_current_user)) -> DebugConfigResponse:
    if not _is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    service = get_billing_service()
    return DebugConfigResponse(**service.configuration_summary())


__all__ = ["router"]
