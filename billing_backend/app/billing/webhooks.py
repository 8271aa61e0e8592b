"""Signature verification for inbound provider webhooks.

The provider signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 using the
shared endpoint secret and sends the result as::

    Provider-Signature: t=1700000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

This is Stripe's signing scheme, so the signature itself is checked with
``stripe.WebhookSignature``. Several ``v1`` entries may be present while a
secret is being rotated; the request is authentic if any of them matches.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from ..entitlements.exceptions import VerificationFailed
from .models import VerifiedEvent

logger = logging.getLogger("billing")

SIGNATURE_HEADER = "Provider-Signature"
SIGNATURE_SCHEME = stripe.WebhookSignature.EXPECTED_SCHEME


def _signed_at(header: str) -> int:
    for chunk in header.split(","):
        key, _, value = chunk.strip().partition("=")
        if key.strip() == "t":
            try:
                return int(value.strip())
            except ValueError as exc:
                raise VerificationFailed("Signature timestamp is not an integer") from exc
    raise VerificationFailed("Signature header is missing a timestamp")


def compute_signature(raw_payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.{raw_payload.decode('utf-8')}"
    return stripe.WebhookSignature._compute_signature(signed_payload, secret)


def sign_webhook_payload(raw_payload: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``raw_payload`` as the provider would."""

    signed_at = int(time.time()) if timestamp is None else timestamp
    return f"t={signed_at},{SIGNATURE_SCHEME}={compute_signature(raw_payload, secret, signed_at)}"


def _event_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return {}
    inner = data.get("object")
    if isinstance(inner, dict):
        return inner
    return data


def _created_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def verify_webhook(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int,
    *,
    now: Optional[float] = None,
) -> VerifiedEvent:
    """Authenticate ``raw_payload`` and decode it into a :class:`VerifiedEvent`.

    Raises :class:`VerificationFailed` for a missing or malformed header, a
    signature mismatch, a timestamp outside ``tolerance_seconds`` of the
    current time in either direction, or a body that is not a JSON event
    object.
    """

    if not secret:
        raise VerificationFailed("Webhook secret is not configured")
    if not signature_header:
        raise VerificationFailed(f"Missing {SIGNATURE_HEADER} header")

    try:
        body = raw_payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise VerificationFailed("Webhook body is not valid UTF-8") from exc

    # Replay window is checked below in both directions.
    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance=None)
    except stripe.SignatureVerificationError as exc:
        raise VerificationFailed(f"Webhook signature rejected: {exc.user_message or exc}") from exc

    timestamp = _signed_at(signature_header)
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise VerificationFailed(
            "Webhook timestamp outside tolerance",
            detail={"tolerance_seconds": tolerance_seconds},
        )

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise VerificationFailed("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise VerificationFailed("Webhook body must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise VerificationFailed("Webhook event is missing id or type")

    return VerifiedEvent(
        id=event_id,
        type=event_type,
        data=_event_data(payload),
        created_at=_created_at(payload.get("created")),
    )


class WebhookVerifier:
    """Binds the endpoint secret and replay window for the webhook route."""

    def __init__(self, secret: Optional[str], *, tolerance_seconds: int = 300) -> None:
        self._secret = secret or ""
        self._tolerance_seconds = tolerance_seconds

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        try:
            return verify_webhook(raw_payload, signature_header, self._secret, self._tolerance_seconds)
        except VerificationFailed as exc:
            logger.warning("Rejected webhook: %s", exc.message)
            raise


__all__ = [
    "SIGNATURE_HEADER",
    "WebhookVerifier",
    "compute_signature",
    "sign_webhook_payload",
    "verify_webhook",
]
