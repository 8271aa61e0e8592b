"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for webhook verification, storage and the provider."""

    webhook_secret: Optional[str]
    webhook_tolerance_seconds: int
    credits_per_purchase: int
    max_update_attempts: int
    store_backend: str
    provider_name: str
    stripe_secret_key: Optional[str]
    success_url: str
    cancel_url: str
    portal_return_url: str
    auto_create_schema: bool
    stripe_prices: Mapping[str, str] = field(default_factory=dict)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:8081").rstrip("/")
    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    default_provider = "stripe" if stripe_secret_key else "sandbox"

    return BillingConfig(
        webhook_secret=env_mapping.get("BILLING_WEBHOOK_SECRET") or None,
        webhook_tolerance_seconds=max(1, _to_int(env_mapping.get("BILLING_WEBHOOK_TOLERANCE_SECONDS"), default=300)),
        credits_per_purchase=max(1, _to_int(env_mapping.get("BILLING_CREDITS_PER_PURCHASE"), default=1)),
        max_update_attempts=max(1, _to_int(env_mapping.get("BILLING_MAX_UPDATE_ATTEMPTS"), default=5)),
        store_backend=(env_mapping.get("BILLING_STORE") or "postgres").strip().lower(),
        provider_name=(env_mapping.get("BILLING_PROVIDER") or default_provider).strip().lower(),
        stripe_secret_key=stripe_secret_key,
        success_url=env_mapping.get("BILLING_SUCCESS_URL", f"{app_base_url}/payments/success"),
        cancel_url=env_mapping.get("BILLING_CANCEL_URL", f"{app_base_url}/profile/subscriptions"),
        portal_return_url=env_mapping.get("BILLING_PORTAL_RETURN_URL", f"{app_base_url}/profile/subscriptions"),
        auto_create_schema=_to_bool(env_mapping.get("BILLING_AUTO_CREATE_SCHEMA"), default=False),
        stripe_prices={
            product: price
            for product, price in (
                ("plus", env_mapping.get("STRIPE_PRICE_PLUS")),
                ("file", env_mapping.get("STRIPE_PRICE_FILE")),
                ("founder", env_mapping.get("STRIPE_PRICE_FOUNDER")),
            )
            if price
        },
    )


__all__ = ["BillingConfig", "load_billing_config"]
