"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment provider integration."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    webhook_tolerance_seconds: int
    provider_timeout_seconds: float
    provider_max_retries: int
    frontend_origin: str
    invoice_fallback_digits: int

    @property
    def enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_origin}/billing/success"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_origin}/billing/cancel"

    @property
    def portal_return_url(self) -> str:
        return f"{self.frontend_origin}/billing"


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


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip()
    stripe_webhook_secret = (env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    webhook_tolerance_seconds = max(1, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300))

    provider_timeout_seconds = max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0))
    provider_max_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_RETRIES"), default=2))

    frontend_origin = env_mapping.get("FRONTEND_ORIGIN", "http://localhost:5173")
    invoice_fallback_digits = min(12, max(6, _to_int(env_mapping.get("BILLING_INVOICE_FALLBACK_DIGITS"), default=8)))

    return BillingConfig(
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        webhook_tolerance_seconds=webhook_tolerance_seconds,
        provider_timeout_seconds=provider_timeout_seconds,
        provider_max_retries=provider_max_retries,
        frontend_origin=frontend_origin.rstrip("/"),
        invoice_fallback_digits=invoice_fallback_digits,
    )


def billing_routes_enabled(env: Optional[Mapping[str, str]] = None) -> bool:
    """Return whether billing routes should be mounted (``BILLING_ENABLED``)."""

    env_mapping = os.environ if env is None else env
    return _to_bool(env_mapping.get("BILLING_ENABLED"), default=True)
