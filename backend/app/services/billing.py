"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from typing import Optional

from ..billing import BillingConfig, BillingService, StripeSignatureVerifier, load_billing_config
from ..billing.provider import StripePaymentProvider
from ..billing.repository import ConnectionFactory, PostgresBillingRepository

logger = logging.getLogger("billing")

_service: Optional[BillingService] = None


def init_billing(
    config: Optional[BillingConfig] = None,
    *,
    conn_factory: Optional[ConnectionFactory] = None,
) -> Optional[BillingService]:
    """Build the process-wide billing service; returns ``None`` when billing is disabled."""

    global _service

    config = config or load_billing_config()
    if not config.enabled:
        logger.warning("STRIPE_SECRET_KEY is not set; billing endpoints will respond with 503")
        _service = None
        return None
    if not config.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; webhook deliveries will be rejected")

    _service = BillingService.build(
        config=config,
        repository=PostgresBillingRepository(conn_factory=conn_factory),
        provider=StripePaymentProvider.from_config(config),
        verifier=StripeSignatureVerifier(
            config.stripe_webhook_secret,
            tolerance=config.webhook_tolerance_seconds,
        ),
    )
    logger.info(
        "Billing service initialised timeout=%ss retries=%s",
        config.provider_timeout_seconds,
        config.provider_max_retries,
    )
    return _service


def teardown_billing() -> None:
    global _service
    _service = None


def get_billing_service() -> Optional[BillingService]:
    return _service


__all__ = ["get_billing_service", "init_billing", "teardown_billing"]
