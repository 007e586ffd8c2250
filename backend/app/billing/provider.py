"""Stripe implementation of the payment provider protocols."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from .config import BillingConfig
from .exceptions import CustomerCreationInFlight, ProviderError

logger = logging.getLogger("billing")


def _as_dict(obj: Any) -> Dict[str, object]:
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


def _provider_error(action: str, exc: stripe.StripeError) -> ProviderError:
    logger.warning(
        "Stripe request failed action=%s code=%s request_id=%s",
        action,
        getattr(exc, "code", None),
        getattr(exc, "request_id", None),
        extra={"billing_event": "provider.error"},
    )
    return ProviderError(message=f"Failed to {action}: {exc.user_message or 'payment provider error'}")


class StripePaymentProvider:
    """Thin wrapper around :class:`stripe.StripeClient` with bounded timeouts."""

    def __init__(self, client: stripe.StripeClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: BillingConfig) -> "StripePaymentProvider":
        client = stripe.StripeClient(
            config.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=config.provider_timeout_seconds),
            max_network_retries=config.provider_max_retries,
        )
        return cls(client)

    # Customer operations

    def create_customer(
        self,
        *,
        metadata: Dict[str, str],
        idempotency_key: str,
        email: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"metadata": dict(metadata)}
        if email:
            params["email"] = email
        try:
            customer = self._client.customers.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.IdempotencyError as exc:
            raise CustomerCreationInFlight() from exc
        except stripe.StripeError as exc:
            raise _provider_error("create customer", exc) from exc
        return customer.id

    # Hosted sessions

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        session_metadata: Dict[str, str],
        subscription_metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        try:
            session = self._client.checkout.sessions.create(
                params={
                    "mode": "subscription",
                    "customer": customer_id,
                    "line_items": [{"price": price_id, "quantity": quantity}],
                    "metadata": dict(session_metadata),
                    "subscription_data": {"metadata": dict(subscription_metadata)},
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                }
            )
        except stripe.StripeError as exc:
            raise _provider_error("create checkout session", exc) from exc
        return {"id": session.id, "url": session.url}

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        try:
            session = self._client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as exc:
            raise _provider_error("create portal session", exc) from exc
        return {"id": session.id, "url": session.url}

    # Subscription operations

    def retrieve_subscription(self, external_subscription_id: str) -> Dict[str, object]:
        try:
            subscription = self._client.subscriptions.retrieve(external_subscription_id)
        except stripe.StripeError as exc:
            raise _provider_error("retrieve subscription", exc) from exc
        return _as_dict(subscription)

    def update_subscription_quantity(
        self,
        external_subscription_id: str,
        quantity: int,
        *,
        proration_behavior: str,
    ) -> Dict[str, object]:
        current = self.retrieve_subscription(external_subscription_id)
        items = current.get("items") or {}
        data = items.get("data") if isinstance(items, dict) else None
        if not data:
            raise ProviderError(message=f"Subscription {external_subscription_id} has no items")

        try:
            updated = self._client.subscriptions.update(
                external_subscription_id,
                params={
                    "items": [{"id": data[0]["id"], "quantity": quantity}],
                    "proration_behavior": proration_behavior,
                },
            )
        except stripe.StripeError as exc:
            raise _provider_error("update subscription quantity", exc) from exc
        return _as_dict(updated)
