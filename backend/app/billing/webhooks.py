"""Inbound provider event verification and dispatch."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

import stripe

from .customers import CustomerRegistry
from .exceptions import AuthenticationFailed, MalformedEvent
from .models import (
    EventCategory,
    Owner,
    UpsertOutcome,
    WebhookDisposition,
    WebhookEvent,
    WebhookReceipt,
)
from .subscriptions import (
    SubscriptionStore,
    owner_from_metadata,
    provider_metadata,
    subscription_from_provider,
)

logger = logging.getLogger("billing.webhooks")

EMBEDDED_SNAPSHOT_EVENTS = frozenset(
    {
        EventCategory.SUBSCRIPTION_CREATED,
        EventCategory.SUBSCRIPTION_UPDATED,
        EventCategory.SUBSCRIPTION_DELETED,
    }
)
INVOICE_EVENTS = frozenset(
    {
        EventCategory.INVOICE_PAYMENT_FAILED,
        EventCategory.INVOICE_PAYMENT_SUCCEEDED,
        EventCategory.INVOICE_PAID,
    }
)


class SignatureVerifier(Protocol):
    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, object]:
        """Verify ``payload`` and return the decoded event body."""


class WebhookEventRepository(Protocol):
    """Ledger of provider event ids whose processing has finished."""

    def is_webhook_event_recorded(self, event_id: str) -> bool:
        ...

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        """Record ``event``; return ``False`` when its id was already recorded."""


class SubscriptionSource(Protocol):
    def retrieve_subscription(self, external_subscription_id: str) -> Dict[str, object]:
        ...


class StripeSignatureVerifier:
    """Checks ``Stripe-Signature`` headers with the shared webhook secret."""

    def __init__(self, secret: str, *, tolerance: int = 300) -> None:
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, object]:
        if not self._secret:
            raise AuthenticationFailed(message="Webhook secret is not configured")
        if not signature:
            raise AuthenticationFailed(message="Missing webhook signature")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailed(message="Webhook payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(text, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationFailed() from exc

        try:
            body = json.loads(text)
        except ValueError as exc:
            raise MalformedEvent() from exc
        if not isinstance(body, dict):
            raise MalformedEvent(message="Webhook payload must be a JSON object")
        return body


def parse_event(body: Mapping[str, object]) -> WebhookEvent:
    """Validate the event envelope of a verified payload."""

    event_id = body.get("id")
    event_type = body.get("type")
    created = body.get("created")
    data = body.get("data")
    data_object = data.get("object") if isinstance(data, Mapping) else None

    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent(message="Event id is missing")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent(message="Event type is missing")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise MalformedEvent(message="Event creation time is missing")
    if not isinstance(data_object, Mapping):
        raise MalformedEvent(message="Event data object is missing")

    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        created=datetime.fromtimestamp(created, tz=timezone.utc),
        data_object=dict(data_object),
    )


def _reference_id(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription_id(invoice: Mapping[str, object]) -> Optional[str]:
    direct = _reference_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent")
    details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if isinstance(details, Mapping):
        return _reference_id(details.get("subscription"))
    return None


def _invoice_period(invoice: Mapping[str, object]) -> Optional[Tuple[Optional[datetime], Optional[datetime]]]:
    lines = invoice.get("lines")
    data = lines.get("data") if isinstance(lines, Mapping) else None
    if not isinstance(data, list) or not data or not isinstance(data[0], Mapping):
        return None
    period = data[0].get("period")
    if not isinstance(period, Mapping):
        return None

    def _at(key: str) -> Optional[datetime]:
        value = period.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return None

    return _at("start"), _at("end")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventProcessor:
    """Applies verified provider events to the subscription store."""

    verifier: SignatureVerifier
    events: WebhookEventRepository
    subscriptions: SubscriptionStore
    customers: CustomerRegistry
    source: SubscriptionSource
    clock: Callable[[], datetime] = field(default=_utcnow)

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookReceipt:
        """Verify, parse and process one delivery.

        Raises :class:`AuthenticationFailed` or :class:`MalformedEvent` for
        deliveries the provider should see as failed; every other outcome is
        acknowledged with a :class:`WebhookReceipt`.
        """

        body = self.verifier.verify(payload, signature)
        return self.process(parse_event(body))

    def process(self, event: WebhookEvent) -> WebhookReceipt:
        category = event.category
        if category is None:
            logger.debug(
                "Ignoring webhook event id=%s type=%s",
                event.event_id,
                event.event_type,
                extra={"billing_event": "webhook.ignored"},
            )
            return self._receipt(event, WebhookDisposition.IGNORED)

        if self.events.is_webhook_event_recorded(event.event_id):
            logger.info(
                "Duplicate webhook delivery id=%s type=%s",
                event.event_id,
                event.event_type,
                extra={"billing_event": "webhook.duplicate"},
            )
            return self._receipt(event, WebhookDisposition.DUPLICATE)

        # Recorded only once dispatch has committed; an interrupted delivery is
        # reprocessed on redelivery and the upsert absorbs the repeat.
        try:
            receipt = self._dispatch(category, event)
        except MalformedEvent:
            raise
        except Exception:
            logger.exception(
                "Webhook processing failed id=%s category=%s subscription=%s",
                event.event_id,
                category.value,
                _reference_id(event.data_object.get("subscription") or event.data_object.get("id")),
                extra={"billing_event": "webhook.failed"},
            )
            return self._receipt(event, WebhookDisposition.FAILED)

        self._mark_processed(event)
        return receipt

    def _dispatch(self, category: EventCategory, event: WebhookEvent) -> WebhookReceipt:
        data = event.data_object

        if category in EMBEDDED_SNAPSHOT_EVENTS:
            snapshot = dict(data)
            if category == EventCategory.SUBSCRIPTION_DELETED:
                snapshot["status"] = "canceled"
            return self._sync(event, snapshot, synced_at=event.created)

        if category == EventCategory.CHECKOUT_COMPLETED:
            subscription_id = _reference_id(data.get("subscription"))
            if not subscription_id:
                logger.info(
                    "Checkout session without subscription id=%s",
                    event.event_id,
                    extra={"billing_event": "webhook.ignored"},
                )
                return self._receipt(event, WebhookDisposition.IGNORED)
            snapshot = self.source.retrieve_subscription(subscription_id)
            return self._sync(
                event,
                snapshot,
                synced_at=self.clock(),
                fallback_metadata=provider_metadata(data),
            )

        subscription_id = _invoice_subscription_id(data)
        if not subscription_id:
            logger.info(
                "Invoice event without subscription id=%s",
                event.event_id,
                extra={"billing_event": "webhook.ignored"},
            )
            return self._receipt(event, WebhookDisposition.IGNORED)
        snapshot = self.source.retrieve_subscription(subscription_id)
        return self._sync(
            event,
            snapshot,
            synced_at=self.clock(),
            period_override=_invoice_period(data),
        )

    def _sync(
        self,
        event: WebhookEvent,
        snapshot: Mapping[str, object],
        *,
        synced_at: datetime,
        fallback_metadata: Optional[Mapping[str, str]] = None,
        period_override: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None,
    ) -> WebhookReceipt:
        owner = self._resolve_owner(snapshot, fallback_metadata)
        subscription_id = _reference_id(snapshot.get("id"))
        if owner is None:
            logger.warning(
                "Unresolvable owner for webhook id=%s category=%s subscription=%s customer=%s",
                event.event_id,
                event.event_type,
                subscription_id,
                _reference_id(snapshot.get("customer")),
                extra={"billing_event": "webhook.owner_unresolved"},
            )
            return self._receipt(event, WebhookDisposition.IGNORED, subscription_id=subscription_id)

        subscription = subscription_from_provider(
            snapshot,
            owner=owner,
            synced_at=synced_at,
            fallback_metadata=fallback_metadata,
            period_override=period_override,
        )
        result = self.subscriptions.upsert(subscription)

        if result.outcome in {UpsertOutcome.STALE, UpsertOutcome.TERMINAL}:
            logger.info(
                "Stale snapshot id=%s subscription=%s outcome=%s",
                event.event_id,
                subscription.external_subscription_id,
                result.outcome.value,
                extra={"billing_event": "webhook.stale_snapshot"},
            )
            return self._receipt(
                event,
                WebhookDisposition.STALE,
                subscription_id=subscription.external_subscription_id,
                owner=owner,
            )

        if result.outcome.applied:
            try:
                self.subscriptions.propagate_entitlement(owner)
            except Exception:
                logger.exception(
                    "Entitlement propagation failed id=%s category=%s owner=%s:%s",
                    event.event_id,
                    event.event_type,
                    owner.kind.value,
                    owner.id,
                    extra={"billing_event": "webhook.propagation_failed"},
                )

        logger.info(
            "Applied webhook id=%s type=%s subscription=%s status=%s outcome=%s",
            event.event_id,
            event.event_type,
            subscription.external_subscription_id,
            result.subscription.status.value,
            result.outcome.value,
            extra={"billing_event": "webhook.applied"},
        )
        return self._receipt(
            event,
            WebhookDisposition.APPLIED,
            subscription_id=subscription.external_subscription_id,
            owner=owner,
        )

    def _resolve_owner(
        self,
        snapshot: Mapping[str, object],
        fallback_metadata: Optional[Mapping[str, str]],
    ) -> Optional[Owner]:
        owner = owner_from_metadata(provider_metadata(snapshot))
        if owner is None and fallback_metadata:
            owner = owner_from_metadata(fallback_metadata)
        if owner is None:
            owner = self.customers.owner_for_customer(_reference_id(snapshot.get("customer")))
        return owner

    def _mark_processed(self, event: WebhookEvent) -> None:
        try:
            self.events.record_webhook_event(event)
        except Exception:
            logger.exception(
                "Could not record processed webhook id=%s; a redelivery will be reapplied",
                event.event_id,
                extra={"billing_event": "webhook.ledger_failed"},
            )

    @staticmethod
    def _receipt(
        event: WebhookEvent,
        disposition: WebhookDisposition,
        *,
        subscription_id: Optional[str] = None,
        owner: Optional[Owner] = None,
    ) -> WebhookReceipt:
        return WebhookReceipt(
            event_id=event.event_id,
            event_type=event.event_type,
            disposition=disposition,
            external_subscription_id=subscription_id,
            owner=owner,
        )
