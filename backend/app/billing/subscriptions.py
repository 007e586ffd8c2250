"""Authoritative local subscription state and its status state machine."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import ContextManager, Dict, FrozenSet, Mapping, Optional, Protocol, Tuple

from .catalog import FREE_PLAN_CODE, UNKNOWN_PLAN_CODE, find_plan_definition
from .exceptions import MalformedEvent
from .models import (
    BillingPeriod,
    EntitlementProjection,
    Owner,
    OwnerKind,
    Subscription,
    SubscriptionStatus,
    UpsertOutcome,
    UpsertResult,
)

logger = logging.getLogger("billing")

_S = SubscriptionStatus

# Mirrors the provider; the provider stays authoritative except for reopening canceled rows.
EXPECTED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    _S.INCOMPLETE: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELED}),
    _S.TRIALING: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.PAUSED, _S.CANCELED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.PAUSED, _S.CANCELED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.UNPAID, _S.CANCELED}),
    _S.UNPAID: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.PAUSED: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.UNRECOGNIZED: frozenset(set(_S) - {_S.UNRECOGNIZED}),
    _S.CANCELED: frozenset(),
}

STATUS_ALIASES: Dict[str, SubscriptionStatus] = {
    "incomplete_expired": _S.CANCELED,
}


def is_expected_transition(previous: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    return previous == new or new in EXPECTED_TRANSITIONS[previous]


def decide_upsert(current: Optional[Subscription], incoming: Subscription) -> UpsertOutcome:
    """Decide how ``incoming`` relates to the stored row for the same subscription."""

    if current is None:
        return UpsertOutcome.CREATED
    if incoming.synced_at < current.synced_at:
        return UpsertOutcome.STALE
    if current.status.is_terminal and not incoming.status.is_terminal:
        return UpsertOutcome.TERMINAL
    if incoming.same_state(current):
        return UpsertOutcome.UNCHANGED
    return UpsertOutcome.UPDATED


class SubscriptionLock(Protocol):
    """Row-level lock on one subscription, held for the duration of a transaction."""

    current: Optional[Subscription]

    def write(self, subscription: Subscription) -> Subscription:
        ...


class EntitlementRecord(Protocol):
    """Owner record locked for an entitlement refresh."""

    def latest_active(self) -> Optional[Subscription]:
        ...

    def write(self, projection: EntitlementProjection) -> None:
        ...


class SubscriptionRepository(Protocol):
    """Persistence operations for subscriptions and owner entitlement columns."""

    def lock_subscription(self, external_subscription_id: str) -> ContextManager[SubscriptionLock]:
        ...

    def get_subscription(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def latest_active_for(self, owner: Owner) -> Optional[Subscription]:
        ...

    def latest_open_for(self, owner: Owner) -> Optional[Subscription]:
        """Most recent subscription that is not canceled, whatever its status."""

    def lock_owner_entitlement(self, owner: Owner) -> ContextManager[EntitlementRecord]:
        """Lock the owner's record; reads inside the block see every committed upsert."""


def project_entitlement(owner: Owner, subscription: Optional[Subscription]) -> EntitlementProjection:
    if subscription is None:
        return EntitlementProjection(owner=owner, plan_code=FREE_PLAN_CODE)
    return EntitlementProjection(
        owner=owner,
        plan_code=subscription.plan_code,
        status=subscription.status,
        active_until=subscription.current_period_end,
        external_subscription_id=subscription.external_subscription_id,
        seat_limit=subscription.seat_limit,
    )


class SubscriptionStore:
    """Idempotent, order-safe mirror of provider subscriptions."""

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository

    def upsert(self, incoming: Subscription) -> UpsertResult:
        with self._repository.lock_subscription(incoming.external_subscription_id) as row:
            current = row.current
            outcome = decide_upsert(current, incoming)

            if outcome in {UpsertOutcome.STALE, UpsertOutcome.TERMINAL}:
                logger.info(
                    "Discarded %s snapshot subscription=%s stored_status=%s incoming_status=%s",
                    outcome.value,
                    incoming.external_subscription_id,
                    current.status.value,
                    incoming.status.value,
                    extra={"billing_event": f"subscription.{outcome.value}"},
                )
                return UpsertResult(outcome=outcome, subscription=current)

            if current is not None and not is_expected_transition(current.status, incoming.status):
                logger.warning(
                    "Unexpected status transition subscription=%s %s -> %s",
                    incoming.external_subscription_id,
                    current.status.value,
                    incoming.status.value,
                    extra={"billing_event": "subscription.unexpected_transition"},
                )

            now = datetime.now(timezone.utc)
            to_store = incoming.model_copy(
                update={
                    "created_at": current.created_at if current else now,
                    "updated_at": now,
                }
            )
            stored = row.write(to_store)
            return UpsertResult(outcome=outcome, subscription=stored)

    def get(self, external_subscription_id: str) -> Optional[Subscription]:
        return self._repository.get_subscription(external_subscription_id)

    def latest_active_for(self, owner: Owner) -> Optional[Subscription]:
        return self._repository.latest_active_for(owner)

    def latest_open_for(self, owner: Owner) -> Optional[Subscription]:
        return self._repository.latest_open_for(owner)

    def entitlement_for(self, owner: Owner) -> EntitlementProjection:
        return project_entitlement(owner, self._repository.latest_active_for(owner))

    def propagate_entitlement(self, owner: Owner) -> EntitlementProjection:
        """Recompute the owner's entitlement under its row lock and store it.

        Concurrent refreshes for one owner serialize on the lock, so the last
        writer always projects from the latest committed subscriptions.
        """

        with self._repository.lock_owner_entitlement(owner) as record:
            projection = project_entitlement(owner, record.latest_active())
            record.write(projection)
        logger.debug(
            "Propagated entitlement owner=%s:%s plan=%s",
            owner.kind.value,
            owner.id,
            projection.plan_code,
        )
        return projection


# Provider payload parsing


def _timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEvent(message=f"Unsupported timestamp value {value!r}")


def _object_id(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def provider_metadata(payload: Mapping[str, object]) -> Dict[str, str]:
    metadata = payload.get("metadata")
    if isinstance(metadata, Mapping):
        return {str(k): str(v) for k, v in metadata.items() if v is not None}
    return {}


def owner_from_metadata(metadata: Mapping[str, str]) -> Optional[Owner]:
    owner_id = metadata.get("ownerId")
    raw_kind = (metadata.get("ownerKind") or "").strip().lower()
    if not owner_id or not raw_kind:
        return None
    try:
        kind = OwnerKind(raw_kind)
    except ValueError:
        return None
    return Owner(kind=kind, id=owner_id)


def parse_status(value: object) -> SubscriptionStatus:
    raw = str(value or "").strip().lower()
    if not raw:
        raise MalformedEvent(message="Subscription payload lacks status")
    if raw in STATUS_ALIASES:
        return STATUS_ALIASES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        logger.warning(
            "Unrecognized provider subscription status %r; mirrored without entitlement",
            value,
            extra={"billing_event": "subscription.unrecognized_status"},
        )
        return SubscriptionStatus.UNRECOGNIZED


def _first_item(payload: Mapping[str, object]) -> Mapping[str, object]:
    items = payload.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def subscription_from_provider(
    payload: Mapping[str, object],
    *,
    owner: Owner,
    synced_at: datetime,
    fallback_metadata: Optional[Mapping[str, str]] = None,
    period_override: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None,
) -> Subscription:
    """Build a :class:`Subscription` from a provider subscription object."""

    external_subscription_id = _object_id(payload.get("id"))
    external_customer_id = _object_id(payload.get("customer"))
    if not external_subscription_id or not external_customer_id:
        raise MalformedEvent(message="Subscription payload lacks id or customer")

    metadata = {**(fallback_metadata or {}), **provider_metadata(payload)}
    item = _first_item(payload)
    price = item.get("price") if isinstance(item.get("price"), Mapping) else {}
    recurring = price.get("recurring") if isinstance(price.get("recurring"), Mapping) else {}

    definition = find_plan_definition(metadata.get("planCode"))
    billing_period = BillingPeriod.from_provider_interval(
        recurring.get("interval")
    ) or BillingPeriod.from_provider_interval(metadata.get("billingPeriod"))

    period_start = _timestamp(payload.get("current_period_start") or item.get("current_period_start"))
    period_end = _timestamp(payload.get("current_period_end") or item.get("current_period_end"))
    if period_override is not None:
        period_start = period_override[0] or period_start
        period_end = period_override[1] or period_end

    seat_limit: Optional[int] = None
    if owner.is_organization:
        quantity = item.get("quantity")
        if isinstance(quantity, int) and quantity >= 1:
            seat_limit = quantity
        elif definition is not None:
            seat_limit = definition.default_seat_limit

    return Subscription(
        external_subscription_id=external_subscription_id,
        owner_kind=owner.kind,
        owner_id=owner.id,
        plan_code=definition.code if definition else UNKNOWN_PLAN_CODE,
        billing_period=billing_period,
        external_customer_id=external_customer_id,
        external_price_id=_object_id(price.get("id")),
        status=parse_status(payload.get("status")),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end") or False),
        current_period_start=period_start,
        current_period_end=period_end,
        seat_limit=seat_limit,
        synced_at=synced_at,
    )


__all__ = [
    "EXPECTED_TRANSITIONS",
    "EntitlementRecord",
    "SubscriptionLock",
    "SubscriptionRepository",
    "SubscriptionStore",
    "decide_upsert",
    "is_expected_transition",
    "owner_from_metadata",
    "parse_status",
    "project_entitlement",
    "provider_metadata",
    "subscription_from_provider",
]
