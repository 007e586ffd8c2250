"""Per-seat quantity management for organization subscriptions."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import ContextManager, Dict, Optional, Protocol

from .exceptions import NoActiveSubscription, SeatBelowOccupancy, SeatLimitReached, ValidationFailed
from .models import Actor, Owner, SeatUpdateResult, Subscription
from .owners import require_organization_admin
from .subscriptions import SubscriptionStore

logger = logging.getLogger("billing.seats")

PRORATION_BEHAVIOR = "always_invoice"


class SeatLedger(Protocol):
    """Locked view of an organization's subscription and membership."""

    subscription: Optional[Subscription]

    def active_member_count(self) -> int:
        ...

    def apply_seat_limit(self, quantity: int, *, synced_at: datetime) -> Subscription:
        ...


class SeatRepository(Protocol):
    def lock_organization_seats(self, owner: Owner) -> ContextManager[SeatLedger]:
        """Lock the organization's seat decision until the block exits; commit on success."""


class SeatProvider(Protocol):
    def update_subscription_quantity(
        self,
        external_subscription_id: str,
        quantity: int,
        *,
        proration_behavior: str,
    ) -> Dict[str, object]:
        ...


class SeatManager:
    """Changes purchased seats without ever dropping below current occupancy."""

    def __init__(
        self,
        repository: SeatRepository,
        provider: SeatProvider,
        subscriptions: Optional[SubscriptionStore] = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._subscriptions = subscriptions

    def update_seat_quantity(self, actor: Actor, owner: Owner, quantity: int) -> SeatUpdateResult:
        require_organization_admin(actor, owner)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationFailed(message="quantity must be a positive integer")

        with self._repository.lock_organization_seats(owner) as ledger:
            subscription = ledger.subscription
            if subscription is None:
                raise NoActiveSubscription()

            occupancy = ledger.active_member_count()
            if quantity < occupancy:
                raise SeatBelowOccupancy(occupancy=occupancy, requested=quantity)

            previous = subscription.seat_limit
            if previous == quantity:
                logger.info(
                    "Seat quantity unchanged owner=%s quantity=%s",
                    owner.id,
                    quantity,
                    extra={"billing_event": "seats.unchanged"},
                )
                return SeatUpdateResult(
                    owner=owner,
                    external_subscription_id=subscription.external_subscription_id,
                    previous_quantity=previous,
                    applied_quantity=quantity,
                    occupancy=occupancy,
                )

            self._provider.update_subscription_quantity(
                subscription.external_subscription_id,
                quantity,
                proration_behavior=PRORATION_BEHAVIOR,
            )
            updated = ledger.apply_seat_limit(quantity, synced_at=datetime.now(timezone.utc))

        logger.info(
            "Updated seats owner=%s subscription=%s %s -> %s occupancy=%s",
            owner.id,
            updated.external_subscription_id,
            previous,
            quantity,
            occupancy,
            extra={"billing_event": "seats.updated"},
        )
        if self._subscriptions is not None:
            try:
                self._subscriptions.propagate_entitlement(owner)
            except Exception:
                logger.exception("Entitlement propagation failed after seat update owner=%s", owner.id)

        return SeatUpdateResult(
            owner=owner,
            external_subscription_id=updated.external_subscription_id,
            previous_quantity=previous,
            applied_quantity=quantity,
            occupancy=occupancy,
        )

    def assert_seat_available(self, owner: Owner) -> int:
        """Return the number of free seats, raising when none remain."""

        with self._repository.lock_organization_seats(owner) as ledger:
            subscription = ledger.subscription
            if subscription is None or subscription.seat_limit is None:
                raise NoActiveSubscription()
            occupancy = ledger.active_member_count()
            if occupancy >= subscription.seat_limit:
                raise SeatLimitReached(occupancy=occupancy, seat_limit=subscription.seat_limit)
            return subscription.seat_limit - occupancy
