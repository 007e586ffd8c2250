"""Registry mapping owners to external billing customers."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from .exceptions import CustomerCreationInFlight
from .models import CustomerLink, Owner

logger = logging.getLogger("billing")


class CustomerLinkRepository(Protocol):
    """Persistence for owner to customer links."""

    def get_customer_link(self, owner: Owner) -> Optional[CustomerLink]:
        ...

    def get_customer_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        ...

    def insert_customer_link_if_absent(self, link: CustomerLink) -> CustomerLink:
        """Atomically create ``link`` unless the owner already has one; return the stored link."""


class CustomerProvider(Protocol):
    """Provider operations needed to create customers."""

    def create_customer(
        self,
        *,
        metadata: Dict[str, str],
        idempotency_key: str,
        email: Optional[str] = None,
    ) -> str:
        """Create an external customer and return its identifier."""


def customer_idempotency_key(owner: Owner) -> str:
    """Stable key so concurrent first-use requests resolve to one provider customer."""

    return f"billing-customer:{owner.kind.value}:{owner.id}"


class CustomerRegistry:
    """Read-through registry of external customer identities."""

    def __init__(self, repository: CustomerLinkRepository, provider: CustomerProvider) -> None:
        self._repository = repository
        self._provider = provider

    def find_customer(self, owner: Owner) -> Optional[str]:
        link = self._repository.get_customer_link(owner)
        return link.external_customer_id if link else None

    def owner_for_customer(self, external_customer_id: Optional[str]) -> Optional[Owner]:
        if not external_customer_id:
            return None
        link = self._repository.get_customer_link_by_customer(external_customer_id)
        return link.owner if link else None

    def ensure_customer(self, owner: Owner, *, email: Optional[str] = None) -> str:
        """Return the owner's external customer id, creating it on first use."""

        existing = self._repository.get_customer_link(owner)
        if existing is not None:
            return existing.external_customer_id

        try:
            external_customer_id = self._provider.create_customer(
                metadata=owner.as_metadata(),
                idempotency_key=customer_idempotency_key(owner),
                email=email,
            )
        except CustomerCreationInFlight:
            winner = self._repository.get_customer_link(owner)
            if winner is None:
                raise
            return winner.external_customer_id

        stored = self._repository.insert_customer_link_if_absent(
            CustomerLink(
                owner_kind=owner.kind,
                owner_id=owner.id,
                external_customer_id=external_customer_id,
            )
        )
        if stored.external_customer_id != external_customer_id:
            logger.warning(
                "Customer link race resolved to existing customer owner=%s:%s kept=%s discarded=%s",
                owner.kind.value,
                owner.id,
                stored.external_customer_id,
                external_customer_id,
                extra={"billing_event": "customer.race_lost"},
            )
        else:
            logger.info(
                "Created billing customer owner=%s:%s customer=%s",
                owner.kind.value,
                owner.id,
                external_customer_id,
                extra={"billing_event": "customer.created"},
            )
        return stored.external_customer_id
