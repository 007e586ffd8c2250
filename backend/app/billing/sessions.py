"""Outbound checkout and portal session orchestration.

No local state is written here: subscriptions appear only once the provider
reports them through webhooks.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .catalog import find_plan_definition
from .customers import CustomerRegistry
from .exceptions import NoBillingAccount, ValidationFailed
from .models import BillingPeriod, Owner, RedirectSession


class SessionProvider(Protocol):
    """Provider-hosted session creation."""

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
        """Create a subscription-mode checkout session; returns ``{"id", "url"}``."""

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        """Create a self-service portal session; returns ``{"id", "url"}``."""


def checkout_metadata(owner: Owner, plan_code: str, billing_period: BillingPeriod) -> Dict[str, str]:
    """Metadata that makes checkout and subscription events resolvable to an owner."""

    return {
        **owner.as_metadata(),
        "planCode": plan_code,
        "billingPeriod": billing_period.value,
    }


@dataclass
class SessionOrchestrator:
    """Builds checkout and portal requests for a resolved owner."""

    customers: CustomerRegistry
    provider: SessionProvider
    success_url: str
    cancel_url: str
    portal_return_url: str

    def create_checkout_session(
        self,
        owner: Owner,
        plan_code: str,
        billing_period: BillingPeriod,
        price_id: str,
        quantity: Optional[int] = None,
        *,
        email: Optional[str] = None,
    ) -> RedirectSession:
        if not price_id:
            raise ValidationFailed(code="missing_parameter", message="priceId is required")
        definition = find_plan_definition(plan_code)
        if definition is None or not definition.purchasable:
            raise ValidationFailed(message=f"Plan {plan_code!r} cannot be purchased")
        if billing_period not in definition.billing_periods:
            raise ValidationFailed(
                message=f"Plan {definition.code} is not offered with {billing_period.value} billing"
            )

        if owner.is_organization:
            applied_quantity = quantity if quantity is not None else definition.default_seat_limit or 1
            if applied_quantity < 1:
                raise ValidationFailed(message="quantity must be >= 1")
        else:
            applied_quantity = 1

        customer_id = self.customers.ensure_customer(owner, email=email)
        metadata = checkout_metadata(owner, definition.code, billing_period)
        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            quantity=applied_quantity,
            session_metadata=metadata,
            subscription_metadata=metadata,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )
        return RedirectSession(
            session_id=str(session.get("id") or ""),
            redirect_url=str(session.get("url") or ""),
            owner=owner,
        )

    def create_portal_session(self, owner: Owner) -> RedirectSession:
        customer_id = self.customers.find_customer(owner)
        if customer_id is None:
            raise NoBillingAccount()
        session = self.provider.create_portal_session(
            customer_id=customer_id,
            return_url=self.portal_return_url,
        )
        return RedirectSession(
            session_id=str(session.get("id") or ""),
            redirect_url=str(session.get("url") or ""),
            owner=owner,
        )
