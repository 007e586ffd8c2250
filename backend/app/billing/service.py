"""Core service coordinating billing flows with the payment provider."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .config import BillingConfig
from .customers import CustomerLinkRepository, CustomerProvider, CustomerRegistry
from .exceptions import PermissionDenied, ValidationFailed
from .invoices import InvoiceSequenceRepository, InvoiceSequencer
from .models import (
    Actor,
    BillingPeriod,
    EntitlementProjection,
    Owner,
    RedirectSession,
    SeatUpdateResult,
    WebhookReceipt,
)
from .owners import organization_owner_for, resolve_billing_owner, targets_organization
from .seats import SeatManager, SeatProvider, SeatRepository
from .sessions import SessionOrchestrator, SessionProvider
from .subscriptions import SubscriptionRepository, SubscriptionStore
from .webhooks import EventProcessor, SignatureVerifier, SubscriptionSource, WebhookEventRepository


class PaymentProvider(CustomerProvider, SessionProvider, SubscriptionSource, SeatProvider, Protocol):
    """External payment processor integration."""


class BillingRepository(
    CustomerLinkRepository,
    SubscriptionRepository,
    WebhookEventRepository,
    SeatRepository,
    InvoiceSequenceRepository,
    Protocol,
):
    """Persistence operations required by the billing service."""


def parse_billing_period(value: Optional[str]) -> BillingPeriod:
    if not value:
        raise ValidationFailed(code="missing_parameter", message="billingPeriod is required")
    period = BillingPeriod.from_provider_interval(value)
    if period is None:
        raise ValidationFailed(message=f"Unsupported billingPeriod {value!r}")
    return period


@dataclass
class BillingService:
    """Entry point used by the HTTP layer; resolves actors to owners."""

    customers: CustomerRegistry
    sessions: SessionOrchestrator
    subscriptions: SubscriptionStore
    events: EventProcessor
    seats: SeatManager
    invoices: InvoiceSequencer

    @classmethod
    def build(
        cls,
        *,
        config: BillingConfig,
        repository: BillingRepository,
        provider: PaymentProvider,
        verifier: SignatureVerifier,
    ) -> "BillingService":
        customers = CustomerRegistry(repository, provider)
        subscriptions = SubscriptionStore(repository)
        return cls(
            customers=customers,
            sessions=SessionOrchestrator(
                customers=customers,
                provider=provider,
                success_url=config.checkout_success_url,
                cancel_url=config.checkout_cancel_url,
                portal_return_url=config.portal_return_url,
            ),
            subscriptions=subscriptions,
            events=EventProcessor(
                verifier=verifier,
                events=repository,
                subscriptions=subscriptions,
                customers=customers,
                source=provider,
            ),
            seats=SeatManager(repository, provider, subscriptions),
            invoices=InvoiceSequencer(repository, fallback_digits=config.invoice_fallback_digits),
        )

    def create_checkout_session_for_actor(
        self,
        actor: Actor,
        *,
        plan_code: Optional[str],
        billing_period: Optional[str],
        price_id: Optional[str],
        quantity: Optional[int] = None,
    ) -> RedirectSession:
        if not plan_code:
            raise ValidationFailed(code="missing_parameter", message="planCode is required")
        period = parse_billing_period(billing_period)
        owner = resolve_billing_owner(actor, plan_code)
        return self.sessions.create_checkout_session(
            owner,
            plan_code,
            period,
            price_id or "",
            quantity,
            email=actor.email,
        )

    def portal_owner_for(self, actor: Actor) -> Owner:
        """Owner whose billing account the portal opens for ``actor``.

        The organization's plan is read from its latest subscription that is not
        canceled, so a past-due or unpaid organization still reaches its own
        portal. Without one, an organization that has a billing account wins
        only when the actor has none of their own.
        """

        individual = Owner.individual(actor.user_id)
        organization = organization_owner_for(actor)
        if organization is None or not actor.is_organization_admin:
            return individual

        subscription = self.subscriptions.latest_open_for(organization)
        if subscription is not None:
            if targets_organization(actor, subscription.plan_code):
                return organization
            return individual

        if (
            self.customers.find_customer(organization) is not None
            and self.customers.find_customer(individual) is None
        ):
            return organization
        return individual

    def create_portal_session_for_actor(self, actor: Actor) -> RedirectSession:
        return self.sessions.create_portal_session(self.portal_owner_for(actor))

    def update_seat_quantity_for_actor(self, actor: Actor, quantity: int) -> SeatUpdateResult:
        owner = organization_owner_for(actor)
        if owner is None:
            raise PermissionDenied(
                code="organization_admin_required",
                message="Seat management requires an organization",
            )
        return self.seats.update_seat_quantity(actor, owner, quantity)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookReceipt:
        return self.events.handle(payload, signature)

    def next_invoice_number(self, year: Optional[int] = None) -> str:
        return self.invoices.next_invoice_number(year)

    def entitlement_for_actor(self, actor: Actor) -> EntitlementProjection:
        """Organization entitlement when the actor's organization pays, else the actor's own."""

        organization = organization_owner_for(actor)
        if organization is not None:
            projection = self.subscriptions.entitlement_for(organization)
            if not projection.is_free:
                return projection
        return self.subscriptions.entitlement_for(Owner.individual(actor.user_id))


__all__ = [
    "BillingRepository",
    "BillingService",
    "PaymentProvider",
    "parse_billing_period",
]
