"""Domain models for the billing synchronization core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class OwnerKind(str, Enum):
    """Billing-relevant entity types."""

    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"


class ActorRole(str, Enum):
    """Roles an authenticated actor can hold."""

    USER = "user"
    TEACHER = "teacher"
    SCHOOL_ADMIN = "school_admin"
    ADMIN = "admin"


class BillingPeriod(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def from_provider_interval(cls, interval: Optional[str]) -> Optional["BillingPeriod"]:
        """Map a provider recurring interval (``month``/``year``) to a period."""

        mapping = {"month": cls.MONTHLY, "year": cls.YEARLY}
        if interval is None:
            return None
        normalized = str(interval).strip().lower()
        if normalized in mapping:
            return mapping[normalized]
        try:
            return cls(normalized)
        except ValueError:
            return None


class SubscriptionStatus(str, Enum):
    """Provider-defined lifecycle state, constrained to the mirrored set.

    ``UNRECOGNIZED`` stands in for provider states this core does not know yet;
    it never grants access and never ends a subscription.
    """

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"
    UNRECOGNIZED = "unrecognized"

    @property
    def is_entitling(self) -> bool:
        return self in ENTITLING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self == SubscriptionStatus.CANCELED


ENTITLING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class Owner(BaseModel):
    """The individual or organization a subscription belongs to."""

    kind: OwnerKind
    id: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def individual(cls, owner_id: str) -> "Owner":
        return cls(kind=OwnerKind.INDIVIDUAL, id=str(owner_id))

    @classmethod
    def organization(cls, owner_id: str) -> "Owner":
        return cls(kind=OwnerKind.ORGANIZATION, id=str(owner_id))

    @property
    def is_organization(self) -> bool:
        return self.kind == OwnerKind.ORGANIZATION

    def as_metadata(self) -> Dict[str, str]:
        return {"ownerKind": self.kind.value, "ownerId": self.id}


class Actor(BaseModel):
    """Authenticated caller as resolved from the session token."""

    user_id: str
    role: ActorRole = ActorRole.USER
    organization_id: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_organization_admin(self) -> bool:
        return self.organization_id is not None and self.role == ActorRole.SCHOOL_ADMIN


class CustomerLink(BaseModel):
    """Immutable mapping between an owner and its external billing customer."""

    owner_kind: OwnerKind
    owner_id: str
    external_customer_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def owner(self) -> Owner:
        return Owner(kind=self.owner_kind, id=self.owner_id)


class Subscription(BaseModel):
    """Authoritative local mirror of a provider subscription."""

    external_subscription_id: str
    owner_kind: OwnerKind
    owner_id: str
    plan_code: str
    billing_period: Optional[BillingPeriod] = None
    external_customer_id: str
    external_price_id: Optional[str] = None
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    seat_limit: Optional[int] = Field(default=None, ge=1)
    synced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Provider-side freshness of the snapshot this row mirrors",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def owner(self) -> Owner:
        return Owner(kind=self.owner_kind, id=self.owner_id)

    @property
    def is_entitling(self) -> bool:
        return self.status.is_entitling

    def same_state(self, other: "Subscription") -> bool:
        """Return ``True`` when both rows mirror the same provider state."""

        ignored = {"synced_at", "created_at", "updated_at"}
        return self.model_dump(exclude=ignored) == other.model_dump(exclude=ignored)


class EntitlementProjection(BaseModel):
    """Effective plan for an owner, derived from its latest entitling subscription."""

    owner: Owner
    plan_code: str
    status: Optional[SubscriptionStatus] = None
    active_until: Optional[datetime] = None
    external_subscription_id: Optional[str] = None
    seat_limit: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_free(self) -> bool:
        return self.external_subscription_id is None


class RedirectSession(BaseModel):
    """Provider-hosted page the caller is redirected to."""

    session_id: str
    redirect_url: str
    owner: Owner

    model_config = ConfigDict(frozen=True)


class UpsertOutcome(str, Enum):
    """Result of applying a subscription snapshot."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"
    TERMINAL = "terminal"

    @property
    def applied(self) -> bool:
        return self in {UpsertOutcome.CREATED, UpsertOutcome.UPDATED}


class UpsertResult(BaseModel):
    """Outcome of an upsert along with the row now stored."""

    outcome: UpsertOutcome
    subscription: Subscription

    model_config = ConfigDict(frozen=True)


class EventCategory(str, Enum):
    """Provider event types the event processor reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"


class WebhookEvent(BaseModel):
    """Verified provider event."""

    event_id: str
    event_type: str
    created: datetime
    data_object: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def category(self) -> Optional[EventCategory]:
        try:
            return EventCategory(self.event_type)
        except ValueError:
            return None


class WebhookDisposition(str, Enum):
    """How a verified event was handled."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    STALE = "stale"
    FAILED = "failed"


class WebhookReceipt(BaseModel):
    """Acknowledgement returned for every verified delivery."""

    event_id: str
    event_type: str
    disposition: WebhookDisposition
    external_subscription_id: Optional[str] = None
    owner: Optional[Owner] = None

    model_config = ConfigDict(frozen=True)


class SeatUpdateResult(BaseModel):
    """Outcome of a seat quantity change."""

    owner: Owner
    external_subscription_id: str
    previous_quantity: Optional[int]
    applied_quantity: int
    occupancy: int

    model_config = ConfigDict(frozen=True)


class InvoiceNumberAllocation(BaseModel):
    """Issued invoice number; ``degraded`` marks a fallback allocation."""

    number: str
    year: int
    sequence: Optional[int] = None
    degraded: bool = False

    model_config = ConfigDict(frozen=True)
