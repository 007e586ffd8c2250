"""Billing domain package keeping local subscription state in sync with the payment provider."""

from .config import BillingConfig, billing_routes_enabled, load_billing_config
from .customers import CustomerRegistry
from .invoices import InvoiceSequencer
from .models import (
    Actor,
    ActorRole,
    BillingPeriod,
    CustomerLink,
    EntitlementProjection,
    Owner,
    OwnerKind,
    RedirectSession,
    SeatUpdateResult,
    Subscription,
    SubscriptionStatus,
    WebhookDisposition,
    WebhookReceipt,
)
from .seats import SeatManager
from .service import BillingRepository, BillingService, PaymentProvider
from .sessions import SessionOrchestrator
from .subscriptions import SubscriptionStore
from .webhooks import EventProcessor, StripeSignatureVerifier

__all__ = [
    "Actor",
    "ActorRole",
    "BillingConfig",
    "BillingPeriod",
    "BillingRepository",
    "BillingService",
    "CustomerLink",
    "CustomerRegistry",
    "EntitlementProjection",
    "EventProcessor",
    "InvoiceSequencer",
    "Owner",
    "OwnerKind",
    "PaymentProvider",
    "RedirectSession",
    "SeatManager",
    "SeatUpdateResult",
    "SessionOrchestrator",
    "StripeSignatureVerifier",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionStore",
    "WebhookDisposition",
    "WebhookReceipt",
    "billing_routes_enabled",
    "load_billing_config",
]
