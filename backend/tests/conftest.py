from __future__ import annotations

import hashlib
import hmac
import json
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.billing.config import BillingConfig
from backend.app.billing.exceptions import ProviderError, StoreError
from backend.app.billing.models import (
    CustomerLink,
    EntitlementProjection,
    Owner,
    OwnerKind,
    Subscription,
    WebhookEvent,
)
from backend.app.billing.service import BillingRepository, BillingService, PaymentProvider
from backend.app.billing.webhooks import StripeSignatureVerifier

WEBHOOK_SECRET = "whsec_test_secret"


class _RowLock:
    def __init__(self, current: Optional[Subscription]) -> None:
        self.current = current
        self.written: Optional[Subscription] = None

    def write(self, subscription: Subscription) -> Subscription:
        self.written = subscription
        self.current = subscription
        return subscription


class _EntitlementRecord:
    def __init__(self, repository: "InMemoryBillingRepository", owner: Owner) -> None:
        self._repository = repository
        self._owner = owner

    def latest_active(self) -> Optional[Subscription]:
        return self._repository.latest_active_for(self._owner)

    def write(self, projection: EntitlementProjection) -> None:
        self._repository.owner_records[self._owner] = projection


class _SeatLedger:
    def __init__(self, subscription: Optional[Subscription], occupancy: int) -> None:
        self.subscription = subscription
        self._occupancy = occupancy
        self.written: Optional[Subscription] = None

    def active_member_count(self) -> int:
        return self._occupancy

    def apply_seat_limit(self, quantity: int, *, synced_at: datetime) -> Subscription:
        assert self.subscription is not None
        updated = self.subscription.model_copy(
            update={
                "seat_limit": quantity,
                "synced_at": max(self.subscription.synced_at, synced_at),
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self.subscription = updated
        self.written = updated
        return updated


class InMemoryBillingRepository(BillingRepository):
    """Single-lock stand-in for the Postgres repository; writes commit on clean exit."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.customer_links: Dict[Tuple[OwnerKind, str], CustomerLink] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.owner_records: Dict[Owner, EntitlementProjection] = {}
        self.teachers: Dict[str, Set[str]] = {}
        self.webhook_events: Set[str] = set()
        self.invoice_sequences: Dict[int, int] = {}
        self.store_unavailable = False
        self.propagation_error: Optional[Exception] = None

    def _check_available(self) -> None:
        if self.store_unavailable:
            raise StoreError()

    # Customer links

    def get_customer_link(self, owner: Owner) -> Optional[CustomerLink]:
        self._check_available()
        return self.customer_links.get((owner.kind, owner.id))

    def get_customer_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        self._check_available()
        for link in self.customer_links.values():
            if link.external_customer_id == external_customer_id:
                return link
        return None

    def insert_customer_link_if_absent(self, link: CustomerLink) -> CustomerLink:
        self._check_available()
        with self._lock:
            return self.customer_links.setdefault((link.owner_kind, link.owner_id), link)

    # Subscriptions

    @contextmanager
    def lock_subscription(self, external_subscription_id: str) -> Iterator[_RowLock]:
        self._check_available()
        with self._lock:
            row = _RowLock(self.subscriptions.get(external_subscription_id))
            yield row
            if row.written is not None:
                self.subscriptions[external_subscription_id] = row.written

    def get_subscription(self, external_subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(external_subscription_id)

    def latest_active_for(self, owner: Owner) -> Optional[Subscription]:
        candidates = [
            sub
            for sub in self.subscriptions.values()
            if sub.owner == owner and sub.is_entitling
        ]
        if not candidates:
            return None
        floor = datetime.min.replace(tzinfo=timezone.utc)
        return max(candidates, key=lambda sub: (sub.current_period_end or floor, sub.updated_at))

    def latest_open_for(self, owner: Owner) -> Optional[Subscription]:
        candidates = [
            sub
            for sub in self.subscriptions.values()
            if sub.owner == owner and not sub.status.is_terminal
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda sub: sub.updated_at)

    @contextmanager
    def lock_owner_entitlement(self, owner: Owner) -> Iterator[_EntitlementRecord]:
        if self.propagation_error is not None:
            raise self.propagation_error
        with self._lock:
            yield _EntitlementRecord(self, owner)

    # Seats

    def add_teachers(self, organization_id: str, count: int) -> None:
        members = self.teachers.setdefault(organization_id, set())
        start = len(members)
        members.update(f"{organization_id}-teacher-{n}" for n in range(start, start + count))

    @contextmanager
    def lock_organization_seats(self, owner: Owner) -> Iterator[_SeatLedger]:
        self._check_available()
        with self._lock:
            ledger = _SeatLedger(self.latest_active_for(owner), len(self.teachers.get(owner.id, ())))
            yield ledger
            if ledger.written is not None:
                self.subscriptions[ledger.written.external_subscription_id] = ledger.written

    # Webhook ledger

    def is_webhook_event_recorded(self, event_id: str) -> bool:
        self._check_available()
        return event_id in self.webhook_events

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        self._check_available()
        with self._lock:
            if event.event_id in self.webhook_events:
                return False
            self.webhook_events.add(event.event_id)
            return True

    # Invoice numbering

    def increment_invoice_sequence(self, year: int) -> int:
        self._check_available()
        with self._lock:
            value = self.invoice_sequences.get(year, 0) + 1
            self.invoice_sequences[year] = value
            return value


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.customers_by_key: Dict[str, str] = {}
        self.customer_calls: List[Dict[str, object]] = []
        self.checkout_sessions: List[Dict[str, object]] = []
        self.portal_sessions: List[Dict[str, object]] = []
        self.subscriptions: Dict[str, Dict[str, object]] = {}
        self.quantity_updates: List[Tuple[str, int, str]] = []
        self.customer_barrier: Optional[threading.Barrier] = None
        self.fail_with: Optional[Exception] = None

    def create_customer(self, *, metadata: Dict[str, str], idempotency_key: str, email: Optional[str] = None) -> str:
        if self.customer_barrier is not None:
            self.customer_barrier.wait(timeout=5)
        with self._lock:
            self.customer_calls.append({"metadata": metadata, "idempotency_key": idempotency_key, "email": email})
            customer_id = self.customers_by_key.get(idempotency_key)
            if customer_id is None:
                customer_id = f"cus_{len(self.customers_by_key) + 1}"
                self.customers_by_key[idempotency_key] = customer_id
            return customer_id

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
        if self.fail_with is not None:
            raise self.fail_with
        session_id = f"cs_{len(self.checkout_sessions) + 1}"
        payload = {
            "id": session_id,
            "url": f"https://checkout.provider.test/{session_id}",
            "customer": customer_id,
            "price": price_id,
            "quantity": quantity,
            "metadata": session_metadata,
            "subscription_metadata": subscription_metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        self.checkout_sessions.append(payload)
        return payload

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session_id = f"bps_{len(self.portal_sessions) + 1}"
        payload = {
            "id": session_id,
            "url": f"https://portal.provider.test/{customer_id}",
            "customer": customer_id,
            "return_url": return_url,
        }
        self.portal_sessions.append(payload)
        return payload

    def retrieve_subscription(self, external_subscription_id: str) -> Dict[str, object]:
        if self.fail_with is not None:
            raise self.fail_with
        try:
            return self.subscriptions[external_subscription_id]
        except KeyError as exc:
            raise ProviderError(message=f"No such subscription {external_subscription_id}") from exc

    def update_subscription_quantity(
        self,
        external_subscription_id: str,
        quantity: int,
        *,
        proration_behavior: str,
    ) -> Dict[str, object]:
        if self.fail_with is not None:
            raise self.fail_with
        self.quantity_updates.append((external_subscription_id, quantity, proration_behavior))
        return {"id": external_subscription_id}


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def subscription_payload(
    subscription_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    status: str = "active",
    owner: Optional[Owner] = None,
    plan_code: Optional[str] = "PRO",
    interval: str = "month",
    quantity: int = 1,
    price_id: str = "price_pro_monthly",
    period_start: int = 1_700_000_000,
    period_end: int = 1_702_592_000,
) -> Dict[str, object]:
    metadata: Dict[str, str] = {}
    if owner is not None:
        metadata.update(owner.as_metadata())
    if plan_code is not None:
        metadata["planCode"] = plan_code
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "metadata": metadata,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "quantity": quantity,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                    "price": {"id": price_id, "recurring": {"interval": interval}},
                }
            ],
        },
    }


def event_body(
    event_id: str,
    event_type: str,
    data_object: Dict[str, object],
    *,
    created: Optional[int] = None,
) -> Dict[str, object]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": data_object},
    }


def sign_payload(payload: str, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_delivery(body: Dict[str, object], *, secret: str = WEBHOOK_SECRET) -> Tuple[bytes, str]:
    payload = json.dumps(body)
    return payload.encode("utf-8"), sign_payload(payload, secret=secret)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        webhook_tolerance_seconds=300,
        provider_timeout_seconds=10.0,
        provider_max_retries=2,
        frontend_origin="https://app.test",
        invoice_fallback_digits=8,
    )


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def billing_service(billing_config, repository, provider) -> BillingService:
    return BillingService.build(
        config=billing_config,
        repository=repository,
        provider=provider,
        verifier=StripeSignatureVerifier(WEBHOOK_SECRET, tolerance=billing_config.webhook_tolerance_seconds),
    )
