"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import OwnerNotFound, StoreError
from .models import (
    BillingPeriod,
    CustomerLink,
    EntitlementProjection,
    Owner,
    OwnerKind,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)

ConnectionFactory = Callable[[], PgConnection]

OWNER_TABLES = {
    OwnerKind.INDIVIDUAL: "users",
    OwnerKind.ORGANIZATION: "schools",
}

SEAT_OCCUPYING_ROLE = "teacher"

_SUBSCRIPTION_COLUMNS = (
    "external_subscription_id",
    "owner_kind",
    "owner_id",
    "plan_code",
    "billing_period",
    "external_customer_id",
    "external_price_id",
    "status",
    "cancel_at_period_end",
    "current_period_start",
    "current_period_end",
    "seat_limit",
    "synced_at",
    "created_at",
    "updated_at",
)


@contextmanager
def managed_connection(conn_factory: Optional[ConnectionFactory] = None) -> Iterator[PgConnection]:
    """Open a connection, commit on success and roll back on any failure."""

    factory = conn_factory or get_conn
    try:
        connection = factory()
    except psycopg2.Error as exc:
        raise StoreError(message="Could not connect to billing storage") from exc

    try:
        yield connection
        connection.commit()
    except psycopg2.Error as exc:
        connection.rollback()
        raise StoreError(message=f"Billing storage error: {exc.pgerror or exc}") from exc
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_customer_link(row: dict) -> CustomerLink:
    return CustomerLink(
        owner_kind=OwnerKind(row["owner_kind"]),
        owner_id=row["owner_id"],
        external_customer_id=row["external_customer_id"],
        created_at=row["created_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    billing_period = row.get("billing_period")
    return Subscription(
        external_subscription_id=row["external_subscription_id"],
        owner_kind=OwnerKind(row["owner_kind"]),
        owner_id=row["owner_id"],
        plan_code=row["plan_code"],
        billing_period=BillingPeriod(billing_period) if billing_period else None,
        external_customer_id=row["external_customer_id"],
        external_price_id=row.get("external_price_id"),
        status=SubscriptionStatus(row["status"]),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        seat_limit=row.get("seat_limit"),
        synced_at=row["synced_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _subscription_params(subscription: Subscription) -> dict:
    return {
        "external_subscription_id": subscription.external_subscription_id,
        "owner_kind": subscription.owner_kind.value,
        "owner_id": subscription.owner_id,
        "plan_code": subscription.plan_code,
        "billing_period": subscription.billing_period.value if subscription.billing_period else None,
        "external_customer_id": subscription.external_customer_id,
        "external_price_id": subscription.external_price_id,
        "status": subscription.status.value,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "seat_limit": subscription.seat_limit,
        "synced_at": subscription.synced_at,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


_SELECT_SUBSCRIPTION = "SELECT * FROM billing_subscriptions WHERE external_subscription_id = %s"

_SELECT_LATEST_ACTIVE = """
    SELECT *
    FROM billing_subscriptions
    WHERE owner_kind = %s AND owner_id = %s AND status IN ('active', 'trialing')
    ORDER BY current_period_end DESC NULLS LAST, updated_at DESC
    LIMIT 1
"""

_SELECT_LATEST_OPEN = """
    SELECT *
    FROM billing_subscriptions
    WHERE owner_kind = %s AND owner_id = %s AND status <> 'canceled'
    ORDER BY updated_at DESC
    LIMIT 1
"""

_UPSERT_SUBSCRIPTION = """
    INSERT INTO billing_subscriptions ({columns})
    VALUES ({values})
    ON CONFLICT (external_subscription_id) DO UPDATE SET
        owner_kind = EXCLUDED.owner_kind,
        owner_id = EXCLUDED.owner_id,
        plan_code = EXCLUDED.plan_code,
        billing_period = EXCLUDED.billing_period,
        external_customer_id = EXCLUDED.external_customer_id,
        external_price_id = EXCLUDED.external_price_id,
        status = EXCLUDED.status,
        cancel_at_period_end = EXCLUDED.cancel_at_period_end,
        current_period_start = EXCLUDED.current_period_start,
        current_period_end = EXCLUDED.current_period_end,
        seat_limit = EXCLUDED.seat_limit,
        synced_at = EXCLUDED.synced_at,
        updated_at = EXCLUDED.updated_at
    WHERE billing_subscriptions.synced_at <= EXCLUDED.synced_at
      AND (billing_subscriptions.status <> 'canceled' OR EXCLUDED.status = 'canceled')
    RETURNING *
""".format(
    columns=", ".join(_SUBSCRIPTION_COLUMNS),
    values=", ".join(f"%({column})s" for column in _SUBSCRIPTION_COLUMNS),
)


class _SubscriptionRowLock:
    """Holds ``SELECT ... FOR UPDATE`` on one subscription row."""

    def __init__(self, cursor: PgCursor, current: Optional[Subscription]) -> None:
        self._cursor = cursor
        self.current = current

    def write(self, subscription: Subscription) -> Subscription:
        self._cursor.execute(_UPSERT_SUBSCRIPTION, _subscription_params(subscription))
        row = self._cursor.fetchone()
        if row is None:
            # A concurrent first insert won with a newer snapshot.
            self._cursor.execute(_SELECT_SUBSCRIPTION, (subscription.external_subscription_id,))
            row = self._cursor.fetchone()
        self.current = _row_to_subscription(row)
        return self.current


class _OwnerEntitlementRecord:
    """Owner row held ``FOR UPDATE`` while its entitlement columns are rewritten."""

    def __init__(self, cursor: PgCursor, owner: Owner) -> None:
        self._cursor = cursor
        self._owner = owner

    def latest_active(self) -> Optional[Subscription]:
        self._cursor.execute(_SELECT_LATEST_ACTIVE, (self._owner.kind.value, self._owner.id))
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def write(self, projection: EntitlementProjection) -> None:
        assignments = [
            "plan_code = %(plan_code)s",
            "billing_status = %(status)s",
            "plan_active_until = %(active_until)s",
            "billing_synced_at = clock_timestamp()",
        ]
        if self._owner.is_organization:
            assignments.append("seat_limit = %(seat_limit)s")
        self._cursor.execute(
            f"""
            UPDATE {OWNER_TABLES[self._owner.kind]}
            SET {", ".join(assignments)}
            WHERE id::text = %(owner_id)s
            """,
            {
                "plan_code": projection.plan_code,
                "status": projection.status.value if projection.status else None,
                "active_until": projection.active_until,
                "seat_limit": projection.seat_limit,
                "owner_id": self._owner.id,
            },
        )


class _OrganizationSeatLedger:
    """Seat view valid while the organization row is locked."""

    def __init__(self, cursor: PgCursor, owner: Owner, subscription: Optional[Subscription]) -> None:
        self._cursor = cursor
        self._owner = owner
        self.subscription = subscription

    def active_member_count(self) -> int:
        self._cursor.execute(
            """
            SELECT COUNT(*) AS occupancy
            FROM users
            WHERE school_id::text = %s AND role = %s
            """,
            (self._owner.id, SEAT_OCCUPYING_ROLE),
        )
        row = self._cursor.fetchone()
        return int(row["occupancy"]) if row else 0

    def apply_seat_limit(self, quantity: int, *, synced_at: datetime) -> Subscription:
        if self.subscription is None:
            raise RuntimeError("No subscription to apply seats to")
        self._cursor.execute(
            """
            UPDATE billing_subscriptions
            SET seat_limit = %s,
                synced_at = GREATEST(synced_at, %s),
                updated_at = NOW()
            WHERE external_subscription_id = %s
            RETURNING *
            """,
            (quantity, synced_at, self.subscription.external_subscription_id),
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist seat limit")
        self.subscription = _row_to_subscription(row)
        return self.subscription


class PostgresBillingRepository:
    """Concrete repository persisting billing state in PostgreSQL."""

    def __init__(self, *, conn_factory: Optional[ConnectionFactory] = None) -> None:
        self._conn_factory = conn_factory

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn_factory) as connection:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    # Customer links

    def get_customer_link(self, owner: Owner) -> Optional[CustomerLink]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_customer_links
                WHERE owner_kind = %s AND owner_id = %s
                LIMIT 1
                """,
                (owner.kind.value, owner.id),
            )
            row = cursor.fetchone()
            return _row_to_customer_link(row) if row else None

    def get_customer_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_customer_links
                WHERE external_customer_id = %s
                LIMIT 1
                """,
                (external_customer_id,),
            )
            row = cursor.fetchone()
            return _row_to_customer_link(row) if row else None

    def insert_customer_link_if_absent(self, link: CustomerLink) -> CustomerLink:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_customer_links (owner_kind, owner_id, external_customer_id, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (owner_kind, owner_id) DO NOTHING
                RETURNING *
                """,
                (link.owner_kind.value, link.owner_id, link.external_customer_id, link.created_at),
            )
            row = cursor.fetchone()
            if row is None:
                cursor.execute(
                    """
                    SELECT *
                    FROM billing_customer_links
                    WHERE owner_kind = %s AND owner_id = %s
                    """,
                    (link.owner_kind.value, link.owner_id),
                )
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist customer link")
            return _row_to_customer_link(row)

    # Subscriptions

    @contextmanager
    def lock_subscription(self, external_subscription_id: str) -> Iterator[_SubscriptionRowLock]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_SUBSCRIPTION + " FOR UPDATE", (external_subscription_id,))
            row = cursor.fetchone()
            yield _SubscriptionRowLock(cursor, _row_to_subscription(row) if row else None)

    def get_subscription(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_SUBSCRIPTION, (external_subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def latest_active_for(self, owner: Owner) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_LATEST_ACTIVE, (owner.kind.value, owner.id))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def latest_open_for(self, owner: Owner) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_LATEST_OPEN, (owner.kind.value, owner.id))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    @contextmanager
    def lock_owner_entitlement(self, owner: Owner) -> Iterator[_OwnerEntitlementRecord]:
        table = OWNER_TABLES[owner.kind]
        with self._cursor() as cursor:
            cursor.execute(f"SELECT id FROM {table} WHERE id::text = %s FOR UPDATE", (owner.id,))
            if cursor.fetchone() is None:
                raise OwnerNotFound(detail={"ownerKind": owner.kind.value, "ownerId": owner.id})
            yield _OwnerEntitlementRecord(cursor, owner)

    # Seats

    @contextmanager
    def lock_organization_seats(self, owner: Owner) -> Iterator[_OrganizationSeatLedger]:
        with self._cursor() as cursor:
            cursor.execute("SELECT id FROM schools WHERE id::text = %s FOR UPDATE", (owner.id,))
            if cursor.fetchone() is None:
                raise OwnerNotFound(detail={"ownerId": owner.id})
            cursor.execute(_SELECT_LATEST_ACTIVE + " FOR UPDATE", (owner.kind.value, owner.id))
            row = cursor.fetchone()
            yield _OrganizationSeatLedger(cursor, owner, _row_to_subscription(row) if row else None)

    # Webhook ledger

    def is_webhook_event_recorded(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM billing_webhook_events WHERE event_id = %s", (event_id,))
            return cursor.fetchone() is not None

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (event_id, event_type, event_created, received_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (event.event_id, event.event_type, event.created, event.received_at),
            )
            return cursor.rowcount > 0

    # Invoice numbering

    def increment_invoice_sequence(self, year: int) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_invoice_sequences (year, last_value)
                VALUES (%s, 1)
                ON CONFLICT (year) DO UPDATE SET
                    last_value = billing_invoice_sequences.last_value + 1,
                    updated_at = NOW()
                RETURNING last_value
                """,
                (year,),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to advance invoice sequence")
            return int(row["last_value"])
