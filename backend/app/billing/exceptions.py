"""Error taxonomy for the billing core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base class for actionable billing failures surfaced to callers."""

    code: str = "billing_error"
    message: str = "Billing operation failed"
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None
    retryable: bool = False

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class AuthenticationFailed(BillingError):
    code: str = "authentication_failed"
    message: str = "Webhook signature verification failed"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class PermissionDenied(BillingError):
    code: str = "forbidden"
    message: str = "Not allowed to perform this billing action"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class ValidationFailed(BillingError):
    code: str = "invalid_parameter"
    message: str = "Invalid billing parameters"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class MalformedEvent(BillingError):
    code: str = "malformed_event"
    message: str = "Webhook payload could not be parsed"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class Conflict(BillingError):
    code: str = "conflict"
    message: str = "Billing state conflict"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class SeatBelowOccupancy(Conflict):
    """Requested seats would leave active members without a seat."""

    code: str = "seat_below_occupancy"
    message: str = "Remove members before reducing seats below current occupancy"
    occupancy: int = 0
    requested: int = 0

    def __post_init__(self) -> None:
        self.detail = {**(self.detail or {}), "occupancy": self.occupancy, "requested": self.requested}
        super().__post_init__()


@dataclass
class SeatLimitReached(Conflict):
    code: str = "seat_limit_reached"
    message: str = "All purchased seats are in use"
    occupancy: int = 0
    seat_limit: int = 0

    def __post_init__(self) -> None:
        self.detail = {**(self.detail or {}), "occupancy": self.occupancy, "seatLimit": self.seat_limit}
        super().__post_init__()


@dataclass
class CustomerCreationInFlight(Conflict):
    code: str = "customer_creation_in_flight"
    message: str = "Billing account is being created, retry shortly"
    retryable: bool = True


@dataclass
class NotFound(BillingError):
    code: str = "not_found"
    message: str = "Billing record not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class OwnerNotFound(NotFound):
    code: str = "owner_not_found"
    message: str = "Billing owner could not be resolved"


@dataclass
class NoBillingAccount(NotFound):
    code: str = "no_billing_account"
    message: str = "No billing account exists yet"


@dataclass
class NoActiveSubscription(NotFound):
    code: str = "no_active_subscription"
    message: str = "No active subscription found"


@dataclass
class ProviderError(BillingError):
    """Transient failure of the external payment provider."""

    code: str = "provider_error"
    message: str = "Payment provider request failed"
    status_code: int = status.HTTP_502_BAD_GATEWAY
    retryable: bool = True


@dataclass
class StoreError(BillingError):
    """Transient persistence failure; writes are rolled back."""

    code: str = "store_error"
    message: str = "Billing storage is unavailable"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable: bool = True


__all__ = [
    "AuthenticationFailed",
    "BillingError",
    "Conflict",
    "CustomerCreationInFlight",
    "MalformedEvent",
    "NoActiveSubscription",
    "NoBillingAccount",
    "NotFound",
    "OwnerNotFound",
    "PermissionDenied",
    "ProviderError",
    "SeatBelowOccupancy",
    "SeatLimitReached",
    "StoreError",
    "ValidationFailed",
]
