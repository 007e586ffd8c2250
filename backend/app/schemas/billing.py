"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import EntitlementProjection, OwnerKind, RedirectSession, SeatUpdateResult, SubscriptionStatus


class CheckoutSessionRequest(BaseModel):
    price_id: Optional[str] = Field(alias="priceId", default=None)
    plan_code: Optional[str] = Field(alias="planCode", default=None)
    billing_period: Optional[str] = Field(alias="billingPeriod", default=None)
    quantity: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class RedirectResponse(BaseModel):
    redirect_url: str = Field(alias="redirectUrl")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: RedirectSession) -> "RedirectResponse":
        return cls(redirect_url=session.redirect_url)


class SeatUpdateRequest(BaseModel):
    quantity: int


class SeatUpdateResponse(BaseModel):
    applied_quantity: int = Field(alias="appliedQuantity")
    occupancy: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SeatUpdateResult) -> "SeatUpdateResponse":
        return cls(applied_quantity=result.applied_quantity, occupancy=result.occupancy)


class WebhookAcknowledgement(BaseModel):
    received: bool = True


class LicenseResponse(BaseModel):
    owner_kind: OwnerKind = Field(alias="ownerKind")
    owner_id: str = Field(alias="ownerId")
    plan_code: str = Field(alias="planCode")
    status: Optional[SubscriptionStatus] = None
    active_until: Optional[datetime] = Field(alias="activeUntil", default=None)
    seat_limit: Optional[int] = Field(alias="seatLimit", default=None)
    has_premium_access: bool = Field(alias="hasPremiumAccess")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_projection(cls, projection: EntitlementProjection) -> "LicenseResponse":
        return cls(
            owner_kind=projection.owner.kind,
            owner_id=projection.owner.id,
            plan_code=projection.plan_code,
            status=projection.status,
            active_until=projection.active_until,
            seat_limit=projection.seat_limit,
            has_premium_access=bool(projection.status and projection.status.is_entitling),
        )
