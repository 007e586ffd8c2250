"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ... import app_context
from ..billing import Actor, BillingService
from ..billing.exceptions import AuthenticationFailed, BillingError, MalformedEvent
from ..schemas.billing import (
    CheckoutSessionRequest,
    LicenseResponse,
    RedirectResponse,
    SeatUpdateRequest,
    SeatUpdateResponse,
    WebhookAcknowledgement,
)
from ..services.billing import get_billing_service

logger = logging.getLogger("billing.webhooks")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_actor(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> Actor:
    return app_context.get_current_actor(session_token=session_token, authorization=authorization)


def _require_service() -> BillingService:
    service = get_billing_service()
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing is not configured")
    return service


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/checkout-session", response_model=RedirectResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_actor: Actor = Depends(_get_current_actor),
) -> RedirectResponse:
    service = _require_service()
    try:
        session = service.create_checkout_session_for_actor(
            current_actor,
            plan_code=payload.plan_code,
            billing_period=payload.billing_period,
            price_id=payload.price_id,
            quantity=payload.quantity,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return RedirectResponse.from_session(session)


@router.post("/portal-session", response_model=RedirectResponse)
def create_portal_session(
    *,
    current_actor: Actor = Depends(_get_current_actor),
) -> RedirectResponse:
    service = _require_service()
    try:
        session = service.create_portal_session_for_actor(current_actor)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return RedirectResponse.from_session(session)


@router.post("/seats", response_model=SeatUpdateResponse)
def update_seats(
    payload: SeatUpdateRequest,
    *,
    current_actor: Actor = Depends(_get_current_actor),
) -> SeatUpdateResponse:
    service = _require_service()
    try:
        result = service.update_seat_quantity_for_actor(current_actor, payload.quantity)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SeatUpdateResponse.from_result(result)


@router.get("/license", response_model=LicenseResponse)
def get_license(
    *,
    current_actor: Actor = Depends(_get_current_actor),
) -> LicenseResponse:
    service = _require_service()
    try:
        projection = service.entitlement_for_actor(current_actor)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return LicenseResponse.from_projection(projection)


@router.post("/webhook", response_model=WebhookAcknowledgement)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> Any:
    service = _require_service()
    payload = await request.body()
    try:
        receipt = await run_in_threadpool(service.handle_webhook, payload, stripe_signature)
    except (AuthenticationFailed, MalformedEvent) as exc:
        logger.warning(
            "Rejected webhook delivery: %s",
            exc.message,
            extra={"billing_event": f"webhook.{exc.code}"},
        )
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    logger.debug("Acknowledged webhook id=%s disposition=%s", receipt.event_id, receipt.disposition.value)
    return WebhookAcknowledgement()
