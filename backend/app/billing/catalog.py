"""Static catalog of purchasable plans."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .models import BillingPeriod

FREE_PLAN_CODE = "FREE"
UNKNOWN_PLAN_CODE = "UNKNOWN"


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan and how it is billed."""

    code: str
    display_name: str
    billing_periods: Tuple[BillingPeriod, ...]
    organization_scoped: bool = False
    per_seat: bool = False
    default_seat_limit: Optional[int] = None
    purchasable: bool = True


PLAN_CATALOG: Dict[str, PlanDefinition] = {
    FREE_PLAN_CODE: PlanDefinition(
        code=FREE_PLAN_CODE,
        display_name="Free",
        billing_periods=(BillingPeriod.MONTHLY,),
        purchasable=False,
    ),
    "PRO": PlanDefinition(
        code="PRO",
        display_name="Pro",
        billing_periods=(BillingPeriod.MONTHLY, BillingPeriod.YEARLY),
    ),
    "TEAM": PlanDefinition(
        code="TEAM",
        display_name="School (Team)",
        billing_periods=(BillingPeriod.MONTHLY, BillingPeriod.YEARLY),
        organization_scoped=True,
        per_seat=True,
        default_seat_limit=10,
    ),
}


def normalize_plan_code(plan_code: Optional[str]) -> str:
    return (plan_code or "").strip().upper()


def find_plan_definition(plan_code: Optional[str]) -> Optional[PlanDefinition]:
    """Return the plan definition for ``plan_code`` or ``None`` when unknown."""

    return PLAN_CATALOG.get(normalize_plan_code(plan_code))


def get_plan_definition(plan_code: str) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    definition = find_plan_definition(plan_code)
    if definition is None:
        raise KeyError(f"Unknown plan code: {plan_code}")
    return definition


def is_organization_plan(plan_code: Optional[str]) -> bool:
    definition = find_plan_definition(plan_code)
    return bool(definition and definition.organization_scoped)
