"""Owner resolution for billing actions.

Checkout and portal sessions must route an actor to the same billing identity,
so both decide with :func:`targets_organization`.
"""
from __future__ import annotations

from typing import Optional

from .catalog import is_organization_plan
from .exceptions import PermissionDenied
from .models import Actor, Owner


def targets_organization(actor: Actor, plan_code: Optional[str]) -> bool:
    """Return ``True`` when a billing action for ``plan_code`` belongs to the actor's organization."""

    return actor.is_organization_admin and is_organization_plan(plan_code)


def resolve_billing_owner(actor: Actor, plan_code: Optional[str]) -> Owner:
    """Select the owner a billing action for ``plan_code`` targets.

    Organization-scoped plans can only be bought or managed by an administrator
    of the actor's organization; everything else targets the actor.
    """

    if targets_organization(actor, plan_code):
        return Owner.organization(actor.organization_id)
    if is_organization_plan(plan_code):
        raise PermissionDenied(
            code="organization_admin_required",
            message="Only an organization administrator can manage organization plans",
        )
    return Owner.individual(actor.user_id)


def require_organization_admin(actor: Actor, owner: Owner) -> None:
    """Ensure ``actor`` administers the organization ``owner``."""

    if not owner.is_organization:
        raise PermissionDenied(message="Seat management requires an organization owner")
    if not actor.is_organization_admin or actor.organization_id != owner.id:
        raise PermissionDenied(
            code="organization_admin_required",
            message="Only an administrator of this organization can change seats",
        )


def organization_owner_for(actor: Actor) -> Optional[Owner]:
    if actor.organization_id is None:
        return None
    return Owner.organization(actor.organization_id)
