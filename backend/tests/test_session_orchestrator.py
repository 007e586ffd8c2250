from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.app.billing.exceptions import NoBillingAccount, PermissionDenied, ProviderError, ValidationFailed
from backend.app.billing.models import Actor, ActorRole, CustomerLink, Owner, OwnerKind
from backend.app.billing.subscriptions import subscription_from_provider

from conftest import subscription_payload


def _teacher_admin() -> Actor:
    return Actor(user_id="u-1", role=ActorRole.SCHOOL_ADMIN, organization_id="school-1", email="a@school.test")


def test_checkout_for_org_plan_targets_organization(billing_service, provider, repository):
    session = billing_service.create_checkout_session_for_actor(
        _teacher_admin(),
        plan_code="TEAM",
        billing_period="monthly",
        price_id="price_team_monthly",
        quantity=25,
    )

    assert session.owner.kind == OwnerKind.ORGANIZATION
    assert session.redirect_url == provider.checkout_sessions[0]["url"]
    sent = provider.checkout_sessions[0]
    assert sent["quantity"] == 25
    expected_metadata = {
        "ownerKind": "organization",
        "ownerId": "school-1",
        "planCode": "TEAM",
        "billingPeriod": "monthly",
    }
    assert sent["metadata"] == expected_metadata
    assert sent["subscription_metadata"] == expected_metadata
    assert sent["success_url"] == "https://app.test/billing/success"
    assert sent["cancel_url"] == "https://app.test/billing/cancel"
    assert repository.subscriptions == {}


def test_checkout_for_individual_forces_single_quantity(billing_service, provider):
    actor = Actor(user_id="u-5")

    session = billing_service.create_checkout_session_for_actor(
        actor,
        plan_code="pro",
        billing_period="yearly",
        price_id="price_pro_yearly",
        quantity=4,
    )

    assert session.owner.kind == OwnerKind.INDIVIDUAL
    assert provider.checkout_sessions[0]["quantity"] == 1
    assert provider.checkout_sessions[0]["metadata"]["planCode"] == "PRO"


def test_org_plan_without_quantity_uses_default_seats(billing_service, provider):
    billing_service.create_checkout_session_for_actor(
        _teacher_admin(),
        plan_code="TEAM",
        billing_period="monthly",
        price_id="price_team_monthly",
    )

    assert provider.checkout_sessions[0]["quantity"] == 10


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"plan_code": "PRO", "billing_period": "monthly", "price_id": None}, "missing_parameter"),
        ({"plan_code": None, "billing_period": "monthly", "price_id": "price_1"}, "missing_parameter"),
        ({"plan_code": "PRO", "billing_period": "weekly", "price_id": "price_1"}, "invalid_parameter"),
        ({"plan_code": "FREE", "billing_period": "monthly", "price_id": "price_1"}, "invalid_parameter"),
    ],
)
def test_checkout_validation_errors(billing_service, provider, kwargs, code):
    with pytest.raises(ValidationFailed) as excinfo:
        billing_service.create_checkout_session_for_actor(Actor(user_id="u-5"), **kwargs)

    assert excinfo.value.code == code
    assert provider.checkout_sessions == []


def test_org_plan_from_teacher_is_forbidden(billing_service, provider):
    actor = Actor(user_id="u-2", role=ActorRole.TEACHER, organization_id="school-1")

    with pytest.raises(PermissionDenied):
        billing_service.create_checkout_session_for_actor(
            actor, plan_code="TEAM", billing_period="monthly", price_id="price_team_monthly"
        )

    assert provider.customer_calls == []


def test_provider_failure_leaves_no_subscription_state(billing_service, provider, repository):
    provider.fail_with = ProviderError()

    with pytest.raises(ProviderError):
        billing_service.create_checkout_session_for_actor(
            Actor(user_id="u-5"), plan_code="PRO", billing_period="monthly", price_id="price_pro_monthly"
        )

    assert repository.subscriptions == {}


def test_portal_requires_existing_customer(billing_service):
    with pytest.raises(NoBillingAccount) as excinfo:
        billing_service.create_portal_session_for_actor(Actor(user_id="u-8"))

    assert excinfo.value.status_code == 404


def test_portal_uses_same_customer_as_checkout(billing_service, provider):
    actor = Actor(user_id="u-5")
    billing_service.create_checkout_session_for_actor(
        actor, plan_code="PRO", billing_period="monthly", price_id="price_pro_monthly"
    )

    session = billing_service.create_portal_session_for_actor(actor)

    assert provider.portal_sessions[0]["customer"] == provider.checkout_sessions[0]["customer"]
    assert provider.portal_sessions[0]["return_url"] == "https://app.test/billing"
    assert session.redirect_url.endswith(provider.checkout_sessions[0]["customer"])


def _school_subscription(billing_service, status: str, *, plan_code: str = "TEAM") -> None:
    school = Owner.organization("school-1")
    billing_service.subscriptions.upsert(
        subscription_from_provider(
            subscription_payload("sub_team", customer="cus_school", owner=school, plan_code=plan_code, status=status),
            owner=school,
            synced_at=datetime.now(timezone.utc),
        )
    )


def _link(repository, owner: Owner, customer: str) -> None:
    repository.customer_links[(owner.kind, owner.id)] = CustomerLink(
        owner_kind=owner.kind, owner_id=owner.id, external_customer_id=customer
    )


@pytest.mark.parametrize("status", ["past_due", "unpaid", "active"])
def test_portal_for_org_admin_follows_open_school_subscription(billing_service, provider, repository, status):
    _link(repository, Owner.organization("school-1"), "cus_school")
    _school_subscription(billing_service, status)

    session = billing_service.create_portal_session_for_actor(_teacher_admin())

    assert session.owner == Owner.organization("school-1")
    assert provider.portal_sessions[0]["customer"] == "cus_school"


def test_portal_matches_checkout_owner_before_first_webhook(billing_service, provider):
    actor = _teacher_admin()
    billing_service.create_checkout_session_for_actor(
        actor, plan_code="TEAM", billing_period="monthly", price_id="price_team_monthly", quantity=12
    )

    session = billing_service.create_portal_session_for_actor(actor)

    assert session.owner == Owner.organization("school-1")
    assert provider.portal_sessions[0]["customer"] == provider.checkout_sessions[0]["customer"]


def test_portal_for_canceled_school_prefers_own_account(billing_service, provider, repository):
    _link(repository, Owner.organization("school-1"), "cus_school")
    _link(repository, Owner.individual("u-1"), "cus_personal")
    _school_subscription(billing_service, "canceled")

    session = billing_service.create_portal_session_for_actor(_teacher_admin())

    assert session.owner == Owner.individual("u-1")
    assert provider.portal_sessions[0]["customer"] == "cus_personal"


def test_portal_for_teacher_is_individual(billing_service, repository):
    _link(repository, Owner.organization("school-1"), "cus_school")
    _school_subscription(billing_service, "past_due")
    teacher = Actor(user_id="u-2", role=ActorRole.TEACHER, organization_id="school-1")

    with pytest.raises(NoBillingAccount):
        billing_service.create_portal_session_for_actor(teacher)
