from __future__ import annotations

from datetime import datetime, timedelta, timezone

from orgguard.domain.models import SubscriptionPlan
from orgguard.services.subscriptions import (
    SubscriptionStatus,
    initial_billing_state,
    is_transition_allowed,
    parse_status,
    trial_days_remaining,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _plan(slug: str, monthly: int, annual: int) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=f"plan-{slug}",
        slug=slug,
        name=slug.title(),
        price_monthly_minor=monthly,
        price_annual_minor=annual,
    )


def test_paid_plan_starts_trialing() -> None:
    state = initial_billing_state(_plan("pro", 2900, 27840), now=NOW)
    assert state.status == SubscriptionStatus.TRIALING
    assert state.plan_id == "plan-pro"
    assert state.trial_ends_at == NOW + timedelta(days=7)


def test_fully_discounted_paid_plan_starts_active_without_trial() -> None:
    state = initial_billing_state(_plan("pro", 2900, 27840), discount_percent=100, now=NOW)
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.trial_ends_at is None


def test_partial_discount_still_trials() -> None:
    state = initial_billing_state(_plan("pro", 2900, 27840), discount_percent=99, now=NOW, trial_days=14)
    assert state.status == SubscriptionStatus.TRIALING
    assert state.trial_ends_at == NOW + timedelta(days=14)


def test_free_and_missing_plans_start_active() -> None:
    free = initial_billing_state(_plan("free", 0, 0), now=NOW)
    assert free.status == SubscriptionStatus.ACTIVE
    assert free.plan_id == "plan-free"
    assert free.trial_ends_at is None

    missing = initial_billing_state(None, now=NOW)
    assert missing.status == SubscriptionStatus.ACTIVE
    assert missing.plan_id is None


def test_processor_transition_table() -> None:
    assert is_transition_allowed(SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE) is True
    assert is_transition_allowed(SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE) is True
    assert is_transition_allowed(SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE) is True
    assert is_transition_allowed(SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE) is False
    assert is_transition_allowed(SubscriptionStatus.UNPAID, SubscriptionStatus.TRIALING) is False
    # Same-state updates are always accepted.
    assert is_transition_allowed(SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED) is True


def test_parse_status_rejects_unknown_values() -> None:
    assert parse_status("past_due") == SubscriptionStatus.PAST_DUE
    assert parse_status("expired") is None


def test_trial_days_remaining_rounds_up_and_floors_at_zero() -> None:
    assert trial_days_remaining(None, NOW) is None
    assert trial_days_remaining(NOW + timedelta(days=1, hours=12), NOW) == 2
    assert trial_days_remaining(NOW + timedelta(days=3), NOW) == 3
    assert trial_days_remaining(NOW - timedelta(days=2), NOW) == 0
