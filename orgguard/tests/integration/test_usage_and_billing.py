from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from orgguard.domain.models import BillingHistoryEntry
from orgguard.domain.permissions import Permission
from orgguard.domain.results import ErrorCode
from orgguard.persistence.db import SessionLocal
from orgguard.services import organisations as organisations_service
from orgguard.services import subscriptions as subscriptions_service
from orgguard.services import usage as usage_service
from orgguard.services.entitlements import BYTES_PER_GB
from orgguard.services.subscriptions import ProcessorUpdate
from orgguard.tests.utils.factories import (
    add_storage_addon,
    create_admin,
    create_org,
    load_org,
    seed_plans,
    unique_id,
)


async def _history_events(organisation_id: str) -> list[BillingHistoryEntry]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(BillingHistoryEntry)
            .where(BillingHistoryEntry.organisation_id == organisation_id)
            .order_by(BillingHistoryEntry.created_at)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_seat_capacity_follows_free_plan_limit() -> None:
    plans = await seed_plans()
    organisation = await create_org(
        plan_id=plans["free"].id,
        members={unique_id("owner"): "owner", unique_id("user"): "user"},
    )

    async with SessionLocal() as session:
        users = await usage_service.check_capacity(session, organisation.id, "users")
        records = await usage_service.check_capacity(session, organisation.id, "records")
        unknown = await usage_service.check_capacity(session, organisation.id, "widgets")
    assert users.data is False
    assert records.data is True
    assert unknown.error.code == ErrorCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_missing_plan_reference_resolves_to_free_tier() -> None:
    await seed_plans()
    organisation = await create_org(plan_id=None, members={unique_id("owner"): "owner"})

    async with SessionLocal() as session:
        entitlements = await usage_service.get_organisation_entitlements(session, organisation.id)
    assert entitlements.ok
    assert entitlements.data.plan_slug == "free"
    assert entitlements.data.features["pdf_export"] is True
    assert entitlements.data.features["api_access"] is False
    assert entitlements.data.field_categories == ["basic", "evidence"]


@pytest.mark.asyncio
async def test_reports_counter_resets_each_calendar_month() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["free"].id)
    january = datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc)
    february = datetime(2026, 2, 2, 9, 0, tzinfo=timezone.utc)

    async with SessionLocal() as session:
        for _ in range(3):
            recorded = await usage_service.record_usage(
                session, organisation_id=organisation.id, metric="reports", delta=1, now=january
            )
        await usage_service.record_usage(
            session, organisation_id=organisation.id, metric="records", delta=40, now=january
        )
    assert recorded.data == 3

    async with SessionLocal() as session:
        in_january = await usage_service.get_usage_report(session, organisation.id, now=january)
        in_february = await usage_service.get_usage_report(session, organisation.id, now=february)
    assert in_january.data.reports.current == 3
    assert in_january.data.reports.percent == 30
    assert in_february.data.reports.current == 0
    # Records are running totals and carry across months.
    assert in_february.data.records.current == 40


@pytest.mark.asyncio
async def test_usage_counters_never_go_negative() -> None:
    organisation = await create_org()

    async with SessionLocal() as session:
        await usage_service.record_usage(
            session, organisation_id=organisation.id, metric="records", delta=2
        )
        result = await usage_service.record_usage(
            session, organisation_id=organisation.id, metric="records", delta=-5
        )
        unknown = await usage_service.record_usage(
            session, organisation_id=organisation.id, metric="pages", delta=1
        )
    assert result.data == 0
    assert unknown.error.code == ErrorCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_storage_addon_raises_effective_limit() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["pro"].id)
    await add_storage_addon(organisation.id, quantity_blocks=1)

    async with SessionLocal() as session:
        await usage_service.record_usage(
            session,
            organisation_id=organisation.id,
            metric="storage_bytes",
            delta=30 * BYTES_PER_GB,
        )
        report = await usage_service.get_usage_report(session, organisation.id)
        capacity = await usage_service.check_capacity(session, organisation.id, "storage")
    storage = report.data.storage
    assert report.data.storage_detail.limit_gb == 35
    assert report.data.storage_detail.addon_gb == 10
    assert storage.exceeded is False
    assert storage.at_warning is True
    assert capacity.data is True


@pytest.mark.asyncio
async def test_price_quote_uses_member_count_and_discount() -> None:
    plans = await seed_plans()
    organisation = await create_org(
        plan_id=plans["pro"].id,
        discount_percent=10,
        members={unique_id("a"): "owner", unique_id("b"): "user", unique_id("c"): "user"},
    )

    async with SessionLocal() as session:
        quote = await usage_service.quote_organisation_price(session, organisation.id, interval="monthly")
        bad_interval = await usage_service.quote_organisation_price(
            session, organisation.id, interval="weekly"
        )
    assert quote.data.seats == 3
    assert quote.data.extra_seats == 2
    assert quote.data.subtotal_minor == 2900 + 1800
    assert quote.data.total_minor == 2610 + 1620
    assert bad_interval.error.code == ErrorCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_processor_update_activates_trial_by_customer_ref() -> None:
    plans = await seed_plans()
    customer_ref = unique_id("cus")
    organisation = await create_org(
        plan_id=plans["pro"].id,
        subscription_status="trialing",
        customer_ref=customer_ref,
    )

    async with SessionLocal() as session:
        result = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="active", customer_ref=customer_ref)
        )
    assert result.ok
    assert result.data.id == organisation.id
    assert result.data.subscription_status == "active"

    events = await _history_events(organisation.id)
    assert [(e.event_type, e.previous_value, e.new_value) for e in events] == [
        ("status_change", "trialing", "active")
    ]
    assert events[0].changed_by is None


@pytest.mark.asyncio
async def test_cancellation_without_replacement_drops_to_free_plan() -> None:
    plans = await seed_plans()
    ends_at = datetime.now(timezone.utc) + timedelta(days=20)
    organisation = await create_org(plan_id=plans["pro"].id, subscription_status="active")

    async with SessionLocal() as session:
        await subscriptions_service.apply_processor_update(
            session,
            ProcessorUpdate(status="past_due", organisation_id=organisation.id, subscription_ends_at=ends_at),
        )
        canceled = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="canceled", organisation_id=organisation.id)
        )
    assert canceled.ok
    stored = await load_org(organisation.id)
    assert stored.subscription_status == "canceled"
    assert stored.current_plan_id == plans["free"].id
    assert stored.subscription_ends_at is None

    event_types = [event.event_type for event in await _history_events(organisation.id)]
    assert event_types.count("status_change") == 2
    assert "plan_change" in event_types


@pytest.mark.asyncio
async def test_free_organisation_upgrades_through_trial_to_active() -> None:
    plans = await seed_plans()
    _admin, actor = await create_admin(permissions=[Permission.EDIT_ALL_ORGANISATIONS])
    trial_end = datetime.now(timezone.utc) + timedelta(days=7)

    async with SessionLocal() as session:
        created = await organisations_service.create_organisation(
            session, actor=actor, name="Free Tier Org", plan_id=plans["free"].id
        )
    assert created.data.subscription_status == "active"

    async with SessionLocal() as session:
        trialing = await subscriptions_service.apply_processor_update(
            session,
            ProcessorUpdate(
                status="trialing",
                organisation_id=created.data.id,
                plan_id=plans["pro"].id,
                trial_ends_at=trial_end,
            ),
        )
    assert trialing.ok
    stored = await load_org(created.data.id)
    assert stored.subscription_status == "trialing"
    assert stored.current_plan_id == plans["pro"].id
    assert stored.trial_ends_at == trial_end

    # Once on a paid plan the transition table applies again.
    async with SessionLocal() as session:
        active = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="active", organisation_id=created.data.id)
        )
        back_to_trial = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="trialing", organisation_id=created.data.id)
        )
    assert active.ok
    assert back_to_trial.error.code == ErrorCode.INVALID_ARGUMENT
    assert back_to_trial.error.details == {"current": "active", "target": "trialing"}
    assert (await load_org(created.data.id)).subscription_status == "active"

    events = [(e.event_type, e.previous_value, e.new_value) for e in await _history_events(created.data.id)]
    assert ("plan_change", plans["free"].id, plans["pro"].id) in events
    assert ("status_change", "active", "trialing") in events
    assert ("status_change", "trialing", "active") in events


@pytest.mark.asyncio
async def test_processor_update_rejects_disallowed_transitions() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["pro"].id, subscription_status="canceled")

    async with SessionLocal() as session:
        disallowed = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="past_due", organisation_id=organisation.id)
        )
        unknown_status = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="expired", organisation_id=organisation.id)
        )
        unknown_org = await subscriptions_service.apply_processor_update(
            session, ProcessorUpdate(status="active", customer_ref=unique_id("cus"))
        )
        no_target = await subscriptions_service.apply_processor_update(session, ProcessorUpdate(status="active"))
    assert disallowed.error.code == ErrorCode.INVALID_ARGUMENT
    assert disallowed.error.details == {"current": "canceled", "target": "past_due"}
    assert unknown_status.error.code == ErrorCode.INVALID_ARGUMENT
    assert unknown_org.error.code == ErrorCode.NOT_FOUND
    assert no_target.error.code == ErrorCode.INVALID_ARGUMENT
    assert (await load_org(organisation.id)).subscription_status == "canceled"
    assert await _history_events(organisation.id) == []


@pytest.mark.asyncio
async def test_billing_summary_reports_trial_and_free_access() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["pro"].id, discount_percent=100)
    admin, actor = await create_admin(permissions=[Permission.EDIT_ALL_ORGANISATIONS])
    trial_end = datetime(2026, 5, 10, tzinfo=timezone.utc)

    async with SessionLocal() as session:
        await subscriptions_service.set_organisation_plan(
            session,
            actor=actor,
            organisation_id=organisation.id,
            plan_id=plans["pro"].id,
            status="trialing",
            trial_ends_at=trial_end,
        )
    async with SessionLocal() as session:
        summary = await subscriptions_service.get_billing_summary(
            session, organisation.id, now=trial_end - timedelta(days=2, hours=3)
        )
        status = await subscriptions_service.get_billing_status(session, organisation.id)
    assert summary.data.plan_slug == "pro"
    assert summary.data.is_trialing is True
    assert summary.data.trial_days_remaining == 3
    assert summary.data.is_free_access is True
    assert summary.data.has_billing is False
    assert status.data.status.value == "trialing"
    assert status.data.trial_ends_at == trial_end

    history = await _history_events(organisation.id)
    assert {event.event_type for event in history} == {"status_change", "trial_extended"}
    assert all(event.changed_by == admin.id for event in history)
