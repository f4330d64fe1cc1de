from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from orgguard.domain.models import BillingHistoryEntry, OrganisationMember
from orgguard.domain.permissions import Permission
from orgguard.domain.results import ErrorCode
from orgguard.persistence.db import SessionLocal
from orgguard.services import audit as audit_service
from orgguard.services import members as members_service
from orgguard.services import organisations as organisations_service
from orgguard.services import subscriptions as subscriptions_service
from orgguard.services.organisations import NewMember
from orgguard.tests.utils.factories import (
    count_audit_rows,
    create_admin,
    create_org,
    fetch_audit_rows,
    load_org,
    seed_plans,
    unique_id,
)


async def _editor():
    return await create_admin(
        permissions=[
            Permission.VIEW_ALL_ORGANISATIONS,
            Permission.EDIT_ALL_ORGANISATIONS,
            Permission.VIEW_ALL_USERS,
            Permission.EDIT_ALL_USERS,
        ]
    )


async def _count_members(organisation_id: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count())
            .select_from(OrganisationMember)
            .where(OrganisationMember.organisation_id == organisation_id)
        )
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_create_organisation_on_paid_plan_starts_trial_and_audits() -> None:
    plans = await seed_plans()
    admin, actor = await _editor()
    owner_id = unique_id("owner")

    async with SessionLocal() as session:
        result = await organisations_service.create_organisation(
            session,
            actor=actor,
            name="  Harbour Surveys  ",
            plan_id=plans["pro"].id,
            members=[NewMember(user_id=owner_id, role="owner")],
        )
    assert result.ok
    organisation = result.data
    assert organisation.name == "Harbour Surveys"
    assert organisation.subscription_status == "trialing"
    assert organisation.trial_ends_at is not None
    assert await _count_members(organisation.id) == 1

    rows = await fetch_audit_rows(action_type="create_organisation")
    assert len(rows) == 1
    assert rows[0].actor_id == admin.id
    assert rows[0].action_category == "organisation"
    assert rows[0].target_organisation_id == organisation.id
    assert rows[0].impersonating_user_id is None


@pytest.mark.asyncio
async def test_fully_discounted_organisation_skips_trial() -> None:
    plans = await seed_plans()
    admin, actor = await _editor()

    async with SessionLocal() as session:
        result = await organisations_service.create_organisation(
            session,
            actor=actor,
            name="Charity Inspections",
            plan_id=plans["pro"].id,
            discount_percent=100,
        )
    assert result.ok
    assert result.data.subscription_status == "active"
    assert result.data.trial_ends_at is None
    assert result.data.discount_applied_by == admin.id


@pytest.mark.asyncio
async def test_create_organisation_rejects_bad_input_without_writes() -> None:
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        blank = await organisations_service.create_organisation(session, actor=actor, name="   ")
        bad_plan = await organisations_service.create_organisation(
            session, actor=actor, name="Acme", plan_id="missing-plan"
        )
        bad_role = await organisations_service.create_organisation(
            session,
            actor=actor,
            name="Acme",
            members=[NewMember(user_id="u-1", role="superuser")],
        )
    assert blank.error.code == ErrorCode.INVALID_ARGUMENT
    assert bad_plan.error.code == ErrorCode.INVALID_ARGUMENT
    assert bad_role.error.code == ErrorCode.INVALID_ARGUMENT
    assert await count_audit_rows() == 0


@pytest.mark.asyncio
async def test_caller_without_permission_is_denied_before_any_change() -> None:
    organisation = await create_org()
    _admin, actor = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])

    async with SessionLocal() as session:
        result = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason="fraud"
        )
    assert result.error.code == ErrorCode.PERMISSION_DENIED
    assert result.error.details == {"permission": "edit_all_organisations"}
    assert (await load_org(organisation.id)).blocked is False
    assert await count_audit_rows() == 0


@pytest.mark.asyncio
async def test_block_requires_a_reason() -> None:
    organisation = await create_org()
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        result = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason="   "
        )
    assert result.error.code == ErrorCode.INVALID_ARGUMENT
    stored = await load_org(organisation.id)
    assert stored.blocked is False
    assert stored.blocked_reason is None
    assert await count_audit_rows() == 0


@pytest.mark.asyncio
async def test_block_and_unblock_record_before_and_after() -> None:
    organisation = await create_org()
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        blocked = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason="chargebacks"
        )
    assert blocked.ok
    assert blocked.data.blocked is True
    assert blocked.data.blocked_at is not None

    async with SessionLocal() as session:
        unblocked = await organisations_service.unblock_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    assert unblocked.ok
    stored = await load_org(organisation.id)
    assert stored.blocked is False
    assert stored.blocked_reason is None

    block_row = (await fetch_audit_rows(action_type="block_organisation"))[0]
    assert block_row.old_values == {"blocked": False, "blocked_reason": None}
    assert block_row.new_values["blocked_reason"] == "chargebacks"
    assert len(await fetch_audit_rows(action_type="unblock_organisation")) == 1


@pytest.mark.asyncio
async def test_archive_is_idempotent() -> None:
    organisation = await create_org()
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        first = await organisations_service.archive_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    archived_at = first.data.archived_at
    async with SessionLocal() as session:
        second = await organisations_service.archive_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    assert second.ok
    assert second.data.archived is True
    assert second.data.archived_at == archived_at

    async with SessionLocal() as session:
        restored = await organisations_service.restore_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    assert restored.data.archived is False
    assert restored.data.archived_at is None


@pytest.mark.asyncio
async def test_audit_failure_never_undoes_a_committed_action(monkeypatch) -> None:
    organisation = await create_org()
    _admin, actor = await _editor()

    async def _failing_commit(session, entry) -> None:
        raise SQLAlchemyError("audit store down")

    monkeypatch.setattr(audit_service, "_commit_entry", _failing_commit)
    async with SessionLocal() as session:
        result = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason="abuse"
        )
    assert result.ok
    assert (await load_org(organisation.id)).blocked is True
    assert await count_audit_rows() == 0


@pytest.mark.asyncio
async def test_delete_removes_organisation_but_keeps_audit_trail() -> None:
    organisation = await create_org(members={unique_id("owner"): "owner", unique_id("user"): "user"})
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        result = await organisations_service.delete_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    assert result.ok
    assert result.data == organisation.id
    assert await load_org(organisation.id) is None
    assert await _count_members(organisation.id) == 0

    rows = await fetch_audit_rows(action_type="delete_organisation", target_organisation_id=organisation.id)
    assert len(rows) == 1
    assert rows[0].old_values["member_count"] == 2
    assert rows[0].old_values["name"] == organisation.name


@pytest.mark.asyncio
async def test_delete_is_aborted_when_audit_cannot_be_written(monkeypatch) -> None:
    organisation = await create_org(members={unique_id("owner"): "owner"})
    _admin, actor = await _editor()

    async def _failing_commit(session, entry) -> None:
        raise SQLAlchemyError("audit store down")

    monkeypatch.setattr(audit_service, "_commit_entry", _failing_commit)
    async with SessionLocal() as session:
        result = await organisations_service.delete_organisation(
            session, actor=actor, organisation_id=organisation.id
        )
    assert result.error.code == ErrorCode.UNAVAILABLE
    assert await load_org(organisation.id) is not None
    assert await _count_members(organisation.id) == 1


@pytest.mark.asyncio
async def test_update_organisation_rejects_unknown_fields() -> None:
    organisation = await create_org(name="Old Name")
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        rejected = await organisations_service.update_organisation(
            session,
            actor=actor,
            organisation_id=organisation.id,
            fields={"subscription_status": "active"},
        )
        updated = await organisations_service.update_organisation(
            session,
            actor=actor,
            organisation_id=organisation.id,
            fields={"name": "New Name", "contact_email": "ops@example.com"},
        )
    assert rejected.error.code == ErrorCode.INVALID_ARGUMENT
    assert updated.ok
    row = (await fetch_audit_rows(action_type="update_organisation"))[0]
    assert row.old_values == {"name": "Old Name", "contact_email": None}
    assert row.new_values == {"name": "New Name", "contact_email": "ops@example.com"}


@pytest.mark.asyncio
async def test_list_organisations_filters_archived_and_search() -> None:
    active = await create_org(name="Northwind Audits")
    archived = await create_org(name="Northwind Legacy")
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        await organisations_service.archive_organisation(session, actor=actor, organisation_id=archived.id)
    async with SessionLocal() as session:
        everything = await organisations_service.list_organisations(session, actor=actor, search="northwind")
        current = await organisations_service.list_organisations(
            session, actor=actor, search="northwind", include_archived=False
        )
    assert {org.id for org in everything.data} == {active.id, archived.id}
    assert [org.id for org in current.data] == [active.id]


@pytest.mark.asyncio
async def test_plan_override_and_discount_write_billing_history() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["free"].id)
    admin, actor = await _editor()

    async with SessionLocal() as session:
        changed = await subscriptions_service.set_organisation_plan(
            session,
            actor=actor,
            organisation_id=organisation.id,
            plan_id=plans["enterprise"].id,
            status="active",
        )
        discounted = await subscriptions_service.set_discount(
            session,
            actor=actor,
            organisation_id=organisation.id,
            discount_percent=25,
            reason="partner",
        )
        out_of_range = await subscriptions_service.set_discount(
            session, actor=actor, organisation_id=organisation.id, discount_percent=101
        )
    assert changed.data.current_plan_id == plans["enterprise"].id
    assert discounted.data.discount_percent == 25
    assert out_of_range.error.code == ErrorCode.INVALID_ARGUMENT
    assert (await load_org(organisation.id)).discount_percent == 25

    async with SessionLocal() as session:
        result = await session.execute(
            select(BillingHistoryEntry).where(BillingHistoryEntry.organisation_id == organisation.id)
        )
        events = {entry.event_type: entry for entry in result.scalars().all()}
    assert events["plan_change"].new_value == plans["enterprise"].id
    assert events["plan_change"].changed_by == admin.id
    assert events["discount_change"].previous_value == "0"
    assert events["discount_change"].new_value == "25"

    async with SessionLocal() as session:
        history = await subscriptions_service.fetch_billing_history(
            session, actor=actor, organisation_id=organisation.id
        )
    assert {entry.event_type for entry in history.data} == {"plan_change", "discount_change"}


@pytest.mark.asyncio
async def test_plan_override_rejects_unknown_plan_without_changes() -> None:
    plans = await seed_plans()
    organisation = await create_org(plan_id=plans["pro"].id, subscription_status="trialing")
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        result = await subscriptions_service.set_organisation_plan(
            session,
            actor=actor,
            organisation_id=organisation.id,
            plan_id="missing",
            status="active",
        )
    assert result.error.code == ErrorCode.INVALID_ARGUMENT
    assert result.error.details == {"plan_id": "missing"}

    stored = await load_org(organisation.id)
    assert stored.current_plan_id == plans["pro"].id
    assert stored.subscription_status == "trialing"
    async with SessionLocal() as session:
        history = await session.execute(
            select(func.count())
            .select_from(BillingHistoryEntry)
            .where(BillingHistoryEntry.organisation_id == organisation.id)
        )
    assert int(history.scalar() or 0) == 0
    assert await count_audit_rows() == 0


@pytest.mark.asyncio
async def test_rejected_call_keeps_earlier_results_on_the_same_session_readable() -> None:
    organisation = await create_org()
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        blocked = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason="fraud review"
        )
        rejected = await organisations_service.block_organisation(
            session, actor=actor, organisation_id=organisation.id, reason=""
        )
        missing = await organisations_service.archive_organisation(
            session, actor=actor, organisation_id=unique_id("org")
        )
    assert rejected.error.code == ErrorCode.INVALID_ARGUMENT
    assert missing.error.code == ErrorCode.NOT_FOUND
    # Results from the successful call are still loaded after the session closes.
    assert blocked.data.blocked is True
    assert blocked.data.blocked_reason == "fraud review"
    assert (await load_org(organisation.id)).blocked_reason == "fraud review"


@pytest.mark.asyncio
async def test_member_role_change_and_removal() -> None:
    user_id = unique_id("user")
    organisation = await create_org(members={user_id: "user"})
    _admin, actor = await _editor()

    async with SessionLocal() as session:
        invalid = await members_service.change_member_role(
            session, actor=actor, organisation_id=organisation.id, user_id=user_id, role="root"
        )
        promoted = await members_service.change_member_role(
            session, actor=actor, organisation_id=organisation.id, user_id=user_id, role="admin"
        )
    assert invalid.error.code == ErrorCode.INVALID_ARGUMENT
    assert promoted.data.role == "admin"

    async with SessionLocal() as session:
        removed = await members_service.remove_member(
            session, actor=actor, organisation_id=organisation.id, user_id=user_id
        )
        missing = await members_service.remove_member(
            session, actor=actor, organisation_id=organisation.id, user_id=user_id
        )
    assert removed.data == user_id
    assert missing.error.code == ErrorCode.NOT_FOUND
    assert await _count_members(organisation.id) == 0

    role_row = (await fetch_audit_rows(action_type="change_user_role"))[0]
    assert role_row.action_category == "user_management"
    assert role_row.old_values == {"role": "user"}
    assert role_row.new_values == {"role": "admin", "user_id": user_id}
