from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orgguard.domain.audit_events import ActionCategory, BlockChange
from orgguard.domain.permissions import Permission
from orgguard.domain.results import ErrorCode
from orgguard.persistence.db import SessionLocal
from orgguard.services import organisations as organisations_service
from orgguard.services.audit import AuditLogFilters, entry_payload, query_audit_log
from orgguard.tests.utils.factories import create_admin, create_org


async def _seed_actions():
    admin, actor = await create_admin(
        permissions=[Permission.EDIT_ALL_ORGANISATIONS, Permission.VIEW_AUDIT_LOGS]
    )
    first = await create_org(name="First Org")
    second = await create_org(name="Second Org")
    async with SessionLocal() as session:
        await organisations_service.archive_organisation(session, actor=actor, organisation_id=first.id)
    async with SessionLocal() as session:
        await organisations_service.archive_organisation(session, actor=actor, organisation_id=second.id)
    async with SessionLocal() as session:
        await organisations_service.block_organisation(
            session, actor=actor, organisation_id=first.id, reason="overdue invoices"
        )
    return admin, actor, first, second


@pytest.mark.asyncio
async def test_query_returns_newest_first_with_total() -> None:
    admin, actor, first, _second = await _seed_actions()

    async with SessionLocal() as session:
        result = await query_audit_log(session, actor=actor)
    page = result.data
    assert page.total == 3
    assert [entry.action_type for entry in page.items] == [
        "block_organisation",
        "archive_organisation",
        "archive_organisation",
    ]
    assert page.items[0].target_organisation_id == first.id
    assert page.next_offset is None

    payload = entry_payload(page.items[0])
    assert isinstance(payload, BlockChange)
    assert payload.reason == "overdue invoices"


@pytest.mark.asyncio
async def test_query_filters_by_target_actor_and_category() -> None:
    admin, actor, first, second = await _seed_actions()

    async with SessionLocal() as session:
        by_target = await query_audit_log(
            session, actor=actor, filters=AuditLogFilters(target_organisation_id=second.id)
        )
        by_actor = await query_audit_log(session, actor=actor, filters=AuditLogFilters(actor_id=admin.id))
        by_category = await query_audit_log(
            session,
            actor=actor,
            filters=AuditLogFilters(action_category=ActionCategory.IMPERSONATION),
        )
    assert by_target.data.total == 1
    assert by_target.data.items[0].action_type == "archive_organisation"
    assert by_actor.data.total == 3
    assert by_category.data.total == 0
    assert by_category.data.items == []


@pytest.mark.asyncio
async def test_query_filters_by_time_window() -> None:
    _admin, actor, _first, _second = await _seed_actions()
    now = datetime.now(timezone.utc)

    async with SessionLocal() as session:
        recent = await query_audit_log(
            session,
            actor=actor,
            filters=AuditLogFilters(created_from=now - timedelta(hours=1), created_to=now + timedelta(minutes=5)),
        )
        future = await query_audit_log(
            session, actor=actor, filters=AuditLogFilters(created_from=now + timedelta(hours=1))
        )
    assert recent.data.total == 3
    assert future.data.total == 0


@pytest.mark.asyncio
async def test_query_paginates() -> None:
    _admin, actor, _first, _second = await _seed_actions()

    async with SessionLocal() as session:
        first_page = await query_audit_log(session, actor=actor, limit=2)
        second_page = await query_audit_log(session, actor=actor, limit=2, offset=2)
    assert len(first_page.data.items) == 2
    assert first_page.data.next_offset == 2
    assert len(second_page.data.items) == 1
    assert second_page.data.next_offset is None
    assert second_page.data.total == 3


@pytest.mark.asyncio
async def test_query_validates_paging_bounds() -> None:
    _admin, actor = await create_admin(permissions=[Permission.VIEW_AUDIT_LOGS])

    async with SessionLocal() as session:
        zero = await query_audit_log(session, actor=actor, limit=0)
        huge = await query_audit_log(session, actor=actor, limit=10_000)
        negative = await query_audit_log(session, actor=actor, offset=-1)
    assert zero.error.code == ErrorCode.INVALID_ARGUMENT
    assert huge.error.code == ErrorCode.INVALID_ARGUMENT
    assert negative.error.code == ErrorCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_query_checks_permission_before_arguments() -> None:
    _admin, actor = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])

    async with SessionLocal() as session:
        result = await query_audit_log(session, actor=actor, limit=0)
    assert result.error.code == ErrorCode.PERMISSION_DENIED
    assert result.error.details == {"permission": "view_audit_logs"}
