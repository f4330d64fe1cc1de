from __future__ import annotations

import argparse

import pytest
from sqlalchemy import func, select

from orgguard.domain.models import SubscriptionPlan
from orgguard.domain.permissions import PERMISSION_GROUPS, Permission
from orgguard.domain.results import ErrorCode
from orgguard.persistence.db import SessionLocal
from orgguard.services import super_admins as super_admins_service
from orgguard.services.authority import Actor, effective_permissions, has_permission
from orgguard.tests.utils.factories import create_admin, fetch_audit_rows, unique_id
from scripts import create_super_admin as create_super_admin_script
from scripts import seed_plans as seed_plans_script


async def _manager():
    return await create_admin(permissions=[Permission.MANAGE_SUPER_ADMINS])


@pytest.mark.asyncio
async def test_inactive_admin_holds_no_permissions() -> None:
    _admin, actor = await create_admin(
        permissions=[Permission.VIEW_ALL_ORGANISATIONS, Permission.VIEW_AUDIT_LOGS],
        is_active=False,
    )

    async with SessionLocal() as session:
        assert await has_permission(session, actor.user_id, Permission.VIEW_ALL_ORGANISATIONS) is False
        assert await effective_permissions(session, actor.user_id) == set()


@pytest.mark.asyncio
async def test_unknown_callers_and_tokens_are_denied() -> None:
    _admin, actor = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])

    async with SessionLocal() as session:
        assert await has_permission(session, actor.user_id, "view_all_organisations") is True
        assert await has_permission(session, actor.user_id, "view_everything") is False
        assert await has_permission(session, actor.user_id, Permission.EDIT_ALL_ORGANISATIONS) is False
        assert await has_permission(session, unique_id("nobody"), Permission.VIEW_ALL_ORGANISATIONS) is False


@pytest.mark.asyncio
async def test_grant_and_revoke_permissions_are_audited() -> None:
    manager, manager_actor = await _manager()
    target, target_actor = await create_admin(permissions=[])

    async with SessionLocal() as session:
        granted = await super_admins_service.grant_permissions(
            session,
            actor=manager_actor,
            super_admin_id=target.id,
            permissions=["view_audit_logs", "view_all_users", "view_audit_logs"],
        )
    assert granted.data.permissions == ["view_all_users", "view_audit_logs"]

    async with SessionLocal() as session:
        assert await has_permission(session, target_actor.user_id, Permission.VIEW_AUDIT_LOGS) is True

    async with SessionLocal() as session:
        revoked = await super_admins_service.revoke_permissions(
            session,
            actor=manager_actor,
            super_admin_id=target.id,
            permissions=["view_audit_logs"],
        )
    assert revoked.data.permissions == ["view_all_users"]

    grant_row = (await fetch_audit_rows(action_type="grant_super_admin_permissions"))[0]
    assert grant_row.actor_id == manager.id
    assert grant_row.target_id == target.id
    assert grant_row.old_values == {"permissions": []}
    assert grant_row.new_values["permissions"] == ["view_all_users", "view_audit_logs"]
    assert len(await fetch_audit_rows(action_type="revoke_super_admin_permissions")) == 1


@pytest.mark.asyncio
async def test_unknown_permission_tokens_are_rejected() -> None:
    _manager_admin, manager_actor = await _manager()
    target, target_actor = await create_admin(permissions=[])

    async with SessionLocal() as session:
        result = await super_admins_service.grant_permissions(
            session,
            actor=manager_actor,
            super_admin_id=target.id,
            permissions=["view_audit_logs", "launch_rockets"],
        )
        empty = await super_admins_service.grant_permissions(
            session, actor=manager_actor, super_admin_id=target.id, permissions=[]
        )
    assert result.error.code == ErrorCode.INVALID_ARGUMENT
    assert result.error.details == {"permissions": ["launch_rockets"]}
    assert empty.error.code == ErrorCode.INVALID_ARGUMENT

    async with SessionLocal() as session:
        assert await effective_permissions(session, target_actor.user_id) == set()


@pytest.mark.asyncio
async def test_permission_group_replaces_existing_grants() -> None:
    _manager_admin, manager_actor = await _manager()
    target, target_actor = await create_admin(
        permissions=[Permission.EDIT_ALL_ORGANISATIONS, Permission.VIEW_AUDIT_LOGS]
    )

    async with SessionLocal() as session:
        result = await super_admins_service.apply_permission_group(
            session, actor=manager_actor, super_admin_id=target.id, group="support"
        )
        unknown = await super_admins_service.apply_permission_group(
            session, actor=manager_actor, super_admin_id=target.id, group="god_mode"
        )
    expected = {permission.value for permission in PERMISSION_GROUPS["support"]}
    assert set(result.data.permissions) == expected
    assert unknown.error.code == ErrorCode.INVALID_ARGUMENT

    async with SessionLocal() as session:
        assert await effective_permissions(session, target_actor.user_id) == expected

    row = (await fetch_audit_rows(action_type="apply_permission_group"))[0]
    assert row.new_values["group"] == "support"


@pytest.mark.asyncio
async def test_deactivation_revokes_access_but_not_for_self() -> None:
    manager, manager_actor = await _manager()
    target, target_actor = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])

    async with SessionLocal() as session:
        deactivated = await super_admins_service.set_super_admin_active(
            session, actor=manager_actor, super_admin_id=target.id, is_active=False
        )
        self_deactivate = await super_admins_service.set_super_admin_active(
            session, actor=manager_actor, super_admin_id=manager.id, is_active=False
        )
    assert deactivated.data.admin.is_active is False
    assert self_deactivate.error.code == ErrorCode.INVALID_ARGUMENT

    async with SessionLocal() as session:
        assert await has_permission(session, target_actor.user_id, Permission.VIEW_ALL_ORGANISATIONS) is False
        current = await super_admins_service.get_current_super_admin(session, actor=target_actor)
    assert current.error.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_listing_super_admins_requires_manage_permission() -> None:
    _viewer, viewer_actor = await create_admin(permissions=[Permission.VIEW_ALL_USERS])
    manager, manager_actor = await _manager()

    async with SessionLocal() as session:
        denied = await super_admins_service.list_super_admins(session, actor=viewer_actor)
        listed = await super_admins_service.list_super_admins(session, actor=manager_actor)
    assert denied.error.code == ErrorCode.PERMISSION_DENIED
    assert manager.id in {view.admin.id for view in listed.data}


@pytest.mark.asyncio
async def test_create_super_admin_script_bootstraps_grants() -> None:
    user_id = unique_id("ops")
    args = argparse.Namespace(
        user_id=user_id,
        name="Ops Lead",
        email="ops@example.com",
        group="readonly",
        permission=["manage_super_admins"],
        created_by="bootstrap",
    )
    assert await create_super_admin_script._create(args) == 0

    async with SessionLocal() as session:
        permissions = await effective_permissions(session, user_id)
        current = await super_admins_service.get_current_super_admin(session, actor=Actor(user_id=user_id))
    expected = {permission.value for permission in PERMISSION_GROUPS["readonly"]} | {"manage_super_admins"}
    assert permissions == expected
    assert current.data.admin.created_by == "bootstrap"

    # A second bootstrap for the same user fails without touching grants.
    assert await create_super_admin_script._create(args) == 1


@pytest.mark.asyncio
async def test_create_super_admin_script_rejects_unknown_tokens() -> None:
    user_id = unique_id("ops")
    args = argparse.Namespace(
        user_id=user_id,
        name="Ops Lead",
        email=None,
        group=None,
        permission=["everything"],
        created_by=None,
    )
    assert await create_super_admin_script._create(args) == 1

    async with SessionLocal() as session:
        current = await super_admins_service.get_current_super_admin(session, actor=Actor(user_id=user_id))
    assert current.error.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_seed_plans_script_is_idempotent() -> None:
    args = argparse.Namespace(dry_run=False)
    assert await seed_plans_script._seed(args) == 0
    assert await seed_plans_script._seed(args) == 0

    async with SessionLocal() as session:
        count = await session.execute(select(func.count()).select_from(SubscriptionPlan))
        slugs = await session.execute(select(SubscriptionPlan.slug).order_by(SubscriptionPlan.display_order))
    assert int(count.scalar() or 0) == 3
    assert [row[0] for row in slugs.all()] == ["free", "pro", "enterprise"]
