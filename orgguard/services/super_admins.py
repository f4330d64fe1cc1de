from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.audit_events import (
    ActionType,
    ActiveState,
    PermissionChange,
    PermissionSet,
    SuperAdminStatusChange,
)
from orgguard.domain.models import SuperAdmin
from orgguard.domain.permissions import PERMISSION_GROUPS, Permission, parse_permission
from orgguard.domain.results import (
    OperationResult,
    invalid_argument,
    not_found,
    success,
    unavailable,
)
from orgguard.persistence.repos import super_admins as super_admins_repo
from orgguard.services.audit import PendingAudit
from orgguard.services.authority import Actor
from orgguard.services.guarded import GuardedContext, run_guarded


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuperAdminView:
    admin: SuperAdmin
    permissions: list[str]


def _validate_tokens(tokens: list[str]) -> tuple[list[str], list[str]]:
    valid: list[str] = []
    unknown: list[str] = []
    for token in tokens:
        parsed = parse_permission(token)
        if parsed is None:
            unknown.append(token)
        elif parsed.value not in valid:
            valid.append(parsed.value)
    return valid, unknown


async def _view(session: AsyncSession, admin: SuperAdmin) -> SuperAdminView:
    permissions = await super_admins_repo.list_permissions(session, admin.id)
    return SuperAdminView(admin=admin, permissions=sorted(permissions))


def _permission_audit(
    admin: SuperAdmin,
    action_type: ActionType,
    before: set[str],
    after: set[str],
    group: str | None = None,
) -> PendingAudit:
    return PendingAudit(
        action_type=action_type,
        payload=PermissionChange(
            kind=action_type.value,
            before=PermissionSet(permissions=sorted(before)),
            after=PermissionSet(permissions=sorted(after)),
            group=group,
        ),
        target_table="super_admins",
        target_id=admin.id,
    )


async def create_super_admin(
    session: AsyncSession,
    *,
    user_id: str,
    name: str,
    email: str | None = None,
    permissions: list[str] | None = None,
    created_by: str | None = None,
) -> OperationResult[SuperAdminView]:
    # Out-of-band bootstrap path used by operator scripts.
    valid, unknown = _validate_tokens(permissions or [])
    if unknown:
        return invalid_argument("Unknown permission tokens", permissions=unknown)
    try:
        if await super_admins_repo.get_by_user_id(session, user_id) is not None:
            return invalid_argument("User is already a super admin", user_id=user_id)
        admin = SuperAdmin(user_id=user_id, name=name, email=email, is_active=True, created_by=created_by)
        session.add(admin)
        await session.flush()
        await super_admins_repo.add_permissions(
            session, super_admin_id=admin.id, permissions=valid, granted_by=created_by
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("super_admin_create_failed user_id=%s", user_id, exc_info=exc)
        return unavailable()
    logger.info("super_admin_created user_id=%s permissions=%s", user_id, ",".join(valid))
    return success(SuperAdminView(admin=admin, permissions=sorted(valid)))


async def get_current_super_admin(
    session: AsyncSession,
    *,
    actor: Actor,
) -> OperationResult[SuperAdminView]:
    try:
        admin = await super_admins_repo.get_by_user_id(session, actor.user_id)
        if admin is None or not admin.is_active:
            return not_found("Super admin", actor.user_id)
        view = await _view(session, admin)
    except SQLAlchemyError as exc:
        logger.error("super_admin_lookup_failed actor=%s", actor.user_id, exc_info=exc)
        return unavailable()
    return success(view)


async def list_super_admins(
    session: AsyncSession,
    *,
    actor: Actor,
) -> OperationResult[list[SuperAdminView]]:
    async def _execute(ctx: GuardedContext) -> OperationResult[list[SuperAdminView]]:
        admins = await super_admins_repo.list_super_admins(ctx.session)
        return success([await _view(ctx.session, admin) for admin in admins])

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.MANAGE_SUPER_ADMINS,
        operation="list_super_admins",
        execute=_execute,
    )


async def grant_permissions(
    session: AsyncSession,
    *,
    actor: Actor,
    super_admin_id: str,
    permissions: list[str],
) -> OperationResult[SuperAdminView]:
    async def _execute(ctx: GuardedContext) -> OperationResult[SuperAdminView]:
        valid, unknown = _validate_tokens(permissions)
        if unknown:
            return invalid_argument("Unknown permission tokens", permissions=unknown)
        if not valid:
            return invalid_argument("No permissions to grant")
        admin = await super_admins_repo.get_by_id(ctx.session, super_admin_id)
        if admin is None:
            return not_found("Super admin", super_admin_id)
        before = await super_admins_repo.list_permissions(ctx.session, admin.id)
        await super_admins_repo.add_permissions(
            ctx.session, super_admin_id=admin.id, permissions=valid, granted_by=ctx.super_admin.id
        )
        after = before | set(valid)
        ctx.audit(_permission_audit(admin, ActionType.GRANT_SUPER_ADMIN_PERMISSIONS, before, after))
        return success(SuperAdminView(admin=admin, permissions=sorted(after)))

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.MANAGE_SUPER_ADMINS,
        operation="grant_permissions",
        execute=_execute,
    )


async def revoke_permissions(
    session: AsyncSession,
    *,
    actor: Actor,
    super_admin_id: str,
    permissions: list[str],
) -> OperationResult[SuperAdminView]:
    async def _execute(ctx: GuardedContext) -> OperationResult[SuperAdminView]:
        valid, unknown = _validate_tokens(permissions)
        if unknown:
            return invalid_argument("Unknown permission tokens", permissions=unknown)
        admin = await super_admins_repo.get_by_id(ctx.session, super_admin_id)
        if admin is None:
            return not_found("Super admin", super_admin_id)
        before = await super_admins_repo.list_permissions(ctx.session, admin.id)
        await super_admins_repo.remove_permissions(ctx.session, super_admin_id=admin.id, permissions=valid)
        after = before - set(valid)
        ctx.audit(_permission_audit(admin, ActionType.REVOKE_SUPER_ADMIN_PERMISSIONS, before, after))
        return success(SuperAdminView(admin=admin, permissions=sorted(after)))

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.MANAGE_SUPER_ADMINS,
        operation="revoke_permissions",
        execute=_execute,
    )


async def apply_permission_group(
    session: AsyncSession,
    *,
    actor: Actor,
    super_admin_id: str,
    group: str,
) -> OperationResult[SuperAdminView]:
    # Replaces the admin's grants with exactly the preset's tokens.
    async def _execute(ctx: GuardedContext) -> OperationResult[SuperAdminView]:
        preset = PERMISSION_GROUPS.get(group)
        if preset is None:
            return invalid_argument(f"Unknown permission group: {group}", group=group)
        admin = await super_admins_repo.get_by_id(ctx.session, super_admin_id)
        if admin is None:
            return not_found("Super admin", super_admin_id)
        before = await super_admins_repo.list_permissions(ctx.session, admin.id)
        after = {permission.value for permission in preset}
        await super_admins_repo.remove_permissions(
            ctx.session, super_admin_id=admin.id, permissions=sorted(before - after)
        )
        await super_admins_repo.add_permissions(
            ctx.session,
            super_admin_id=admin.id,
            permissions=sorted(after - before),
            granted_by=ctx.super_admin.id,
        )
        ctx.audit(_permission_audit(admin, ActionType.APPLY_PERMISSION_GROUP, before, after, group=group))
        return success(SuperAdminView(admin=admin, permissions=sorted(after)))

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.MANAGE_SUPER_ADMINS,
        operation="apply_permission_group",
        execute=_execute,
    )


async def set_super_admin_active(
    session: AsyncSession,
    *,
    actor: Actor,
    super_admin_id: str,
    is_active: bool,
) -> OperationResult[SuperAdminView]:
    async def _execute(ctx: GuardedContext) -> OperationResult[SuperAdminView]:
        admin = await super_admins_repo.get_by_id(ctx.session, super_admin_id)
        if admin is None:
            return not_found("Super admin", super_admin_id)
        if admin.id == ctx.super_admin.id and not is_active:
            return invalid_argument("Super admins cannot deactivate themselves")
        before = ActiveState(is_active=admin.is_active)
        admin.is_active = is_active
        ctx.audit(
            PendingAudit(
                action_type=ActionType.SET_SUPER_ADMIN_STATUS,
                payload=SuperAdminStatusChange(before=before, after=ActiveState(is_active=is_active)),
                target_table="super_admins",
                target_id=admin.id,
            )
        )
        return success(await _view(ctx.session, admin))

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.MANAGE_SUPER_ADMINS,
        operation="set_super_admin_active",
        execute=_execute,
    )
