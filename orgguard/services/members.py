from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.audit_events import ActionType, MemberRemoved, MemberRoleChange, RoleState
from orgguard.domain.models import OrganisationMember
from orgguard.domain.permissions import Permission
from orgguard.domain.results import OperationResult, invalid_argument, not_found, success
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services.audit import PendingAudit
from orgguard.services.authority import Actor
from orgguard.services.guarded import GuardedContext, run_guarded
from orgguard.services.organisations import MEMBER_ROLES


async def list_members(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
) -> OperationResult[list[OrganisationMember]]:
    async def _execute(ctx: GuardedContext) -> OperationResult[list[OrganisationMember]]:
        if await organisations_repo.get_organisation(ctx.session, organisation_id) is None:
            return not_found("Organisation", organisation_id)
        return success(await organisations_repo.list_members(ctx.session, organisation_id))

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_USERS,
        operation="list_members",
        execute=_execute,
    )


async def change_member_role(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    user_id: str,
    role: str,
) -> OperationResult[OrganisationMember]:
    async def _execute(ctx: GuardedContext) -> OperationResult[OrganisationMember]:
        if role not in MEMBER_ROLES:
            return invalid_argument(f"Unknown member role: {role}", role=role)
        member = await organisations_repo.get_member(
            ctx.session, organisation_id=organisation_id, user_id=user_id
        )
        if member is None:
            return not_found("Organisation member", user_id)
        previous = member.role
        member.role = role
        ctx.audit(
            PendingAudit(
                action_type=ActionType.CHANGE_USER_ROLE,
                payload=MemberRoleChange(
                    user_id=user_id,
                    before=RoleState(role=previous),
                    after=RoleState(role=role),
                ),
                target_table="organisation_members",
                target_id=member.id,
                target_organisation_id=organisation_id,
            )
        )
        return success(member)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_USERS,
        operation="change_member_role",
        execute=_execute,
    )


async def remove_member(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    user_id: str,
) -> OperationResult[str]:
    async def _execute(ctx: GuardedContext) -> OperationResult[str]:
        member = await organisations_repo.get_member(
            ctx.session, organisation_id=organisation_id, user_id=user_id
        )
        if member is None:
            return not_found("Organisation member", user_id)
        member_id = member.id
        previous = member.role
        await ctx.session.delete(member)
        ctx.audit(
            PendingAudit(
                action_type=ActionType.REMOVE_USER_FROM_ORG,
                payload=MemberRemoved(user_id=user_id, before=RoleState(role=previous)),
                target_table="organisation_members",
                target_id=member_id,
                target_organisation_id=organisation_id,
            )
        )
        return success(user_id)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_USERS,
        operation="remove_member",
        execute=_execute,
    )
