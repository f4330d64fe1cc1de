from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.audit_events import (
    ActionType,
    ArchiveChange,
    ArchiveState,
    BlockChange,
    BlockState,
    OrganisationCreated,
    OrganisationDeleted,
    OrganisationSnapshot,
    OrganisationUpdate,
)
from orgguard.domain.models import Organisation, OrganisationMember
from orgguard.domain.permissions import Permission
from orgguard.domain.results import OperationResult, invalid_argument, not_found, success, unavailable
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services import plan_catalog
from orgguard.services.audit import PendingAudit
from orgguard.services.authority import Actor
from orgguard.services.guarded import GuardedContext, run_guarded
from orgguard.services.subscriptions import initial_billing_state


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "contact_email", "contact_phone", "billing_email")
MEMBER_ROLES = ("owner", "admin", "user")


def _organisation_audit(
    organisation_id: str,
    action_type: ActionType,
    payload: Any,
) -> PendingAudit:
    return PendingAudit(
        action_type=action_type,
        payload=payload,
        target_table="organisations",
        target_id=organisation_id,
        target_organisation_id=organisation_id,
    )


@dataclass(frozen=True)
class NewMember:
    user_id: str
    role: str = "user"


async def create_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    name: str,
    plan_id: str | None = None,
    contact_email: str | None = None,
    billing_email: str | None = None,
    slug: str | None = None,
    discount_percent: int = 0,
    members: list[NewMember] | None = None,
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        if not name or not name.strip():
            return invalid_argument("Organisation name is required")
        if not 0 <= discount_percent <= 100:
            return invalid_argument(
                "discount_percent must be between 0 and 100", discount_percent=discount_percent
            )
        for member in members or []:
            if member.role not in MEMBER_ROLES:
                return invalid_argument(f"Unknown member role: {member.role}", role=member.role)
        plan = None
        if plan_id is not None:
            plan = await plan_catalog.get_plan(ctx.session, plan_id)
            if plan is None:
                return invalid_argument(f"Unknown plan id: {plan_id}", plan_id=plan_id)
        state = initial_billing_state(plan, discount_percent=discount_percent, now=ctx.now)
        organisation = Organisation(
            name=name.strip(),
            slug=slug,
            contact_email=contact_email,
            billing_email=billing_email,
            subscription_status=state.status.value,
            current_plan_id=state.plan_id,
            trial_ends_at=state.trial_ends_at,
            discount_percent=discount_percent,
        )
        if discount_percent:
            organisation.discount_applied_by = ctx.super_admin.id
            organisation.discount_applied_at = ctx.now
        ctx.session.add(organisation)
        await ctx.session.flush()
        for member in members or []:
            ctx.session.add(
                OrganisationMember(
                    organisation_id=organisation.id,
                    user_id=member.user_id,
                    role=member.role,
                )
            )
        ctx.audit(
            _organisation_audit(
                organisation.id,
                ActionType.CREATE_ORGANISATION,
                OrganisationCreated(
                    name=organisation.name,
                    plan_id=organisation.current_plan_id,
                    subscription_status=organisation.subscription_status,
                    trial_ends_at=organisation.trial_ends_at,
                    discount_percent=discount_percent,
                ),
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="create_organisation",
        execute=_execute,
    )


async def get_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="get_organisation",
        execute=_execute,
    )


async def list_organisations(
    session: AsyncSession,
    *,
    actor: Actor,
    search: str | None = None,
    include_archived: bool = True,
    blocked: bool | None = None,
    offset: int = 0,
    limit: int = 50,
) -> OperationResult[list[Organisation]]:
    async def _execute(ctx: GuardedContext) -> OperationResult[list[Organisation]]:
        organisations = await organisations_repo.list_organisations(
            ctx.session,
            search=search,
            include_archived=include_archived,
            blocked=blocked,
            offset=offset,
            limit=limit,
        )
        return success(organisations)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="list_organisations",
        execute=_execute,
    )


async def update_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    fields: dict[str, str | None],
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            return invalid_argument("Unsupported organisation fields", fields=unknown)
        if not fields:
            return invalid_argument("No organisation fields to update")
        if "name" in fields and not (fields["name"] or "").strip():
            return invalid_argument("Organisation name cannot be empty")
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        before = {key: getattr(organisation, key) for key in fields}
        for key, value in fields.items():
            setattr(organisation, key, value)
        ctx.audit(
            _organisation_audit(
                organisation.id,
                ActionType.UPDATE_ORGANISATION,
                OrganisationUpdate(before=before, after=dict(fields)),
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="update_organisation",
        execute=_execute,
    )


async def _set_archived(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    archived: bool,
) -> OperationResult[Organisation]:
    action_type = ActionType.ARCHIVE_ORGANISATION if archived else ActionType.RESTORE_ORGANISATION

    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        before = ArchiveState(archived=organisation.archived, archived_at=organisation.archived_at)
        if organisation.archived != archived:
            organisation.archived = archived
            organisation.archived_at = ctx.now if archived else None
        ctx.audit(
            _organisation_audit(
                organisation.id,
                action_type,
                ArchiveChange(
                    kind=action_type.value,
                    before=before,
                    after=ArchiveState(archived=organisation.archived, archived_at=organisation.archived_at),
                ),
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation=action_type.value,
        execute=_execute,
    )


async def archive_organisation(
    session: AsyncSession, *, actor: Actor, organisation_id: str
) -> OperationResult[Organisation]:
    return await _set_archived(session, actor=actor, organisation_id=organisation_id, archived=True)


async def restore_organisation(
    session: AsyncSession, *, actor: Actor, organisation_id: str
) -> OperationResult[Organisation]:
    return await _set_archived(session, actor=actor, organisation_id=organisation_id, archived=False)


async def block_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    reason: str,
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        cleaned = (reason or "").strip()
        if not cleaned:
            return invalid_argument("A reason is required to block an organisation")
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        before = BlockState(blocked=organisation.blocked, blocked_reason=organisation.blocked_reason)
        if not organisation.blocked:
            organisation.blocked_at = ctx.now
        organisation.blocked = True
        organisation.blocked_reason = cleaned
        ctx.audit(
            _organisation_audit(
                organisation.id,
                ActionType.BLOCK_ORGANISATION,
                BlockChange(
                    kind=ActionType.BLOCK_ORGANISATION.value,
                    before=before,
                    after=BlockState(blocked=True, blocked_reason=cleaned),
                    reason=cleaned,
                ),
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="block_organisation",
        execute=_execute,
    )


async def unblock_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        before = BlockState(blocked=organisation.blocked, blocked_reason=organisation.blocked_reason)
        organisation.blocked = False
        organisation.blocked_at = None
        organisation.blocked_reason = None
        ctx.audit(
            _organisation_audit(
                organisation.id,
                ActionType.UNBLOCK_ORGANISATION,
                BlockChange(
                    kind=ActionType.UNBLOCK_ORGANISATION.value,
                    before=before,
                    after=BlockState(blocked=False),
                ),
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="unblock_organisation",
        execute=_execute,
    )


async def delete_organisation(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
) -> OperationResult[str]:
    async def _execute(ctx: GuardedContext) -> OperationResult[str]:
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        snapshot = OrganisationSnapshot(
            name=organisation.name,
            plan_id=organisation.current_plan_id,
            subscription_status=organisation.subscription_status,
            member_count=await organisations_repo.count_members(ctx.session, organisation_id),
        )
        # The record must exist before the data is gone.
        recorded = await ctx.audit_now(
            _organisation_audit(
                organisation_id,
                ActionType.DELETE_ORGANISATION,
                OrganisationDeleted(before=snapshot),
            )
        )
        if not recorded:
            return unavailable("Audit log unavailable; organisation was not deleted")
        await organisations_repo.delete_organisation_tree(ctx.session, organisation_id)
        logger.warning(
            "organisation_deleted organisation_id=%s actor=%s",
            organisation_id,
            ctx.actor.user_id,
        )
        return success(organisation_id)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="delete_organisation",
        execute=_execute,
    )
