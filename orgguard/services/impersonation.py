from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.audit_events import ActionType, ImpersonationEnded, ImpersonationStarted
from orgguard.domain.models import ImpersonationSession
from orgguard.domain.permissions import Permission
from orgguard.domain.results import (
    ErrorCode,
    OperationResult,
    failure,
    not_found,
    success,
    unavailable,
)
from orgguard.persistence.repos import impersonation as impersonation_repo
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services.audit import PendingAudit
from orgguard.services.authority import Actor, get_active_super_admin
from orgguard.services.guarded import GuardedContext, run_guarded


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_session_active(row: ImpersonationSession, now: datetime | None = None) -> bool:
    # Soft expiry: a flagged session past its window is inactive for every reader.
    return bool(row.is_active) and row.expires_at > (now or _utc_now())


def _end_audit(row: ImpersonationSession, reason: str) -> PendingAudit:
    return PendingAudit(
        action_type=ActionType.END_IMPERSONATION,
        payload=ImpersonationEnded(session_id=row.id, target_user_id=row.target_user_id, reason=reason),
        target_table="impersonation_sessions",
        target_id=row.id,
        target_organisation_id=row.target_organisation_id,
    )


async def start_impersonation(
    session: AsyncSession,
    *,
    actor: Actor,
    target_user_id: str,
    target_organisation_id: str,
    now: datetime | None = None,
) -> OperationResult[ImpersonationSession]:
    async def _execute(ctx: GuardedContext) -> OperationResult[ImpersonationSession]:
        organisation = await organisations_repo.get_organisation(ctx.session, target_organisation_id)
        if organisation is None:
            return not_found("Organisation", target_organisation_id)
        member = await organisations_repo.get_member(
            ctx.session, organisation_id=target_organisation_id, user_id=target_user_id
        )
        if member is None:
            return not_found("Organisation member", target_user_id)

        # One active session per admin; earlier ones are closed first.
        for previous in await impersonation_repo.list_flagged_active(ctx.session, ctx.super_admin.id):
            live = is_session_active(previous, ctx.now)
            previous.is_active = False
            previous.ended_at = ctx.now if live else previous.expires_at
            if live:
                ctx.audit(_end_audit(previous, "superseded"))

        ttl = timedelta(minutes=get_settings().impersonation_session_ttl_minutes)
        row = ImpersonationSession(
            super_admin_id=ctx.super_admin.id,
            target_user_id=target_user_id,
            target_organisation_id=target_organisation_id,
            started_at=ctx.now,
            expires_at=ctx.now + ttl,
            is_active=True,
        )
        ctx.session.add(row)
        await ctx.session.flush()
        ctx.impersonating_user_id = target_user_id
        ctx.audit(
            PendingAudit(
                action_type=ActionType.START_IMPERSONATION,
                payload=ImpersonationStarted(
                    session_id=row.id,
                    target_user_id=target_user_id,
                    target_organisation_id=target_organisation_id,
                    expires_at=row.expires_at,
                ),
                target_table="impersonation_sessions",
                target_id=row.id,
                target_organisation_id=target_organisation_id,
            )
        )
        return success(row)

    result = await run_guarded(
        session,
        actor=actor,
        permission=Permission.IMPERSONATE_USERS,
        operation="start_impersonation",
        execute=_execute,
        atomic=True,
        now=now,
    )
    if result.ok:
        logger.info(
            "impersonation_started actor=%s target_user_id=%s target_organisation_id=%s",
            actor.user_id,
            target_user_id,
            target_organisation_id,
        )
    return result


async def end_impersonation(
    session: AsyncSession,
    *,
    actor: Actor,
    session_id: str,
    now: datetime | None = None,
) -> OperationResult[ImpersonationSession]:
    async def _execute(ctx: GuardedContext) -> OperationResult[ImpersonationSession]:
        row = await impersonation_repo.get_session_by_id(ctx.session, session_id)
        if row is None:
            return not_found("Impersonation session", session_id)
        if row.super_admin_id != ctx.super_admin.id:
            return failure(
                ErrorCode.PERMISSION_DENIED,
                "Impersonation session belongs to another super admin",
            )
        if not row.is_active:
            return success(row)
        if not is_session_active(row, ctx.now):
            # Tidy an expired flag without writing an audit entry.
            row.is_active = False
            row.ended_at = row.expires_at
            return success(row)
        row.is_active = False
        row.ended_at = ctx.now
        ctx.audit(_end_audit(row, "ended"))
        return success(row)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.IMPERSONATE_USERS,
        operation="end_impersonation",
        execute=_execute,
        now=now,
    )


async def get_active_session(
    session: AsyncSession,
    *,
    actor: Actor,
    now: datetime | None = None,
) -> OperationResult[ImpersonationSession | None]:
    # Readable by the session owner alone; no permission token required.
    try:
        admin = await get_active_super_admin(session, actor.user_id)
        if admin is None:
            return success(None)
        row = await impersonation_repo.get_live_session(
            session, super_admin_id=admin.id, now=now or _utc_now()
        )
    except SQLAlchemyError as exc:
        logger.error("impersonation_lookup_failed actor=%s", actor.user_id, exc_info=exc)
        return unavailable()
    return success(row)
