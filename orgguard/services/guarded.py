from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import SuperAdmin
from orgguard.domain.permissions import Permission
from orgguard.domain.results import OperationResult, permission_denied, unavailable
from orgguard.persistence.repos import impersonation as impersonation_repo
from orgguard.services.audit import PendingAudit, build_entry, record_action
from orgguard.services.authority import Actor, resolve_grant


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GuardedContext:
    """State handed to a privileged operation after its permission check passed.

    Operations queue audit rows with ``audit()``. Rows are written after the
    operation commits, or inside the same transaction for atomic operations.
    ``audit_now()`` commits a row immediately and is used when the record must
    exist before a destructive change.

    Operations return error results before staging any write, so an error
    result only discards writes that are still pending in the session.
    """

    def __init__(
        self,
        *,
        session: AsyncSession,
        actor: Actor,
        super_admin: SuperAdmin,
        impersonating_user_id: str | None,
        now: datetime,
    ) -> None:
        self.session = session
        self.actor = actor
        self.super_admin = super_admin
        self.impersonating_user_id = impersonating_user_id
        self.now = now
        self.pending: list[PendingAudit] = []

    def audit(self, pending_audit: PendingAudit) -> None:
        self.pending.append(pending_audit)

    async def audit_now(self, pending_audit: PendingAudit) -> bool:
        return await record_action(
            pending_audit,
            actor_id=self.super_admin.id,
            impersonating_user_id=self.impersonating_user_id,
            best_effort=True,
        )


async def run_guarded(
    session: AsyncSession,
    *,
    actor: Actor,
    permission: Permission,
    operation: str,
    execute: Callable[[GuardedContext], Awaitable[OperationResult[Any]]],
    atomic: bool = False,
    now: datetime | None = None,
) -> OperationResult[Any]:
    # Check the permission, run the operation, then write its audit rows.
    resolved_now = now or _utc_now()
    try:
        admin = await resolve_grant(session, actor.user_id, permission)
        if admin is None:
            logger.info(
                "guarded_operation_denied operation=%s actor=%s permission=%s",
                operation,
                actor.user_id,
                permission.value,
            )
            return permission_denied(permission.value)
        live_session = await impersonation_repo.get_live_session(
            session, super_admin_id=admin.id, now=resolved_now
        )
        context = GuardedContext(
            session=session,
            actor=actor,
            super_admin=admin,
            impersonating_user_id=live_session.target_user_id if live_session else None,
            now=resolved_now,
        )
        result = await execute(context)
        if result.error is not None:
            # Leave objects loaded by earlier calls on this session untouched.
            if session.new or session.dirty or session.deleted:
                await session.rollback()
            return result
        if atomic:
            for pending_audit in context.pending:
                session.add(
                    build_entry(
                        pending_audit,
                        actor_id=admin.id,
                        impersonating_user_id=context.impersonating_user_id,
                    )
                )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "guarded_operation_failed operation=%s actor=%s",
            operation,
            actor.user_id,
            exc_info=exc,
        )
        return unavailable()

    if not atomic:
        for pending_audit in context.pending:
            await record_action(
                pending_audit,
                actor_id=admin.id,
                impersonating_user_id=context.impersonating_user_id,
            )
    return result
