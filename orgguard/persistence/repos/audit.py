from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import AuditLogEntry


def _apply_filters(
    stmt: Any,
    *,
    action_category: str | None,
    actor_id: str | None,
    target_organisation_id: str | None,
    created_from: datetime | None,
    created_to: datetime | None,
) -> Any:
    # Shared by the page query and the count query so totals match the filter.
    if action_category:
        stmt = stmt.where(AuditLogEntry.action_category == action_category)
    if actor_id:
        stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
    if target_organisation_id:
        stmt = stmt.where(AuditLogEntry.target_organisation_id == target_organisation_id)
    if created_from:
        stmt = stmt.where(AuditLogEntry.created_at >= created_from)
    if created_to:
        stmt = stmt.where(AuditLogEntry.created_at <= created_to)
    return stmt


async def list_entries(
    session: AsyncSession,
    *,
    action_category: str | None = None,
    actor_id: str | None = None,
    target_organisation_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    stmt = _apply_filters(
        select(AuditLogEntry),
        action_category=action_category,
        actor_id=actor_id,
        target_organisation_id=target_organisation_id,
        created_from=created_from,
        created_to=created_to,
    )
    stmt = stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_entries(
    session: AsyncSession,
    *,
    action_category: str | None = None,
    actor_id: str | None = None,
    target_organisation_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
) -> int:
    stmt = _apply_filters(
        select(func.count()).select_from(AuditLogEntry),
        action_category=action_category,
        actor_id=actor_id,
        target_organisation_id=target_organisation_id,
        created_from=created_from,
        created_to=created_to,
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
