from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_actor, get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.domain.audit_events import ActionCategory
from orgguard.domain.models import AuditLogEntry
from orgguard.services.audit import AuditLogFilters, query_audit_log
from orgguard.services.authority import Actor


router = APIRouter(prefix="/admin/audit", tags=["admin-audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: str
    action_type: str
    action_category: str
    target_table: str | None
    target_id: str | None
    target_organisation_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    impersonating_user_id: str | None
    created_at: str


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int
    next_offset: int | None


def _to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_id=entry.actor_id,
        action_type=entry.action_type,
        action_category=entry.action_category,
        target_table=entry.target_table,
        target_id=entry.target_id,
        target_organisation_id=entry.target_organisation_id,
        old_values=entry.old_values,
        new_values=entry.new_values,
        impersonating_user_id=entry.impersonating_user_id,
        created_at=entry.created_at.isoformat(),
    )


@router.get("/entries", response_model=SuccessEnvelope[AuditEntriesPage] | AuditEntriesPage)
async def list_audit_entries(
    action_category: ActionCategory | None = None,
    actor_id: str | None = None,
    target_organisation_id: str | None = None,
    created_from: datetime | None = Query(default=None, alias="from"),
    created_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    page = unwrap(
        await query_audit_log(
            db,
            actor=actor,
            filters=AuditLogFilters(
                action_category=action_category,
                actor_id=actor_id,
                target_organisation_id=target_organisation_id,
                created_from=created_from,
                created_to=created_to,
            ),
            limit=limit,
            offset=offset,
        )
    )
    return AuditEntriesPage(
        items=[_to_response(entry) for entry in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        next_offset=page.next_offset,
    )
