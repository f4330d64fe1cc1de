from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import BillingHistoryEntry


def add_entry(
    session: AsyncSession,
    *,
    organisation_id: str,
    event_type: str,
    previous_value: str | None,
    new_value: str | None,
    changed_by: str | None,
) -> BillingHistoryEntry:
    entry = BillingHistoryEntry(
        organisation_id=organisation_id,
        event_type=event_type,
        previous_value=previous_value,
        new_value=new_value,
        changed_by=changed_by,
    )
    session.add(entry)
    return entry


async def list_entries(
    session: AsyncSession,
    *,
    organisation_id: str,
    limit: int = 50,
) -> list[BillingHistoryEntry]:
    result = await session.execute(
        select(BillingHistoryEntry)
        .where(BillingHistoryEntry.organisation_id == organisation_id)
        .order_by(BillingHistoryEntry.created_at.desc(), BillingHistoryEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
