from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import UsageCounter


async def get_counter_value(
    session: AsyncSession,
    *,
    organisation_id: str,
    metric: str,
    period_start: datetime,
) -> int:
    result = await session.execute(
        select(UsageCounter.value).where(
            UsageCounter.organisation_id == organisation_id,
            UsageCounter.metric == metric,
            UsageCounter.period_start == period_start,
        )
    )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def increment_counter(
    session: AsyncSession,
    *,
    organisation_id: str,
    metric: str,
    period_start: datetime,
    delta: int,
) -> int:
    # Counters never go below zero even when callers report deletions.
    counter = await session.get(UsageCounter, (organisation_id, metric, period_start))
    if counter is None:
        counter = UsageCounter(
            organisation_id=organisation_id,
            metric=metric,
            period_start=period_start,
            value=0,
        )
        session.add(counter)
    counter.value = max(0, int(counter.value or 0) + delta)
    return counter.value
