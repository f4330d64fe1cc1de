from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import SubscriptionPlan


async def get_plan(session: AsyncSession, plan_id: str) -> SubscriptionPlan | None:
    return await session.get(SubscriptionPlan, plan_id)


async def get_plan_by_slug(session: AsyncSession, slug: str) -> SubscriptionPlan | None:
    result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.slug == slug))
    return result.scalar_one_or_none()


async def list_plans(
    session: AsyncSession,
    *,
    public_only: bool = False,
    active_only: bool = True,
) -> list[SubscriptionPlan]:
    stmt = select(SubscriptionPlan)
    if active_only:
        stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
    if public_only:
        stmt = stmt.where(SubscriptionPlan.is_public.is_(True))
    stmt = stmt.order_by(SubscriptionPlan.display_order.asc(), SubscriptionPlan.slug.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_plan_slugs(session: AsyncSession) -> set[str]:
    result = await session.execute(select(SubscriptionPlan.slug))
    return {row[0] for row in result.all()}
