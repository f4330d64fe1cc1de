from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import ImpersonationSession


async def get_session_by_id(session: AsyncSession, session_id: str) -> ImpersonationSession | None:
    return await session.get(ImpersonationSession, session_id)


async def list_flagged_active(session: AsyncSession, super_admin_id: str) -> list[ImpersonationSession]:
    # Includes soft-expired rows whose flag was never cleared.
    result = await session.execute(
        select(ImpersonationSession)
        .where(
            ImpersonationSession.super_admin_id == super_admin_id,
            ImpersonationSession.is_active.is_(True),
        )
        .order_by(ImpersonationSession.started_at.desc())
    )
    return list(result.scalars().all())


async def get_live_session(
    session: AsyncSession,
    *,
    super_admin_id: str,
    now: datetime,
) -> ImpersonationSession | None:
    result = await session.execute(
        select(ImpersonationSession)
        .where(
            ImpersonationSession.super_admin_id == super_admin_id,
            ImpersonationSession.is_active.is_(True),
            ImpersonationSession.expires_at > now,
        )
        .order_by(ImpersonationSession.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
