from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import (
    BillingHistoryEntry,
    ImpersonationSession,
    Organisation,
    OrganisationMember,
    StorageAddOn,
    UsageCounter,
)


async def get_organisation(session: AsyncSession, organisation_id: str) -> Organisation | None:
    return await session.get(Organisation, organisation_id)


async def get_by_customer_ref(session: AsyncSession, customer_ref: str) -> Organisation | None:
    result = await session.execute(
        select(Organisation).where(Organisation.processor_customer_ref == customer_ref)
    )
    return result.scalar_one_or_none()


async def list_organisations(
    session: AsyncSession,
    *,
    search: str | None = None,
    include_archived: bool = True,
    blocked: bool | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Organisation]:
    stmt = select(Organisation)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Organisation.name).like(pattern),
                func.lower(Organisation.contact_email).like(pattern),
            )
        )
    if not include_archived:
        stmt = stmt.where(Organisation.archived.is_(False))
    if blocked is not None:
        stmt = stmt.where(Organisation.blocked.is_(blocked))
    stmt = stmt.order_by(Organisation.created_at.desc(), Organisation.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_members(session: AsyncSession, organisation_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(OrganisationMember)
        .where(OrganisationMember.organisation_id == organisation_id)
    )
    return int(result.scalar() or 0)


async def get_member(
    session: AsyncSession,
    *,
    organisation_id: str,
    user_id: str,
) -> OrganisationMember | None:
    result = await session.execute(
        select(OrganisationMember).where(
            OrganisationMember.organisation_id == organisation_id,
            OrganisationMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, organisation_id: str) -> list[OrganisationMember]:
    result = await session.execute(
        select(OrganisationMember)
        .where(OrganisationMember.organisation_id == organisation_id)
        .order_by(OrganisationMember.created_at.asc(), OrganisationMember.id.asc())
    )
    return list(result.scalars().all())


async def count_by_plan_and_status(session: AsyncSession) -> list[tuple[str | None, str, int]]:
    result = await session.execute(
        select(Organisation.current_plan_id, Organisation.subscription_status, func.count())
        .group_by(Organisation.current_plan_id, Organisation.subscription_status)
    )
    return [(plan_id, status, int(count)) for plan_id, status, count in result.all()]


async def count_organisations(
    session: AsyncSession,
    *,
    created_since: datetime | None = None,
    archived: bool | None = None,
    blocked: bool | None = None,
) -> int:
    stmt = select(func.count()).select_from(Organisation)
    if created_since is not None:
        stmt = stmt.where(Organisation.created_at >= created_since)
    if archived is not None:
        stmt = stmt.where(Organisation.archived.is_(archived))
    if blocked is not None:
        stmt = stmt.where(Organisation.blocked.is_(blocked))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def count_all_members(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(OrganisationMember))
    return int(result.scalar() or 0)


async def list_needing_attention(
    session: AsyncSession,
    *,
    overdue_statuses: list[str],
    trial_status: str,
    now: datetime,
    trial_cutoff: datetime,
) -> list[Organisation]:
    # Archived organisations are excluded; callers split rows into reasons.
    stmt = (
        select(Organisation)
        .where(
            Organisation.archived.is_(False),
            or_(
                Organisation.subscription_status.in_(overdue_statuses),
                Organisation.blocked.is_(True),
                and_(
                    Organisation.subscription_status == trial_status,
                    Organisation.trial_ends_at > now,
                    Organisation.trial_ends_at <= trial_cutoff,
                ),
            ),
        )
        .order_by(Organisation.created_at.desc(), Organisation.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_storage_addon(session: AsyncSession, organisation_id: str) -> StorageAddOn | None:
    return await session.get(StorageAddOn, organisation_id)


async def delete_organisation_tree(session: AsyncSession, organisation_id: str) -> None:
    # Remove dependents before the organisation row; audit rows are retained.
    await session.execute(
        delete(OrganisationMember).where(OrganisationMember.organisation_id == organisation_id)
    )
    await session.execute(delete(StorageAddOn).where(StorageAddOn.organisation_id == organisation_id))
    await session.execute(delete(UsageCounter).where(UsageCounter.organisation_id == organisation_id))
    await session.execute(
        delete(BillingHistoryEntry).where(BillingHistoryEntry.organisation_id == organisation_id)
    )
    await session.execute(
        delete(ImpersonationSession).where(
            ImpersonationSession.target_organisation_id == organisation_id
        )
    )
    await session.execute(delete(Organisation).where(Organisation.id == organisation_id))
