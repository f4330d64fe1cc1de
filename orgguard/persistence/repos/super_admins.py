from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import SuperAdmin, SuperAdminPermission


async def get_by_user_id(session: AsyncSession, user_id: str) -> SuperAdmin | None:
    result = await session.execute(select(SuperAdmin).where(SuperAdmin.user_id == user_id))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, super_admin_id: str) -> SuperAdmin | None:
    return await session.get(SuperAdmin, super_admin_id)


async def list_super_admins(session: AsyncSession, *, active_only: bool = False) -> list[SuperAdmin]:
    stmt = select(SuperAdmin)
    if active_only:
        stmt = stmt.where(SuperAdmin.is_active.is_(True))
    stmt = stmt.order_by(SuperAdmin.created_at.asc(), SuperAdmin.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_permissions(session: AsyncSession, super_admin_id: str) -> set[str]:
    result = await session.execute(
        select(SuperAdminPermission.permission).where(
            SuperAdminPermission.super_admin_id == super_admin_id
        )
    )
    return {row[0] for row in result.all()}


async def has_permission_row(session: AsyncSession, *, super_admin_id: str, permission: str) -> bool:
    result = await session.execute(
        select(SuperAdminPermission.permission).where(
            SuperAdminPermission.super_admin_id == super_admin_id,
            SuperAdminPermission.permission == permission,
        )
    )
    return result.first() is not None


async def add_permissions(
    session: AsyncSession,
    *,
    super_admin_id: str,
    permissions: list[str],
    granted_by: str | None,
) -> None:
    existing = await list_permissions(session, super_admin_id)
    for permission in permissions:
        if permission in existing:
            continue
        session.add(
            SuperAdminPermission(
                super_admin_id=super_admin_id,
                permission=permission,
                granted_by=granted_by,
            )
        )
        existing.add(permission)


async def remove_permissions(
    session: AsyncSession,
    *,
    super_admin_id: str,
    permissions: list[str],
) -> None:
    if not permissions:
        return
    await session.execute(
        delete(SuperAdminPermission).where(
            SuperAdminPermission.super_admin_id == super_admin_id,
            SuperAdminPermission.permission.in_(permissions),
        )
    )
