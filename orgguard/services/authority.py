from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.domain.models import SuperAdmin
from orgguard.domain.permissions import Permission, parse_permission
from orgguard.persistence.repos import super_admins as super_admins_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    # Authenticated principal id handed over by the identity boundary.
    user_id: str


async def get_active_super_admin(session: AsyncSession, user_id: str) -> SuperAdmin | None:
    admin = await super_admins_repo.get_by_user_id(session, user_id)
    if admin is None or not admin.is_active:
        return None
    return admin


async def resolve_grant(
    session: AsyncSession,
    user_id: str,
    permission: Permission | str,
) -> SuperAdmin | None:
    # Return the caller's super admin record only when it holds the permission.
    parsed = permission if isinstance(permission, Permission) else parse_permission(permission)
    if parsed is None:
        return None
    admin = await get_active_super_admin(session, user_id)
    if admin is None:
        return None
    granted = await super_admins_repo.has_permission_row(
        session, super_admin_id=admin.id, permission=parsed.value
    )
    return admin if granted else None


async def has_permission(session: AsyncSession, user_id: str, permission: Permission | str) -> bool:
    # Inactive or unknown callers hold no permissions at all.
    return await resolve_grant(session, user_id, permission) is not None


async def effective_permissions(session: AsyncSession, user_id: str) -> set[str]:
    admin = await get_active_super_admin(session, user_id)
    if admin is None:
        return set()
    return await super_admins_repo.list_permissions(session, admin.id)
