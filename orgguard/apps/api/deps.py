from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.permissions import Permission
from orgguard.persistence.db import get_session
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services.authority import Actor, has_permission


# Member roles allowed to start checkout or open the billing portal.
BILLING_MANAGER_ROLES = frozenset({"owner", "admin"})


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream identity layer; never authenticated here.
    user_id: str


class OrganisationScope(BaseModel):
    organisation_id: str
    principal: Principal
    member_role: str | None = None
    via_super_admin: bool = False


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "PERMISSION_DENIED", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    header = get_settings().principal_header
    user_id = (request.headers.get(header) or "").strip()
    if not user_id:
        raise _auth_error(f"{header} header is required")
    return Principal(user_id=user_id)


async def get_actor(principal: Principal = Depends(get_current_principal)) -> Actor:
    return Actor(user_id=principal.user_id)


def require_organisation_access(*, manage_billing: bool = False):
    # Dependency factory scoping tenant routes to the caller's organisation.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> OrganisationScope:
        header = get_settings().organisation_header
        organisation_id = (request.headers.get(header) or "").strip()
        if not organisation_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "INVALID_ARGUMENT", "message": f"{header} header is required"},
            )
        member = await organisations_repo.get_member(
            db, organisation_id=organisation_id, user_id=principal.user_id
        )
        if member is not None:
            if manage_billing and member.role not in BILLING_MANAGER_ROLES:
                raise _forbidden_error("Only organisation owners and admins can manage billing")
            return OrganisationScope(
                organisation_id=organisation_id,
                principal=principal,
                member_role=member.role,
            )
        # Super admins may read any organisation's billing state but never act on it.
        if not manage_billing and await has_permission(
            db, principal.user_id, Permission.VIEW_ALL_ORGANISATIONS
        ):
            return OrganisationScope(
                organisation_id=organisation_id,
                principal=principal,
                via_super_admin=True,
            )
        raise _forbidden_error("Caller is not a member of this organisation")

    return _dependency
