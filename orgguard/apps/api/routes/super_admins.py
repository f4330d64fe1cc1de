from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_actor, get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.services import super_admins as super_admins_service
from orgguard.services.authority import Actor
from orgguard.services.super_admins import SuperAdminView


router = APIRouter(
    prefix="/admin/super-admins",
    tags=["admin-super-admins"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class SuperAdminResponse(BaseModel):
    id: str
    user_id: str
    name: str
    email: str | None
    is_active: bool
    permissions: list[str]


class PermissionsRequest(BaseModel):
    permissions: list[str]


class PermissionGroupRequest(BaseModel):
    group: Literal["readonly", "support", "full_access"]


class ActiveRequest(BaseModel):
    is_active: bool


def _to_response(view: SuperAdminView) -> SuperAdminResponse:
    return SuperAdminResponse(
        id=view.admin.id,
        user_id=view.admin.user_id,
        name=view.admin.name,
        email=view.admin.email,
        is_active=view.admin.is_active,
        permissions=view.permissions,
    )


@router.get("/me", response_model=SuccessEnvelope[SuperAdminResponse] | SuperAdminResponse)
async def current_super_admin(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> SuperAdminResponse:
    return _to_response(unwrap(await super_admins_service.get_current_super_admin(db, actor=actor)))


@router.get("", response_model=SuccessEnvelope[list[SuperAdminResponse]] | list[SuperAdminResponse])
async def list_super_admins(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[SuperAdminResponse]:
    views = unwrap(await super_admins_service.list_super_admins(db, actor=actor))
    return [_to_response(view) for view in views]


@router.post(
    "/{super_admin_id}/permissions",
    response_model=SuccessEnvelope[SuperAdminResponse] | SuperAdminResponse,
)
async def grant_permissions(
    super_admin_id: str,
    payload: PermissionsRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> SuperAdminResponse:
    view = unwrap(
        await super_admins_service.grant_permissions(
            db,
            actor=actor,
            super_admin_id=super_admin_id,
            permissions=payload.permissions,
        )
    )
    return _to_response(view)


@router.post(
    "/{super_admin_id}/permissions/revoke",
    response_model=SuccessEnvelope[SuperAdminResponse] | SuperAdminResponse,
)
async def revoke_permissions(
    super_admin_id: str,
    payload: PermissionsRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> SuperAdminResponse:
    view = unwrap(
        await super_admins_service.revoke_permissions(
            db,
            actor=actor,
            super_admin_id=super_admin_id,
            permissions=payload.permissions,
        )
    )
    return _to_response(view)


@router.put(
    "/{super_admin_id}/permission-group",
    response_model=SuccessEnvelope[SuperAdminResponse] | SuperAdminResponse,
)
async def apply_permission_group(
    super_admin_id: str,
    payload: PermissionGroupRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> SuperAdminResponse:
    view = unwrap(
        await super_admins_service.apply_permission_group(
            db,
            actor=actor,
            super_admin_id=super_admin_id,
            group=payload.group,
        )
    )
    return _to_response(view)


@router.put(
    "/{super_admin_id}/active",
    response_model=SuccessEnvelope[SuperAdminResponse] | SuperAdminResponse,
)
async def set_active(
    super_admin_id: str,
    payload: ActiveRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> SuperAdminResponse:
    view = unwrap(
        await super_admins_service.set_super_admin_active(
            db,
            actor=actor,
            super_admin_id=super_admin_id,
            is_active=payload.is_active,
        )
    )
    return _to_response(view)
