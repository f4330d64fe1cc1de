from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_actor, get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.domain.models import ImpersonationSession
from orgguard.services import impersonation as impersonation_service
from orgguard.services.authority import Actor


router = APIRouter(
    prefix="/admin/impersonation",
    tags=["admin-impersonation"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class ImpersonationStartRequest(BaseModel):
    target_user_id: str
    target_organisation_id: str


class ImpersonationSessionResponse(BaseModel):
    id: str
    super_admin_id: str
    target_user_id: str
    target_organisation_id: str
    started_at: str
    expires_at: str
    ended_at: str | None
    is_active: bool


class ActiveImpersonationResponse(BaseModel):
    session: ImpersonationSessionResponse | None


def _to_response(row: ImpersonationSession) -> ImpersonationSessionResponse:
    # Report the effective state so expired sessions never read as active.
    return ImpersonationSessionResponse(
        id=row.id,
        super_admin_id=row.super_admin_id,
        target_user_id=row.target_user_id,
        target_organisation_id=row.target_organisation_id,
        started_at=row.started_at.isoformat(),
        expires_at=row.expires_at.isoformat(),
        ended_at=row.ended_at.isoformat() if row.ended_at else None,
        is_active=impersonation_service.is_session_active(row),
    )


@router.post(
    "/sessions",
    response_model=SuccessEnvelope[ImpersonationSessionResponse] | ImpersonationSessionResponse,
    status_code=201,
)
async def start_impersonation(
    payload: ImpersonationStartRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ImpersonationSessionResponse:
    row = unwrap(
        await impersonation_service.start_impersonation(
            db,
            actor=actor,
            target_user_id=payload.target_user_id,
            target_organisation_id=payload.target_organisation_id,
        )
    )
    return _to_response(row)


@router.post(
    "/sessions/{session_id}/end",
    response_model=SuccessEnvelope[ImpersonationSessionResponse] | ImpersonationSessionResponse,
)
async def end_impersonation(
    session_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ImpersonationSessionResponse:
    row = unwrap(await impersonation_service.end_impersonation(db, actor=actor, session_id=session_id))
    return _to_response(row)


@router.get(
    "/sessions/active",
    response_model=SuccessEnvelope[ActiveImpersonationResponse] | ActiveImpersonationResponse,
)
async def active_impersonation(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ActiveImpersonationResponse:
    row = unwrap(await impersonation_service.get_active_session(db, actor=actor))
    return ActiveImpersonationResponse(session=_to_response(row) if row is not None else None)
