from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_actor, get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.services import dashboard as dashboard_service
from orgguard.services.authority import Actor


router = APIRouter(
    prefix="/admin/dashboard",
    tags=["admin-dashboard"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class DashboardMetricsResponse(BaseModel):
    total_organisations: int
    total_members: int
    new_organisations_30d: int
    archived_organisations: int
    blocked_organisations: int
    by_status: dict[str, int]


class SubscriptionBreakdownResponse(BaseModel):
    plan_id: str | None
    plan_slug: str
    plan_name: str
    subscription_status: str
    count: int


class AttentionItemResponse(BaseModel):
    organisation_id: str
    name: str
    reason: str
    urgency: str
    detail: str


@router.get("/metrics", response_model=SuccessEnvelope[DashboardMetricsResponse] | DashboardMetricsResponse)
async def dashboard_metrics(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> DashboardMetricsResponse:
    metrics = unwrap(await dashboard_service.fetch_dashboard_metrics(db, actor=actor))
    return DashboardMetricsResponse(**asdict(metrics))


@router.get(
    "/subscriptions",
    response_model=SuccessEnvelope[list[SubscriptionBreakdownResponse]] | list[SubscriptionBreakdownResponse],
)
async def subscription_breakdown(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[SubscriptionBreakdownResponse]:
    rows = unwrap(await dashboard_service.fetch_subscription_breakdown(db, actor=actor))
    return [SubscriptionBreakdownResponse(**asdict(row)) for row in rows]


@router.get(
    "/attention",
    response_model=SuccessEnvelope[list[AttentionItemResponse]] | list[AttentionItemResponse],
)
async def attention_items(
    trial_window_days: int = Query(default=7, ge=0, le=90),
    limit: int = Query(default=20, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[AttentionItemResponse]:
    items = unwrap(
        await dashboard_service.fetch_attention_items(
            db, actor=actor, trial_window_days=trial_window_days, limit=limit
        )
    )
    return [AttentionItemResponse(**asdict(item)) for item in items]
