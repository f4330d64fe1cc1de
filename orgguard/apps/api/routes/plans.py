from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_db
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.domain.models import SubscriptionPlan
from orgguard.services import plan_catalog
from orgguard.services.entitlements import (
    FEATURE_KEYS,
    PriceBreakdown,
    allowed_field_categories,
    compute_price,
    plan_terms,
)


router = APIRouter(prefix="/plans", tags=["plans"], responses=DEFAULT_ERROR_RESPONSES)


class PlanLimitsResponse(BaseModel):
    max_users: int
    max_records: int
    max_reports_per_month: int
    max_storage_gb: int


class PlanPricingResponse(BaseModel):
    price_monthly_minor: int
    price_annual_minor: int
    price_per_user_monthly_minor: int
    price_per_user_annual_minor: int
    base_users_included: int


class PlanResponse(BaseModel):
    id: str
    slug: str
    name: str
    description: str | None
    limits: PlanLimitsResponse
    features: dict[str, bool]
    pricing: PlanPricingResponse
    allowed_field_categories: list[str]
    is_public: bool
    display_order: int


class PriceLineResponse(BaseModel):
    label: str
    quantity: int
    unit_amount_minor: int
    amount_minor: int
    discounted_amount_minor: int


class PriceQuoteResponse(BaseModel):
    interval: str
    seats: int
    extra_seats: int
    discount_percent: int
    subtotal_minor: int
    discount_minor: int
    total_minor: int
    is_free_access: bool
    lines: list[PriceLineResponse]


def plan_to_response(plan: SubscriptionPlan) -> PlanResponse:
    terms = plan_terms(plan)
    return PlanResponse(
        id=plan.id,
        slug=plan.slug,
        name=plan.name,
        description=plan.description,
        limits=PlanLimitsResponse(
            max_users=plan.max_users,
            max_records=plan.max_records,
            max_reports_per_month=plan.max_reports_per_month,
            max_storage_gb=plan.max_storage_gb,
        ),
        features={feature: feature in terms.features for feature in FEATURE_KEYS},
        pricing=PlanPricingResponse(
            price_monthly_minor=plan.price_monthly_minor,
            price_annual_minor=plan.price_annual_minor,
            price_per_user_monthly_minor=plan.price_per_user_monthly_minor,
            price_per_user_annual_minor=plan.price_per_user_annual_minor,
            base_users_included=plan.base_users_included,
        ),
        allowed_field_categories=list(allowed_field_categories(terms)),
        is_public=plan.is_public,
        display_order=plan.display_order,
    )


def price_to_response(price: PriceBreakdown) -> PriceQuoteResponse:
    return PriceQuoteResponse(
        interval=price.interval,
        seats=price.seats,
        extra_seats=price.extra_seats,
        discount_percent=price.discount_percent,
        subtotal_minor=price.subtotal_minor,
        discount_minor=price.discount_minor,
        total_minor=price.total_minor,
        is_free_access=price.is_free_access,
        lines=[
            PriceLineResponse(
                label=line.label,
                quantity=line.quantity,
                unit_amount_minor=line.unit_amount_minor,
                amount_minor=line.amount_minor,
                discounted_amount_minor=line.discounted_amount_minor,
            )
            for line in price.lines
        ],
    )


async def _load_plan(db: AsyncSession, plan_id: str) -> SubscriptionPlan:
    plan = await plan_catalog.get_plan(db, plan_id)
    if plan is None or not plan.is_active:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "Plan not found", "resource": "Plan", "id": plan_id},
        )
    return plan


@router.get("", response_model=SuccessEnvelope[list[PlanResponse]] | list[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_db)) -> list[PlanResponse]:
    # Public catalog ordered for display.
    plans = await plan_catalog.list_plans(db, public_only=True)
    return [plan_to_response(plan) for plan in plans]


@router.get("/{plan_id}", response_model=SuccessEnvelope[PlanResponse] | PlanResponse)
async def get_plan(plan_id: str, db: AsyncSession = Depends(get_db)) -> PlanResponse:
    return plan_to_response(await _load_plan(db, plan_id))


@router.get("/{plan_id}/price", response_model=SuccessEnvelope[PriceQuoteResponse] | PriceQuoteResponse)
async def quote_plan_price(
    plan_id: str,
    seats: int = Query(default=1, ge=0),
    interval: Literal["monthly", "annual"] = "monthly",
    discount_percent: int = Query(default=0, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
) -> PriceQuoteResponse:
    plan = await _load_plan(db, plan_id)
    price = compute_price(
        plan_terms(plan),
        seats=seats,
        interval=interval,
        discount_percent=discount_percent,
    )
    return price_to_response(price)
