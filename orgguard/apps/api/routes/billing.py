from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import OrganisationScope, get_db, require_organisation_access
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.apps.api.routes.plans import PriceQuoteResponse, price_to_response
from orgguard.services import usage as usage_service
from orgguard.services.entitlements import UsageReport
from orgguard.services.payments import PaymentProcessorClient, get_payment_client, open_billing_portal, start_checkout
from orgguard.services.subscriptions import BillingSummary, get_billing_summary


router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class BillingSummaryResponse(BaseModel):
    organisation_id: str
    plan_id: str | None
    plan_slug: str | None
    plan_name: str | None
    subscription_status: str
    is_trialing: bool
    trial_ends_at: str | None
    trial_days_remaining: int | None
    subscription_ends_at: str | None
    discount_percent: int
    is_free_access: bool
    has_billing: bool


class UsageLimitResponse(BaseModel):
    current: int
    limit: int
    exceeded: bool
    percent: int | None
    display_percent: int | None
    at_warning: bool


class StorageUsageResponse(UsageLimitResponse):
    current_gb: float
    limit_gb: int
    base_limit_gb: int
    addon_gb: int


class UsageReportResponse(BaseModel):
    users: UsageLimitResponse
    records: UsageLimitResponse
    reports: UsageLimitResponse
    storage: StorageUsageResponse


class EntitlementsResponse(BaseModel):
    organisation_id: str
    plan_slug: str
    features: dict[str, bool]
    field_categories: list[str]
    usage: UsageReportResponse


class CapacityResponse(BaseModel):
    resource: str
    has_capacity: bool


class CheckoutRequest(BaseModel):
    plan_id: str
    interval: Literal["monthly", "annual"] = "monthly"
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    url: str
    session_id: str


class PortalRequest(BaseModel):
    return_url: str


class PortalResponse(BaseModel):
    url: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def summary_to_response(summary: BillingSummary) -> BillingSummaryResponse:
    return BillingSummaryResponse(
        organisation_id=summary.organisation_id,
        plan_id=summary.plan_id,
        plan_slug=summary.plan_slug,
        plan_name=summary.plan_name,
        subscription_status=summary.subscription_status,
        is_trialing=summary.is_trialing,
        trial_ends_at=_iso(summary.trial_ends_at),
        trial_days_remaining=summary.trial_days_remaining,
        subscription_ends_at=_iso(summary.subscription_ends_at),
        discount_percent=summary.discount_percent,
        is_free_access=summary.is_free_access,
        has_billing=summary.has_billing,
    )


def usage_to_response(report: UsageReport) -> UsageReportResponse:
    return UsageReportResponse.model_validate(report.as_dict())


@router.get("/summary", response_model=SuccessEnvelope[BillingSummaryResponse] | BillingSummaryResponse)
async def billing_summary(
    scope: OrganisationScope = Depends(require_organisation_access()),
    db: AsyncSession = Depends(get_db),
) -> BillingSummaryResponse:
    summary = unwrap(await get_billing_summary(db, scope.organisation_id))
    return summary_to_response(summary)


@router.get("/usage", response_model=SuccessEnvelope[UsageReportResponse] | UsageReportResponse)
async def billing_usage(
    scope: OrganisationScope = Depends(require_organisation_access()),
    db: AsyncSession = Depends(get_db),
) -> UsageReportResponse:
    report = unwrap(await usage_service.get_usage_report(db, scope.organisation_id))
    return usage_to_response(report)


@router.get("/entitlements", response_model=SuccessEnvelope[EntitlementsResponse] | EntitlementsResponse)
async def billing_entitlements(
    scope: OrganisationScope = Depends(require_organisation_access()),
    db: AsyncSession = Depends(get_db),
) -> EntitlementsResponse:
    entitlements = unwrap(await usage_service.get_organisation_entitlements(db, scope.organisation_id))
    return EntitlementsResponse(
        organisation_id=entitlements.organisation_id,
        plan_slug=entitlements.plan_slug,
        features=entitlements.features,
        field_categories=entitlements.field_categories,
        usage=usage_to_response(entitlements.usage),
    )


@router.get(
    "/capacity/{resource}",
    response_model=SuccessEnvelope[CapacityResponse] | CapacityResponse,
)
async def billing_capacity(
    resource: str,
    scope: OrganisationScope = Depends(require_organisation_access()),
    db: AsyncSession = Depends(get_db),
) -> CapacityResponse:
    allowed = unwrap(await usage_service.check_capacity(db, scope.organisation_id, resource))
    return CapacityResponse(resource=resource, has_capacity=bool(allowed))


@router.get("/price", response_model=SuccessEnvelope[PriceQuoteResponse] | PriceQuoteResponse)
async def billing_price(
    interval: Literal["monthly", "annual"] = "monthly",
    plan_id: str | None = None,
    seats: int | None = Query(default=None, ge=0),
    scope: OrganisationScope = Depends(require_organisation_access()),
    db: AsyncSession = Depends(get_db),
) -> PriceQuoteResponse:
    price = unwrap(
        await usage_service.quote_organisation_price(
            db,
            scope.organisation_id,
            interval=interval,
            plan_id=plan_id,
            seats=seats,
        )
    )
    return price_to_response(price)


@router.post("/checkout", response_model=SuccessEnvelope[CheckoutResponse] | CheckoutResponse)
async def billing_checkout(
    payload: CheckoutRequest,
    scope: OrganisationScope = Depends(require_organisation_access(manage_billing=True)),
    db: AsyncSession = Depends(get_db),
    client: PaymentProcessorClient = Depends(get_payment_client),
) -> CheckoutResponse:
    checkout = unwrap(
        await start_checkout(
            db,
            client,
            organisation_id=scope.organisation_id,
            plan_id=payload.plan_id,
            interval=payload.interval,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    )
    return CheckoutResponse(url=checkout.url, session_id=checkout.session_id)


@router.post("/portal", response_model=SuccessEnvelope[PortalResponse] | PortalResponse)
async def billing_portal(
    payload: PortalRequest,
    scope: OrganisationScope = Depends(require_organisation_access(manage_billing=True)),
    db: AsyncSession = Depends(get_db),
    client: PaymentProcessorClient = Depends(get_payment_client),
) -> PortalResponse:
    url = unwrap(
        await open_billing_portal(
            db,
            client,
            organisation_id=scope.organisation_id,
            return_url=payload.return_url,
        )
    )
    return PortalResponse(url=url)
