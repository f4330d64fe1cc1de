from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.models import SubscriptionPlan
from orgguard.persistence.repos import plans as plans_repo
from orgguard.services.entitlements import FIELD_CATEGORIES, PlanTerms, plan_terms


logger = logging.getLogger(__name__)

FREE_PLAN_SLUG = "free"
PRO_PLAN_SLUG = "pro"
ENTERPRISE_PLAN_SLUG = "enterprise"

_PAID_CATEGORIES = list(FIELD_CATEGORIES)

DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "slug": FREE_PLAN_SLUG,
        "name": "Free",
        "description": "For individuals getting started with inspections",
        "max_users": 2,
        "max_records": -1,
        "max_reports_per_month": 10,
        "max_storage_gb": 1,
        "feature_pdf_export": True,
        "feature_photos": True,
        "price_monthly_minor": 0,
        "price_annual_minor": 0,
        "price_per_user_monthly_minor": 0,
        "price_per_user_annual_minor": 0,
        "base_users_included": 2,
        "allowed_field_categories": ["basic", "evidence"],
        "display_order": 0,
    },
    {
        "slug": PRO_PLAN_SLUG,
        "name": "Pro",
        "description": "For growing teams that need every field type",
        "max_users": -1,
        "max_records": -1,
        "max_reports_per_month": 100,
        "max_storage_gb": 25,
        "feature_ai_templates": True,
        "feature_pdf_export": True,
        "feature_custom_branding": True,
        "feature_photos": True,
        "feature_starter_templates": True,
        "feature_all_field_types": True,
        "price_monthly_minor": 2900,
        "price_annual_minor": 27840,
        "price_per_user_monthly_minor": 900,
        "price_per_user_annual_minor": 8640,
        "base_users_included": 1,
        "allowed_field_categories": _PAID_CATEGORIES,
        "display_order": 1,
    },
    {
        "slug": ENTERPRISE_PLAN_SLUG,
        "name": "Enterprise",
        "description": "For organisations with advanced compliance and branding needs",
        "max_users": -1,
        "max_records": -1,
        "max_reports_per_month": -1,
        "max_storage_gb": 100,
        "feature_ai_templates": True,
        "feature_pdf_export": True,
        "feature_api_access": True,
        "feature_custom_branding": True,
        "feature_priority_support": True,
        "feature_white_label": True,
        "feature_advanced_analytics": True,
        "feature_photos": True,
        "feature_starter_templates": True,
        "feature_all_field_types": True,
        "price_monthly_minor": 9900,
        "price_annual_minor": 95040,
        "price_per_user_monthly_minor": 1100,
        "price_per_user_annual_minor": 10560,
        "base_users_included": 1,
        "allowed_field_categories": _PAID_CATEGORIES,
        "display_order": 2,
    },
)


def is_free_plan(plan: SubscriptionPlan | None) -> bool:
    if plan is None:
        return True
    return plan.slug == get_settings().free_plan_slug or (
        plan.price_monthly_minor == 0 and plan.price_annual_minor == 0
    )


async def list_plans(session: AsyncSession, *, public_only: bool = True) -> list[SubscriptionPlan]:
    return await plans_repo.list_plans(session, public_only=public_only)


async def get_plan(session: AsyncSession, plan_id: str) -> SubscriptionPlan | None:
    return await plans_repo.get_plan(session, plan_id)


async def get_plan_by_slug(session: AsyncSession, slug: str) -> SubscriptionPlan | None:
    return await plans_repo.get_plan_by_slug(session, slug)


async def get_free_plan(session: AsyncSession) -> SubscriptionPlan | None:
    return await plans_repo.get_plan_by_slug(session, get_settings().free_plan_slug)


async def resolve_plan(session: AsyncSession, plan_id: str | None) -> SubscriptionPlan | None:
    # A null plan reference means the free tier.
    if plan_id is None:
        return await get_free_plan(session)
    return await plans_repo.get_plan(session, plan_id)


async def resolve_plan_terms(session: AsyncSession, plan_id: str | None) -> PlanTerms | None:
    plan = await resolve_plan(session, plan_id)
    return plan_terms(plan) if plan is not None else None


async def seed_plan_catalog(session: AsyncSession) -> list[str]:
    # Published plans are immutable; only missing slugs are inserted.
    existing = await plans_repo.list_plan_slugs(session)
    created: list[str] = []
    for definition in DEFAULT_PLANS:
        if definition["slug"] in existing:
            continue
        session.add(SubscriptionPlan(**definition))
        created.append(definition["slug"])
    if created:
        await session.commit()
        logger.info("plan_catalog_seeded slugs=%s", ",".join(created))
    return created
