from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.permissions import Permission
from orgguard.domain.results import (
    ErrorCode,
    OperationResult,
    failure,
    invalid_argument,
    not_found,
    success,
    unavailable,
)
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.persistence.repos import usage as usage_repo
from orgguard.services import plan_catalog
from orgguard.services.authority import Actor
from orgguard.services.entitlements import (
    BILLING_INTERVALS,
    FEATURE_KEYS,
    FIELD_CATEGORIES,
    PriceBreakdown,
    UsageReport,
    UsageSnapshot,
    addon_terms,
    compute_price,
    evaluate_usage,
    has_capacity,
    is_feature_available,
    is_field_category_allowed,
    plan_terms,
)
from orgguard.services.guarded import GuardedContext, run_guarded


logger = logging.getLogger(__name__)

METRIC_RECORDS = "records"
METRIC_REPORTS = "reports"
METRIC_STORAGE_BYTES = "storage_bytes"
USAGE_METRICS = (METRIC_RECORDS, METRIC_REPORTS, METRIC_STORAGE_BYTES)
CAPACITY_RESOURCES = ("users", "records", "reports", "storage")

# Running totals are stored under a single fixed period.
_LIFETIME_PERIOD = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def period_for_metric(metric: str, now: datetime) -> datetime:
    # Reports reset each calendar month (UTC); other metrics are running totals.
    if metric == METRIC_REPORTS:
        return month_start(now)
    return _LIFETIME_PERIOD


async def collect_usage_snapshot(
    session: AsyncSession,
    organisation_id: str,
    *,
    now: datetime | None = None,
) -> UsageSnapshot:
    resolved_now = now or _utc_now()
    values: dict[str, int] = {}
    for metric in USAGE_METRICS:
        values[metric] = await usage_repo.get_counter_value(
            session,
            organisation_id=organisation_id,
            metric=metric,
            period_start=period_for_metric(metric, resolved_now),
        )
    return UsageSnapshot(
        users=await organisations_repo.count_members(session, organisation_id),
        records=values[METRIC_RECORDS],
        reports_this_month=values[METRIC_REPORTS],
        storage_bytes=values[METRIC_STORAGE_BYTES],
    )


async def record_usage(
    session: AsyncSession,
    *,
    organisation_id: str,
    metric: str,
    delta: int,
    now: datetime | None = None,
) -> OperationResult[int]:
    if metric not in USAGE_METRICS:
        return invalid_argument(f"Unknown usage metric: {metric}", metric=metric)
    try:
        if await organisations_repo.get_organisation(session, organisation_id) is None:
            return not_found("Organisation", organisation_id)
        value = await usage_repo.increment_counter(
            session,
            organisation_id=organisation_id,
            metric=metric,
            period_start=period_for_metric(metric, now or _utc_now()),
            delta=delta,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "usage_counter_update_failed organisation_id=%s metric=%s",
            organisation_id,
            metric,
            exc_info=exc,
        )
        return unavailable()
    return success(value)


async def _build_report(
    session: AsyncSession,
    organisation_id: str,
    now: datetime | None,
) -> OperationResult[UsageReport]:
    organisation = await organisations_repo.get_organisation(session, organisation_id)
    if organisation is None:
        return not_found("Organisation", organisation_id)
    terms = await plan_catalog.resolve_plan_terms(session, organisation.current_plan_id)
    if terms is None:
        return failure(ErrorCode.NOT_FOUND, "No plan could be resolved for organisation")
    addon = addon_terms(await organisations_repo.get_storage_addon(session, organisation_id))
    snapshot = await collect_usage_snapshot(session, organisation_id, now=now)
    report = evaluate_usage(
        terms,
        snapshot,
        addon,
        warning_percent=get_settings().usage_warning_percent,
    )
    return success(report)


async def get_usage_report(
    session: AsyncSession,
    organisation_id: str,
    *,
    now: datetime | None = None,
) -> OperationResult[UsageReport]:
    try:
        return await _build_report(session, organisation_id, now)
    except SQLAlchemyError as exc:
        logger.error("usage_report_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()


async def fetch_organisation_usage(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    now: datetime | None = None,
) -> OperationResult[UsageReport]:
    async def _execute(ctx: GuardedContext) -> OperationResult[UsageReport]:
        return await _build_report(ctx.session, organisation_id, now)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="fetch_organisation_usage",
        execute=_execute,
    )


async def check_capacity(
    session: AsyncSession,
    organisation_id: str,
    resource: str,
    *,
    now: datetime | None = None,
) -> OperationResult[bool]:
    # True when one more user, record, report or byte still fits the plan.
    if resource not in CAPACITY_RESOURCES:
        return invalid_argument(f"Unknown resource: {resource}", resource=resource)
    result = await get_usage_report(session, organisation_id, now=now)
    if result.error is not None:
        return result
    return success(has_capacity(getattr(result.data, resource)))


@dataclass(frozen=True)
class OrganisationEntitlements:
    organisation_id: str
    plan_slug: str
    features: dict[str, bool]
    field_categories: list[str]
    usage: UsageReport


async def get_organisation_entitlements(
    session: AsyncSession,
    organisation_id: str,
    *,
    now: datetime | None = None,
) -> OperationResult[OrganisationEntitlements]:
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        terms = await plan_catalog.resolve_plan_terms(session, organisation.current_plan_id)
        if terms is None:
            return failure(ErrorCode.NOT_FOUND, "No plan could be resolved for organisation")
        report = await _build_report(session, organisation_id, now)
    except SQLAlchemyError as exc:
        logger.error("entitlements_lookup_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    if report.error is not None:
        return report
    return success(
        OrganisationEntitlements(
            organisation_id=organisation_id,
            plan_slug=terms.slug,
            features={feature: is_feature_available(terms, feature) for feature in FEATURE_KEYS},
            field_categories=[
                category for category in FIELD_CATEGORIES if is_field_category_allowed(terms, category)
            ],
            usage=report.data,
        )
    )


async def quote_organisation_price(
    session: AsyncSession,
    organisation_id: str,
    *,
    interval: str,
    plan_id: str | None = None,
    seats: int | None = None,
) -> OperationResult[PriceBreakdown]:
    # Quote the current (or a prospective) plan at the current seat count.
    if interval not in BILLING_INTERVALS:
        return invalid_argument(f"Unknown billing interval: {interval}", interval=interval)
    if seats is not None and seats < 0:
        return invalid_argument("seats must be non-negative", seats=seats)
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        if plan_id is not None:
            plan = await plan_catalog.get_plan(session, plan_id)
            if plan is None:
                return invalid_argument(f"Unknown plan id: {plan_id}", plan_id=plan_id)
            terms = plan_terms(plan)
        else:
            terms = await plan_catalog.resolve_plan_terms(session, organisation.current_plan_id)
            if terms is None:
                return failure(ErrorCode.NOT_FOUND, "No plan could be resolved for organisation")
        resolved_seats = seats if seats is not None else await organisations_repo.count_members(
            session, organisation_id
        )
        addon = addon_terms(await organisations_repo.get_storage_addon(session, organisation_id))
    except SQLAlchemyError as exc:
        logger.error("price_quote_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    return success(
        compute_price(
            terms,
            seats=resolved_seats,
            interval=interval,
            discount_percent=organisation.discount_percent,
            addon=addon,
        )
    )
