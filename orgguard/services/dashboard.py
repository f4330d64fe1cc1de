from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.models import Organisation
from orgguard.domain.permissions import Permission
from orgguard.domain.results import OperationResult, invalid_argument, success
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services import plan_catalog
from orgguard.services.authority import Actor
from orgguard.services.guarded import GuardedContext, run_guarded
from orgguard.services.subscriptions import SubscriptionStatus


ATTENTION_PAST_DUE = "past_due"
ATTENTION_UNPAID = "unpaid"
ATTENTION_BLOCKED = "blocked"
ATTENTION_TRIAL_ENDING = "trial_ending"

# Lower rank sorts first.
_URGENCY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class SubscriptionBreakdownRow:
    plan_id: str | None
    plan_slug: str
    plan_name: str
    subscription_status: str
    count: int


@dataclass(frozen=True)
class AttentionItem:
    organisation_id: str
    name: str
    reason: str
    urgency: str
    detail: str


@dataclass(frozen=True)
class DashboardMetrics:
    total_organisations: int
    total_members: int
    new_organisations_30d: int
    archived_organisations: int
    blocked_organisations: int
    by_status: dict[str, int]


def _trial_detail(trial_ends_at: datetime, now: datetime) -> str:
    days = (trial_ends_at.date() - now.date()).days
    if days <= 0:
        return "Trial ends today"
    if days == 1:
        return "Trial ends tomorrow"
    return f"Trial ends in {days} days"


def attention_items_for(
    organisation: Organisation,
    *,
    now: datetime,
    trial_cutoff: datetime,
) -> list[AttentionItem]:
    # One organisation can need attention for several reasons at once.
    items: list[AttentionItem] = []

    def _item(reason: str, urgency: str, detail: str) -> None:
        items.append(
            AttentionItem(
                organisation_id=organisation.id,
                name=organisation.name,
                reason=reason,
                urgency=urgency,
                detail=detail,
            )
        )

    status = organisation.subscription_status
    if status == SubscriptionStatus.PAST_DUE.value:
        _item(ATTENTION_PAST_DUE, "high", "Subscription past due")
    elif status == SubscriptionStatus.UNPAID.value:
        _item(ATTENTION_UNPAID, "high", "Subscription unpaid")
    if organisation.blocked:
        _item(ATTENTION_BLOCKED, "medium", organisation.blocked_reason or "Organisation blocked")
    trial_ends_at = organisation.trial_ends_at
    if (
        status == SubscriptionStatus.TRIALING.value
        and trial_ends_at is not None
        and now < trial_ends_at <= trial_cutoff
    ):
        _item(ATTENTION_TRIAL_ENDING, "medium", _trial_detail(trial_ends_at, now))
    return items


async def fetch_subscription_breakdown(
    session: AsyncSession,
    *,
    actor: Actor,
) -> OperationResult[list[SubscriptionBreakdownRow]]:
    async def _execute(ctx: GuardedContext) -> OperationResult[list[SubscriptionBreakdownRow]]:
        plans = {plan.id: plan for plan in await plan_catalog.list_plans(ctx.session, public_only=False)}
        free_plan = await plan_catalog.get_free_plan(ctx.session)
        counts: dict[tuple[str | None, str], int] = {}
        for plan_id, status, count in await organisations_repo.count_by_plan_and_status(ctx.session):
            # A null plan reference is the free tier.
            if plan_id is None and free_plan is not None:
                plan_id = free_plan.id
            key = (plan_id, status)
            counts[key] = counts.get(key, 0) + count
        rows = []
        for (plan_id, status), count in counts.items():
            plan = plans.get(plan_id) if plan_id is not None else None
            rows.append(
                SubscriptionBreakdownRow(
                    plan_id=plan_id,
                    plan_slug=plan.slug if plan else "no_plan",
                    plan_name=plan.name if plan else "No Plan",
                    subscription_status=status,
                    count=count,
                )
            )
        rows.sort(key=lambda row: (-row.count, row.plan_slug, row.subscription_status))
        return success(rows)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="fetch_subscription_breakdown",
        execute=_execute,
    )


async def fetch_attention_items(
    session: AsyncSession,
    *,
    actor: Actor,
    trial_window_days: int | None = None,
    limit: int | None = None,
    now: datetime | None = None,
) -> OperationResult[list[AttentionItem]]:
    settings = get_settings()
    window = settings.attention_trial_window_days if trial_window_days is None else trial_window_days
    resolved_limit = settings.attention_item_limit if limit is None else limit

    async def _execute(ctx: GuardedContext) -> OperationResult[list[AttentionItem]]:
        if window < 0:
            return invalid_argument("trial_window_days must be non-negative", trial_window_days=window)
        if resolved_limit < 1:
            return invalid_argument("limit must be positive", limit=resolved_limit)
        trial_cutoff = ctx.now + timedelta(days=window)
        organisations = await organisations_repo.list_needing_attention(
            ctx.session,
            overdue_statuses=[SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value],
            trial_status=SubscriptionStatus.TRIALING.value,
            now=ctx.now,
            trial_cutoff=trial_cutoff,
        )
        items: list[AttentionItem] = []
        for organisation in organisations:
            items.extend(attention_items_for(organisation, now=ctx.now, trial_cutoff=trial_cutoff))
        # Stable sort keeps newest organisations first within each urgency.
        items.sort(key=lambda item: _URGENCY_RANK[item.urgency])
        return success(items[:resolved_limit])

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="fetch_attention_items",
        execute=_execute,
        now=now,
    )


async def fetch_dashboard_metrics(
    session: AsyncSession,
    *,
    actor: Actor,
    now: datetime | None = None,
) -> OperationResult[DashboardMetrics]:
    async def _execute(ctx: GuardedContext) -> OperationResult[DashboardMetrics]:
        by_status: dict[str, int] = {}
        for _plan_id, status, count in await organisations_repo.count_by_plan_and_status(ctx.session):
            by_status[status] = by_status.get(status, 0) + count
        return success(
            DashboardMetrics(
                total_organisations=await organisations_repo.count_organisations(ctx.session),
                total_members=await organisations_repo.count_all_members(ctx.session),
                new_organisations_30d=await organisations_repo.count_organisations(
                    ctx.session, created_since=ctx.now - timedelta(days=30)
                ),
                archived_organisations=await organisations_repo.count_organisations(
                    ctx.session, archived=True
                ),
                blocked_organisations=await organisations_repo.count_organisations(
                    ctx.session, blocked=True
                ),
                by_status=by_status,
            )
        )

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="fetch_dashboard_metrics",
        execute=_execute,
        now=now,
    )
