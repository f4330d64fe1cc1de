from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import math

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.audit_events import ActionType, BillingSnapshot, DiscountChange, DiscountState, PlanChange
from orgguard.domain.models import BillingHistoryEntry, Organisation, SubscriptionPlan
from orgguard.domain.permissions import Permission
from orgguard.domain.results import (
    OperationResult,
    invalid_argument,
    not_found,
    success,
    unavailable,
)
from orgguard.persistence.repos import billing_history as billing_history_repo
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services import plan_catalog
from orgguard.services.audit import PendingAudit
from orgguard.services.authority import Actor
from orgguard.services.guarded import GuardedContext, run_guarded


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


_S = SubscriptionStatus

# Processor-driven transitions; same-state updates are always accepted.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.INCOMPLETE: frozenset({_S.TRIALING, _S.ACTIVE, _S.CANCELED, _S.UNPAID}),
    _S.TRIALING: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELED, _S.UNPAID, _S.PAUSED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.CANCELED, _S.UNPAID, _S.PAUSED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.CANCELED, _S.UNPAID}),
    _S.UNPAID: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.PAUSED: frozenset({_S.ACTIVE, _S.CANCELED, _S.UNPAID}),
    _S.CANCELED: frozenset({_S.INCOMPLETE, _S.TRIALING, _S.ACTIVE}),
}

HISTORY_PLAN_CHANGE = "plan_change"
HISTORY_STATUS_CHANGE = "status_change"
HISTORY_TRIAL_EXTENDED = "trial_extended"
HISTORY_DISCOUNT_CHANGE = "discount_change"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_status(value: str) -> SubscriptionStatus | None:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def is_transition_allowed(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class BillingState:
    status: SubscriptionStatus
    plan_id: str | None
    trial_ends_at: datetime | None


def initial_billing_state(
    plan: SubscriptionPlan | None,
    *,
    discount_percent: int = 0,
    now: datetime | None = None,
    trial_days: int | None = None,
) -> BillingState:
    # Paid plans start trialing unless fully discounted; free and absent plans start active.
    if plan is None or plan_catalog.is_free_plan(plan):
        return BillingState(
            status=SubscriptionStatus.ACTIVE,
            plan_id=plan.id if plan is not None else None,
            trial_ends_at=None,
        )
    if discount_percent >= 100:
        return BillingState(status=SubscriptionStatus.ACTIVE, plan_id=plan.id, trial_ends_at=None)
    resolved_days = get_settings().trial_period_days if trial_days is None else trial_days
    resolved_now = now or _utc_now()
    return BillingState(
        status=SubscriptionStatus.TRIALING,
        plan_id=plan.id,
        trial_ends_at=resolved_now + timedelta(days=resolved_days),
    )


def trial_days_remaining(trial_ends_at: datetime | None, now: datetime | None = None) -> int | None:
    if trial_ends_at is None:
        return None
    remaining = (trial_ends_at - (now or _utc_now())).total_seconds() / 86400
    return max(0, math.ceil(remaining))


def billing_snapshot(organisation: Organisation) -> BillingSnapshot:
    return BillingSnapshot(
        plan_id=organisation.current_plan_id,
        subscription_status=organisation.subscription_status,
        trial_ends_at=organisation.trial_ends_at,
        subscription_ends_at=organisation.subscription_ends_at,
    )


def _record_changes(
    session: AsyncSession,
    *,
    organisation_id: str,
    before: BillingSnapshot,
    after: BillingSnapshot,
    changed_by: str | None,
) -> None:
    if before.plan_id != after.plan_id:
        billing_history_repo.add_entry(
            session,
            organisation_id=organisation_id,
            event_type=HISTORY_PLAN_CHANGE,
            previous_value=before.plan_id,
            new_value=after.plan_id,
            changed_by=changed_by,
        )
    if before.subscription_status != after.subscription_status:
        billing_history_repo.add_entry(
            session,
            organisation_id=organisation_id,
            event_type=HISTORY_STATUS_CHANGE,
            previous_value=before.subscription_status,
            new_value=after.subscription_status,
            changed_by=changed_by,
        )
    if before.trial_ends_at != after.trial_ends_at and after.trial_ends_at is not None:
        billing_history_repo.add_entry(
            session,
            organisation_id=organisation_id,
            event_type=HISTORY_TRIAL_EXTENDED,
            previous_value=before.trial_ends_at.isoformat() if before.trial_ends_at else None,
            new_value=after.trial_ends_at.isoformat(),
            changed_by=changed_by,
        )


@dataclass(frozen=True)
class ProcessorUpdate:
    # One subscription state change reported by the payment processor.
    status: str
    organisation_id: str | None = None
    customer_ref: str | None = None
    plan_id: str | None = None
    trial_ends_at: datetime | None = None
    subscription_ends_at: datetime | None = None


async def apply_processor_update(
    session: AsyncSession,
    update: ProcessorUpdate,
) -> OperationResult[Organisation]:
    target_status = parse_status(update.status)
    if target_status is None:
        return invalid_argument(f"Unknown subscription status: {update.status}", status=update.status)
    if not update.organisation_id and not update.customer_ref:
        return invalid_argument("organisation_id or customer_ref is required")
    try:
        if update.organisation_id:
            organisation = await organisations_repo.get_organisation(session, update.organisation_id)
        else:
            organisation = await organisations_repo.get_by_customer_ref(session, update.customer_ref or "")
        if organisation is None:
            return not_found("Organisation", update.organisation_id or update.customer_ref or "")

        current_status = parse_status(organisation.subscription_status) or SubscriptionStatus.INCOMPLETE
        current_plan = await plan_catalog.resolve_plan(session, organisation.current_plan_id)
        # The free tier sits outside the paid machine; any processor status enters it.
        on_free_tier = plan_catalog.is_free_plan(current_plan)
        if not on_free_tier and not is_transition_allowed(current_status, target_status):
            logger.warning(
                "processor_transition_rejected organisation_id=%s from=%s to=%s",
                organisation.id,
                current_status.value,
                target_status.value,
            )
            return invalid_argument(
                f"Transition {current_status.value} -> {target_status.value} is not allowed",
                current=current_status.value,
                target=target_status.value,
            )

        plan_id = organisation.current_plan_id
        if update.plan_id is not None:
            plan = await plan_catalog.get_plan(session, update.plan_id)
            if plan is None:
                return invalid_argument(f"Unknown plan id: {update.plan_id}", plan_id=update.plan_id)
            plan_id = plan.id
        subscription_ends_at = update.subscription_ends_at or organisation.subscription_ends_at
        if target_status == SubscriptionStatus.CANCELED and update.plan_id is None:
            # Cancellation without a replacement plan drops to the free tier.
            free_plan = await plan_catalog.get_free_plan(session)
            plan_id = free_plan.id if free_plan is not None else None
            subscription_ends_at = None

        before = billing_snapshot(organisation)
        organisation.subscription_status = target_status.value
        organisation.current_plan_id = plan_id
        organisation.subscription_ends_at = subscription_ends_at
        if update.trial_ends_at is not None:
            organisation.trial_ends_at = update.trial_ends_at
        if update.customer_ref and not organisation.processor_customer_ref:
            organisation.processor_customer_ref = update.customer_ref
        _record_changes(
            session,
            organisation_id=organisation.id,
            before=before,
            after=billing_snapshot(organisation),
            changed_by=None,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "processor_update_failed organisation_id=%s customer_ref=%s",
            update.organisation_id,
            update.customer_ref,
            exc_info=exc,
        )
        return unavailable()
    logger.info(
        "processor_update_applied organisation_id=%s status=%s plan_id=%s",
        organisation.id,
        organisation.subscription_status,
        organisation.current_plan_id,
    )
    return success(organisation)


async def set_organisation_plan(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    plan_id: str,
    status: str | None = None,
    trial_ends_at: datetime | None = None,
    subscription_ends_at: datetime | None = None,
) -> OperationResult[Organisation]:
    # Administrative override; not bound by the processor transition table.
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        target_status = parse_status(status) if status is not None else None
        if status is not None and target_status is None:
            return invalid_argument(f"Unknown subscription status: {status}", status=status)
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        plan = await plan_catalog.get_plan(ctx.session, plan_id)
        if plan is None:
            return invalid_argument(f"Unknown plan id: {plan_id}", plan_id=plan_id)

        before = billing_snapshot(organisation)
        organisation.current_plan_id = plan.id
        if target_status is not None:
            organisation.subscription_status = target_status.value
        if trial_ends_at is not None:
            organisation.trial_ends_at = trial_ends_at
        if subscription_ends_at is not None:
            organisation.subscription_ends_at = subscription_ends_at
        after = billing_snapshot(organisation)
        _record_changes(
            ctx.session,
            organisation_id=organisation.id,
            before=before,
            after=after,
            changed_by=ctx.super_admin.id,
        )
        ctx.audit(
            PendingAudit(
                action_type=ActionType.CHANGE_ORGANISATION_PLAN,
                payload=PlanChange(before=before, after=after),
                target_table="organisations",
                target_id=organisation.id,
                target_organisation_id=organisation.id,
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="set_organisation_plan",
        execute=_execute,
    )


async def set_discount(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
    discount_percent: int,
    reason: str | None = None,
) -> OperationResult[Organisation]:
    async def _execute(ctx: GuardedContext) -> OperationResult[Organisation]:
        if not 0 <= discount_percent <= 100:
            return invalid_argument(
                "discount_percent must be between 0 and 100", discount_percent=discount_percent
            )
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        before = DiscountState(
            discount_percent=organisation.discount_percent,
            discount_reason=organisation.discount_reason,
        )
        organisation.discount_percent = discount_percent
        organisation.discount_reason = reason
        organisation.discount_applied_by = ctx.super_admin.id
        organisation.discount_applied_at = ctx.now
        billing_history_repo.add_entry(
            ctx.session,
            organisation_id=organisation.id,
            event_type=HISTORY_DISCOUNT_CHANGE,
            previous_value=str(before.discount_percent),
            new_value=str(discount_percent),
            changed_by=ctx.super_admin.id,
        )
        ctx.audit(
            PendingAudit(
                action_type=ActionType.SET_ORGANISATION_DISCOUNT,
                payload=DiscountChange(
                    before=before,
                    after=DiscountState(discount_percent=discount_percent, discount_reason=reason),
                ),
                target_table="organisations",
                target_id=organisation.id,
                target_organisation_id=organisation.id,
            )
        )
        return success(organisation)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.EDIT_ALL_ORGANISATIONS,
        operation="set_discount",
        execute=_execute,
    )


@dataclass(frozen=True)
class BillingSummary:
    organisation_id: str
    plan_id: str | None
    plan_slug: str | None
    plan_name: str | None
    subscription_status: str
    is_trialing: bool
    trial_ends_at: datetime | None
    trial_days_remaining: int | None
    subscription_ends_at: datetime | None
    discount_percent: int
    is_free_access: bool
    has_billing: bool


async def get_billing_status(
    session: AsyncSession,
    organisation_id: str,
) -> OperationResult[BillingState]:
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
    except SQLAlchemyError as exc:
        logger.error("billing_status_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    if organisation is None:
        return not_found("Organisation", organisation_id)
    status = parse_status(organisation.subscription_status) or SubscriptionStatus.ACTIVE
    return success(
        BillingState(
            status=status,
            plan_id=organisation.current_plan_id,
            trial_ends_at=organisation.trial_ends_at,
        )
    )


async def get_billing_summary(
    session: AsyncSession,
    organisation_id: str,
    *,
    now: datetime | None = None,
) -> OperationResult[BillingSummary]:
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        plan = await plan_catalog.resolve_plan(session, organisation.current_plan_id)
    except SQLAlchemyError as exc:
        logger.error("billing_summary_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    return success(
        BillingSummary(
            organisation_id=organisation.id,
            plan_id=plan.id if plan else None,
            plan_slug=plan.slug if plan else None,
            plan_name=plan.name if plan else None,
            subscription_status=organisation.subscription_status,
            is_trialing=organisation.subscription_status == SubscriptionStatus.TRIALING.value,
            trial_ends_at=organisation.trial_ends_at,
            trial_days_remaining=trial_days_remaining(organisation.trial_ends_at, now),
            subscription_ends_at=organisation.subscription_ends_at,
            discount_percent=organisation.discount_percent,
            is_free_access=organisation.discount_percent == 100,
            has_billing=organisation.processor_customer_ref is not None,
        )
    )


async def fetch_billing_history(
    session: AsyncSession,
    *,
    actor: Actor,
    organisation_id: str,
) -> OperationResult[list[BillingHistoryEntry]]:
    async def _execute(ctx: GuardedContext) -> OperationResult[list[BillingHistoryEntry]]:
        organisation = await organisations_repo.get_organisation(ctx.session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        entries = await billing_history_repo.list_entries(
            ctx.session,
            organisation_id=organisation_id,
            limit=get_settings().billing_history_page_size,
        )
        return success(entries)

    return await run_guarded(
        session,
        actor=actor,
        permission=Permission.VIEW_ALL_ORGANISATIONS,
        operation="fetch_billing_history",
        execute=_execute,
    )
