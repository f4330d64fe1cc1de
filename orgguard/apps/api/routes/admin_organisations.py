from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.apps.api.deps import get_actor, get_db
from orgguard.apps.api.errors import unwrap
from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope
from orgguard.apps.api.routes.billing import UsageReportResponse, usage_to_response
from orgguard.domain.models import BillingHistoryEntry, Organisation, OrganisationMember
from orgguard.services import members as members_service
from orgguard.services import organisations as organisations_service
from orgguard.services import subscriptions as subscriptions_service
from orgguard.services import usage as usage_service
from orgguard.services.authority import Actor


router = APIRouter(
    prefix="/admin/organisations",
    tags=["admin-organisations"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class OrganisationResponse(BaseModel):
    id: str
    name: str
    slug: str | None
    contact_email: str | None
    contact_phone: str | None
    billing_email: str | None
    archived: bool
    archived_at: str | None
    blocked: bool
    blocked_at: str | None
    blocked_reason: str | None
    subscription_status: str
    current_plan_id: str | None
    trial_ends_at: str | None
    subscription_ends_at: str | None
    discount_percent: int
    discount_reason: str | None
    has_billing: bool
    created_at: str


class MemberRequest(BaseModel):
    user_id: str
    role: str = "user"


class OrganisationCreateRequest(BaseModel):
    name: str
    slug: str | None = None
    plan_id: str | None = None
    contact_email: str | None = None
    billing_email: str | None = None
    discount_percent: int = 0
    members: list[MemberRequest] = Field(default_factory=list)


class OrganisationUpdateRequest(BaseModel):
    name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    billing_email: str | None = None


class BlockRequest(BaseModel):
    reason: str


class PlanOverrideRequest(BaseModel):
    plan_id: str
    status: str | None = None
    trial_ends_at: datetime | None = None
    subscription_ends_at: datetime | None = None


class DiscountRequest(BaseModel):
    discount_percent: int
    reason: str | None = None


class DeletedResponse(BaseModel):
    id: str
    deleted: bool = True


class BillingHistoryResponse(BaseModel):
    id: str
    event_type: str
    previous_value: str | None
    new_value: str | None
    changed_by: str | None
    created_at: str


class MemberResponse(BaseModel):
    id: str
    organisation_id: str
    user_id: str
    role: str
    created_at: str


class MemberRoleRequest(BaseModel):
    role: str


class MemberRemovedResponse(BaseModel):
    user_id: str
    removed: bool = True


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def organisation_to_response(organisation: Organisation) -> OrganisationResponse:
    return OrganisationResponse(
        id=organisation.id,
        name=organisation.name,
        slug=organisation.slug,
        contact_email=organisation.contact_email,
        contact_phone=organisation.contact_phone,
        billing_email=organisation.billing_email,
        archived=organisation.archived,
        archived_at=_iso(organisation.archived_at),
        blocked=organisation.blocked,
        blocked_at=_iso(organisation.blocked_at),
        blocked_reason=organisation.blocked_reason,
        subscription_status=organisation.subscription_status,
        current_plan_id=organisation.current_plan_id,
        trial_ends_at=_iso(organisation.trial_ends_at),
        subscription_ends_at=_iso(organisation.subscription_ends_at),
        discount_percent=organisation.discount_percent,
        discount_reason=organisation.discount_reason,
        has_billing=organisation.processor_customer_ref is not None,
        created_at=organisation.created_at.isoformat(),
    )


def _history_to_response(entry: BillingHistoryEntry) -> BillingHistoryResponse:
    return BillingHistoryResponse(
        id=entry.id,
        event_type=entry.event_type,
        previous_value=entry.previous_value,
        new_value=entry.new_value,
        changed_by=entry.changed_by,
        created_at=entry.created_at.isoformat(),
    )


def _member_to_response(member: OrganisationMember) -> MemberResponse:
    return MemberResponse(
        id=member.id,
        organisation_id=member.organisation_id,
        user_id=member.user_id,
        role=member.role,
        created_at=member.created_at.isoformat(),
    )


@router.post("", response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse, status_code=201)
async def create_organisation(
    payload: OrganisationCreateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.create_organisation(
            db,
            actor=actor,
            name=payload.name,
            slug=payload.slug,
            plan_id=payload.plan_id,
            contact_email=payload.contact_email,
            billing_email=payload.billing_email,
            discount_percent=payload.discount_percent,
            members=[
                organisations_service.NewMember(user_id=member.user_id, role=member.role)
                for member in payload.members
            ],
        )
    )
    return organisation_to_response(organisation)


@router.get("", response_model=SuccessEnvelope[list[OrganisationResponse]] | list[OrganisationResponse])
async def list_organisations(
    search: str | None = None,
    include_archived: bool = True,
    blocked: bool | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[OrganisationResponse]:
    organisations = unwrap(
        await organisations_service.list_organisations(
            db,
            actor=actor,
            search=search,
            include_archived=include_archived,
            blocked=blocked,
            offset=offset,
            limit=limit,
        )
    )
    return [organisation_to_response(organisation) for organisation in organisations]


@router.get("/{organisation_id}", response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse)
async def get_organisation(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.get_organisation(db, actor=actor, organisation_id=organisation_id)
    )
    return organisation_to_response(organisation)


@router.patch("/{organisation_id}", response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse)
async def update_organisation(
    organisation_id: str,
    payload: OrganisationUpdateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    # Only fields present in the body are applied.
    organisation = unwrap(
        await organisations_service.update_organisation(
            db,
            actor=actor,
            organisation_id=organisation_id,
            fields=payload.model_dump(exclude_unset=True),
        )
    )
    return organisation_to_response(organisation)


@router.post(
    "/{organisation_id}/archive",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def archive_organisation(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.archive_organisation(db, actor=actor, organisation_id=organisation_id)
    )
    return organisation_to_response(organisation)


@router.post(
    "/{organisation_id}/restore",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def restore_organisation(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.restore_organisation(db, actor=actor, organisation_id=organisation_id)
    )
    return organisation_to_response(organisation)


@router.post(
    "/{organisation_id}/block",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def block_organisation(
    organisation_id: str,
    payload: BlockRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.block_organisation(
            db,
            actor=actor,
            organisation_id=organisation_id,
            reason=payload.reason,
        )
    )
    return organisation_to_response(organisation)


@router.post(
    "/{organisation_id}/unblock",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def unblock_organisation(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await organisations_service.unblock_organisation(db, actor=actor, organisation_id=organisation_id)
    )
    return organisation_to_response(organisation)


@router.delete("/{organisation_id}", response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse)
async def delete_organisation(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> DeletedResponse:
    deleted_id = unwrap(
        await organisations_service.delete_organisation(db, actor=actor, organisation_id=organisation_id)
    )
    return DeletedResponse(id=deleted_id)


@router.put(
    "/{organisation_id}/plan",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def override_plan(
    organisation_id: str,
    payload: PlanOverrideRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await subscriptions_service.set_organisation_plan(
            db,
            actor=actor,
            organisation_id=organisation_id,
            plan_id=payload.plan_id,
            status=payload.status,
            trial_ends_at=payload.trial_ends_at,
            subscription_ends_at=payload.subscription_ends_at,
        )
    )
    return organisation_to_response(organisation)


@router.put(
    "/{organisation_id}/discount",
    response_model=SuccessEnvelope[OrganisationResponse] | OrganisationResponse,
)
async def set_discount(
    organisation_id: str,
    payload: DiscountRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> OrganisationResponse:
    organisation = unwrap(
        await subscriptions_service.set_discount(
            db,
            actor=actor,
            organisation_id=organisation_id,
            discount_percent=payload.discount_percent,
            reason=payload.reason,
        )
    )
    return organisation_to_response(organisation)


@router.get(
    "/{organisation_id}/usage",
    response_model=SuccessEnvelope[UsageReportResponse] | UsageReportResponse,
)
async def organisation_usage(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> UsageReportResponse:
    report = unwrap(
        await usage_service.fetch_organisation_usage(db, actor=actor, organisation_id=organisation_id)
    )
    return usage_to_response(report)


@router.get(
    "/{organisation_id}/billing-history",
    response_model=SuccessEnvelope[list[BillingHistoryResponse]] | list[BillingHistoryResponse],
)
async def organisation_billing_history(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[BillingHistoryResponse]:
    entries = unwrap(
        await subscriptions_service.fetch_billing_history(db, actor=actor, organisation_id=organisation_id)
    )
    return [_history_to_response(entry) for entry in entries]


@router.get(
    "/{organisation_id}/members",
    response_model=SuccessEnvelope[list[MemberResponse]] | list[MemberResponse],
)
async def list_members(
    organisation_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[MemberResponse]:
    members = unwrap(
        await members_service.list_members(db, actor=actor, organisation_id=organisation_id)
    )
    return [_member_to_response(member) for member in members]


@router.patch(
    "/{organisation_id}/members/{user_id}",
    response_model=SuccessEnvelope[MemberResponse] | MemberResponse,
)
async def change_member_role(
    organisation_id: str,
    user_id: str,
    payload: MemberRoleRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> MemberResponse:
    member = unwrap(
        await members_service.change_member_role(
            db,
            actor=actor,
            organisation_id=organisation_id,
            user_id=user_id,
            role=payload.role,
        )
    )
    return _member_to_response(member)


@router.delete(
    "/{organisation_id}/members/{user_id}",
    response_model=SuccessEnvelope[MemberRemovedResponse] | MemberRemovedResponse,
)
async def remove_member(
    organisation_id: str,
    user_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> MemberRemovedResponse:
    removed = unwrap(
        await members_service.remove_member(
            db,
            actor=actor,
            organisation_id=organisation_id,
            user_id=user_id,
        )
    )
    return MemberRemovedResponse(user_id=removed)
