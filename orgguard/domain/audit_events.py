from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class ActionCategory(str, Enum):
    ORGANISATION = "organisation"
    USER = "user"
    USER_MANAGEMENT = "user_management"
    REPORT = "report"
    TEMPLATE = "template"
    RECORD = "record"
    SYSTEM = "system"
    IMPERSONATION = "impersonation"
    NOTIFICATION = "notification"


class ActionType(str, Enum):
    CREATE_ORGANISATION = "create_organisation"
    UPDATE_ORGANISATION = "update_organisation"
    ARCHIVE_ORGANISATION = "archive_organisation"
    RESTORE_ORGANISATION = "restore_organisation"
    BLOCK_ORGANISATION = "block_organisation"
    UNBLOCK_ORGANISATION = "unblock_organisation"
    DELETE_ORGANISATION = "delete_organisation"
    CHANGE_ORGANISATION_PLAN = "change_organisation_plan"
    SET_ORGANISATION_DISCOUNT = "set_organisation_discount"
    START_IMPERSONATION = "start_impersonation"
    END_IMPERSONATION = "end_impersonation"
    GRANT_SUPER_ADMIN_PERMISSIONS = "grant_super_admin_permissions"
    REVOKE_SUPER_ADMIN_PERMISSIONS = "revoke_super_admin_permissions"
    APPLY_PERMISSION_GROUP = "apply_permission_group"
    SET_SUPER_ADMIN_STATUS = "set_super_admin_status"
    CHANGE_USER_ROLE = "change_user_role"
    REMOVE_USER_FROM_ORG = "remove_user_from_org"


ACTION_CATEGORIES: dict[ActionType, ActionCategory] = {
    ActionType.CREATE_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.UPDATE_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.ARCHIVE_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.RESTORE_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.BLOCK_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.UNBLOCK_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.DELETE_ORGANISATION: ActionCategory.ORGANISATION,
    ActionType.CHANGE_ORGANISATION_PLAN: ActionCategory.ORGANISATION,
    ActionType.SET_ORGANISATION_DISCOUNT: ActionCategory.ORGANISATION,
    ActionType.START_IMPERSONATION: ActionCategory.IMPERSONATION,
    ActionType.END_IMPERSONATION: ActionCategory.IMPERSONATION,
    ActionType.GRANT_SUPER_ADMIN_PERMISSIONS: ActionCategory.USER_MANAGEMENT,
    ActionType.REVOKE_SUPER_ADMIN_PERMISSIONS: ActionCategory.USER_MANAGEMENT,
    ActionType.APPLY_PERMISSION_GROUP: ActionCategory.USER_MANAGEMENT,
    ActionType.SET_SUPER_ADMIN_STATUS: ActionCategory.USER_MANAGEMENT,
    ActionType.CHANGE_USER_ROLE: ActionCategory.USER_MANAGEMENT,
    ActionType.REMOVE_USER_FROM_ORG: ActionCategory.USER_MANAGEMENT,
}


class BillingSnapshot(BaseModel):
    plan_id: str | None
    subscription_status: str
    trial_ends_at: datetime | None = None
    subscription_ends_at: datetime | None = None


class DiscountState(BaseModel):
    discount_percent: int
    discount_reason: str | None = None


class ArchiveState(BaseModel):
    archived: bool
    archived_at: datetime | None = None


class BlockState(BaseModel):
    blocked: bool
    blocked_reason: str | None = None


class OrganisationSnapshot(BaseModel):
    name: str
    plan_id: str | None
    subscription_status: str
    member_count: int


class PermissionSet(BaseModel):
    permissions: list[str]


class ActiveState(BaseModel):
    is_active: bool


class RoleState(BaseModel):
    role: str


class AuditPayload(BaseModel):
    def columns(self) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
        # Split into old_values/new_values; extra top-level fields travel with new_values.
        data = self.model_dump(mode="json", exclude={"kind"})
        before = data.pop("before", None)
        after = data.pop("after", None)
        if after is not None:
            after = {**after, **data}
        elif data:
            after = data
        return before, after


class OrganisationCreated(AuditPayload):
    kind: Literal["create_organisation"] = "create_organisation"
    name: str
    plan_id: str | None
    subscription_status: str
    trial_ends_at: datetime | None = None
    discount_percent: int = 0


class OrganisationUpdate(AuditPayload):
    kind: Literal["update_organisation"] = "update_organisation"
    before: dict[str, str | None]
    after: dict[str, str | None]


class ArchiveChange(AuditPayload):
    kind: Literal["archive_organisation", "restore_organisation"]
    before: ArchiveState
    after: ArchiveState


class BlockChange(AuditPayload):
    kind: Literal["block_organisation", "unblock_organisation"]
    before: BlockState
    after: BlockState
    reason: str | None = None


class OrganisationDeleted(AuditPayload):
    kind: Literal["delete_organisation"] = "delete_organisation"
    before: OrganisationSnapshot


class PlanChange(AuditPayload):
    kind: Literal["change_organisation_plan"] = "change_organisation_plan"
    before: BillingSnapshot
    after: BillingSnapshot


class DiscountChange(AuditPayload):
    kind: Literal["set_organisation_discount"] = "set_organisation_discount"
    before: DiscountState
    after: DiscountState


class ImpersonationStarted(AuditPayload):
    kind: Literal["start_impersonation"] = "start_impersonation"
    session_id: str
    target_user_id: str
    target_organisation_id: str
    expires_at: datetime


class ImpersonationEnded(AuditPayload):
    kind: Literal["end_impersonation"] = "end_impersonation"
    session_id: str
    target_user_id: str
    # ended | superseded
    reason: str = "ended"


class PermissionChange(AuditPayload):
    kind: Literal[
        "grant_super_admin_permissions",
        "revoke_super_admin_permissions",
        "apply_permission_group",
    ]
    before: PermissionSet
    after: PermissionSet
    group: str | None = None


class SuperAdminStatusChange(AuditPayload):
    kind: Literal["set_super_admin_status"] = "set_super_admin_status"
    before: ActiveState
    after: ActiveState


class MemberRoleChange(AuditPayload):
    kind: Literal["change_user_role"] = "change_user_role"
    user_id: str
    before: RoleState
    after: RoleState


class MemberRemoved(AuditPayload):
    kind: Literal["remove_user_from_org"] = "remove_user_from_org"
    user_id: str
    before: RoleState


class OpaquePayload(AuditPayload):
    # Fallback for rows whose stored values no longer match a typed shape.
    kind: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None


AuditEventPayload = Annotated[
    Union[
        OrganisationCreated,
        OrganisationUpdate,
        ArchiveChange,
        BlockChange,
        OrganisationDeleted,
        PlanChange,
        DiscountChange,
        ImpersonationStarted,
        ImpersonationEnded,
        PermissionChange,
        SuperAdminStatusChange,
        MemberRoleChange,
        MemberRemoved,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(AuditEventPayload)


def parse_audit_payload(
    action_type: str,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
) -> AuditPayload:
    # Rebuild the typed payload from stored columns, falling back to an opaque shape.
    candidate = {**(new_values or {}), "kind": action_type, "before": old_values, "after": new_values}
    try:
        return _payload_adapter.validate_python(candidate)
    except ValidationError:
        return OpaquePayload(kind=action_type, before=old_values, after=new_values)
