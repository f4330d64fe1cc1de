from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, including on SQLite.
    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    # Stable catalog key (free/pro/enterprise) used for lookups and fallbacks.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Resource limits; -1 means unlimited.
    max_users: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    max_records: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    max_reports_per_month: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    max_storage_gb: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    feature_ai_templates: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_pdf_export: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_api_access: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_custom_branding: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_priority_support: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_white_label: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_advanced_analytics: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_photos: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_starter_templates: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    feature_all_field_types: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Prices in minor currency units.
    price_monthly_minor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_annual_minor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_per_user_monthly_minor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_per_user_annual_minor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    base_users_included: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    allowed_field_categories: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    processor_price_id_monthly: Mapped[str | None] = mapped_column(String, nullable=True)
    processor_price_id_annual: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)


class Organisation(Base):
    __tablename__ = "organisations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_email: Mapped[str | None] = mapped_column(String, nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    blocked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Billing state; mutated only by the subscription and lifecycle services.
    processor_customer_ref: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    subscription_status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    # Null plan reference means the free tier.
    current_plan_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("subscription_plans.id"), nullable=True
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    subscription_ends_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    discount_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    discount_applied_by: Mapped[str | None] = mapped_column(String, nullable=True)
    discount_applied_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    discount_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now, onupdate=_utc_now)


class OrganisationMember(Base):
    __tablename__ = "organisation_members"
    __table_args__ = (
        UniqueConstraint("organisation_id", "user_id", name="uq_organisation_members_user"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organisation_id: Mapped[str] = mapped_column(String, ForeignKey("organisations.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # owner | admin | user
    role: Mapped[str] = mapped_column(String, default="user", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)


class StorageAddOn(Base):
    __tablename__ = "storage_addons"

    organisation_id: Mapped[str] = mapped_column(
        String, ForeignKey("organisations.id"), primary_key=True
    )
    quantity_blocks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    block_size_gb: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    price_per_block_monthly_minor: Mapped[int] = mapped_column(Integer, default=500, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now, onupdate=_utc_now)


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # Track per-organisation usage; reports use calendar-month periods.
    organisation_id: Mapped[str] = mapped_column(String, primary_key=True)
    metric: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UtcDateTime(), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now, onupdate=_utc_now)


class SuperAdmin(Base):
    __tablename__ = "super_admins"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Principal id supplied by the identity boundary.
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Deactivation revokes all permissions without deleting grants.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now, onupdate=_utc_now)


class SuperAdminPermission(Base):
    __tablename__ = "super_admin_permissions"

    super_admin_id: Mapped[str] = mapped_column(
        String, ForeignKey("super_admins.id"), primary_key=True
    )
    permission: Mapped[str] = mapped_column(String, primary_key=True)
    granted_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)


class ImpersonationSession(Base):
    __tablename__ = "impersonation_sessions"
    __table_args__ = (
        Index("ix_impersonation_sessions_admin_active", "super_admin_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    super_admin_id: Mapped[str] = mapped_column(String, ForeignKey("super_admins.id"))
    target_user_id: Mapped[str] = mapped_column(String)
    target_organisation_id: Mapped[str] = mapped_column(String, index=True)
    started_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)
    # Readers treat sessions past expiry as inactive regardless of the flag.
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)


class AuditLogEntry(Base):
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_created_at", "created_at"),
        Index("ix_audit_log_actor_created_at", "actor_id", "created_at"),
        Index("ix_audit_log_target_org_created_at", "target_organisation_id", "created_at"),
    )

    # Insert-only; no code path updates or deletes audit rows.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    actor_id: Mapped[str] = mapped_column(String)
    action_type: Mapped[str] = mapped_column(String, index=True)
    action_category: Mapped[str] = mapped_column(String, index=True)
    target_table: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_organisation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Set when the actor held an active impersonation session at write time.
    impersonating_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)


class BillingHistoryEntry(Base):
    __tablename__ = "billing_history"
    __table_args__ = (
        Index("ix_billing_history_org_created_at", "organisation_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organisation_id: Mapped[str] = mapped_column(String)
    # plan_change | status_change | trial_extended | discount_change
    event_type: Mapped[str] = mapped_column(String)
    previous_value: Mapped[str | None] = mapped_column(String, nullable=True)
    new_value: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null for processor-driven changes.
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=_utc_now)
