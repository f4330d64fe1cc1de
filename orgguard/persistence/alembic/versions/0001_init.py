"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _feature(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false())


def upgrade() -> None:
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        # -1 means unlimited.
        sa.Column("max_users", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("max_records", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("max_reports_per_month", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("max_storage_gb", sa.Integer(), nullable=False, server_default="-1"),
        _feature("feature_ai_templates"),
        _feature("feature_pdf_export"),
        _feature("feature_api_access"),
        _feature("feature_custom_branding"),
        _feature("feature_priority_support"),
        _feature("feature_white_label"),
        _feature("feature_advanced_analytics"),
        _feature("feature_photos"),
        _feature("feature_starter_templates"),
        _feature("feature_all_field_types"),
        sa.Column("price_monthly_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_annual_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_per_user_monthly_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_per_user_annual_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("base_users_included", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("allowed_field_categories", postgresql.JSONB(), nullable=True),
        sa.Column("processor_price_id_monthly", sa.String(), nullable=True),
        sa.Column("processor_price_id_annual", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_plans_slug", "subscription_plans", ["slug"], unique=True)

    op.create_table(
        "organisations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("contact_phone", sa.String(), nullable=True),
        sa.Column("billing_email", sa.String(), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("blocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("processor_customer_ref", sa.String(), nullable=True, unique=True),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("current_plan_id", sa.String(), sa.ForeignKey("subscription_plans.id"), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_applied_by", sa.String(), nullable=True),
        sa.Column("discount_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discount_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_organisations_discount_percent"),
    )
    op.create_index("ix_organisations_slug", "organisations", ["slug"])

    op.create_table(
        "organisation_members",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organisation_id", sa.String(), sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organisation_id", "user_id", name="uq_organisation_members_user"),
    )
    op.create_index("ix_organisation_members_organisation_id", "organisation_members", ["organisation_id"])
    op.create_index("ix_organisation_members_user_id", "organisation_members", ["user_id"])

    op.create_table(
        "storage_addons",
        sa.Column("organisation_id", sa.String(), sa.ForeignKey("organisations.id"), primary_key=True),
        sa.Column("quantity_blocks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("block_size_gb", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("price_per_block_monthly_minor", sa.Integer(), nullable=False, server_default="500"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "usage_counters",
        sa.Column("organisation_id", sa.String(), primary_key=True),
        sa.Column("metric", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "super_admins",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_super_admins_user_id", "super_admins", ["user_id"], unique=True)

    op.create_table(
        "super_admin_permissions",
        sa.Column("super_admin_id", sa.String(), sa.ForeignKey("super_admins.id"), primary_key=True),
        sa.Column("permission", sa.String(), primary_key=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("granted_by", sa.String(), nullable=True),
    )

    op.create_table(
        "impersonation_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("super_admin_id", sa.String(), sa.ForeignKey("super_admins.id"), nullable=False),
        sa.Column("target_user_id", sa.String(), nullable=False),
        sa.Column("target_organisation_id", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_impersonation_sessions_admin_active",
        "impersonation_sessions",
        ["super_admin_id", "is_active"],
    )
    op.create_index(
        "ix_impersonation_sessions_target_organisation_id",
        "impersonation_sessions",
        ["target_organisation_id"],
    )

    # Audit rows outlive the organisations they describe, so no foreign keys.
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_category", sa.String(), nullable=False),
        sa.Column("target_table", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("target_organisation_id", sa.String(), nullable=True),
        sa.Column("old_values", postgresql.JSONB(), nullable=True),
        sa.Column("new_values", postgresql.JSONB(), nullable=True),
        sa.Column("impersonating_user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])
    op.create_index("ix_audit_log_actor_created_at", "audit_log", ["actor_id", "created_at"])
    op.create_index(
        "ix_audit_log_target_org_created_at",
        "audit_log",
        ["target_organisation_id", "created_at"],
    )
    op.create_index("ix_audit_log_action_type", "audit_log", ["action_type"])
    op.create_index("ix_audit_log_action_category", "audit_log", ["action_category"])

    op.create_table(
        "billing_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organisation_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("previous_value", sa.String(), nullable=True),
        sa.Column("new_value", sa.String(), nullable=True),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_billing_history_org_created_at",
        "billing_history",
        ["organisation_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_history_org_created_at", table_name="billing_history")
    op.drop_table("billing_history")
    op.drop_index("ix_audit_log_action_category", table_name="audit_log")
    op.drop_index("ix_audit_log_action_type", table_name="audit_log")
    op.drop_index("ix_audit_log_target_org_created_at", table_name="audit_log")
    op.drop_index("ix_audit_log_actor_created_at", table_name="audit_log")
    op.drop_index("ix_audit_log_created_at", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_impersonation_sessions_target_organisation_id", table_name="impersonation_sessions")
    op.drop_index("ix_impersonation_sessions_admin_active", table_name="impersonation_sessions")
    op.drop_table("impersonation_sessions")
    op.drop_table("super_admin_permissions")
    op.drop_index("ix_super_admins_user_id", table_name="super_admins")
    op.drop_table("super_admins")
    op.drop_table("usage_counters")
    op.drop_table("storage_addons")
    op.drop_index("ix_organisation_members_user_id", table_name="organisation_members")
    op.drop_index("ix_organisation_members_organisation_id", table_name="organisation_members")
    op.drop_table("organisation_members")
    op.drop_index("ix_organisations_slug", table_name="organisations")
    op.drop_table("organisations")
    op.drop_index("ix_subscription_plans_slug", table_name="subscription_plans")
    op.drop_table("subscription_plans")
