"""tenant sync

Revision ID: 0001_tenant_sync
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_tenant_sync"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("settings_json", postgresql.JSONB(), nullable=True),
        sa.Column("subscription_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_tenant_id", "tenants", ["tenant_id"], unique=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("org_code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("hierarchy_level", sa.Integer(), nullable=False),
        sa.Column("hierarchy_path", postgresql.JSONB(), nullable=True),
        # Parent arrives as an org code and is resolved to parent_id in a second pass.
        sa.Column("parent_code", sa.String(), nullable=True),
        sa.Column(
            "parent_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "org_code", name="uq_organizations_tenant_code"),
    )
    op.create_index("ix_organizations_tenant_id", "organizations", ["tenant_id"])
    op.create_index("ix_organizations_tenant_parent", "organizations", ["tenant_id", "parent_id"])

    op.create_table(
        "crm_roles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("role_key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("permissions_json", postgresql.JSONB(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "role_key", name="uq_crm_roles_tenant_key"),
    )
    op.create_index("ix_crm_roles_tenant_id", "crm_roles", ["tenant_id"])

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_key", sa.String(), nullable=False),
        sa.Column("employee_code", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("role_assignment_ids", postgresql.JSONB(), nullable=True),
        sa.Column("org_assignment_ids", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "user_key", name="uq_user_profiles_tenant_key"),
    )
    op.create_index("ix_user_profiles_tenant_id", "user_profiles", ["tenant_id"])

    op.create_table(
        "employee_org_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("assignment_id", sa.String(), nullable=False),
        # Reference pairs: the key is always set, the internal id once the referent exists.
        sa.Column("user_ref_id", sa.String(), sa.ForeignKey("user_profiles.id"), nullable=True),
        sa.Column("user_key", sa.String(), nullable=False),
        sa.Column("org_ref_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("org_key", sa.String(), nullable=False),
        sa.Column("assignment_type", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by", sa.String(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_by", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "assignment_id", name="uq_employee_org_assignments_business_key"
        ),
    )
    op.create_index("ix_employee_org_assignments_tenant_id", "employee_org_assignments", ["tenant_id"])
    op.create_index(
        "uq_employee_org_assignments_active_pair",
        "employee_org_assignments",
        ["tenant_id", "user_key", "org_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index(
        "ix_employee_org_assignments_tenant_user",
        "employee_org_assignments",
        ["tenant_id", "user_key", "is_active"],
    )
    op.create_index(
        "ix_employee_org_assignments_tenant_org",
        "employee_org_assignments",
        ["tenant_id", "org_key", "is_active"],
    )

    op.create_table(
        "crm_role_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("assignment_id", sa.String(), nullable=False),
        sa.Column("user_ref_id", sa.String(), sa.ForeignKey("user_profiles.id"), nullable=True),
        sa.Column("user_key", sa.String(), nullable=False),
        sa.Column("role_ref_id", sa.String(), sa.ForeignKey("crm_roles.id"), nullable=True),
        sa.Column("role_key", sa.String(), nullable=False),
        sa.Column("org_ref_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("org_key", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "assignment_id", name="uq_crm_role_assignments_business_key"),
    )
    op.create_index("ix_crm_role_assignments_tenant_id", "crm_role_assignments", ["tenant_id"])
    op.create_index(
        "uq_crm_role_assignments_active_grant",
        "crm_role_assignments",
        ["tenant_id", "user_key", "role_key", "org_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index("ix_crm_role_assignments_tenant_user", "crm_role_assignments", ["tenant_id", "user_key"])

    op.create_table(
        "crm_credit_configs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("config_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("org_ref_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("org_key", sa.String(), nullable=True),
        sa.Column("config_name", sa.String(), nullable=True),
        sa.Column("operation_code", sa.String(), nullable=True),
        sa.Column("credit_cost", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("sync_source", sa.String(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_crm_credit_configs_config_id", "crm_credit_configs", ["config_id"], unique=True)
    op.create_index("ix_crm_credit_configs_tenant_id", "crm_credit_configs", ["tenant_id"])
    op.create_index(
        "ix_crm_credit_configs_tenant_operation",
        "crm_credit_configs",
        ["tenant_id", "operation_code"],
    )

    op.create_table(
        "crm_entity_credits",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_ref_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("allocated_credits", sa.Float(), nullable=False),
        sa.Column("used_credits", sa.Float(), nullable=False),
        # Always allocated - used; computed on write.
        sa.Column("available_credits", sa.Float(), nullable=False),
        sa.Column("target_application", sa.String(), nullable=False),
        sa.Column("allocation_type", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allocated_by_ref_id", sa.String(), sa.ForeignKey("user_profiles.id"), nullable=True),
        sa.Column("allocated_by_key", sa.String(), nullable=True),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "entity_key", name="uq_crm_entity_credits_tenant_entity"),
    )
    op.create_index("ix_crm_entity_credits_tenant_id", "crm_entity_credits", ["tenant_id"])

    op.create_table(
        "tenant_sync_status",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("phase", sa.String(), nullable=False, server_default="independent"),
        # Lease fields; lock_owner is NULL when unlocked.
        sa.Column("lock_owner", sa.String(), nullable=True),
        sa.Column("lock_acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenant_sync_status_lock", "tenant_sync_status", ["lock_owner", "lock_expires_at"])
    op.create_index("ix_tenant_sync_status_status_next", "tenant_sync_status", ["status", "next_attempt_at"])

    op.create_table(
        "tenant_sync_collections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenant_sync_status.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("collection", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "collection", name="uq_tenant_sync_collections_name"),
    )
    op.create_index("ix_tenant_sync_collections_tenant_id", "tenant_sync_collections", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_tenant_sync_collections_tenant_id", table_name="tenant_sync_collections")
    op.drop_table("tenant_sync_collections")
    op.drop_index("ix_tenant_sync_status_status_next", table_name="tenant_sync_status")
    op.drop_index("ix_tenant_sync_status_lock", table_name="tenant_sync_status")
    op.drop_table("tenant_sync_status")
    op.drop_index("ix_crm_entity_credits_tenant_id", table_name="crm_entity_credits")
    op.drop_table("crm_entity_credits")
    op.drop_index("ix_crm_credit_configs_tenant_operation", table_name="crm_credit_configs")
    op.drop_index("ix_crm_credit_configs_tenant_id", table_name="crm_credit_configs")
    op.drop_index("ix_crm_credit_configs_config_id", table_name="crm_credit_configs")
    op.drop_table("crm_credit_configs")
    op.drop_index("ix_crm_role_assignments_tenant_user", table_name="crm_role_assignments")
    op.drop_index("uq_crm_role_assignments_active_grant", table_name="crm_role_assignments")
    op.drop_index("ix_crm_role_assignments_tenant_id", table_name="crm_role_assignments")
    op.drop_table("crm_role_assignments")
    op.drop_index("ix_employee_org_assignments_tenant_org", table_name="employee_org_assignments")
    op.drop_index("ix_employee_org_assignments_tenant_user", table_name="employee_org_assignments")
    op.drop_index("uq_employee_org_assignments_active_pair", table_name="employee_org_assignments")
    op.drop_index("ix_employee_org_assignments_tenant_id", table_name="employee_org_assignments")
    op.drop_table("employee_org_assignments")
    op.drop_index("ix_user_profiles_tenant_id", table_name="user_profiles")
    op.drop_table("user_profiles")
    op.drop_index("ix_crm_roles_tenant_id", table_name="crm_roles")
    op.drop_table("crm_roles")
    op.drop_index("ix_organizations_tenant_parent", table_name="organizations")
    op.drop_index("ix_organizations_tenant_id", table_name="organizations")
    op.drop_table("organizations")
    op.drop_index("ix_tenants_tenant_id", table_name="tenants")
    op.drop_table("tenants")
