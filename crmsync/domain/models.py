from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # External tenant id from the wrapper API; the natural key for upserts.
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    # active | inactive | suspended; never hard-deleted by sync.
    status: Mapped[str] = mapped_column(String, default="active")
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    subscription_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "org_code", name="uq_organizations_tenant_code"),
        Index("ix_organizations_tenant_parent", "tenant_id", "parent_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    org_code: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")
    hierarchy_level: Mapped[int] = mapped_column(Integer, default=0)
    hierarchy_path: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    # Parent arrives as an org code; parent_id is patched once the parent row exists.
    parent_code: Mapped[str | None] = mapped_column(String, nullable=True)
    parent_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CrmRole(Base):
    __tablename__ = "crm_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "role_key", name="uq_crm_roles_tenant_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    role_key: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    permissions_json: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserProfile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (UniqueConstraint("tenant_id", "user_key", name="uq_user_profiles_tenant_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_key: Mapped[str] = mapped_column(String)
    employee_code: Mapped[str | None] = mapped_column(String, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Denormalized assignment ids, refreshed best-effort after the background phase.
    role_assignment_ids: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    org_assignment_ids: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EmployeeOrgAssignment(Base):
    __tablename__ = "employee_org_assignments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "assignment_id", name="uq_employee_org_assignments_business_key"),
        # At most one active assignment per (tenant, user, org).
        Index(
            "uq_employee_org_assignments_active_pair",
            "tenant_id",
            "user_key",
            "org_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_employee_org_assignments_tenant_user", "tenant_id", "user_key", "is_active"),
        Index("ix_employee_org_assignments_tenant_org", "tenant_id", "org_key", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    assignment_id: Mapped[str] = mapped_column(String)
    # Reference pairs: external key always set, internal id once the referent is known.
    user_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("user_profiles.id"), nullable=True)
    user_key: Mapped[str] = mapped_column(String)
    org_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("organizations.id"), nullable=True)
    org_key: Mapped[str] = mapped_column(String)
    assignment_type: Mapped[str] = mapped_column(String, default="primary")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # 1-10, higher wins when lookups find conflicting assignments.
    priority: Mapped[int] = mapped_column(Integer, default=1)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CrmRoleAssignment(Base):
    __tablename__ = "crm_role_assignments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "assignment_id", name="uq_crm_role_assignments_business_key"),
        Index(
            "uq_crm_role_assignments_active_grant",
            "tenant_id",
            "user_key",
            "role_key",
            "org_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_crm_role_assignments_tenant_user", "tenant_id", "user_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    assignment_id: Mapped[str] = mapped_column(String)
    user_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("user_profiles.id"), nullable=True)
    user_key: Mapped[str] = mapped_column(String)
    role_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("crm_roles.id"), nullable=True)
    role_key: Mapped[str] = mapped_column(String)
    org_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("organizations.id"), nullable=True)
    org_key: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CrmCreditConfig(Base):
    __tablename__ = "crm_credit_configs"
    __table_args__ = (Index("ix_crm_credit_configs_tenant_operation", "tenant_id", "operation_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    config_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    org_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("organizations.id"), nullable=True)
    org_key: Mapped[str | None] = mapped_column(String, nullable=True)
    config_name: Mapped[str | None] = mapped_column(String, nullable=True)
    operation_code: Mapped[str | None] = mapped_column(String, nullable=True)
    credit_cost: Mapped[float] = mapped_column(Float, default=1.0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String, default="tenant")
    sync_source: Mapped[str] = mapped_column(String, default="wrapper")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CrmEntityCredit(Base):
    __tablename__ = "crm_entity_credits"
    __table_args__ = (UniqueConstraint("tenant_id", "entity_key", name="uq_crm_entity_credits_tenant_entity"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_ref_id: Mapped[str | None] = mapped_column(String, ForeignKey("organizations.id"), nullable=True)
    entity_key: Mapped[str] = mapped_column(String)
    allocated_credits: Mapped[float] = mapped_column(Float, default=0.0)
    used_credits: Mapped[float] = mapped_column(Float, default=0.0)
    # Always allocated - used; computed on write.
    available_credits: Mapped[float] = mapped_column(Float, default=0.0)
    target_application: Mapped[str] = mapped_column(String, default="crm")
    allocation_type: Mapped[str] = mapped_column(String, default="manual")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allocated_by_ref_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("user_profiles.id"), nullable=True
    )
    allocated_by_key: Mapped[str | None] = mapped_column(String, nullable=True)
    allocated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TenantSyncStatus(Base):
    __tablename__ = "tenant_sync_status"
    __table_args__ = (
        Index("ix_tenant_sync_status_lock", "lock_owner", "lock_expires_at"),
        Index("ix_tenant_sync_status_status_next", "status", "next_attempt_at"),
    )

    # One control-plane row per tenant.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    # pending | syncing | completed | failed
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    # independent | dependent
    phase: Mapped[str] = mapped_column(String, default="independent", nullable=False)
    # Lease fields; lock_owner is NULL when unlocked.
    lock_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lock_acquired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TenantSyncCollection(Base):
    __tablename__ = "tenant_sync_collections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "collection", name="uq_tenant_sync_collections_name"),
    )

    # Separate rows so concurrent background stores update disjoint records.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenant_sync_status.tenant_id", ondelete="CASCADE"), index=True
    )
    collection: Mapped[str] = mapped_column(String)
    # pending | success | failed
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
