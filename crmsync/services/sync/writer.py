from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence, TypeVar
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.core.errors import SyncError, SyncErrorType
from crmsync.domain.models import (
    CrmCreditConfig,
    CrmEntityCredit,
    CrmRole,
    CrmRoleAssignment,
    EmployeeOrgAssignment,
    Organization,
    Tenant,
    UserProfile,
)
from crmsync.domain.references import Reference, from_columns, upgrade
from crmsync.domain.wrapper import (
    WrapperCreditConfig,
    WrapperEmployeeAssignment,
    WrapperEntityCredit,
    WrapperOrganization,
    WrapperRecord,
    WrapperRole,
    WrapperRoleAssignment,
    WrapperTenant,
    WrapperUser,
)
from crmsync.persistence.db import SessionFactory
from crmsync.persistence.upsert import upsert_statement
from crmsync.services.sync.references import ReferenceMaps


logger = logging.getLogger(__name__)

SYSTEM_SYNC_ACTOR = "system_sync"
TENANT_STATUSES = {"active", "inactive", "suspended"}

RecordT = TypeVar("RecordT", bound=WrapperRecord)

# (model, ((column prefix, ReferenceMaps attribute), ...)) for every stored reference pair.
REFERENCE_COLUMNS: tuple[tuple[type, tuple[tuple[str, str], ...]], ...] = (
    (EmployeeOrgAssignment, (("user", "users"), ("org", "orgs"))),
    (CrmRoleAssignment, (("user", "users"), ("role", "roles"), ("org", "orgs"))),
    (CrmCreditConfig, (("org", "orgs"),)),
    (CrmEntityCredit, (("entity", "orgs"), ("allocated_by", "users"))),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ref_columns(prefix: str, reference: Reference | None) -> dict[str, Any]:
    # Persist both halves of a reference; Pending leaves the internal id NULL.
    if reference is None:
        return {f"{prefix}_ref_id": None, f"{prefix}_key": None}
    return {f"{prefix}_ref_id": reference.internal_id, f"{prefix}_key": reference.external_key}


def clamp_priority(value: int | None) -> int:
    # Unset priority is 1; anything else is clamped to 1..10.
    if value is None:
        return 1
    return max(1, min(10, int(value)))


class CollectionWriter:
    """Idempotent upsert-by-natural-key writers for every synced collection.

    Essential writers run inside the caller's transaction. Background writers take a
    session factory and own their transactions so one collection's failure cannot
    roll back another's.
    """

    def __init__(self, batch_size: int = 50) -> None:
        self._batch_size = max(1, batch_size)

    def _parse(
        self,
        model: type[RecordT],
        records: Iterable[dict[str, Any]],
        *,
        tenant_id: str,
        collection: str,
    ) -> list[RecordT]:
        # Drop records that fail schema validation instead of failing the collection.
        parsed: list[RecordT] = []
        for raw in records:
            try:
                parsed.append(model.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "sync_record_invalid tenant_id=%s collection=%s errors=%s",
                    tenant_id,
                    collection,
                    exc.error_count(),
                )
        return parsed

    async def _upsert_rows(
        self,
        session: AsyncSession,
        model: type,
        rows: Sequence[dict[str, Any]],
        *,
        conflict_columns: Sequence[str],
    ) -> None:
        if not rows:
            return
        # The surrogate id is only written on insert.
        update_columns = [column for column in rows[0] if column not in {"id", *conflict_columns}]
        for start in range(0, len(rows), self._batch_size):
            batch = rows[start : start + self._batch_size]
            await session.execute(
                upsert_statement(
                    session,
                    model,
                    batch,
                    conflict_columns=conflict_columns,
                    update_columns=update_columns,
                )
            )

    async def _retire_superseded(
        self,
        session: AsyncSession,
        model: type,
        tenant_id: str,
        rows: Sequence[dict[str, Any]],
        *,
        key_columns: Sequence[str],
        values: dict[str, Any],
    ) -> int:
        # An active row under a new assignment id replaces any active row for the same key.
        active = [row for row in rows if row["is_active"]]
        retired = 0
        for start in range(0, len(active), self._batch_size):
            batch = active[start : start + self._batch_size]
            matches = [
                and_(
                    *(getattr(model, column) == row[column] for column in key_columns),
                    model.assignment_id != row["assignment_id"],
                )
                for row in batch
            ]
            result = await session.execute(
                update(model)
                .where(model.tenant_id == tenant_id, model.is_active.is_(True), or_(*matches))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            retired += int(result.rowcount or 0)
        return retired

    async def _store_with_fallback(
        self,
        session_factory: SessionFactory,
        model: type,
        rows: list[dict[str, Any]],
        *,
        conflict_columns: Sequence[str],
        tenant_id: str,
        collection: str,
        key: str,
    ) -> int:
        # One bulk transaction first; per-record writes only if it fails.
        if not rows:
            return 0
        try:
            async with session_factory() as session:
                async with session.begin():
                    await self._upsert_rows(session, model, rows, conflict_columns=conflict_columns)
            return len(rows)
        except SQLAlchemyError as exc:
            logger.warning(
                "sync_bulk_upsert_failed tenant_id=%s collection=%s records=%s",
                tenant_id,
                collection,
                len(rows),
                exc_info=exc,
            )

        # Per-record fallback; each record commits or fails on its own.
        stored = 0
        for row in rows:
            try:
                async with session_factory() as session:
                    async with session.begin():
                        await self._upsert_rows(session, model, [row], conflict_columns=conflict_columns)
                stored += 1
            except SQLAlchemyError as exc:
                logger.warning(
                    "sync_record_upsert_failed tenant_id=%s collection=%s key=%s",
                    tenant_id,
                    collection,
                    row.get(key),
                    exc_info=exc,
                )
        if stored == 0:
            raise SyncError(
                f"every {collection} record failed to store",
                error_type=SyncErrorType.DATABASE_ERROR,
            )
        return stored

    # Essential collections.

    async def store_tenant(self, session: AsyncSession, tenant_id: str, data: dict[str, Any]) -> int:
        # Name and status fall back through the wrapper's legacy fields.
        tenant = WrapperTenant.model_validate(data)
        name = tenant.tenant_name or tenant.company_name or f"Tenant {tenant_id}"
        if tenant.status in TENANT_STATUSES:
            status = tenant.status
        else:
            status = "inactive" if tenant.is_active is False else "active"
        row = {
            "id": str(uuid4()),
            "tenant_id": tenant_id,
            "name": name,
            "status": status,
            "settings_json": tenant.settings,
            "subscription_json": tenant.subscription,
            "updated_at": _utcnow(),
        }
        await self._upsert_rows(session, Tenant, [row], conflict_columns=("tenant_id",))
        return 1

    async def store_organizations(
        self, session: AsyncSession, tenant_id: str, records: Sequence[dict[str, Any]]
    ) -> int:
        orgs = self._parse(WrapperOrganization, records, tenant_id=tenant_id, collection="organizations")
        by_code = {org.org_code: org for org in orgs}
        now = _utcnow()
        rows = []
        for org in by_code.values():
            hierarchy = org.hierarchy
            rows.append(
                {
                    "id": str(uuid4()),
                    "tenant_id": tenant_id,
                    "org_code": org.org_code,
                    "name": org.org_name,
                    "status": org.status or "active",
                    "hierarchy_level": hierarchy.level if hierarchy else 0,
                    "hierarchy_path": hierarchy.path if hierarchy else [],
                    "parent_code": org.parent_id or None,
                    "updated_at": now,
                }
            )
        # Pass 1: upsert with the parent kept as an org code.
        await self._upsert_rows(session, Organization, rows, conflict_columns=("tenant_id", "org_code"))

        # Pass 2: patch internal parent ids now that every org in the batch exists.
        result = await session.execute(
            select(Organization.org_code, Organization.id).where(Organization.tenant_id == tenant_id)
        )
        org_ids = {code: internal_id for code, internal_id in result.all()}
        patches = []
        for org in by_code.values():
            parent_id = None
            if org.parent_id:
                parent_id = org_ids.get(org.parent_id)
                if parent_id is None:
                    logger.warning(
                        "sync_org_parent_unresolved tenant_id=%s org_code=%s parent_code=%s",
                        tenant_id,
                        org.org_code,
                        org.parent_id,
                    )
            patches.append({"id": org_ids[org.org_code], "parent_id": parent_id})
        if patches:
            await session.execute(update(Organization), patches)
        return len(rows)

    async def store_roles(self, session: AsyncSession, tenant_id: str, records: Sequence[dict[str, Any]]) -> int:
        # Last record wins when upstream repeats a role id.
        roles = self._parse(WrapperRole, records, tenant_id=tenant_id, collection="roles")
        now = _utcnow()
        rows = [
            {
                "id": str(uuid4()),
                "tenant_id": tenant_id,
                "role_key": role.role_id,
                "name": role.role_name,
                "permissions_json": role.permissions,
                "priority": role.priority if role.priority is not None else 0,
                "is_active": role.is_active is not False,
                "updated_at": now,
            }
            for role in {role.role_id: role for role in roles}.values()
        ]
        await self._upsert_rows(session, CrmRole, rows, conflict_columns=("tenant_id", "role_key"))
        return len(rows)

    async def store_users(self, session: AsyncSession, tenant_id: str, records: Sequence[dict[str, Any]]) -> int:
        # Profile fields prefer personalInfo over the flat legacy fields.
        users = self._parse(WrapperUser, records, tenant_id=tenant_id, collection="users")
        now = _utcnow()
        rows = []
        for user in {user.user_id: user for user in users}.values():
            info = user.personal_info
            status = user.status
            rows.append(
                {
                    "id": str(uuid4()),
                    "tenant_id": tenant_id,
                    "user_key": user.user_id,
                    "employee_code": user.employee_code or user.user_id,
                    "first_name": (info.first_name if info else None) or user.first_name or "Unknown",
                    "last_name": (info.last_name if info else None) or user.last_name or "",
                    "email": (info.email if info else None) or user.email or f"{user.user_id}@unknown.com",
                    "is_active": not (status is not None and status.is_active is False),
                    "last_activity_at": status.last_activity_at if status else None,
                    "last_synced_at": now,
                    "updated_at": now,
                }
            )
        await self._upsert_rows(session, UserProfile, rows, conflict_columns=("tenant_id", "user_key"))
        return len(rows)

    # Background collections.

    async def store_employee_assignments(
        self,
        session_factory: SessionFactory,
        tenant_id: str,
        records: Sequence[dict[str, Any]],
        refs: ReferenceMaps,
    ) -> int:
        assignments = self._parse(
            WrapperEmployeeAssignment, records, tenant_id=tenant_id, collection="employee_assignments"
        )
        now = _utcnow()
        rows: list[dict[str, Any]] = []
        active_pairs: set[tuple[str, str]] = set()
        for assignment in {item.assignment_id: item for item in assignments}.values():
            is_active = assignment.is_active is not False
            pair = (assignment.user_id, assignment.entity_id)
            if is_active and pair in active_pairs:
                # Only one active assignment per (user, org) can be stored.
                logger.warning(
                    "sync_employee_assignment_duplicate tenant_id=%s assignment_id=%s",
                    tenant_id,
                    assignment.assignment_id,
                )
                continue
            if is_active:
                active_pairs.add(pair)
            user_ref = refs.resolve_user(assignment.user_id)
            org_ref = refs.resolve_org(assignment.entity_id)
            if user_ref.internal_id is None or org_ref.internal_id is None:
                logger.warning(
                    "sync_reference_pending tenant_id=%s collection=employee_assignments "
                    "assignment_id=%s user_id=%s org_code=%s",
                    tenant_id,
                    assignment.assignment_id,
                    assignment.user_id,
                    assignment.entity_id,
                )
            rows.append(
                {
                    "id": str(uuid4()),
                    "tenant_id": tenant_id,
                    "assignment_id": assignment.assignment_id,
                    **_ref_columns("user", user_ref),
                    **_ref_columns("org", org_ref),
                    "assignment_type": assignment.assignment_type or "primary",
                    "is_active": is_active,
                    "assigned_at": assignment.assigned_at or now,
                    "assigned_by": assignment.assigned_by,
                    "expires_at": assignment.expires_at,
                    "priority": clamp_priority(assignment.priority),
                    "metadata_json": assignment.metadata,
                    "updated_at": now,
                }
            )
        if not rows:
            return 0

        ids = [row["assignment_id"] for row in rows]
        active_ids = [row["assignment_id"] for row in rows if row["is_active"]]
        inactive_ids = [row["assignment_id"] for row in rows if not row["is_active"]]
        async with session_factory() as session:
            async with session.begin():
                # Assignments no longer reported upstream are deactivated, never deleted.
                deactivated = await session.execute(
                    update(EmployeeOrgAssignment)
                    .where(
                        EmployeeOrgAssignment.tenant_id == tenant_id,
                        EmployeeOrgAssignment.is_active.is_(True),
                        EmployeeOrgAssignment.assignment_id.not_in(ids),
                    )
                    .values(
                        is_active=False,
                        deactivated_at=now,
                        deactivated_by=SYSTEM_SYNC_ACTOR,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if deactivated.rowcount:
                    logger.info(
                        "sync_employee_assignments_deactivated tenant_id=%s count=%s",
                        tenant_id,
                        deactivated.rowcount,
                    )
                superseded = await self._retire_superseded(
                    session,
                    EmployeeOrgAssignment,
                    tenant_id,
                    rows,
                    key_columns=("user_key", "org_key"),
                    values={
                        "is_active": False,
                        "deactivated_at": now,
                        "deactivated_by": SYSTEM_SYNC_ACTOR,
                        "updated_at": now,
                    },
                )
                if superseded:
                    logger.info(
                        "sync_employee_assignments_superseded tenant_id=%s count=%s",
                        tenant_id,
                        superseded,
                    )
                await self._upsert_rows(
                    session,
                    EmployeeOrgAssignment,
                    rows,
                    conflict_columns=("tenant_id", "assignment_id"),
                )
                if active_ids:
                    # Reactivation clears the deactivation trail.
                    await session.execute(
                        update(EmployeeOrgAssignment)
                        .where(
                            EmployeeOrgAssignment.tenant_id == tenant_id,
                            EmployeeOrgAssignment.assignment_id.in_(active_ids),
                            EmployeeOrgAssignment.deactivated_at.is_not(None),
                        )
                        .values(deactivated_at=None, deactivated_by=None)
                        .execution_options(synchronize_session=False)
                    )
                if inactive_ids:
                    await session.execute(
                        update(EmployeeOrgAssignment)
                        .where(
                            EmployeeOrgAssignment.tenant_id == tenant_id,
                            EmployeeOrgAssignment.assignment_id.in_(inactive_ids),
                            EmployeeOrgAssignment.deactivated_at.is_(None),
                        )
                        .values(deactivated_at=now, deactivated_by=SYSTEM_SYNC_ACTOR)
                        .execution_options(synchronize_session=False)
                    )
        return len(rows)

    async def store_role_assignments(
        self,
        session_factory: SessionFactory,
        tenant_id: str,
        records: Sequence[dict[str, Any]],
        refs: ReferenceMaps,
    ) -> int:
        assignments = self._parse(
            WrapperRoleAssignment, records, tenant_id=tenant_id, collection="role_assignments"
        )
        now = _utcnow()
        rows = []
        active_grants: set[tuple[str, str, str | None]] = set()
        for assignment in {item.assignment_id: item for item in assignments}.values():
            user_ref = refs.resolve_user(assignment.user_id)
            role_ref = refs.resolve_role(assignment.role_id)
            org_ref: Reference | None = None
            if assignment.entity_id == tenant_id:
                # Tenant-level grant; attach to the tenant's first organization.
                org_ref = refs.first_org()
            elif assignment.entity_id:
                org_ref = refs.resolve_org(assignment.entity_id)
            is_active = assignment.is_active is not False
            grant = (assignment.user_id, assignment.role_id, org_ref.external_key if org_ref else None)
            if is_active and grant in active_grants:
                # Only one active grant per (user, role, org) can be stored.
                logger.warning(
                    "sync_role_assignment_duplicate tenant_id=%s assignment_id=%s",
                    tenant_id,
                    assignment.assignment_id,
                )
                continue
            if is_active:
                active_grants.add(grant)
            if user_ref.internal_id is None or role_ref.internal_id is None:
                logger.warning(
                    "sync_reference_pending tenant_id=%s collection=role_assignments "
                    "assignment_id=%s user_id=%s role_id=%s",
                    tenant_id,
                    assignment.assignment_id,
                    assignment.user_id,
                    assignment.role_id,
                )
            rows.append(
                {
                    "id": str(uuid4()),
                    "tenant_id": tenant_id,
                    "assignment_id": assignment.assignment_id,
                    **_ref_columns("user", user_ref),
                    **_ref_columns("role", role_ref),
                    **_ref_columns("org", org_ref),
                    "is_active": is_active,
                    "assigned_at": assignment.assigned_at or now,
                    "assigned_by": assignment.assigned_by,
                    "expires_at": assignment.expires_at,
                    "metadata_json": assignment.metadata,
                    "updated_at": now,
                }
            )
        if not rows:
            return 0

        ids = [row["assignment_id"] for row in rows]
        async with session_factory() as session:
            async with session.begin():
                # Grants no longer reported upstream are deactivated, never deleted.
                deactivated = await session.execute(
                    update(CrmRoleAssignment)
                    .where(
                        CrmRoleAssignment.tenant_id == tenant_id,
                        CrmRoleAssignment.is_active.is_(True),
                        CrmRoleAssignment.assignment_id.not_in(ids),
                    )
                    .values(is_active=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if deactivated.rowcount:
                    logger.info(
                        "sync_role_assignments_deactivated tenant_id=%s count=%s",
                        tenant_id,
                        deactivated.rowcount,
                    )
                await self._retire_superseded(
                    session,
                    CrmRoleAssignment,
                    tenant_id,
                    rows,
                    key_columns=("user_key", "role_key", "org_key"),
                    values={"is_active": False, "updated_at": now},
                )
                await self._upsert_rows(
                    session,
                    CrmRoleAssignment,
                    rows,
                    conflict_columns=("tenant_id", "assignment_id"),
                )
        return len(rows)

    async def store_credit_configs(
        self,
        session_factory: SessionFactory,
        tenant_id: str,
        records: Sequence[dict[str, Any]],
        refs: ReferenceMaps,
    ) -> int:
        # Tenant-sourced configs; the entity reference is optional.
        configs = self._parse(WrapperCreditConfig, records, tenant_id=tenant_id, collection="credit_configs")
        now = _utcnow()
        rows = []
        for config in {item.config_id: item for item in configs}.values():
            org_ref = refs.resolve_org(config.entity_id) if config.entity_id else None
            rows.append(
                {
                    "id": str(uuid4()),
                    "config_id": config.config_id,
                    "tenant_id": tenant_id,
                    **_ref_columns("org", org_ref),
                    "config_name": config.config_name or config.operation_code,
                    "operation_code": config.operation_code,
                    "credit_cost": config.credit_cost if config.credit_cost is not None else 1.0,
                    "description": config.description,
                    "source": "tenant",
                    "sync_source": "wrapper",
                    "last_synced_at": now,
                }
            )
        return await self._store_with_fallback(
            session_factory,
            CrmCreditConfig,
            rows,
            conflict_columns=("config_id",),
            tenant_id=tenant_id,
            collection="credit_configs",
            key="config_id",
        )

    async def store_entity_credits(
        self,
        session_factory: SessionFactory,
        tenant_id: str,
        records: Sequence[dict[str, Any]],
        refs: ReferenceMaps,
    ) -> int:
        # One row per entity; available credits are always recomputed.
        credits = self._parse(WrapperEntityCredit, records, tenant_id=tenant_id, collection="entity_credits")
        now = _utcnow()
        by_entity: dict[str, dict[str, Any]] = {}
        for credit in credits:
            if not credit.entity_id or credit.allocated_credits is None:
                logger.warning(
                    "sync_entity_credit_skipped tenant_id=%s entity_id=%s",
                    tenant_id,
                    credit.entity_id,
                )
                continue
            allocated = float(credit.allocated_credits)
            used = float(credit.used_credits or 0.0)
            allocated_by_ref = refs.resolve_user(credit.allocated_by) if credit.allocated_by else None
            by_entity[credit.entity_id] = {
                "id": str(uuid4()),
                "tenant_id": tenant_id,
                **_ref_columns("entity", refs.resolve_org(credit.entity_id)),
                "allocated_credits": allocated,
                "used_credits": used,
                "available_credits": allocated - used,
                "target_application": credit.target_application or "crm",
                "allocation_type": credit.allocation_type or "manual",
                "is_active": credit.is_active is not False,
                **_ref_columns("allocated_by", allocated_by_ref),
                "allocated_at": credit.allocated_at or now,
                "updated_at": now,
            }
        return await self._store_with_fallback(
            session_factory,
            CrmEntityCredit,
            list(by_entity.values()),
            conflict_columns=("tenant_id", "entity_key"),
            tenant_id=tenant_id,
            collection="entity_credits",
            key="entity_key",
        )

    async def resolve_pending_references(
        self, session_factory: SessionFactory, tenant_id: str, refs: ReferenceMaps
    ) -> int:
        """Upgrade stored Pending references whose referent has since been synced.

        Covers rows written before their user, role or organization existed, including
        assignments created from stream events. Returns the number of rows patched.
        """
        resolved = 0
        async with session_factory() as session:
            async with session.begin():
                for model, pairs in REFERENCE_COLUMNS:
                    columns = [model.id]
                    pending = []
                    for prefix, _ in pairs:
                        ref_column = getattr(model, f"{prefix}_ref_id")
                        key_column = getattr(model, f"{prefix}_key")
                        columns += [ref_column, key_column]
                        pending.append(and_(ref_column.is_(None), key_column.is_not(None)))
                    result = await session.execute(
                        select(*columns).where(model.tenant_id == tenant_id, or_(*pending))
                    )

                    # Group patches by column set; a bulk UPDATE needs uniform keys.
                    patches: dict[tuple[str, ...], list[dict[str, Any]]] = defaultdict(list)
                    for row in result.all():
                        patch: dict[str, Any] = {}
                        for index, (prefix, kind) in enumerate(pairs):
                            internal_id, external_key = row[1 + 2 * index], row[2 + 2 * index]
                            if internal_id is not None or external_key is None:
                                continue
                            reference = upgrade(from_columns(internal_id, external_key), getattr(refs, kind))
                            if reference.internal_id is not None:
                                patch[f"{prefix}_ref_id"] = reference.internal_id
                        if patch:
                            patches[tuple(sorted(patch))].append({"id": row[0], **patch})
                    for batch in patches.values():
                        await session.execute(update(model), batch)
                        resolved += len(batch)
        if resolved:
            logger.info("sync_references_resolved tenant_id=%s rows=%s", tenant_id, resolved)
        return resolved

    async def link_user_profile_assignments(self, session_factory: SessionFactory, tenant_id: str) -> int:
        # Refresh denormalized assignment ids on each user profile.
        async with session_factory() as session:
            async with session.begin():
                role_rows = await session.execute(
                    select(CrmRoleAssignment.user_key, CrmRoleAssignment.id).where(
                        CrmRoleAssignment.tenant_id == tenant_id,
                        CrmRoleAssignment.is_active.is_(True),
                    )
                )
                org_rows = await session.execute(
                    select(EmployeeOrgAssignment.user_key, EmployeeOrgAssignment.id).where(
                        EmployeeOrgAssignment.tenant_id == tenant_id,
                        EmployeeOrgAssignment.is_active.is_(True),
                    )
                )
                role_ids: dict[str, list[str]] = defaultdict(list)
                for user_key, assignment_id in role_rows.all():
                    role_ids[user_key].append(assignment_id)
                org_ids: dict[str, list[str]] = defaultdict(list)
                for user_key, assignment_id in org_rows.all():
                    org_ids[user_key].append(assignment_id)

                users = await session.execute(
                    select(UserProfile.id, UserProfile.user_key).where(UserProfile.tenant_id == tenant_id)
                )
                patches = [
                    {
                        "id": user_id,
                        "role_assignment_ids": sorted(role_ids.get(user_key, [])),
                        "org_assignment_ids": sorted(org_ids.get(user_key, [])),
                    }
                    for user_id, user_key in users.all()
                ]
                if patches:
                    await session.execute(update(UserProfile), patches)
        return len(patches)
