from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from crmsync.domain.models import EmployeeOrgAssignment, Organization
from crmsync.domain.references import from_columns
from crmsync.persistence.db import SessionFactory
from crmsync.persistence.repos import assignments as assignments_repo
from crmsync.persistence.repos import organizations as organizations_repo
from crmsync.services.events.schemas import (
    AssignmentActivated,
    AssignmentCreated,
    AssignmentDeactivated,
    AssignmentDeleted,
    AssignmentEvent,
    AssignmentPayload,
    AssignmentUpdated,
)
from crmsync.services.sync.writer import clamp_priority
from crmsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DEFAULT_EVENT_ASSIGNMENT_TYPE = "direct"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentEventHandler:
    """Applies organization-assignment lifecycle events to the assignment store.

    Every handler returns a short outcome label (`created`, `duplicate`, `not_found`,
    ...) so callers and tests can see what happened without inspecting the store.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        org_retry_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._org_retry_delay_s = org_retry_delay_s
        self._sleep = sleep

    async def handle(self, event: AssignmentEvent) -> str:
        data = event.data
        organization = await self.find_organization(event.tenant_id, data.organization_id)
        if organization is None:
            increment_counter("org_assignment_events_dropped_total")
            return "org_missing"

        if isinstance(event, AssignmentCreated):
            outcome = await self._created(event.tenant_id, data, organization)
        elif isinstance(event, AssignmentUpdated):
            outcome = await self._updated(event.tenant_id, data, organization)
        elif isinstance(event, AssignmentDeleted):
            outcome = await self._deleted(event.tenant_id, data, organization)
        elif isinstance(event, AssignmentDeactivated):
            outcome = await self._set_active(event.tenant_id, data, organization, active=False)
        elif isinstance(event, AssignmentActivated):
            outcome = await self._set_active(event.tenant_id, data, organization, active=True)
        else:
            raise TypeError(f"unsupported event type: {type(event).__name__}")

        increment_counter(f"org_assignment_events_total.{outcome}")
        logger.info(
            "org_assignment_event_applied event_type=%s event_id=%s tenant_id=%s assignment_id=%s outcome=%s",
            event.event_type,
            event.event_id,
            event.tenant_id,
            data.assignment_id,
            outcome,
        )
        return outcome

    async def find_organization(self, tenant_id: str, org_code: str) -> Organization | None:
        # Exact match, one retry after a delay for replication lag, then case-insensitive.
        async with self._session_factory() as session:
            organization = await organizations_repo.get_by_code(session, tenant_id, org_code)
        if organization is not None:
            return organization

        await self._sleep(self._org_retry_delay_s)
        async with self._session_factory() as session:
            organization = await organizations_repo.get_by_code(session, tenant_id, org_code)
            if organization is None:
                organization = await organizations_repo.get_by_code(
                    session, tenant_id, org_code, case_insensitive=True
                )
            if organization is None:
                available = await organizations_repo.list_codes(session, tenant_id)
                logger.warning(
                    "org_assignment_org_missing tenant_id=%s org_code=%s available=%s",
                    tenant_id,
                    org_code,
                    ",".join(available) or "-",
                )
        return organization

    async def _created(self, tenant_id: str, data: AssignmentPayload, organization: Organization) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                existing = await assignments_repo.resolve_assignment(
                    session,
                    tenant_id,
                    assignment_id=data.assignment_id,
                    user_key=data.user_id,
                    org_key=organization.org_code,
                )
                if existing is not None:
                    return "duplicate"

                user_ref = from_columns(
                    await organizations_repo.get_user_profile_id(session, tenant_id, data.user_id),
                    data.user_id,
                )
                if user_ref.internal_id is None:
                    # Profile not synced yet; keep the key so a later sync resolves it.
                    logger.warning(
                        "org_assignment_user_pending tenant_id=%s user_id=%s assignment_id=%s",
                        tenant_id,
                        data.user_id,
                        data.assignment_id,
                    )
                now = _utc_now()
                session.add(
                    EmployeeOrgAssignment(
                        id=str(uuid4()),
                        tenant_id=tenant_id,
                        assignment_id=data.assignment_id,
                        user_ref_id=user_ref.internal_id,
                        user_key=user_ref.external_key,
                        org_ref_id=organization.id,
                        org_key=organization.org_code,
                        assignment_type=data.assignment_type or DEFAULT_EVENT_ASSIGNMENT_TYPE,
                        is_active=data.is_active is not False,
                        assigned_at=data.assigned_at or now,
                        assigned_by=data.assigned_by,
                        priority=clamp_priority(data.priority),
                        metadata_json=data.metadata or {},
                        updated_at=now,
                    )
                )
        return "created"

    async def _updated(self, tenant_id: str, data: AssignmentPayload, organization: Organization) -> str:
        values: dict[str, Any] = {"updated_at": _utc_now()}
        changes = data.changes
        if changes is not None:
            if changes.assignment_type:
                values["assignment_type"] = changes.assignment_type
            if changes.is_active is not None:
                values["is_active"] = changes.is_active
            if changes.priority is not None:
                values["priority"] = clamp_priority(changes.priority)
        return await self._apply(tenant_id, data, organization, values, outcome="updated")

    async def _deleted(self, tenant_id: str, data: AssignmentPayload, organization: Organization) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                assignment = await assignments_repo.resolve_assignment(
                    session,
                    tenant_id,
                    assignment_id=data.assignment_id,
                    user_key=data.user_id,
                    org_key=organization.org_code,
                )
                if assignment is None:
                    logger.warning(
                        "org_assignment_not_found action=delete tenant_id=%s assignment_id=%s",
                        tenant_id,
                        data.assignment_id,
                    )
                    return "not_found"
                deleted = await assignments_repo.delete_assignment(session, assignment.id)
        return "deleted" if deleted else "not_found"

    async def _set_active(
        self,
        tenant_id: str,
        data: AssignmentPayload,
        organization: Organization,
        *,
        active: bool,
    ) -> str:
        now = _utc_now()
        if active:
            values = {
                "is_active": True,
                "activated_at": now,
                "activated_by": data.activated_by,
                "deactivated_at": None,
                "deactivated_by": None,
                "updated_at": now,
            }
            return await self._apply(tenant_id, data, organization, values, outcome="activated")
        values = {
            "is_active": False,
            "deactivated_at": now,
            "deactivated_by": data.deactivated_by,
            "updated_at": now,
        }
        return await self._apply(tenant_id, data, organization, values, outcome="deactivated")

    async def _apply(
        self,
        tenant_id: str,
        data: AssignmentPayload,
        organization: Organization,
        values: dict[str, Any],
        *,
        outcome: str,
    ) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                assignment = await assignments_repo.resolve_assignment(
                    session,
                    tenant_id,
                    assignment_id=data.assignment_id,
                    user_key=data.user_id,
                    org_key=organization.org_code,
                )
                if assignment is None:
                    logger.warning(
                        "org_assignment_not_found action=%s tenant_id=%s assignment_id=%s",
                        outcome,
                        tenant_id,
                        data.assignment_id,
                    )
                    return "not_found"
                await assignments_repo.update_assignment(session, assignment.id, values)
        return outcome
