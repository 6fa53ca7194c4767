from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from crmsync.domain.models import EmployeeOrgAssignment
from crmsync.services.events.handlers import AssignmentEventHandler
from crmsync.services.events.schemas import (
    EVENT_ACTIVATED,
    EVENT_CREATED,
    EVENT_DEACTIVATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    parse_assignment_event,
)
from crmsync.services.telemetry import get_counters
from crmsync.tests.utils.fakes import seed_organization, seed_user


TENANT = "t-1"


def _event(event_type: str, *, assignment_id: str = "a-1", org: str = "SALES", user: str = "u-1", **data):
    payload = {"assignmentId": assignment_id, "userId": user, "organizationId": org, **data}
    return parse_assignment_event(
        {"eventId": "evt", "eventType": event_type, "tenantId": TENANT, "data": json.dumps(payload)}
    )


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _handler(session_factory, sleep: _RecordingSleep | None = None) -> AssignmentEventHandler:
    return AssignmentEventHandler(session_factory, org_retry_delay_s=0.5, sleep=sleep or _RecordingSleep())


async def _assignments(session_factory) -> list[EmployeeOrgAssignment]:
    async with session_factory() as session:
        result = await session.execute(
            select(EmployeeOrgAssignment).where(EmployeeOrgAssignment.tenant_id == TENANT)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_created_event_is_idempotent(session_factory) -> None:
    org_id = await seed_organization(session_factory, TENANT, "SALES")
    user_id = await seed_user(session_factory, TENANT, "u-1")
    handler = _handler(session_factory)

    assert await handler.handle(_event(EVENT_CREATED, priority=4)) == "created"
    assert await handler.handle(_event(EVENT_CREATED, priority=4)) == "duplicate"

    (row,) = await _assignments(session_factory)
    assert row.assignment_id == "a-1"
    assert row.org_ref_id == org_id
    assert row.org_key == "SALES"
    assert row.user_ref_id == user_id
    assert row.assignment_type == "direct"
    assert row.priority == 4
    assert row.is_active is True
    assert row.metadata_json == {}
    assert get_counters()["org_assignment_events_total.created"] == 1
    assert get_counters()["org_assignment_events_total.duplicate"] == 1


@pytest.mark.asyncio
async def test_created_event_for_unsynced_user_keeps_pending_reference(session_factory) -> None:
    await seed_organization(session_factory, TENANT, "SALES")
    handler = _handler(session_factory)

    assert await handler.handle(_event(EVENT_CREATED, user="u-new")) == "created"

    (row,) = await _assignments(session_factory)
    assert row.user_ref_id is None
    assert row.user_key == "u-new"


@pytest.mark.asyncio
async def test_missing_organization_drops_event_after_retry(session_factory) -> None:
    await seed_organization(session_factory, "other-tenant", "SALES")
    sleep = _RecordingSleep()
    handler = _handler(session_factory, sleep)

    assert await handler.handle(_event(EVENT_CREATED)) == "org_missing"

    assert sleep.calls == [0.5]
    assert await _assignments(session_factory) == []
    assert get_counters()["org_assignment_events_dropped_total"] == 1


@pytest.mark.asyncio
async def test_organization_lookup_falls_back_to_case_insensitive(session_factory) -> None:
    org_id = await seed_organization(session_factory, TENANT, "SALES")
    handler = _handler(session_factory)

    assert await handler.handle(_event(EVENT_CREATED, org="sales")) == "created"

    (row,) = await _assignments(session_factory)
    assert row.org_ref_id == org_id
    assert row.org_key == "SALES"


@pytest.mark.asyncio
async def test_deactivate_then_activate(session_factory) -> None:
    await seed_organization(session_factory, TENANT, "SALES")
    handler = _handler(session_factory)
    await handler.handle(_event(EVENT_CREATED))

    assert await handler.handle(_event(EVENT_DEACTIVATED, deactivatedBy="admin-1")) == "deactivated"
    (row,) = await _assignments(session_factory)
    assert row.is_active is False
    assert row.deactivated_by == "admin-1"
    assert row.deactivated_at is not None

    assert await handler.handle(_event(EVENT_ACTIVATED, activatedBy="admin-2")) == "activated"
    (row,) = await _assignments(session_factory)
    assert row.is_active is True
    assert row.activated_by == "admin-2"
    assert row.activated_at is not None
    assert row.deactivated_at is None
    assert row.deactivated_by is None


@pytest.mark.asyncio
async def test_updated_event_applies_changes_and_falls_back_to_user_org_pair(session_factory) -> None:
    await seed_organization(session_factory, TENANT, "SALES")
    handler = _handler(session_factory)
    await handler.handle(_event(EVENT_CREATED))

    # Unknown assignment id; the (user, org) pair still identifies the row.
    outcome = await handler.handle(
        _event(EVENT_UPDATED, assignment_id="a-legacy", changes={"assignmentType": "temporary", "priority": 42})
    )

    assert outcome == "updated"
    (row,) = await _assignments(session_factory)
    assert row.assignment_id == "a-1"
    assert row.assignment_type == "temporary"
    assert row.priority == 10


@pytest.mark.asyncio
async def test_deleted_event_removes_row_once(session_factory) -> None:
    await seed_organization(session_factory, TENANT, "SALES")
    handler = _handler(session_factory)
    await handler.handle(_event(EVENT_CREATED))

    assert await handler.handle(_event(EVENT_DELETED)) == "deleted"
    assert await _assignments(session_factory) == []
    assert await handler.handle(_event(EVENT_DELETED)) == "not_found"
    assert await handler.handle(_event(EVENT_DEACTIVATED)) == "not_found"
