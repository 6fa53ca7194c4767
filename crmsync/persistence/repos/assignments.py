from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.domain.models import EmployeeOrgAssignment


async def get_by_assignment_id(
    session: AsyncSession, tenant_id: str, assignment_id: str
) -> EmployeeOrgAssignment | None:
    result = await session.execute(
        select(EmployeeOrgAssignment).where(
            EmployeeOrgAssignment.tenant_id == tenant_id,
            EmployeeOrgAssignment.assignment_id == assignment_id,
        )
    )
    return result.scalar_one_or_none()


async def get_by_user_and_org(
    session: AsyncSession, tenant_id: str, user_key: str, org_key: str
) -> EmployeeOrgAssignment | None:
    # Prefer the active, highest-priority row when history exists for the pair.
    result = await session.execute(
        select(EmployeeOrgAssignment)
        .where(
            EmployeeOrgAssignment.tenant_id == tenant_id,
            EmployeeOrgAssignment.user_key == user_key,
            EmployeeOrgAssignment.org_key == org_key,
        )
        .order_by(
            EmployeeOrgAssignment.is_active.desc(),
            EmployeeOrgAssignment.priority.desc(),
            EmployeeOrgAssignment.id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_assignment(
    session: AsyncSession,
    tenant_id: str,
    *,
    assignment_id: str,
    user_key: str,
    org_key: str,
) -> EmployeeOrgAssignment | None:
    # Upstream assignment ids are not always stable; fall back to the (user, org) pair.
    assignment = await get_by_assignment_id(session, tenant_id, assignment_id)
    if assignment is not None:
        return assignment
    return await get_by_user_and_org(session, tenant_id, user_key, org_key)


async def update_assignment(session: AsyncSession, internal_id: str, values: dict[str, Any]) -> int:
    result = await session.execute(
        update(EmployeeOrgAssignment)
        .where(EmployeeOrgAssignment.id == internal_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_assignment(session: AsyncSession, internal_id: str) -> int:
    result = await session.execute(
        delete(EmployeeOrgAssignment)
        .where(EmployeeOrgAssignment.id == internal_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
