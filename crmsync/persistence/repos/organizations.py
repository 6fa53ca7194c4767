from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.domain.models import Organization, UserProfile


async def get_by_code(
    session: AsyncSession,
    tenant_id: str,
    org_code: str,
    *,
    case_insensitive: bool = False,
) -> Organization | None:
    # Tenant scoping prevents cross-tenant matches on shared org codes.
    stmt = select(Organization).where(Organization.tenant_id == tenant_id)
    if case_insensitive:
        stmt = stmt.where(func.lower(Organization.org_code) == org_code.lower())
    else:
        stmt = stmt.where(Organization.org_code == org_code)
    result = await session.execute(stmt.order_by(Organization.org_code).limit(1))
    return result.scalar_one_or_none()


async def list_codes(session: AsyncSession, tenant_id: str, *, limit: int = 10) -> list[str]:
    result = await session.execute(
        select(Organization.org_code)
        .where(Organization.tenant_id == tenant_id)
        .order_by(Organization.org_code)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_user_profile_id(session: AsyncSession, tenant_id: str, user_key: str) -> str | None:
    result = await session.execute(
        select(UserProfile.id).where(UserProfile.tenant_id == tenant_id, UserProfile.user_key == user_key)
    )
    return result.scalar_one_or_none()
