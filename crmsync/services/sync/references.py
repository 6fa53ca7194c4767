from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.domain.models import CrmRole, Organization, UserProfile
from crmsync.domain.references import Reference, resolve


@dataclass
class ReferenceMaps:
    # External key -> internal id, per referent kind, scoped to one tenant.
    orgs: dict[str, str] = field(default_factory=dict)
    roles: dict[str, str] = field(default_factory=dict)
    users: dict[str, str] = field(default_factory=dict)

    def resolve_org(self, org_code: str) -> Reference:
        return resolve(org_code, self.orgs)

    def resolve_role(self, role_key: str) -> Reference:
        return resolve(role_key, self.roles)

    def resolve_user(self, user_key: str) -> Reference:
        return resolve(user_key, self.users)

    def first_org(self) -> Reference | None:
        # Tenant-level grants attach to the first organization by code.
        if not self.orgs:
            return None
        return self.resolve_org(sorted(self.orgs)[0])


async def build_reference_maps(session: AsyncSession, tenant_id: str) -> ReferenceMaps:
    """Load the persisted reference targets for a tenant after the essential commit."""
    orgs = await session.execute(
        select(Organization.org_code, Organization.id).where(Organization.tenant_id == tenant_id)
    )
    roles = await session.execute(
        select(CrmRole.role_key, CrmRole.id).where(CrmRole.tenant_id == tenant_id)
    )
    users = await session.execute(
        select(UserProfile.user_key, UserProfile.id).where(UserProfile.tenant_id == tenant_id)
    )
    return ReferenceMaps(
        orgs={code: internal_id for code, internal_id in orgs.all()},
        roles={key: internal_id for key, internal_id in roles.all()},
        users={key: internal_id for key, internal_id in users.all()},
    )
