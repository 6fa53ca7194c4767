from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WrapperRecord(BaseModel):
    # Upstream payloads are camelCase and may carry fields we do not store.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WrapperTenant(WrapperRecord):
    tenant_id: str | None = None
    tenant_name: str | None = None
    company_name: str | None = None
    is_active: bool | None = None
    status: str | None = None
    settings: dict[str, Any] | None = None
    subscription: dict[str, Any] | None = None


class OrgHierarchy(WrapperRecord):
    level: int = 0
    path: list[str] = Field(default_factory=list)


class WrapperOrganization(WrapperRecord):
    org_code: str = Field(min_length=1)
    org_name: str | None = None
    parent_id: str | None = None
    status: str | None = None
    hierarchy: OrgHierarchy | None = None


class WrapperRole(WrapperRecord):
    role_id: str = Field(min_length=1)
    role_name: str | None = None
    permissions: list[Any] = Field(default_factory=list)
    priority: int | None = None
    is_active: bool | None = None


class PersonalInfo(WrapperRecord):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


class UserStatus(WrapperRecord):
    is_active: bool | None = None
    last_activity_at: datetime | None = None


class WrapperUser(WrapperRecord):
    user_id: str = Field(min_length=1)
    employee_code: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    personal_info: PersonalInfo | None = None
    status: UserStatus | None = None


class WrapperEmployeeAssignment(WrapperRecord):
    assignment_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    assignment_type: str | None = None
    is_active: bool | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    expires_at: datetime | None = None
    priority: int | None = None
    metadata: dict[str, Any] | None = None


class WrapperRoleAssignment(WrapperRecord):
    assignment_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    role_id: str = Field(min_length=1)
    entity_id: str | None = None
    is_active: bool | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class WrapperCreditConfig(WrapperRecord):
    config_id: str = Field(min_length=1)
    entity_id: str | None = None
    config_name: str | None = None
    operation_code: str | None = None
    credit_cost: float | None = None
    description: str | None = None


class WrapperEntityCredit(WrapperRecord):
    entity_id: str | None = None
    allocated_credits: float | None = None
    used_credits: float | None = None
    # Upstream availableCredits is ignored; available is always recomputed.
    target_application: str | None = None
    allocation_type: str | None = None
    is_active: bool | None = None
    allocated_by: str | None = None
    allocated_at: datetime | None = None
