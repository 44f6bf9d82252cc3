"""Tenant and membership Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from .base import BaseSchema, JSONAPICollectionResponse, JSONAPIResponse
from src.models.tenant import PLAN_TYPES, TENANT_STATUSES
from src.models.tenant_membership import MEMBERSHIP_ROLES


class TenantCreateRequest(BaseSchema):
    """Signup request: the caller becomes the tenant's owner."""

    name: str = Field(min_length=1, max_length=255, description="Business name")
    slug: str = Field(min_length=3, max_length=63, description="URL-safe unique identifier")
    plan_type: str = Field("free", description="Subscription plan")

    @field_validator("slug")
    @classmethod
    def normalize_slug(cls, v: str) -> str:
        return v.lower()

    @field_validator("plan_type")
    @classmethod
    def validate_plan_type(cls, v: str) -> str:
        if v not in PLAN_TYPES:
            raise ValueError(f"Plan must be one of: {list(PLAN_TYPES)}")
        return v


class TenantPlanRequest(BaseSchema):
    plan_type: str = Field(description="New subscription plan")

    @field_validator("plan_type")
    @classmethod
    def validate_plan_type(cls, v: str) -> str:
        if v not in PLAN_TYPES:
            raise ValueError(f"Plan must be one of: {list(PLAN_TYPES)}")
        return v


class TenantStatusRequest(BaseSchema):
    status: str = Field(description="New tenant status")
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in TENANT_STATUSES:
            raise ValueError(f"Status must be one of: {list(TENANT_STATUSES)}")
        return v


class TenantAttributes(BaseSchema):
    name: str
    slug: str
    status: str
    plan_type: str
    is_free_tier: bool
    limits: Dict[str, Any] = Field(default_factory=dict)
    usage: Dict[str, Any] = Field(default_factory=dict)
    features: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    role: Optional[str] = Field(None, description="Caller's role in this tenant")


class TenantResource(BaseSchema):
    """JSON:API resource for tenant."""

    type: str = Field("tenant", description="Resource type")
    id: UUID = Field(description="Tenant UUID")
    attributes: TenantAttributes


class TenantResponse(JSONAPIResponse):
    data: TenantResource


class TenantCollectionResponse(JSONAPICollectionResponse):
    data: List[TenantResource]


class MembershipCreateRequest(BaseSchema):
    user_id: UUID = Field(description="User identity to add")
    role: str = Field("member", description="Membership role")
    status: str = Field("active", description="Initial membership status")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        if v not in MEMBERSHIP_ROLES:
            raise ValueError(f"Role must be one of: {list(MEMBERSHIP_ROLES)}")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in ("pending", "active"):
            raise ValueError("New memberships must be 'pending' or 'active'")
        return v


class MembershipUpdateRequest(BaseSchema):
    role: Optional[str] = Field(None, description="New role")
    status: Optional[str] = Field(
        None, description="'suspended' removes the member, 'active' reinstates them"
    )

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in MEMBERSHIP_ROLES:
            raise ValueError(f"Role must be one of: {list(MEMBERSHIP_ROLES)}")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("active", "suspended"):
            raise ValueError("Status must be 'active' or 'suspended'")
        return v


class MembershipAttributes(BaseSchema):
    tenant_id: UUID
    user_id: UUID
    role: str
    status: str
    joined_at: Optional[datetime] = None


class MembershipResource(BaseSchema):
    type: str = Field("tenant_membership", description="Resource type")
    id: UUID
    attributes: MembershipAttributes


class MembershipResponse(JSONAPIResponse):
    data: MembershipResource


class MembershipCollectionResponse(JSONAPICollectionResponse):
    data: List[MembershipResource]
