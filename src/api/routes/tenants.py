"""Tenants and memberships API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.common import (
    get_authorization_context,
    get_caller_identity,
    get_db_with_caller_context,
    get_events,
    get_pagination_params,
)
from src.models.tenant import Tenant
from src.models.tenant_membership import TenantMembership
from src.schemas.base import resource
from src.schemas.tenant import (
    MembershipCollectionResponse,
    MembershipCreateRequest,
    MembershipResponse,
    MembershipUpdateRequest,
    TenantCollectionResponse,
    TenantCreateRequest,
    TenantPlanRequest,
    TenantResponse,
    TenantStatusRequest,
)
from src.services.authorization import AuthorizationContext, CallerIdentity
from src.services.events import EventPublisher
from src.services.tenant_service import TenantService

router = APIRouter()


def get_tenant_service(
    session: AsyncSession = Depends(get_db_with_caller_context),
    events: EventPublisher = Depends(get_events),
) -> TenantService:
    return TenantService(session, events)


def _tenant_resource(tenant: Tenant, role: str = None) -> dict:
    attributes = tenant.to_dict()
    attributes["role"] = role
    return resource("tenant", tenant.id, attributes)


def _membership_resource(membership: TenantMembership) -> dict:
    return resource("tenant_membership", membership.id, membership.to_dict())


@router.get("", response_model=TenantCollectionResponse)
async def list_my_tenants(
    pagination=Depends(get_pagination_params),
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    """List the tenants the caller belongs to (every tenant for super-admins)."""
    tenants = await service.list_my_tenants(ctx, offset=pagination["offset"], limit=pagination["limit"])
    return TenantCollectionResponse(
        data=[_tenant_resource(tenant, ctx.role_for(tenant.id)) for tenant in tenants],
        meta={"is_super_admin": ctx.is_super_admin},
    )


@router.post("", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    request: TenantCreateRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
    service: TenantService = Depends(get_tenant_service),
):
    """Sign up a new tenant owned by the caller."""
    tenant = await service.create_tenant(
        name=request.name,
        slug=request.slug,
        owner_user_id=identity.user_id,
        plan_type=request.plan_type,
    )
    return TenantResponse(data=_tenant_resource(tenant, "owner"))


@router.get("/{tenant_id}", response_model=TenantResponse)
async def get_tenant(
    tenant_id: UUID,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    tenant = await service.get_tenant(ctx, tenant_id)
    return TenantResponse(data=_tenant_resource(tenant, ctx.role_for(tenant_id)))


@router.patch("/{tenant_id}/plan", response_model=TenantResponse)
async def change_plan(
    tenant_id: UUID,
    request: TenantPlanRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    """Change the subscription plan (owner/admin)."""
    tenant = await service.change_plan(ctx, tenant_id, request.plan_type)
    return TenantResponse(data=_tenant_resource(tenant, ctx.role_for(tenant_id)))


@router.patch("/{tenant_id}/status", response_model=TenantResponse)
async def set_status(
    tenant_id: UUID,
    request: TenantStatusRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    """Suspend, cancel or reactivate a tenant (super-admin)."""
    tenant = await service.set_status(ctx, tenant_id, request.status, request.reason)
    return TenantResponse(data=_tenant_resource(tenant))


@router.get("/{tenant_id}/members", response_model=MembershipCollectionResponse)
async def list_members(
    tenant_id: UUID,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    memberships = await service.list_members(ctx, tenant_id)
    return MembershipCollectionResponse(data=[_membership_resource(m) for m in memberships])


@router.post("/{tenant_id}/members", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
async def add_member(
    tenant_id: UUID,
    request: MembershipCreateRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    membership = await service.add_member(ctx, tenant_id, request.user_id, request.role, request.status)
    return MembershipResponse(data=_membership_resource(membership))


@router.patch("/{tenant_id}/members/{user_id}", response_model=MembershipResponse)
async def update_member(
    tenant_id: UUID,
    user_id: UUID,
    request: MembershipUpdateRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    service: TenantService = Depends(get_tenant_service),
):
    """Change a member's role, suspend them, or reinstate them with ``status: active``."""
    if request.status == "suspended":
        membership = await service.suspend_member(ctx, tenant_id, user_id)
    elif request.status == "active":
        membership = await service.reinstate_member(ctx, tenant_id, user_id, request.role)
    elif request.role is not None:
        membership = await service.change_member_role(ctx, tenant_id, user_id, request.role)
    else:
        membership = await service.get_member(ctx, tenant_id, user_id)
    return MembershipResponse(data=_membership_resource(membership))
