"""Customers API endpoints.

Customers are the representative tenant-owned resource: every read and write
goes through ``TenantScopedRepository``, so a listing without filters returns
only rows of the caller's tenants.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.common import (
    get_authorization_context,
    get_db_with_caller_context,
    get_pagination_params,
)
from src.models.customer import Customer
from src.schemas.base import PaginationMeta, resource
from src.schemas.customer import (
    CustomerCollectionResponse,
    CustomerCreateRequest,
    CustomerPatchRequest,
    CustomerResponse,
)
from src.services.authorization import AuthorizationContext
from src.services.tenant_scope import TenantScopedRepository

router = APIRouter()


def get_customer_repository(
    session: AsyncSession = Depends(get_db_with_caller_context),
) -> TenantScopedRepository:
    return TenantScopedRepository(session, Customer, "Customer")


def _customer_resource(customer: Customer) -> dict:
    return resource("customer", customer.id, customer.to_dict())


def _target_tenant(ctx: AuthorizationContext, requested: Optional[UUID]) -> UUID:
    """Tenant a new row belongs to: explicit, else the X-Tenant-ID tenant, else the only membership."""
    if requested is not None:
        return requested
    if ctx.active_tenant_id is not None:
        return ctx.active_tenant_id
    if not ctx.unrestricted and len(ctx.tenant_ids) == 1:
        return next(iter(ctx.tenant_ids))
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": "tenant_required",
            "message": "Specify tenant_id or the X-Tenant-ID header",
            "code": "TENANT_REQUIRED"
        }
    )


@router.get("", response_model=CustomerCollectionResponse)
async def list_customers(
    pagination=Depends(get_pagination_params),
    tenant_id: Optional[UUID] = Query(None, description="Restrict to one tenant"),
    q: Optional[str] = Query(None, max_length=255, description="Name search"),
    customer_type: Optional[str] = Query(None, description="Filter by customer type"),
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    ctx: AuthorizationContext = Depends(get_authorization_context),
    repository: TenantScopedRepository = Depends(get_customer_repository),
):
    """List customers visible to the caller."""
    criteria = []
    if q:
        criteria.append(Customer.name.ilike(f"%{q}%"))
    if customer_type:
        criteria.append(Customer.customer_type == customer_type)
    if status_filter:
        criteria.append(Customer.status == status_filter)

    total = await repository.count(ctx, *criteria, tenant_id=tenant_id)
    customers = await repository.list(
        ctx,
        *criteria,
        tenant_id=tenant_id,
        offset=pagination["offset"],
        limit=pagination["limit"],
    )

    return CustomerCollectionResponse(
        data=[_customer_resource(customer) for customer in customers],
        meta={"pagination": PaginationMeta.build(pagination, total).model_dump()}
    )


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CustomerCreateRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    repository: TenantScopedRepository = Depends(get_customer_repository),
):
    """Create a customer in one of the caller's tenants."""
    attributes = request.data.attributes.model_dump(exclude_none=True)
    tenant_id = _target_tenant(ctx, attributes.pop("tenant_id", None))

    customer = await repository.create(ctx, tenant_id, attributes)
    return CustomerResponse(data=_customer_resource(customer))


@router.get("/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: UUID,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    repository: TenantScopedRepository = Depends(get_customer_repository),
):
    """Get a specific customer."""
    customer = await repository.get(ctx, customer_id)
    return CustomerResponse(data=_customer_resource(customer))


@router.patch("/{customer_id}", response_model=CustomerResponse)
async def update_customer(
    customer_id: UUID,
    request: CustomerPatchRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    repository: TenantScopedRepository = Depends(get_customer_repository),
):
    """Update a customer (partial update)."""
    changes = request.data.attributes.model_dump(exclude_unset=True)
    customer = await repository.update(ctx, customer_id, changes)
    return CustomerResponse(data=_customer_resource(customer))


@router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_customer(
    customer_id: UUID,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    repository: TenantScopedRepository = Depends(get_customer_repository),
):
    """Delete a customer."""
    await repository.delete(ctx, customer_id)
