"""Tests for the tenant-scoped repository."""

import uuid

import pytest
import pytest_asyncio
from sqlalchemy import select

from factories import create_customer, create_tenant, member_context, super_admin_context
from src.models.customer import Customer
from src.models.super_admin import SuperAdminAction
from src.models.tenant import Tenant
from src.services.authorization import AuthorizationContext, TenantNotFoundError, TenantWriteDeniedError
from src.services.tenant_scope import TenantScopedRepository


@pytest.fixture
def repository(db_session):
    return TenantScopedRepository(db_session, Customer, "Customer")


@pytest_asyncio.fixture
async def two_tenants(db_session, owner_id, other_user_id):
    tenant_a = await create_tenant(db_session, "alpha-supply", owner_id=owner_id)
    tenant_b = await create_tenant(db_session, "beta-supply", owner_id=other_user_id)
    await create_customer(db_session, tenant_a, "Green Leaf Retail")
    await create_customer(db_session, tenant_a, "Corner Dispensary", customer_type="medical")
    b_customer = await create_customer(db_session, tenant_b, "Beta Wholesale", customer_type="wholesale")
    return tenant_a, tenant_b, b_customer


def test_rejects_models_without_tenant_column():
    with pytest.raises(TypeError):
        TenantScopedRepository(None, Tenant)


@pytest.mark.asyncio
async def test_unfiltered_list_returns_only_callers_rows(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner"})

    customers = await repository.list(ctx)

    assert len(customers) == 2
    assert {c.tenant_id for c in customers} == {tenant_a}
    assert await repository.count(ctx) == 2


@pytest.mark.asyncio
async def test_caller_criteria_cannot_widen_scope(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner"})

    by_tenant_column = await repository.list(ctx, Customer.tenant_id == tenant_b)
    by_name = await repository.list(ctx, Customer.name == "Beta Wholesale")
    explicit = await repository.list(ctx, tenant_id=tenant_b)

    assert by_tenant_column == []
    assert by_name == []
    assert explicit == []
    assert await repository.count(ctx, tenant_id=tenant_b) == 0


@pytest.mark.asyncio
async def test_get_other_tenants_row_is_not_found(repository, two_tenants, owner_id):
    tenant_a, _, b_customer = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner"})

    with pytest.raises(TenantNotFoundError):
        await repository.get(ctx, b_customer)
    with pytest.raises(TenantNotFoundError):
        await repository.get(ctx, uuid.uuid4())


@pytest.mark.asyncio
async def test_update_and_delete_of_other_tenants_row_is_not_found(
    repository, two_tenants, owner_id, db_session
):
    tenant_a, _, b_customer = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner"})

    with pytest.raises(TenantNotFoundError):
        await repository.update(ctx, b_customer, {"name": "Hijacked"})
    with pytest.raises(TenantNotFoundError):
        await repository.delete(ctx, b_customer)

    name = (await db_session.execute(select(Customer.name).where(Customer.id == b_customer))).scalar_one()
    assert name == "Beta Wholesale"


@pytest.mark.asyncio
async def test_create_in_foreign_tenant_is_rejected(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner"})

    with pytest.raises(TenantNotFoundError):
        await repository.create(ctx, tenant_b, {"name": "Sneaky"})


@pytest.mark.asyncio
async def test_create_ignores_supplied_tenant_and_audit_fields(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "member"})

    customer = await repository.create(
        ctx, tenant_a, {"name": "New Buyer", "tenant_id": tenant_b, "created_by": uuid.uuid4()}
    )

    assert customer.tenant_id == tenant_a
    assert customer.created_by == owner_id


@pytest.mark.asyncio
async def test_update_cannot_move_row_between_tenants(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "admin"})
    customer_id = (await repository.list(ctx, Customer.name == "Green Leaf Retail"))[0].id

    updated = await repository.update(ctx, customer_id, {"tenant_id": tenant_b, "notes": "Net 30"})

    assert updated.tenant_id == tenant_a
    assert updated.notes == "Net 30"
    assert updated.updated_by == owner_id


@pytest.mark.asyncio
async def test_role_restrictions_apply(repository, two_tenants, owner_id):
    tenant_a, _, _ = two_tenants
    viewer = member_context(owner_id, {tenant_a: "viewer"})
    member = member_context(owner_id, {tenant_a: "member"})
    customer_id = (await repository.list(viewer))[0].id

    with pytest.raises(TenantWriteDeniedError):
        await repository.create(viewer, tenant_a, {"name": "Nope"})
    with pytest.raises(TenantWriteDeniedError):
        await repository.update(viewer, customer_id, {"name": "Nope"})
    with pytest.raises(TenantWriteDeniedError):
        await repository.delete(member, customer_id)

    await repository.delete(member_context(owner_id, {tenant_a: "owner"}), customer_id)
    assert await repository.count(viewer) == 1


@pytest.mark.asyncio
async def test_active_tenant_narrows_listing(repository, two_tenants, owner_id):
    tenant_a, tenant_b, _ = two_tenants
    ctx = member_context(owner_id, {tenant_a: "owner", tenant_b: "viewer"})

    assert await repository.count(ctx) == 3

    narrowed = AuthorizationContext(user_id=ctx.user_id, memberships=ctx.memberships, active_tenant_id=tenant_b)
    customers = await repository.list(narrowed)
    assert [c.name for c in customers] == ["Beta Wholesale"]


@pytest.mark.asyncio
async def test_super_admin_sees_all_and_writes_are_audited(repository, two_tenants, db_session):
    _, tenant_b, b_customer = two_tenants
    admin = super_admin_context()

    assert await repository.count(admin) == 3

    await repository.update(admin, b_customer, {"status": "blocked"})

    actions = (await db_session.execute(select(SuperAdminAction))).scalars().all()
    assert len(actions) == 1
    assert actions[0].action == "customers.update"
    assert actions[0].tenant_id == tenant_b
    assert actions[0].resource_id == str(b_customer)
    assert actions[0].super_admin_user_id == admin.user_id
