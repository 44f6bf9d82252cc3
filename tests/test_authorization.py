"""Tests for caller resolution and the tenant read/write policy matrix."""

import uuid

import pytest

from factories import add_membership, create_tenant, make_super_admin, member_context, super_admin_context
from src.services.authorization import (
    CallerIdentity,
    TenantNotFoundError,
    TenantWriteDeniedError,
    WriteOperation,
    authorize_read,
    authorize_write,
    record_super_admin_action,
    require_read,
    require_super_admin,
    require_tenant_role,
    require_write,
    resolve_caller_tenants,
)

TENANT_A = uuid.uuid4()
TENANT_B = uuid.uuid4()


@pytest.mark.parametrize(
    "role, expected",
    [
        ("owner", {WriteOperation.INSERT, WriteOperation.UPDATE, WriteOperation.DELETE}),
        ("admin", {WriteOperation.INSERT, WriteOperation.UPDATE, WriteOperation.DELETE}),
        ("member", {WriteOperation.INSERT, WriteOperation.UPDATE}),
        ("viewer", set()),
    ],
)
def test_write_matrix_by_role(role, expected):
    ctx = member_context(uuid.uuid4(), {TENANT_A: role})

    assert authorize_read(ctx, TENANT_A)
    allowed = {op for op in WriteOperation if authorize_write(ctx, TENANT_A, op)}
    assert allowed == expected


def test_no_membership_grants_nothing():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "owner"})

    assert not authorize_read(ctx, TENANT_B)
    for op in WriteOperation:
        assert not authorize_write(ctx, TENANT_B, op)


def test_super_admin_reads_and_writes_every_tenant():
    ctx = super_admin_context()

    assert ctx.unrestricted
    assert authorize_read(ctx, TENANT_B)
    assert all(authorize_write(ctx, TENANT_B, op) for op in WriteOperation)


def test_denied_read_looks_like_missing_row():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "owner"})

    with pytest.raises(TenantNotFoundError):
        require_read(ctx, TENANT_B, "Customer")


def test_write_outside_tenants_is_not_found_not_forbidden():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "owner"})

    with pytest.raises(TenantNotFoundError):
        require_write(ctx, TENANT_B, WriteOperation.INSERT, "Customer")


def test_viewer_write_is_forbidden():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "viewer"})

    with pytest.raises(TenantWriteDeniedError):
        require_write(ctx, TENANT_A, WriteOperation.UPDATE, "Customer")


def test_member_cannot_delete():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "member"})

    with pytest.raises(TenantWriteDeniedError):
        require_write(ctx, TENANT_A, WriteOperation.DELETE, "Customer")


def test_require_tenant_role():
    ctx = member_context(uuid.uuid4(), {TENANT_A: "member"})

    with pytest.raises(TenantWriteDeniedError):
        require_tenant_role(ctx, TENANT_A)
    with pytest.raises(TenantNotFoundError):
        require_tenant_role(ctx, TENANT_B)
    require_tenant_role(super_admin_context(), TENANT_B)


def test_require_super_admin_hides_platform_operations():
    with pytest.raises(TenantNotFoundError):
        require_super_admin(member_context(uuid.uuid4(), {TENANT_A: "owner"}))
    require_super_admin(super_admin_context())


@pytest.mark.asyncio
async def test_resolve_active_memberships(db_session, owner_id):
    tenant_a = await create_tenant(db_session, "alpha-supply", owner_id=owner_id)
    tenant_b = await create_tenant(db_session, "beta-supply")
    await add_membership(db_session, tenant_b, owner_id, role="viewer")
    tenant_c = await create_tenant(db_session, "gamma-supply")
    await add_membership(db_session, tenant_c, owner_id, role="member", status="suspended")

    ctx = await resolve_caller_tenants(db_session, CallerIdentity(user_id=owner_id))

    assert not ctx.is_super_admin
    assert ctx.tenant_ids == frozenset({tenant_a, tenant_b})
    assert ctx.role_for(tenant_a) == "owner"
    assert ctx.role_for(tenant_b) == "viewer"
    assert ctx.role_for(tenant_c) is None


@pytest.mark.asyncio
async def test_suspended_tenant_grants_no_access(db_session, owner_id):
    tenant_id = await create_tenant(db_session, "frozen-co", owner_id=owner_id, status="suspended")

    ctx = await resolve_caller_tenants(db_session, CallerIdentity(user_id=owner_id))

    assert tenant_id not in ctx.tenant_ids


@pytest.mark.asyncio
async def test_resolve_super_admin(db_session):
    admin_id = uuid.uuid4()
    await make_super_admin(db_session, admin_id)

    ctx = await resolve_caller_tenants(db_session, CallerIdentity(user_id=admin_id))

    assert ctx.is_super_admin
    assert ctx.unrestricted


@pytest.mark.asyncio
async def test_requested_tenant_narrows_but_never_widens(db_session, owner_id):
    tenant_a = await create_tenant(db_session, "alpha-supply", owner_id=owner_id)
    tenant_b = await create_tenant(db_session, "beta-supply")

    ctx = await resolve_caller_tenants(
        db_session, CallerIdentity(user_id=owner_id, requested_tenant_id=tenant_a)
    )
    assert ctx.active_tenant_id == tenant_a

    with pytest.raises(TenantNotFoundError):
        await resolve_caller_tenants(
            db_session, CallerIdentity(user_id=owner_id, requested_tenant_id=tenant_b)
        )


@pytest.mark.asyncio
async def test_audit_row_only_for_super_admin(db_session):
    ordinary = member_context(uuid.uuid4(), {TENANT_A: "owner"})
    assert record_super_admin_action(db_session, ordinary, "customers.update", tenant_id=TENANT_A) is None

    admin = super_admin_context()
    entry = record_super_admin_action(
        db_session, admin, "customers.update", tenant_id=TENANT_A, resource_id=uuid.uuid4()
    )
    assert entry.super_admin_user_id == admin.user_id
    assert entry.action == "customers.update"
    assert isinstance(entry.resource_id, str)
    await db_session.rollback()
