"""Tenants and memberships API."""

import uuid

import pytest
from httpx import AsyncClient

from factories import add_membership, auth_headers, create_tenant, make_super_admin


@pytest.mark.asyncio
async def test_signup_then_list(client: AsyncClient, owner_id):
    headers = auth_headers(owner_id)

    created = await client.post(
        "/api/v1/tenants", json={"name": "Green Leaf", "slug": "Green-Leaf"}, headers=headers
    )
    listed = await client.get("/api/v1/tenants", headers=headers)

    assert created.status_code == 201
    tenant = created.json()["data"]
    assert tenant["attributes"]["slug"] == "green-leaf"
    assert tenant["attributes"]["role"] == "owner"
    assert tenant["attributes"]["is_free_tier"] is True
    assert [t["id"] for t in listed.json()["data"]] == [tenant["id"]]
    assert listed.json()["meta"]["is_super_admin"] is False

    balance = await client.get(f"/api/v1/credits/{tenant['id']}/balance", headers=headers)
    assert balance.json()["data"]["attributes"]["balance"] == 0


@pytest.mark.asyncio
async def test_signup_conflicts_and_validation(client: AsyncClient, db_session, owner_id):
    await create_tenant(db_session, "green-leaf")
    headers = auth_headers(owner_id)

    taken = await client.post("/api/v1/tenants", json={"name": "Green Leaf", "slug": "green-leaf"}, headers=headers)
    malformed = await client.post("/api/v1/tenants", json={"name": "Edgy", "slug": "-edgy-"}, headers=headers)

    assert taken.status_code == 409
    assert taken.json()["errors"][0]["code"] == "CONFLICT"
    assert malformed.status_code == 422
    error = malformed.json()["errors"][0]
    assert error["code"] == "VALIDATION_FAILED"
    assert error["meta"]["validation_errors"][0]["field"] == "slug"


@pytest.mark.asyncio
async def test_non_member_sees_nothing(client: AsyncClient, db_session, owner_id, other_user_id):
    tenant_id = await create_tenant(db_session, "alpha-supply", owner_id=owner_id)
    headers = auth_headers(other_user_id)

    assert (await client.get(f"/api/v1/tenants/{tenant_id}", headers=headers)).status_code == 404
    assert (await client.get(f"/api/v1/tenants/{tenant_id}/members", headers=headers)).status_code == 404
    assert (await client.get("/api/v1/tenants", headers=headers)).json()["data"] == []


@pytest.mark.asyncio
async def test_membership_management(client: AsyncClient, db_session, owner_id, other_user_id):
    tenant_id = await create_tenant(db_session, "alpha-supply", owner_id=owner_id)
    owner = auth_headers(owner_id)
    base = f"/api/v1/tenants/{tenant_id}/members"

    added = await client.post(base, json={"user_id": str(other_user_id), "role": "viewer"}, headers=owner)
    viewer_attempt = await client.post(
        base, json={"user_id": str(uuid.uuid4())}, headers=auth_headers(other_user_id)
    )
    promoted = await client.patch(f"{base}/{other_user_id}", json={"role": "admin"}, headers=owner)
    suspended = await client.patch(f"{base}/{other_user_id}", json={"status": "suspended"}, headers=owner)
    after_suspension = await client.get(f"/api/v1/tenants/{tenant_id}", headers=auth_headers(other_user_id))

    assert added.status_code == 201
    assert added.json()["data"]["attributes"]["role"] == "viewer"
    assert viewer_attempt.status_code == 403
    assert promoted.json()["data"]["attributes"]["role"] == "admin"
    assert suspended.json()["data"]["attributes"]["status"] == "suspended"
    assert after_suspension.status_code == 404


@pytest.mark.asyncio
async def test_last_owner_is_kept(client: AsyncClient, db_session, owner_id):
    tenant_id = await create_tenant(db_session, "solo-co", owner_id=owner_id)

    response = await client.patch(
        f"/api/v1/tenants/{tenant_id}/members/{owner_id}", json={"status": "suspended"},
        headers=auth_headers(owner_id),
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_plan_change(client: AsyncClient, db_session, owner_id, other_user_id):
    tenant_id = await create_tenant(db_session, "growing-co", owner_id=owner_id, balance=0)
    await add_membership(db_session, tenant_id, other_user_id, role="member")
    url = f"/api/v1/tenants/{tenant_id}/plan"

    denied = await client.patch(url, json={"plan_type": "professional"}, headers=auth_headers(other_user_id))
    changed = await client.patch(url, json={"plan_type": "professional"}, headers=auth_headers(owner_id))
    consumed = await client.post(
        f"/api/v1/credits/{tenant_id}/consume", json={"action_key": "menu_create"}, headers=auth_headers(owner_id)
    )

    assert denied.status_code == 403
    assert changed.status_code == 200
    assert changed.json()["data"]["attributes"]["is_free_tier"] is False
    assert consumed.status_code == 200
    assert consumed.json()["data"]["attributes"]["metered"] is False


@pytest.mark.asyncio
async def test_suspension_is_a_platform_operation(client: AsyncClient, db_session, owner_id):
    tenant_id = await create_tenant(db_session, "risky-co", owner_id=owner_id)
    admin_id = uuid.uuid4()
    await make_super_admin(db_session, admin_id)
    url = f"/api/v1/tenants/{tenant_id}/status"

    by_owner = await client.patch(url, json={"status": "suspended"}, headers=auth_headers(owner_id))
    by_admin = await client.patch(
        url, json={"status": "suspended", "reason": "Chargebacks"}, headers=auth_headers(admin_id)
    )
    owner_view = await client.get(f"/api/v1/tenants/{tenant_id}", headers=auth_headers(owner_id))
    admin_list = await client.get("/api/v1/tenants", headers=auth_headers(admin_id))

    assert by_owner.status_code == 404
    assert by_admin.status_code == 200
    assert by_admin.json()["data"]["attributes"]["status"] == "suspended"
    assert owner_view.status_code == 404
    assert admin_list.json()["meta"]["is_super_admin"] is True
    assert [t["id"] for t in admin_list.json()["data"]] == [str(tenant_id)]
