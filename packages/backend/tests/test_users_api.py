"""User administration tests — admin-only listing and role changes."""

import pytest

from orderstream.auth.jwt import create_access_token
from orderstream.db.models import Role


@pytest.mark.asyncio
async def test_admin_lists_users(client, admin_headers, make_user):
    await make_user(Role.VIEWER)
    r = await client.get("/api/users", headers=admin_headers)
    assert r.status_code == 200
    roles = sorted(u["role"] for u in r.json())
    assert roles == ["admin", "viewer"]


@pytest.mark.asyncio
@pytest.mark.parametrize("role", [Role.OPERATOR, Role.VIEWER])
async def test_non_admins_cannot_list_users(client, auth_headers, role):
    r = await client.get("/api/users", headers=await auth_headers(role))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_change_role_applies_to_next_request(client, admin_headers, make_user):
    viewer = await make_user(Role.VIEWER)
    viewer_headers = {"Authorization": f"Bearer {create_access_token(viewer.id)}"}

    order = {
        "customerName": "Ada",
        "customerEmail": "ada@example.com",
        "productName": "Widget",
        "productSku": "W-1",
        "amount": "1.00",
    }
    assert (await client.post("/api/orders", json=order, headers=viewer_headers)).status_code == 403

    r = await client.patch(
        f"/api/users/{viewer.id}/role", json={"role": "operator"}, headers=admin_headers
    )
    assert r.status_code == 200
    assert r.json()["role"] == "operator"

    # Same token, role looked up again
    assert (await client.post("/api/orders", json=order, headers=viewer_headers)).status_code == 201


@pytest.mark.asyncio
async def test_change_role_unknown_user(client, admin_headers):
    r = await client.patch("/api/users/nope/role", json={"role": "viewer"}, headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_change_role_rejects_unknown_role(client, admin_headers, make_user):
    user = await make_user()
    r = await client.patch(
        f"/api/users/{user.id}/role", json={"role": "superuser"}, headers=admin_headers
    )
    assert r.status_code == 422
