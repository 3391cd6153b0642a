"""Health, connected-clients and request-ID tests."""

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Anyone gets server and database state, but not realtime internals."""
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["server"] == "ok"
    assert data["database"] == "ok"
    assert "version" in data
    assert "realtime" not in data


@pytest.mark.asyncio
async def test_health_realtime_block_needs_system_monitor(client, admin_headers, operator_headers):
    resp = await client.get("/api/health", headers=operator_headers)
    assert "realtime" not in resp.json()

    resp = await client.get("/api/health", headers=admin_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["realtime"]["subscribers"] == 0
    assert data["realtime"]["broadcaster"] == "idle"
    assert data["realtime"]["dispatched"] == 0


@pytest.mark.asyncio
async def test_clients_count_tracks_registry(app, client, subscriber):
    r = await client.get("/api/clients")
    assert r.json() == {"count": 0}

    sub, _ = subscriber()
    app.state.registry.add(sub)
    r = await client.get("/api/clients")
    assert r.json() == {"count": 1}

    app.state.registry.remove(sub.connection_id)
    r = await client.get("/api/clients")
    assert r.json() == {"count": 0}


@pytest.mark.asyncio
async def test_request_id_generated(client):
    """Each request gets a unique X-Request-ID header."""
    r1 = await client.get("/api/health")
    r2 = await client.get("/api/health")
    assert "X-Request-ID" in r1.headers
    assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_propagated(client):
    """Incoming X-Request-ID is propagated through the response."""
    r = await client.get("/api/health", headers={"X-Request-ID": "test-trace-12345"})
    assert r.headers["X-Request-ID"] == "test-trace-12345"
