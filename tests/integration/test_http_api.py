"""
Integration tests for the operational HTTP endpoints.

Tests cover:
- Health reporting (200 / 503)
- Stats for all tenants and one tenant
- Unknown tenant and handler errors
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from backend.changeflow.api import create_http_app


class FakeSource:
    """Stands in for a running server."""

    def __init__(self, healthy=True, tenants=None, broken=False):
        self.healthy = healthy
        self.tenants = tenants if tenants is not None else {
            "acme": {"running": True, "processed": 4, "fatal_errors": 0},
            "globex": {"running": True, "processed": 1, "fatal_errors": 1},
        }
        self.broken = broken

    def health(self):
        return {"healthy": self.healthy, "workers": {code: s["running"] for code, s in self.tenants.items()}}

    def stats(self):
        if self.broken:
            raise RuntimeError("stats unavailable")
        return self.tenants


class TestHttpApi:
    """Tests for the aiohttp application."""

    @pytest.fixture
    def source(self):
        return FakeSource()

    @pytest.fixture
    async def client(self, source):
        async with TestClient(TestServer(create_http_app(source))) as client:
            yield client

    @pytest.mark.asyncio
    async def test_health_ok(self, client):
        """All workers running reports 200."""
        resp = await client.get("/v1/health")

        assert resp.status == 200
        data = await resp.json()
        assert data["healthy"] is True
        assert data["workers"] == {"acme": True, "globex": True}

    @pytest.mark.asyncio
    async def test_health_unavailable(self, client, source):
        """A stopped worker reports 503."""
        source.healthy = False

        resp = await client.get("/v1/health")

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_stats(self, client):
        """Stats list every tenant."""
        resp = await client.get("/v1/stats")

        assert resp.status == 200
        data = await resp.json()
        assert set(data["tenants"]) == {"acme", "globex"}
        assert data["tenants"]["acme"]["processed"] == 4

    @pytest.mark.asyncio
    async def test_tenant_stats(self, client):
        """Stats for one tenant."""
        resp = await client.get("/v1/stats/globex")

        assert resp.status == 200
        assert (await resp.json())["fatal_errors"] == 1

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client):
        """Unknown tenants are 404 with an error code."""
        resp = await client.get("/v1/stats/initech")

        assert resp.status == 404
        assert (await resp.json())["error_code"] == "UNKNOWN_TENANT"

    @pytest.mark.asyncio
    async def test_handler_error(self, client, source):
        """Handler failures become JSON 500 responses."""
        source.broken = True

        resp = await client.get("/v1/stats")

        assert resp.status == 500
        assert (await resp.json())["error_code"] == "INTERNAL"

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        resp = await client.get("/v1/nothing")
        assert resp.status == 404
