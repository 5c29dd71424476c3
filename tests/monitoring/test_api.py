"""
Tests for the read-only monitoring API.
"""

import pytest
from aiohttp import test_utils
from prometheus_client import CONTENT_TYPE_LATEST

from monitoring.api import create_monitoring_app
from monitoring.autoscaler import AutoScaler
from monitoring.models import ProbeResult, ScalingPolicy
from monitoring.health_monitor import HealthMonitor
from service_mesh.builder import ServiceMeshBuilder

from conftest import descriptor, settle


async def client_for(app):
    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    return client


@pytest.fixture
def mesh(vocabulary, clock):
    return ServiceMeshBuilder(vocabulary=vocabulary, clock=clock)


async def populated(registry, bus, mesh):
    mesh.attach(bus, registry)
    await registry.register(descriptor("db", capabilities={"storage"}, interfaces={"kv-store"}))
    await registry.register(descriptor("api", "db", capabilities={"http"}, interfaces={"http-api"}))
    await registry.register(descriptor("worker", "queue"))
    await settle(bus)


class TestModuleEndpoints:
    """Tests for /health, /modules and /order."""

    @pytest.mark.asyncio
    async def test_health(self, registry, bus, mesh, clock, metrics):
        await populated(registry, bus, mesh)
        monitor = HealthMonitor(registry, bus, clock=clock, metrics=metrics)
        await monitor.report("db", ProbeResult.uniform(2))
        await monitor.fold_system()

        client = await client_for(create_monitoring_app(registry, bus, mesh=mesh))
        try:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
            assert body["cluster_id"] == "alpha"
            assert body["data"]["total_modules"] == 3
            assert body["data"]["degraded"] == 1
            assert body["data"]["module_statuses"]["db"] == "healthy"
        finally:
            await client.close()
            mesh.detach()
            await bus.close()

    @pytest.mark.asyncio
    async def test_modules_filtered(self, registry, bus, mesh):
        await populated(registry, bus, mesh)
        client = await client_for(create_monitoring_app(registry, bus, mesh=mesh))
        try:
            body = await (await client.get("/modules")).json()
            assert [m["descriptor"]["name"] for m in body["data"]] == ["api", "db", "worker"]

            body = await (await client.get("/modules", params={"capability": "storage"})).json()
            assert [m["descriptor"]["name"] for m in body["data"]] == ["db"]

            body = await (await client.get("/modules", params={"state": "degraded"})).json()
            assert [m["descriptor"]["name"] for m in body["data"]] == ["worker"]

            resp = await client.get("/modules", params={"state": "sleepy"})
            assert resp.status == 400
        finally:
            await client.close()
            mesh.detach()
            await bus.close()

    @pytest.mark.asyncio
    async def test_single_module_with_mesh_edges(self, registry, bus, mesh):
        await populated(registry, bus, mesh)
        client = await client_for(create_monitoring_app(registry, bus, mesh=mesh))
        try:
            body = await (await client.get("/modules/api")).json()
            assert body["data"]["state"] == "ready"
            assert body["data"]["mesh"]["outgoing"][0]["to"] == "db"

            body = await (await client.get("/modules/db")).json()
            assert body["data"]["mesh"]["incoming"][0]["from"] == "api"

            resp = await client.get("/modules/ghost")
            assert resp.status == 404
            assert (await resp.json())["status"] == "error"
        finally:
            await client.close()
            mesh.detach()
            await bus.close()

    @pytest.mark.asyncio
    async def test_module_metrics(self, registry, bus, clock, metrics):
        await registry.register(descriptor("db"))
        monitor = HealthMonitor(registry, bus, clock=clock, metrics=metrics)
        await monitor.report("db", ProbeResult.uniform(1, cpu=55.0))

        client = await client_for(create_monitoring_app(registry, bus))
        try:
            body = await (await client.get("/modules/db/metrics")).json()
            assert body["data"]["cpu"][0]["value"] == 55.0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_order(self, registry, bus):
        await registry.register(descriptor("db"))
        await registry.register(descriptor("api", "db"))
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            body = await (await client.get("/order")).json()
            assert body["data"] == {"startup": ["db", "api"], "shutdown": ["api", "db"]}
        finally:
            await client.close()


class TestOtherEndpoints:
    """Tests for mesh, events, scaling, federation and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_mesh(self, registry, bus, mesh):
        await populated(registry, bus, mesh)
        client = await client_for(create_monitoring_app(registry, bus, mesh=mesh))
        try:
            body = await (await client.get("/mesh")).json()
            assert body["data"]["unsatisfied_modules"] == ["worker"]
        finally:
            await client.close()
            mesh.detach()
            await bus.close()

    @pytest.mark.asyncio
    async def test_mesh_not_configured(self, registry, bus):
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            assert (await client.get("/mesh")).status == 404
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_events(self, registry, bus):
        for name in ("a", "b", "c"):
            await registry.register(descriptor(name))
        await registry.unregister("a")
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            body = await (await client.get("/events", params={"pattern": "module.registered", "limit": "2"})).json()
            assert [e["payload"]["name"] for e in body["data"]] == ["b", "c"]

            body = await (await client.get("/events", params={"pattern": "module.*"})).json()
            assert body["count"] == 4

            assert (await client.get("/events", params={"limit": "many"})).status == 400
            assert (await client.get("/events", params={"pattern": "module.bogus"})).status == 400
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_subscriptions(self, registry, bus):
        bus.subscribe("module.*", name="audit")
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            body = await (await client.get("/subscriptions")).json()
            assert body["data"]["subscriptions"]["audit"]["mode"] == "pull"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_scaling(self, registry, bus, clock, metrics):
        scaler = AutoScaler(registry, bus, clock=clock, metrics=metrics)
        scaler.set_policy("api", ScalingPolicy(max_instances=4))
        client = await client_for(create_monitoring_app(registry, bus, autoscaler=scaler))
        try:
            body = await (await client.get("/scaling")).json()
            assert body["data"]["api"]["policy"]["max_instances"] == 4
            assert body["data"]["api"]["state"]["instances"] == 1
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_federation_disabled(self, registry, bus):
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            body = await (await client.get("/federation/peers")).json()
            assert body["enabled"] is False
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_metrics_formats(self, registry, bus):
        await registry.register(descriptor("db"))
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            resp = await client.get("/metrics")
            assert resp.content_type == "text/plain"
            assert resp.headers["Content-Type"] == CONTENT_TYPE_LATEST
            assert "registry_registrations_total 1.0" in await resp.text()

            body = await (await client.get("/metrics", params={"format": "json"})).json()
            assert body["data"]["registry_modules"]["series"][0]["value"] == 1.0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_read_only(self, registry, bus):
        client = await client_for(create_monitoring_app(registry, bus))
        try:
            assert (await client.post("/modules", json={"name": "x"})).status == 405
        finally:
            await client.close()
