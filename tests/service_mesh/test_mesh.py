"""
Tests for the service mesh builder.
"""

import pytest

from eventbus.models import EventFilter, EventType
from orchestrator.models import ModuleState
from service_mesh.builder import ServiceMeshBuilder
from service_mesh.models import EdgeKind

from conftest import descriptor, settle


@pytest.fixture
def mesh(vocabulary, clock):
    return ServiceMeshBuilder(vocabulary=vocabulary, clock=clock)


def state_changes(bus, name):
    return [
        (e.payload.from_state, e.payload.to_state)
        for e in bus.get_event_history(EventFilter(pattern="module.state_changed"))
        if e.payload.name == name
    ]


class TestRebuild:
    """Tests for the pure rebuild."""

    @pytest.mark.asyncio
    async def test_dependency_edges(self, registry, mesh):
        await registry.register(descriptor("db"))
        await registry.register(descriptor("api", "db", "cache"))

        snapshot = mesh.rebuild(registry.discover())

        assert snapshot.modules == ("api", "db")
        assert snapshot.may_call("api", "db")
        assert not snapshot.may_call("db", "api")
        assert snapshot.callers_of("db") == {"api"}

        pending = snapshot.pending_edges
        assert len(pending) == 1
        assert pending[0].source == "api"
        assert pending[0].target == "cache"
        assert pending[0].describe_pending == "cache"
        assert snapshot.unsatisfied_modules == ["api"]

    @pytest.mark.asyncio
    async def test_interface_edges(self, registry, mesh):
        await registry.register(descriptor(
            "redis", capabilities={"storage"}, interfaces={"kv-store"},
        ))
        await registry.register(descriptor(
            "etcd", capabilities={"storage"}, interfaces={"kv-store"},
        ))
        await registry.register(descriptor("web", requires={"kv-store"}))

        snapshot = mesh.rebuild(registry.discover())
        edges = snapshot.edges_from("web")

        assert [(e.target, e.kind) for e in edges] == [
            ("etcd", EdgeKind.INTERFACE),
            ("redis", EdgeKind.INTERFACE),
        ]
        assert all(e.via == "kv-store" for e in edges)
        assert snapshot.pending_edges == []

    @pytest.mark.asyncio
    async def test_missing_interface_provider_is_pending(self, registry, mesh):
        await registry.register(descriptor("web", requires={"auth-provider"}))

        snapshot = mesh.rebuild(registry.discover())

        [edge] = snapshot.pending_for("web")
        assert edge.target is None
        assert edge.describe_pending == "interface:auth-provider"
        assert edge.to_dict()["pending"] is True

    @pytest.mark.asyncio
    async def test_module_does_not_provide_to_itself(self, registry, mesh):
        await registry.register(descriptor(
            "loner",
            capabilities={"storage"},
            interfaces={"kv-store"},
            requires={"kv-store"},
        ))

        snapshot = mesh.rebuild(registry.discover())
        assert snapshot.unsatisfied_modules == ["loner"]

    def test_empty(self, mesh):
        snapshot = mesh.rebuild([])
        assert snapshot.edges == ()
        assert snapshot.to_dict()["modules"] == []


class TestRegistryIntegration:
    """Tests for the attached mesh driving module state."""

    @pytest.mark.asyncio
    async def test_refresh_requires_attach(self, mesh):
        with pytest.raises(RuntimeError):
            await mesh.refresh()

    @pytest.mark.asyncio
    async def test_degraded_module_heals(self, registry, bus, mesh):
        mesh.attach(bus, registry)

        await registry.register(descriptor("A", "B"))
        await settle(bus)

        assert registry.get("A").state == ModuleState.DEGRADED
        assert registry.get("A").pending_dependencies == ("B",)
        assert state_changes(bus, "A") == [("uninitialized", "degraded")]

        await registry.register(descriptor("B"))
        await settle(bus)

        assert registry.get("A").state == ModuleState.READY
        assert registry.get("B").state == ModuleState.READY
        assert state_changes(bus, "A") == [
            ("uninitialized", "degraded"),
            ("degraded", "ready"),
        ]
        assert mesh.snapshot.may_call("A", "B")

        rebuilt = bus.get_event_history(EventFilter(pattern="mesh.rebuilt"))
        assert len(rebuilt) == 2
        assert rebuilt[0].payload.unsatisfied_modules == ("A",)
        assert rebuilt[1].payload.pending_count == 0

        mesh.detach()
        await bus.close()

    @pytest.mark.asyncio
    async def test_losing_a_dependency_degrades(self, registry, bus, mesh):
        mesh.attach(bus, registry)
        await registry.register(descriptor("db"))
        await registry.register(descriptor("api", "db"))
        await settle(bus)
        assert registry.get("api").state == ModuleState.READY

        await registry.unregister("db")
        await settle(bus)

        assert registry.get("api").state == ModuleState.DEGRADED
        assert state_changes(bus, "api")[-1] == ("ready", "degraded")

        mesh.detach()
        await bus.close()

    @pytest.mark.asyncio
    async def test_state_changes_do_not_trigger_rebuild(self, registry, bus, mesh):
        mesh.attach(bus, registry)
        await registry.register(descriptor("db"))
        await settle(bus)
        before = len(bus.get_event_history(EventFilter(pattern="mesh.rebuilt")))

        await registry.set_dependency_status("db", satisfied=False, pending=("x",))
        await settle(bus)

        after = len(bus.get_event_history(EventFilter(pattern="mesh.rebuilt")))
        assert after == before
        assert EventType.MESH_REBUILT.matches("mesh.*")

        mesh.detach()
        await bus.close()
