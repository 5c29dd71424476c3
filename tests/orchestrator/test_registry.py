"""
Tests for the module registry.

============================================================
PURPOSE
============================================================
- Registration, conflicts, replacement
- Cycle rejection leaves state unchanged
- Discovery ordering and snapshot isolation
- Derived lifecycle state and its events
- Tombstones and persistence

============================================================
"""

import pytest

from core.exceptions import (
    CyclicDependency,
    InvalidDescriptorError,
    ModuleNotFound,
    RegistrationConflict,
    StateStoreError,
)
from eventbus.models import EventType
from orchestrator.config import RegistryConfig
from orchestrator.models import (
    DiscoveryFilter,
    HealthSnapshot,
    HealthStatus,
    ModuleState,
    SystemHealth,
)
from orchestrator.registry import ModuleRegistry

from conftest import descriptor


def event_types(bus):
    return [e.type for e in bus.get_event_history()]


# ============================================================
# REGISTRATION
# ============================================================

class TestRegistration:
    """Tests for register()."""

    @pytest.mark.asyncio
    async def test_register_new_module(self, registry, bus):
        result = await registry.register(descriptor("db", capabilities={"storage"}))

        assert result.name == "db"
        assert result.state == ModuleState.UNINITIALIZED
        assert result.logical_clock == 1
        assert result.record_id
        assert not result.replaced
        assert "db" in registry
        assert event_types(bus) == [EventType.MODULE_REGISTERED]

        event = bus.get_event_history()[0]
        assert event.source == "Registry"
        assert event.payload.name == "db"
        assert event.payload.capabilities == ("storage",)
        assert not event.metadata.is_federated

    @pytest.mark.asyncio
    async def test_same_version_conflicts(self, registry, bus):
        await registry.register(descriptor("db"))

        with pytest.raises(RegistrationConflict) as exc:
            await registry.register(descriptor("db"))

        assert exc.value.existing_version == "1.0.0"
        assert len(registry) == 1
        assert len(bus.get_event_history()) == 1

    @pytest.mark.asyncio
    async def test_different_version_conflicts_without_replace(self, registry):
        await registry.register(descriptor("db"))

        with pytest.raises(RegistrationConflict):
            await registry.register(descriptor("db", version="2.0.0"))

        assert registry.get("db").version == "1.0.0"

    @pytest.mark.asyncio
    async def test_replace(self, registry, bus):
        first = await registry.register(descriptor("db"))
        second = await registry.register(descriptor("db", version="2.0.0"), replace=True)

        assert second.replaced
        assert second.record_id == first.record_id
        assert second.logical_clock == 2
        assert registry.get("db").version == "2.0.0"

        updated = bus.get_event_history()[-1]
        assert updated.type == EventType.MODULE_UPDATED
        assert updated.payload.previous_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_unknown_capability_rejected(self, registry, bus):
        with pytest.raises(InvalidDescriptorError) as exc:
            await registry.register(descriptor("x", capabilities={"teleport"}))

        assert "unknown capability: teleport" in exc.value.problems
        assert "x" not in registry
        assert bus.get_event_history() == []

    @pytest.mark.asyncio
    async def test_non_compliant_interface_rejected(self, registry):
        # cache requires both cache and storage
        with pytest.raises(InvalidDescriptorError):
            await registry.register(
                descriptor("c", capabilities={"cache"}, interfaces={"cache"})
            )

    @pytest.mark.asyncio
    async def test_each_mutation_emits_one_event(self, registry, bus):
        await registry.register(descriptor("a"))
        await registry.register(descriptor("b"))
        await registry.unregister("a")

        assert event_types(bus) == [
            EventType.MODULE_REGISTERED,
            EventType.MODULE_REGISTERED,
            EventType.MODULE_UNREGISTERED,
        ]

    @pytest.mark.asyncio
    async def test_events_stamped_by_registry_clock(self, registry, bus, clock):
        clock.advance(days=30)
        await registry.register(descriptor("a"))

        [event] = bus.get_event_history()
        assert event.timestamp == clock.now()


class TestCycleRejection:
    """Cycle rejection scenario A -> B -> C -> D -> A'."""

    @pytest.mark.asyncio
    async def test_closing_a_cycle_is_rejected(self, registry, bus):
        await registry.register(descriptor("A"))
        await registry.register(descriptor("B", "A"))
        await registry.register(descriptor("C", "B"))
        assert registry.resolve_order() == ["A", "B", "C"]

        await registry.register(descriptor("D", "C"))
        events_before = len(bus.get_event_history())

        for replace in (False, True):
            with pytest.raises(CyclicDependency) as exc:
                await registry.register(descriptor("A", "D", version="2.0.0"), replace=replace)
            assert exc.value.cycle_members == frozenset({"A", "B", "C", "D"})

        assert registry.names() == ["A", "B", "C", "D"]
        assert registry.get("A").descriptor.dependencies == ()
        assert registry.get("A").version == "1.0.0"
        assert registry.resolve_order() == ["A", "B", "C", "D"]
        assert len(bus.get_event_history()) == events_before

    @pytest.mark.asyncio
    async def test_rejections_counted(self, registry, metrics):
        await registry.register(descriptor("a", "b"))
        with pytest.raises(CyclicDependency):
            await registry.register(descriptor("b", "a"))
        assert metrics.value("registry_rejections_total", {"reason": "cycle"}) == 1


# ============================================================
# UNREGISTER / TOMBSTONES
# ============================================================

class TestUnregister:
    """Tests for unregister() and tombstones."""

    @pytest.mark.asyncio
    async def test_unknown_module(self, registry):
        with pytest.raises(ModuleNotFound):
            await registry.unregister("ghost")

    @pytest.mark.asyncio
    async def test_tombstone_kept(self, registry, bus):
        await registry.register(descriptor("db"))
        tombstone = await registry.unregister("db")

        assert tombstone.logical_clock == 2
        assert tombstone.origin_cluster == "alpha"
        assert "db" not in registry
        assert [t.name for t in registry.tombstones()] == ["db"]
        assert registry.vector() == {"db": (2, "alpha")}

        event = bus.get_event_history()[-1]
        assert event.type == EventType.MODULE_UNREGISTERED
        assert event.payload.logical_clock == 2

    @pytest.mark.asyncio
    async def test_reregister_after_tombstone_advances_clock(self, registry):
        await registry.register(descriptor("db"))
        await registry.unregister("db")
        result = await registry.register(descriptor("db"))

        assert result.logical_clock == 3
        assert registry.tombstones() == []

    @pytest.mark.asyncio
    async def test_purge_respects_retention(self, bus, vocabulary, clock, metrics):
        registry = ModuleRegistry(
            bus,
            vocabulary=vocabulary,
            config=RegistryConfig(cluster_id="alpha", tombstone_retention_seconds=60),
            clock=clock,
            metrics=metrics,
        )
        await registry.register(descriptor("db"))
        await registry.unregister("db")

        assert await registry.purge_tombstones() == 0
        clock.advance(seconds=61)
        assert await registry.purge_tombstones() == 1
        assert registry.tombstones() == []


# ============================================================
# DISCOVERY
# ============================================================

class TestDiscover:
    """Tests for discover()."""

    @pytest.mark.asyncio
    async def test_filters_are_anded_and_sorted(self, registry):
        await registry.register(descriptor("web", capabilities={"http"}, interfaces={"http-api"}))
        await registry.register(descriptor("admin", capabilities={"http", "auth"}, interfaces={"http-api"}))
        await registry.register(descriptor("store", capabilities={"storage"}, interfaces={"kv-store"}))

        names = [r.name for r in registry.discover()]
        assert names == ["admin", "store", "web"]

        http = registry.discover(DiscoveryFilter(capability="http"))
        assert [r.name for r in http] == ["admin", "web"]

        both = registry.discover(DiscoveryFilter(capability="auth", interface="http-api"))
        assert [r.name for r in both] == ["admin"]

        await registry.set_dependency_status("web", satisfied=False, pending=("db",))
        degraded = registry.discover(DiscoveryFilter(state=ModuleState.DEGRADED))
        assert [r.name for r in degraded] == ["web"]

    @pytest.mark.asyncio
    async def test_results_are_snapshots(self, registry, clock):
        await registry.register(descriptor("db"))

        snapshot = registry.discover()[0]
        snapshot.state = ModuleState.TERMINATED
        snapshot.add_sample("cpu", 99.0, clock.now())

        live = registry.get("db")
        assert live.state == ModuleState.UNINITIALIZED
        assert live.samples("cpu") == []

    def test_get_unknown(self, registry):
        with pytest.raises(ModuleNotFound):
            registry.get("nope")


# ============================================================
# DERIVED STATE
# ============================================================

class TestDerivedState:
    """Tests for dependency and health driven state."""

    @pytest.mark.asyncio
    async def test_dependency_status_toggles_state(self, registry, bus):
        await registry.register(descriptor("api", "db"))

        state = await registry.set_dependency_status("api", satisfied=False, pending=("db",))
        assert state == ModuleState.DEGRADED
        assert registry.get("api").pending_dependencies == ("db",)

        state = await registry.set_dependency_status("api", satisfied=True)
        assert state == ModuleState.READY

        changes = [e for e in bus.get_event_history() if e.type == EventType.MODULE_STATE_CHANGED]
        assert [(e.payload.from_state, e.payload.to_state) for e in changes] == [
            ("uninitialized", "degraded"),
            ("degraded", "ready"),
        ]

    @pytest.mark.asyncio
    async def test_unchanged_state_emits_nothing(self, registry, bus):
        await registry.register(descriptor("db"))
        await registry.set_dependency_status("db", satisfied=True)
        count = len(bus.get_event_history())

        await registry.set_dependency_status("db", satisfied=True)
        assert len(bus.get_event_history()) == count

    @pytest.mark.asyncio
    async def test_health_drives_state(self, registry, clock):
        await registry.register(descriptor("db"))
        await registry.set_dependency_status("db", satisfied=True)

        unhealthy = HealthSnapshot(HealthStatus.UNHEALTHY, clock.now(), 0, 3)
        assert await registry.record_health("db", unhealthy, {"cpu": 95}) == ModuleState.DEGRADED

        healthy = HealthSnapshot(HealthStatus.HEALTHY, clock.now(), 3, 3)
        assert await registry.record_health("db", healthy, {"cpu": 40}) == ModuleState.READY

        assert [s.value for s in registry.get("db").samples("cpu")] == [95.0, 40.0]

    @pytest.mark.asyncio
    async def test_missing_dependency_wins_over_health(self, registry, clock):
        await registry.register(descriptor("api", "db"))
        await registry.set_dependency_status("api", satisfied=False, pending=("db",))

        healthy = HealthSnapshot(HealthStatus.HEALTHY, clock.now(), 1, 1)
        assert await registry.record_health("api", healthy) == ModuleState.DEGRADED

    @pytest.mark.asyncio
    async def test_record_health_unknown(self, registry, clock):
        with pytest.raises(ModuleNotFound):
            await registry.record_health("x", HealthSnapshot(HealthStatus.HEALTHY, clock.now()))

    @pytest.mark.asyncio
    async def test_set_dependency_status_unknown(self, registry):
        assert await registry.set_dependency_status("x", satisfied=True) is None


class TestGetHealth:
    """Tests for get_health()."""

    @pytest.mark.asyncio
    async def test_counts_and_latest_fold(self, registry, clock):
        await registry.register(descriptor("a"))
        await registry.register(descriptor("b"))
        await registry.set_dependency_status("a", satisfied=True)

        health = registry.get_health()
        assert health.status == HealthStatus.UNKNOWN
        assert (health.total_modules, health.ready, health.uninitialized) == (2, 1, 1)

        registry.update_system_health(SystemHealth(
            status=HealthStatus.DEGRADED,
            score=75.0,
            module_statuses={"a": HealthStatus.HEALTHY, "b": HealthStatus.DEGRADED},
            timestamp=clock.now(),
        ))
        health = registry.get_health()
        assert health.status == HealthStatus.DEGRADED
        assert health.score == 75.0
        assert health.module_statuses == {"a": "healthy", "b": "degraded"}
        assert health.to_dict()["last_health_check"] is not None


# ============================================================
# PERSISTENCE
# ============================================================

class TestPersistence:
    """Tests for to_state() / load_state()."""

    @pytest.mark.asyncio
    async def test_round_trip_publishes_nothing(self, registry, bus, vocabulary, clock, metrics):
        await registry.register(descriptor("db", capabilities={"storage"}))
        await registry.register(descriptor("api", "db"))
        await registry.register(descriptor("old"))
        await registry.unregister("old")
        state = registry.to_state()

        from eventbus.bus import EventBus
        fresh_bus = EventBus(metrics=metrics)
        restored = ModuleRegistry(
            fresh_bus,
            vocabulary=vocabulary,
            config=RegistryConfig(cluster_id="alpha"),
            clock=clock,
            metrics=metrics,
        )
        assert await restored.load_state(state) == 2

        assert restored.names() == ["api", "db"]
        assert restored.vector() == registry.vector()
        assert restored.get("db").descriptor == registry.get("db").descriptor
        assert fresh_bus.get_event_history() == []

    @pytest.mark.asyncio
    async def test_wrong_format_rejected(self, registry):
        with pytest.raises(StateStoreError):
            await registry.load_state({"format_version": 99, "records": []})

    @pytest.mark.asyncio
    async def test_malformed_rejected(self, registry):
        with pytest.raises(StateStoreError):
            await registry.load_state({"format_version": 1, "records": [{"bogus": True}]})

    @pytest.mark.asyncio
    async def test_cyclic_state_rejected(self, registry):
        good = await _state_with(registry)
        good["records"][0]["descriptor"]["dependencies"] = ["b"]
        good["records"][1]["descriptor"]["dependencies"] = ["a"]
        with pytest.raises(StateStoreError):
            await registry.load_state(good)


async def _state_with(registry):
    await registry.register(descriptor("a"))
    await registry.register(descriptor("b"))
    return registry.to_state()
