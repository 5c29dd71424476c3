"""
Tests for the orchestration engine facade.
"""

import asyncio

import pytest

from core.exceptions import ConfigurationError
from federation.transport import InMemoryTransport
from monitoring.models import ProbeResult
from orchestrator.config import EngineConfig
from orchestrator.core import OrchestrationEngine, create_engine
from orchestrator.models import HealthStatus, ModuleState
from storage.state_store import JsonFileStateStore

from conftest import settle


MANIFEST = {
    "modules": [
        {
            "name": "api",
            "version": "1.0.0",
            "dependencies": ["db"],
            "capabilities": ["http"],
            "interfaces": ["http-api"],
        },
        {
            "name": "db",
            "version": "1.0.0",
            "capabilities": ["storage"],
            "interfaces": ["kv-store"],
            "criticality": "high",
        },
    ],
    "scaling": {"api": {"max_instances": 4}},
}


def make_engine(clock, cluster_id="alpha", **kwargs):
    config = EngineConfig.from_dict({"registry": {"cluster_id": cluster_id}})
    return OrchestrationEngine(config=config, clock=clock, **kwargs)


class TestManifest:
    """Tests for apply_manifest()."""

    @pytest.mark.asyncio
    async def test_registers_in_dependency_order(self, clock):
        engine = make_engine(clock)
        await engine.start()
        try:
            results = await engine.apply_manifest(MANIFEST)
            await settle(engine.bus)

            assert [r.name for r in results] == ["db", "api"]
            assert engine.resolve_order() == ["db", "api"]
            assert engine.registry.get("api").state == ModuleState.READY
            assert engine.autoscaler.policies()["api"].max_instances == 4
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_reapply_only_touches_changed_modules(self, clock):
        engine = make_engine(clock)
        await engine.apply_manifest(MANIFEST)

        assert await engine.apply_manifest(MANIFEST) == []

        changed = {"modules": [dict(MANIFEST["modules"][1], version="1.1.0")]}
        results = await engine.apply_manifest(changed)
        assert [r.version for r in results] == ["1.1.0"]
        await engine.bus.close()

    @pytest.mark.asyncio
    async def test_foreign_vocabulary_rejected(self, clock):
        engine = make_engine(clock)
        with pytest.raises(ConfigurationError, match="vocabulary"):
            await engine.apply_manifest({"vocabulary": {"capabilities": ["gpu"]}, "modules": []})
        await engine.bus.close()

    @pytest.mark.asyncio
    async def test_create_engine_adopts_manifest_vocabulary(self, clock):
        manifest = {
            "vocabulary": {"capabilities": ["gpu"], "interfaces": {"trainer": {"required_capabilities": ["gpu"]}}},
            "modules": [{"name": "trainer", "version": "0.1.0", "capabilities": ["gpu"], "interfaces": ["trainer"]}],
        }
        engine = create_engine(EngineConfig(), manifest=manifest, clock=clock)

        assert engine.vocabulary.capabilities == frozenset({"gpu"})
        await engine.apply_manifest(manifest)
        assert "trainer" in engine.registry
        await engine.bus.close()


class TestLifecycle:
    """Tests for start/stop and persistence."""

    def test_invalid_config_rejected(self, clock):
        config = EngineConfig.from_dict({"eventbus": {"queue_capacity": 0}})
        with pytest.raises(ConfigurationError):
            OrchestrationEngine(config=config, clock=clock)

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, clock, tmp_path):
        store = JsonFileStateStore(str(tmp_path / "state.json"))

        first = make_engine(clock, store=store)
        await first.start()
        await first.apply_manifest(MANIFEST)
        await settle(first.bus)
        await first.unregister("api")
        await first.stop()
        assert not first.is_running

        second = make_engine(clock, store=store)
        await second.start()
        try:
            assert [r.name for r in second.discover()] == ["db"]
            assert second.registry.get("db").state == ModuleState.READY
            assert [t.name for t in second.registry.tombstones()] == ["api"]
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_status(self, clock):
        engine = make_engine(clock)
        await engine.start()
        try:
            await engine.apply_manifest(MANIFEST)
            await settle(engine.bus)
            assert await engine.report_health("db", ProbeResult.uniform(2)) == HealthStatus.HEALTHY

            status = engine.status()
            assert status["running"] is True
            assert status["cluster_id"] == "alpha"
            assert status["modules"] == {"api": "ready", "db": "ready"}
            assert status["mesh"]["edges"] >= 1
            assert status["federation"] is None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, clock):
        engine = make_engine(clock)
        await engine.start()
        await engine.start()
        assert engine.is_running
        await engine.stop()
        await engine.stop()


class TestMaintenance:
    """Tests for periodic tombstone purging."""

    @pytest.mark.asyncio
    async def test_expired_tombstones_purged_while_running(self, clock):
        config = EngineConfig.from_dict({
            "registry": {
                "cluster_id": "alpha",
                "tombstone_retention_seconds": 600,
                "purge_interval_seconds": 0.01,
            },
        })
        engine = OrchestrationEngine(config=config, clock=clock)
        await engine.start()
        try:
            await engine.apply_manifest(MANIFEST)
            await settle(engine.bus)
            await engine.unregister("api")
            await asyncio.sleep(0.05)
            assert [t.name for t in engine.registry.tombstones()] == ["api"]

            clock.advance(seconds=601)
            for _ in range(100):
                if not engine.registry.tombstones():
                    break
                await asyncio.sleep(0.01)

            assert engine.registry.tombstones() == []
            assert "api" not in engine.registry.vector()
            assert engine.metrics.value("registry_tombstones_purged_total") == 1
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_run_maintenance_keeps_recent_tombstones(self, clock):
        engine = make_engine(clock)
        await engine.apply_manifest(MANIFEST)
        await engine.unregister("api")

        clock.advance(seconds=3599)
        assert await engine.run_maintenance() == 0
        clock.advance(seconds=2)
        assert await engine.run_maintenance() == 1
        assert engine.registry.tombstones() == []
        await engine.bus.close()


class TestFederatedEngines:
    """Two engines replicating through an in-memory transport."""

    @pytest.mark.asyncio
    async def test_manifest_replicates_to_peer(self, clock):
        transport = InMemoryTransport()
        engines = {}
        for local, remote in (("alpha", "beta"), ("beta", "alpha")):
            config = EngineConfig.from_dict({
                "registry": {"cluster_id": local},
                "federation": {"enabled": True, "peers": [{"cluster_id": remote}]},
            })
            engines[local] = OrchestrationEngine(config=config, clock=clock, transport=transport)
            transport.connect(engines[local].federation)

        alpha, beta = engines["alpha"], engines["beta"]
        try:
            await alpha.apply_manifest(MANIFEST)
            result = await alpha.federation.sync_peer("beta")

            assert result.success
            assert beta.registry.get("db").origin_cluster == "alpha"
            assert beta.resolve_order() == ["db", "api"]
            assert [p["cluster_id"] for p in beta.status()["federation"]] == ["alpha"]
        finally:
            await alpha.bus.close()
            await beta.bus.close()
