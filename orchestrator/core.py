"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Main engine class wiring every component together.

- Single entrypoint for an embedding application or the CLI
- Controls startup and shutdown order
- Restores and persists registry state
- Handles signals (SIGINT, SIGTERM) when run forever

============================================================
STARTUP ORDER
============================================================
1. Restore persisted state (publishes nothing)
2. Attach service mesh and health monitor to the bus
3. Rebuild the mesh once so restored modules get their state
4. Start health, autoscaler and federation loops
5. Start the read-only HTTP API (optional)

Shutdown runs the same steps in reverse, drains the bus and
saves state.

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional, Union
from pathlib import Path

from aiohttp import web

from core.clock import ClockProtocol, SystemClock
from core.constants import STATE_KEY_FEDERATION, STATE_KEY_REGISTRY, SYSTEM_NAME, SYSTEM_VERSION
from core.exceptions import ConfigurationError, StateStoreError
from eventbus.bus import EventBus
from federation.sync import FederationSync, PeerTransport
from federation.transport import HttpPeerTransport, setup_federation_routes
from monitoring.api import MonitoringAPI, setup_monitoring_routes
from monitoring.autoscaler import AutoScaler, ScalingActionHandler
from monitoring.health_monitor import HealthMonitor, HealthProbe
from monitoring.metrics import MetricsCollector
from monitoring.models import ProbeResult, ScalingPolicy
from service_mesh.builder import ServiceMeshBuilder
from storage.state_store import StateStore, create_state_store

from .config import EngineConfig
from .manifest import Manifest, load_manifest
from .models import (
    DiscoveryFilter,
    HealthStatus,
    ModuleDescriptor,
    ModuleRecord,
    RegistrationResult,
    RegistryHealth,
    Tombstone,
)
from .registry import ModuleRegistry
from .vocabulary import Vocabulary


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# ENGINE
# ============================================================

class OrchestrationEngine:
    """
    Module orchestration engine for one cluster.

    Owns the event bus, registry, service mesh, health monitor,
    autoscaler and (optionally) federation sync.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        store: Optional[StateStore] = None,
        transport: Optional[PeerTransport] = None,
        scaling_handler: Optional[ScalingActionHandler] = None,
        vocabulary: Optional[Vocabulary] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration (defaults when omitted)
            clock: Time source shared by every component
            store: State store (built from config.storage when omitted)
            transport: Federation transport (HTTP when omitted)
            scaling_handler: Async callback executing scaling decisions
            vocabulary: Capability vocabulary (from config when omitted)
            metrics: Metrics collector shared by every component

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self._config = config or EngineConfig()
        self._config.validate_or_raise()
        self._logger = logging.getLogger("orchestrator")

        self._clock = clock or SystemClock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)
        self._vocabulary = vocabulary or self._build_vocabulary()

        self._bus = EventBus(self._config.eventbus, metrics=self._metrics, clock=self._clock)
        self._registry = ModuleRegistry(
            self._bus,
            vocabulary=self._vocabulary,
            config=self._config.registry,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._mesh = ServiceMeshBuilder(vocabulary=self._vocabulary, clock=self._clock)
        self._health = HealthMonitor(
            self._registry,
            self._bus,
            config=self._config.health,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._autoscaler = AutoScaler(
            self._registry,
            self._bus,
            config=self._config.autoscaler,
            handler=scaling_handler,
            clock=self._clock,
            metrics=self._metrics,
        )

        self._federation: Optional[FederationSync] = None
        if self._config.federation.enabled:
            if transport is None:
                transport = HttpPeerTransport(
                    endpoints={
                        p["cluster_id"]: p["endpoint"]
                        for p in self._config.federation.peers
                        if p.get("endpoint")
                    },
                    timeout=self._config.federation.rpc_timeout_seconds,
                )
            self._federation = FederationSync(
                self._registry,
                self._bus,
                transport,
                config=self._config.federation,
                clock=self._clock,
                metrics=self._metrics,
            )

        self._store = store if store is not None else create_state_store(self._config.storage)
        self._runner: Optional[web.AppRunner] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None

    def _build_vocabulary(self) -> Vocabulary:
        vocab_config = self._config.vocabulary
        if vocab_config.definition:
            return Vocabulary.from_dict(
                vocab_config.definition,
                compliance_threshold=vocab_config.compliance_threshold,
            )
        return Vocabulary.default(compliance_threshold=vocab_config.compliance_threshold)

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> ModuleRegistry:
        return self._registry

    @property
    def mesh(self) -> ServiceMeshBuilder:
        return self._mesh

    @property
    def health_monitor(self) -> HealthMonitor:
        return self._health

    @property
    def autoscaler(self) -> AutoScaler:
        return self._autoscaler

    @property
    def federation(self) -> Optional[FederationSync]:
        return self._federation

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def vocabulary(self) -> Vocabulary:
        return self._vocabulary

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------------------------------------
    # Registry operations
    # --------------------------------------------------------

    async def register(self, descriptor: ModuleDescriptor, replace: bool = False) -> RegistrationResult:
        return await self._registry.register(descriptor, replace=replace)

    async def unregister(self, name: str) -> Tombstone:
        self._health.unregister_probe(name)
        return await self._registry.unregister(name)

    def discover(self, discovery_filter: Optional[DiscoveryFilter] = None) -> List[ModuleRecord]:
        return self._registry.discover(discovery_filter)

    def resolve_order(self) -> List[str]:
        return self._registry.resolve_order()

    def get_health(self) -> RegistryHealth:
        return self._registry.get_health()

    def register_probe(self, name: str, probe: HealthProbe) -> None:
        self._health.register_probe(name, probe)

    async def report_health(self, name: str, result: ProbeResult) -> HealthStatus:
        return await self._health.report(name, result)

    def set_scaling_policy(self, name: str, policy: Union[ScalingPolicy, Dict[str, Any]]) -> None:
        if not isinstance(policy, ScalingPolicy):
            policy = self._autoscaler.policy_from_config(policy)
        self._autoscaler.set_policy(name, policy)

    async def apply_manifest(self, source: Union[str, Path, Manifest, Dict[str, Any]]) -> List[RegistrationResult]:
        """
        Register a manifest's modules in dependency order.

        Modules already registered with an identical descriptor are
        left alone; changed ones are replaced.

        Raises:
            ConfigurationError: On malformed manifests
            CyclicDependency: If the manifest's modules form a cycle
        """
        if isinstance(source, Manifest):
            manifest = source
        else:
            manifest = load_manifest(source, compliance_threshold=self._vocabulary.compliance_threshold)
        if manifest.vocabulary is not None and manifest.vocabulary.to_dict() != self._vocabulary.to_dict():
            raise ConfigurationError(
                "Manifest vocabulary differs from the running engine's; "
                "build the engine with create_engine(manifest=...)",
                config_key="vocabulary",
            )

        by_name = {m.name: m for m in manifest.modules}
        results = []
        for name in manifest.startup_order():
            descriptor = by_name[name]
            if name in self._registry and self._registry.get(name).descriptor == descriptor:
                self._logger.debug(f"Manifest module {name} unchanged")
                continue
            results.append(await self._registry.register(descriptor, replace=name in self._registry))

        for name, overrides in manifest.scaling.items():
            self.set_scaling_policy(name, overrides)

        self._logger.info(f"Manifest applied: {len(results)} of {len(by_name)} modules registered")
        return results

    # --------------------------------------------------------
    # Persistence
    # --------------------------------------------------------

    async def restore_state(self) -> bool:
        """Load persisted state, if a store is configured and holds any."""
        if self._store is None:
            return False
        state = await asyncio.get_running_loop().run_in_executor(None, self._store.load)
        if not state:
            return False
        if STATE_KEY_REGISTRY in state:
            await self._registry.load_state(state[STATE_KEY_REGISTRY])
        if self._federation is not None and STATE_KEY_FEDERATION in state:
            self._federation.load_state(state[STATE_KEY_FEDERATION])
        return True

    async def save_state(self) -> bool:
        """Persist registry and federation state."""
        if self._store is None:
            return False
        state: Dict[str, Any] = {STATE_KEY_REGISTRY: self._registry.to_state()}
        if self._federation is not None:
            state[STATE_KEY_FEDERATION] = self._federation.to_state()
        await asyncio.get_running_loop().run_in_executor(None, self._store.save, state)
        return True

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """
        Start the engine.

        This is the main startup sequence.
        """
        if self._running:
            self._logger.warning("Engine already running")
            return

        self._logger.info("=== ENGINE STARTUP SEQUENCE ===")
        try:
            await self.restore_state()

            self._mesh.attach(self._bus, self._registry)
            self._health.attach(self._bus)
            await self._mesh.refresh()
            await self._health.fold_system()

            await self._health.start()
            await self._autoscaler.start()
            if self._federation is not None:
                await self._federation.start()
            self._maintenance_task = asyncio.get_running_loop().create_task(
                self._maintenance_loop(), name="engine-maintenance"
            )

            await self._start_api()
            self._running = True
            self._logger.info(
                f"=== ENGINE STARTUP COMPLETE === cluster={self._registry.cluster_id} "
                f"modules={len(self._registry)}"
            )
        except Exception as e:
            self._logger.error(f"Startup failed: {e}", exc_info=True)
            await self._teardown()
            raise

    async def stop(self) -> None:
        """
        Stop the engine gracefully.
        """
        if not self._running:
            return
        self._logger.info("=== ENGINE SHUTDOWN SEQUENCE ===")
        self._running = False
        await self._teardown()
        try:
            await self.save_state()
        except StateStoreError as e:
            self._logger.error(f"Failed to save state on shutdown: {e.message}")
        await self._bus.close()
        self._logger.info("=== ENGINE SHUTDOWN COMPLETE ===")

    async def _teardown(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        if self._federation is not None:
            await self._federation.stop()
        await self._autoscaler.stop()
        await self._health.stop()
        self._mesh.detach()
        drained = await self._bus.wait_idle(timeout=self._config.eventbus.idle_timeout_seconds)
        if not drained:
            self._logger.warning("Event bus did not drain before shutdown")

    async def run_maintenance(self) -> int:
        """Drop tombstones past registry.tombstone_retention_seconds. Returns the count."""
        purged = await self._registry.purge_tombstones()
        if purged:
            self._logger.info(f"Purged {purged} expired tombstones")
        return purged

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.registry.purge_interval_seconds)
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Maintenance failed: {e}", exc_info=True)

    async def _start_api(self) -> None:
        api_config = self._config.api
        if api_config.port is None:
            return
        app = web.Application()
        setup_monitoring_routes(app, MonitoringAPI(
            self._registry,
            self._bus,
            mesh=self._mesh,
            federation=self._federation,
            autoscaler=self._autoscaler,
            metrics=self._metrics,
        ))
        if self._federation is not None:
            setup_federation_routes(app, self._federation)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, api_config.host, api_config.port)
        await site.start()
        self._logger.info(f"HTTP API listening on http://{api_config.host}:{api_config.port}")

    async def run_forever(self, run_seconds: Optional[float] = None) -> None:
        """
        Run until SIGINT/SIGTERM (or for ``run_seconds``), then stop.
        """
        if not self._running:
            await self.start()

        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()
        try:
            if run_seconds is None:
                await self._shutdown_event.wait()
            else:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=run_seconds)
                except asyncio.TimeoutError:
                    self._logger.info(f"Run time of {run_seconds}s elapsed")
        finally:
            self._restore_signal_handlers()
            await self.stop()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        self._logger.info(f"Received signal {sig.name}")
        self.request_shutdown()

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Engine status."""
        return {
            "system": SYSTEM_NAME,
            "version": SYSTEM_VERSION,
            "cluster_id": self._registry.cluster_id,
            "running": self._running,
            "current_time": self._clock.now().isoformat(),
            "health": self._registry.get_health().to_dict(),
            "modules": {r.name: r.state.value for r in self._registry.discover()},
            "mesh": {
                "edges": len(self._mesh.snapshot.edges),
                "pending": len(self._mesh.snapshot.pending_edges),
            },
            "federation": (
                [p.to_dict() for p in self._federation.peers()] if self._federation else None
            ),
        }


# ============================================================
# ENGINE FACTORY
# ============================================================

def create_engine(
    config: Optional[EngineConfig] = None,
    manifest: Optional[Union[str, Path, Manifest, Dict[str, Any]]] = None,
    **kwargs,
) -> OrchestrationEngine:
    """
    Factory function to create an engine.

    A manifest's vocabulary, when present, replaces the configured one.
    Its modules are not registered here; call apply_manifest().

    Args:
        config: Configuration (or load from environment)
        manifest: Manifest whose vocabulary the engine should use

    Returns:
        Configured OrchestrationEngine instance
    """
    if config is None:
        config = EngineConfig.from_env()
    if manifest is not None and "vocabulary" not in kwargs:
        if not isinstance(manifest, Manifest):
            manifest = load_manifest(manifest, compliance_threshold=config.vocabulary.compliance_threshold)
        if manifest.vocabulary is not None:
            kwargs["vocabulary"] = manifest.vocabulary
    return OrchestrationEngine(config=config, **kwargs)


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "OrchestrationEngine",
    "create_engine",
    "setup_logging",
]
