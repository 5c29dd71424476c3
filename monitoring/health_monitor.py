"""
Monitoring - Health Monitor.

============================================================
RESPONSIBILITY
============================================================
Samples module health on a fixed interval and folds it into
per-module and system-wide status.

- Probes run concurrently through the task group; a probe
  that raises or times out counts as one unhealthy instance
- Module fold: majority of healthy instances
- System fold: worst-of across modules, weighted by declared
  criticality
- Modules may also push results with report()

============================================================
SYSTEM FOLD
============================================================
impact = severity(status) x weight(criticality)

    severity: HEALTHY 0, DEGRADED 1, UNHEALTHY 2
    weight:   LOW 0.5, NORMAL 1.0, HIGH 1.5, CRITICAL 2.0

worst impact >= unhealthy_impact -> UNHEALTHY
worst impact >= degraded_impact  -> DEGRADED

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from core.clock import ClockProtocol, SystemClock
from core.constants import HEALTH_SOURCE
from core.exceptions import ModuleNotFound
from core.task_group import run_all
from eventbus.bus import EventBus, Subscription
from eventbus.models import Event, EventType, SystemHealthPayload
from orchestrator.config import HealthConfig
from orchestrator.models import HealthSnapshot, HealthStatus, ModuleRecord, SystemHealth
from orchestrator.registry import ModuleRegistry

from .metrics import MetricsCollector
from .models import ProbeResult


logger = logging.getLogger(__name__)

HealthProbe = Callable[[], Awaitable[ProbeResult]]


class HealthMonitor:
    """
    Periodic health sampler.

    Owns no module state: every fold is written back to the registry,
    which derives READY / DEGRADED from it.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        bus: EventBus,
        config: Optional[HealthConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._registry = registry
        self._bus = bus
        self._config = config or HealthConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or bus.metrics
        self._probes: Dict[str, HealthProbe] = {}
        self._last_system: Optional[SystemHealth] = None
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._running = False

    @property
    def last_system_health(self) -> Optional[SystemHealth]:
        return self._last_system

    # --------------------------------------------------------
    # Probes
    # --------------------------------------------------------

    def register_probe(self, name: str, probe: HealthProbe) -> None:
        """Register the health probe of a module."""
        self._probes[name] = probe
        logger.debug(f"Registered health probe for {name}")

    def unregister_probe(self, name: str) -> None:
        self._probes.pop(name, None)

    async def report(self, name: str, result: ProbeResult) -> HealthStatus:
        """
        Push-style health report from a module.

        Raises:
            ModuleNotFound: If the module is not registered
        """
        status = result.fold()
        await self._registry.record_health(name, self._snapshot(result), result.metrics)
        return status

    # --------------------------------------------------------
    # Sampling
    # --------------------------------------------------------

    async def sample_once(self) -> SystemHealth:
        """Probe every registered module with a probe, then fold the system."""
        names = [n for n in self._registry.names() if n in self._probes]
        outcomes = await run_all(
            {name: self._probes[name] for name in names},
            timeout=self._config.probe_timeout_seconds,
        )

        for name in sorted(outcomes.outcomes):
            outcome = outcomes.outcomes[name]
            self._metrics.observe(
                "health_probe_duration_seconds", outcome.duration_seconds, {"module": name}
            )
            if outcome.ok and isinstance(outcome.value, ProbeResult):
                result = outcome.value
            else:
                if outcome.ok:
                    error = f"probe returned {type(outcome.value).__name__}"
                elif outcome.timed_out:
                    error = f"probe timed out after {self._config.probe_timeout_seconds}s"
                else:
                    error = f"{outcome.error_type}: {outcome.error}"
                self._metrics.increment("health_probe_failures_total", {"module": name})
                logger.warning(f"Health probe for {name} failed: {error}")
                result = ProbeResult.failed(error)

            try:
                await self._registry.record_health(name, self._snapshot(result), result.metrics)
            except ModuleNotFound:
                logger.debug(f"Module {name} unregistered during sampling")

        return await self.fold_system()

    def _snapshot(self, result: ProbeResult) -> HealthSnapshot:
        return HealthSnapshot(
            status=result.fold(),
            timestamp=self._clock.now(),
            healthy_instances=result.healthy_count,
            total_instances=result.total,
            error=result.error,
        )

    # --------------------------------------------------------
    # System fold
    # --------------------------------------------------------

    def compute_system_health(self, records: Iterable[ModuleRecord]) -> SystemHealth:
        """Weighted worst-of fold across modules. Pure."""
        statuses: Dict[str, HealthStatus] = {}
        worst = 0.0
        total_impact = 0.0
        max_impact = 0.0

        for record in records:
            status = record.last_health.status if record.last_health else HealthStatus.UNKNOWN
            statuses[record.name] = status
            weight = record.descriptor.criticality.weight
            impact = status.severity * weight
            worst = max(worst, impact)
            total_impact += impact
            max_impact += 2 * weight

        if not statuses:
            overall = HealthStatus.UNKNOWN
        elif worst >= self._config.unhealthy_impact:
            overall = HealthStatus.UNHEALTHY
        elif worst >= self._config.degraded_impact:
            overall = HealthStatus.DEGRADED
        elif all(s == HealthStatus.UNKNOWN for s in statuses.values()):
            overall = HealthStatus.UNKNOWN
        else:
            overall = HealthStatus.HEALTHY

        score = 100.0 * (1.0 - total_impact / max_impact) if max_impact else 0.0
        return SystemHealth(
            status=overall,
            score=score,
            module_statuses=statuses,
            timestamp=self._clock.now(),
        )

    async def fold_system(self) -> SystemHealth:
        """Fold, store in the registry and publish when the status changes."""
        system = self.compute_system_health(self._registry.discover())
        previous = self._last_system
        self._last_system = system
        self._registry.update_system_health(system)

        if previous is None or previous.status != system.status:
            await self._bus.publish(Event.create(
                EventType.HEALTH_SYSTEM_UPDATED,
                HEALTH_SOURCE,
                SystemHealthPayload(
                    status=system.status.value,
                    score=round(system.score, 2),
                    previous_status=previous.status.value if previous else None,
                    module_statuses=tuple(
                        (name, status.value) for name, status in sorted(system.module_statuses.items())
                    ),
                ),
                timestamp=self._clock.now(),
            ))
            logger.info(
                f"System health: {previous.status.value if previous else 'none'} -> "
                f"{system.status.value} (score={system.score:.1f})"
            )
        return system

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    def attach(self, bus: Optional[EventBus] = None) -> Subscription:
        """Refold whenever modules come or go."""
        bus = bus or self._bus
        self._subscription = bus.subscribe("module.*", self._on_event, name="health-monitor")
        return self._subscription

    async def _on_event(self, event: Event) -> None:
        if event.type in (EventType.MODULE_REGISTERED, EventType.MODULE_UNREGISTERED):
            await self.fold_system()

    async def start(self) -> None:
        """Start periodic sampling."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="health-monitor")
        logger.info(f"Health monitor started (interval={self._config.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop periodic sampling."""
        self._running = False
        if self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sample_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health sampling failed: {e}", exc_info=True)
            await asyncio.sleep(self._config.interval_seconds)


__all__ = [
    "HealthProbe",
    "HealthMonitor",
]
