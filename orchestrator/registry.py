"""
Orchestrator - Module Registry.

============================================================
RESPONSIBILITY
============================================================
Authoritative store of module descriptors and their lifecycle
state.

- Register / unregister modules
- Reject registrations that would close a dependency cycle
- Discovery by capability, interface and state (snapshots)
- Derive READY / DEGRADED from dependency and health status
- Keep tombstones and logical clocks for federation
- Publish exactly one event per mutation

============================================================
CONCURRENCY
============================================================
A single asyncio.Lock serializes every write. Reads return
deep copies and never take the lock.

============================================================
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from core.clock import ClockProtocol, SystemClock
from core.constants import LOCAL_ORIGIN, REGISTRY_SOURCE, STATE_FORMAT_VERSION
from core.exceptions import (
    CyclicDependency,
    InvalidDescriptorError,
    InvalidStateTransition,
    ModuleNotFound,
    RegistrationConflict,
    StateStoreError,
)
from eventbus.bus import EventBus
from eventbus.models import (
    Event,
    EventType,
    ModuleRegisteredPayload,
    ModuleStateChangedPayload,
    ModuleUnregisteredPayload,
    ModuleUpdatedPayload,
)
from federation.models import ApplyStatus, SyncRecord, VersionKey
from monitoring.metrics import MetricsCollector

from .config import RegistryConfig
from .models import (
    DiscoveryFilter,
    HealthSnapshot,
    HealthStatus,
    ModuleDescriptor,
    ModuleRecord,
    ModuleState,
    RegistrationResult,
    RegistryHealth,
    SystemHealth,
    Tombstone,
)
from .resolver import resolve
from .vocabulary import Vocabulary


# ============================================================
# MODULE REGISTRY
# ============================================================

class ModuleRegistry:
    """
    Registry of modules for one cluster.

    Handles:
    - Registration and replacement
    - Dependency cycle rejection
    - Discovery
    - Derived lifecycle state
    - Federation delta export and last-writer-wins apply
    """

    def __init__(
        self,
        bus: EventBus,
        vocabulary: Optional[Vocabulary] = None,
        config: Optional[RegistryConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._bus = bus
        self._vocabulary = vocabulary or Vocabulary.default()
        self._config = config or RegistryConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or bus.metrics
        self._records: Dict[str, ModuleRecord] = {}
        self._tombstones: Dict[str, Tombstone] = {}
        self._system_health: Optional[SystemHealth] = None
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def cluster_id(self) -> str:
        return self._config.cluster_id

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @property
    def vocabulary(self) -> Vocabulary:
        return self._vocabulary

    # --------------------------------------------------------
    # Registration
    # --------------------------------------------------------

    async def register(
        self,
        descriptor: ModuleDescriptor,
        replace: bool = False,
    ) -> RegistrationResult:
        """
        Register a module.

        Args:
            descriptor: Module descriptor
            replace: Replace an existing registration of the same name

        Returns:
            RegistrationResult

        Raises:
            InvalidDescriptorError: Unknown tags or non-compliant interface
            CyclicDependency: The registration would close a cycle
            RegistrationConflict: Name already registered and replace not set
        """
        try:
            self._vocabulary.validate(descriptor)
        except InvalidDescriptorError:
            self._metrics.increment("registry_rejections_total", {"reason": "invalid"})
            raise

        async with self._lock:
            self._check_acyclic(descriptor)

            existing = self._records.get(descriptor.name)
            if existing is not None and not replace:
                self._metrics.increment("registry_rejections_total", {"reason": "conflict"})
                raise RegistrationConflict(
                    descriptor.name,
                    existing_version=existing.version,
                    requested_version=descriptor.version,
                )

            now = self._clock.now()
            logical_clock = self._next_clock(descriptor.name)

            if existing is None:
                record = ModuleRecord(
                    record_id=uuid4().hex,
                    descriptor=descriptor,
                    metric_window=self._config.metric_window,
                    logical_clock=logical_clock,
                    origin_cluster=self.cluster_id,
                    registered_at=now,
                    updated_at=now,
                )
                self._records[descriptor.name] = record
                self._tombstones.pop(descriptor.name, None)
                await self._publish(EventType.MODULE_REGISTERED, self._registered_payload(record))
                self._logger.info(
                    f"Registered module {descriptor.name} v{descriptor.version} "
                    f"(clock={logical_clock})"
                )
            else:
                record = existing
                previous_version = record.version
                self._replace_descriptor(record, descriptor, logical_clock, self.cluster_id)
                await self._publish(
                    EventType.MODULE_UPDATED,
                    self._updated_payload(record, previous_version),
                )
                self._logger.info(
                    f"Replaced module {descriptor.name} v{previous_version} -> "
                    f"v{descriptor.version} (clock={logical_clock})"
                )

            self._metrics.increment("registry_registrations_total")
            self._metrics.set_gauge("registry_modules", len(self._records))

            return RegistrationResult(
                record_id=record.record_id,
                name=record.name,
                version=record.version,
                state=record.state,
                replaced=existing is not None,
                logical_clock=record.logical_clock,
            )

    async def unregister(self, name: str) -> Tombstone:
        """
        Unregister a module, keeping a tombstone for federation.

        Raises:
            ModuleNotFound: If the module is not registered
        """
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                raise ModuleNotFound(name)

            tombstone = self._terminate(record, record.logical_clock + 1, self.cluster_id)
            await self._publish(
                EventType.MODULE_UNREGISTERED,
                ModuleUnregisteredPayload(
                    name=name,
                    version=tombstone.version,
                    logical_clock=tombstone.logical_clock,
                ),
            )
            self._metrics.set_gauge("registry_modules", len(self._records))
            self._logger.info(f"Unregistered module {name} (clock={tombstone.logical_clock})")
            return tombstone

    async def purge_tombstones(self) -> int:
        """Drop tombstones older than the retention window. Returns the count."""
        horizon = self._clock.now() - timedelta(seconds=self._config.tombstone_retention_seconds)
        async with self._lock:
            expired = [n for n, t in self._tombstones.items() if t.deleted_at < horizon]
            for name in expired:
                del self._tombstones[name]
        if expired:
            self._metrics.increment("registry_tombstones_purged_total", value=len(expired))
            self._logger.debug(f"Purged tombstones: {sorted(expired)}")
        return len(expired)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def discover(self, discovery_filter: Optional[DiscoveryFilter] = None) -> List[ModuleRecord]:
        """Matching records as snapshots, ordered by name."""
        discovery_filter = discovery_filter or DiscoveryFilter()
        return [
            self._records[name].snapshot()
            for name in sorted(self._records)
            if discovery_filter.matches(self._records[name])
        ]

    def get(self, name: str) -> ModuleRecord:
        """
        Snapshot of one record.

        Raises:
            ModuleNotFound: If the module is not registered
        """
        record = self._records.get(name)
        if record is None:
            raise ModuleNotFound(name)
        return record.snapshot()

    def names(self) -> List[str]:
        return sorted(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def tombstones(self) -> List[Tombstone]:
        return [self._tombstones[n] for n in sorted(self._tombstones)]

    def resolve_order(self) -> List[str]:
        """Initialization order of the live modules."""
        return resolve(list(self._records.values()))

    def get_health(self) -> RegistryHealth:
        """Aggregate health reflecting the latest health monitor fold."""
        states = [r.state for r in self._records.values()]
        health = RegistryHealth(
            status=HealthStatus.UNKNOWN,
            total_modules=len(states),
            ready=states.count(ModuleState.READY),
            degraded=states.count(ModuleState.DEGRADED),
            uninitialized=states.count(ModuleState.UNINITIALIZED),
        )
        if self._system_health is not None:
            health.status = self._system_health.status
            health.score = self._system_health.score
            health.module_statuses = {
                name: status.value
                for name, status in self._system_health.module_statuses.items()
            }
            health.last_health_check = self._system_health.timestamp
        return health

    def update_system_health(self, system_health: SystemHealth) -> None:
        """Store the latest system health fold."""
        self._system_health = system_health

    # --------------------------------------------------------
    # Derived state
    # --------------------------------------------------------

    async def set_dependency_status(
        self,
        name: str,
        satisfied: bool,
        pending: Tuple[str, ...] = (),
    ) -> Optional[ModuleState]:
        """
        Record whether a module's edges are satisfied and re-derive its state.

        Returns:
            New state, or None if the module is no longer registered
        """
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                return None
            record.dependencies_satisfied = satisfied
            record.pending_dependencies = tuple(pending)
            await self._rederive(record)
            return record.state

    async def record_health(
        self,
        name: str,
        snapshot: HealthSnapshot,
        samples: Optional[Mapping[str, float]] = None,
    ) -> ModuleState:
        """
        Store a module health fold and metric samples, then re-derive state.

        Raises:
            ModuleNotFound: If the module is not registered
        """
        async with self._lock:
            record = self._records.get(name)
            if record is None:
                raise ModuleNotFound(name)
            record.last_health = snapshot
            for metric, value in (samples or {}).items():
                record.add_sample(metric, value, snapshot.timestamp)
            await self._rederive(record)
            return record.state

    async def _rederive(self, record: ModuleRecord) -> None:
        if record.state == ModuleState.TERMINATED:
            return

        if not record.dependencies_satisfied:
            target = ModuleState.DEGRADED
            reason = f"pending dependencies: {', '.join(record.pending_dependencies) or 'unknown'}"
        elif not record.health_passing:
            target = ModuleState.DEGRADED
            reason = f"health {record.last_health.status.value}"
        else:
            target = ModuleState.READY
            reason = "dependencies satisfied and health passing"

        if target == record.state:
            return
        if not record.state.can_transition_to(target):
            raise InvalidStateTransition(record.name, record.state.value, target.value)

        previous = record.state
        record.state = target
        record.updated_at = self._clock.now()
        await self._publish(
            EventType.MODULE_STATE_CHANGED,
            ModuleStateChangedPayload(
                name=record.name,
                from_state=previous.value,
                to_state=target.value,
                reason=reason,
            ),
        )
        self._metrics.increment("registry_state_changes_total", {"to": target.value})
        self._logger.info(f"Module {record.name}: {previous.value} -> {target.value} ({reason})")

    # --------------------------------------------------------
    # Federation
    # --------------------------------------------------------

    def vector(self) -> Dict[str, VersionKey]:
        """(clock, origin) per module name, tombstones included."""
        vector = {name: (t.logical_clock, t.origin_cluster) for name, t in self._tombstones.items()}
        vector.update({name: (r.logical_clock, r.origin_cluster) for name, r in self._records.items()})
        return vector

    def export_delta(self, since_vector: Optional[Mapping[str, VersionKey]] = None) -> List[SyncRecord]:
        """
        Records and tombstones newer than ``since_vector``.

        Versions compare as (clock, origin), so a different record at an
        already-seen clock is still exported when its origin ranks higher.
        """
        since_vector = since_vector or {}

        def newer(name: str, key: VersionKey) -> bool:
            seen = since_vector.get(name)
            return seen is None or key > tuple(seen)

        delta = []
        for name, record in self._records.items():
            if newer(name, (record.logical_clock, record.origin_cluster)):
                delta.append(SyncRecord(
                    name=name,
                    version=record.version,
                    logical_clock=record.logical_clock,
                    origin_cluster=record.origin_cluster,
                    descriptor=record.descriptor,
                ))
        for name, tombstone in self._tombstones.items():
            if newer(name, (tombstone.logical_clock, tombstone.origin_cluster)):
                delta.append(SyncRecord(
                    name=name,
                    version=tombstone.version,
                    logical_clock=tombstone.logical_clock,
                    origin_cluster=tombstone.origin_cluster,
                    deleted=True,
                ))
        return sorted(delta, key=lambda r: r.name)

    async def apply_remote(
        self,
        incoming: SyncRecord,
        from_peer: Optional[str] = None,
    ) -> Tuple[ApplyStatus, str]:
        """
        Apply one remote record, last writer wins by (clock, cluster id).

        Records that would break local invariants are rejected, never
        raised. Applied changes are re-published with the origin cluster
        in the event metadata.

        Returns:
            (status, reason)
        """
        async with self._lock:
            local_key = self.version_key(incoming.name)
            if local_key is not None and incoming.order_key <= local_key:
                return ApplyStatus.STALE, ""

            if incoming.deleted:
                return await self._apply_remote_delete(incoming), ""

            if incoming.descriptor is None:
                return self._reject(incoming, from_peer, "missing descriptor")
            problems = self._vocabulary.problems(incoming.descriptor)
            if problems:
                return self._reject(incoming, from_peer, "; ".join(problems))
            try:
                self._check_acyclic(incoming.descriptor)
            except CyclicDependency as e:
                return self._reject(incoming, from_peer, e.message)

            record = self._records.get(incoming.name)
            if record is None:
                now = self._clock.now()
                record = ModuleRecord(
                    record_id=uuid4().hex,
                    descriptor=incoming.descriptor,
                    metric_window=self._config.metric_window,
                    logical_clock=incoming.logical_clock,
                    origin_cluster=incoming.origin_cluster,
                    registered_at=now,
                    updated_at=now,
                )
                self._records[incoming.name] = record
                self._tombstones.pop(incoming.name, None)
                await self._publish(
                    EventType.MODULE_REGISTERED,
                    self._registered_payload(record),
                    origin=incoming.origin_cluster,
                )
            else:
                previous_version = record.version
                self._replace_descriptor(
                    record, incoming.descriptor, incoming.logical_clock, incoming.origin_cluster
                )
                await self._publish(
                    EventType.MODULE_UPDATED,
                    self._updated_payload(record, previous_version),
                    origin=incoming.origin_cluster,
                )

            self._metrics.increment("federation_records_applied_total")
            self._metrics.set_gauge("registry_modules", len(self._records))
            self._logger.info(
                f"Applied remote {incoming.name} v{incoming.version} "
                f"(clock={incoming.logical_clock}, origin={incoming.origin_cluster})"
            )
            return ApplyStatus.APPLIED, ""

    async def _apply_remote_delete(self, incoming: SyncRecord) -> ApplyStatus:
        record = self._records.get(incoming.name)
        if record is None:
            self._tombstones[incoming.name] = Tombstone(
                name=incoming.name,
                version=incoming.version,
                logical_clock=incoming.logical_clock,
                origin_cluster=incoming.origin_cluster,
                deleted_at=self._clock.now(),
            )
            return ApplyStatus.APPLIED

        self._terminate(record, incoming.logical_clock, incoming.origin_cluster)
        await self._publish(
            EventType.MODULE_UNREGISTERED,
            ModuleUnregisteredPayload(
                name=incoming.name,
                version=record.version,
                logical_clock=incoming.logical_clock,
            ),
            origin=incoming.origin_cluster,
        )
        self._metrics.increment("federation_records_applied_total")
        self._metrics.set_gauge("registry_modules", len(self._records))
        self._logger.info(f"Applied remote unregister of {incoming.name} (origin={incoming.origin_cluster})")
        return ApplyStatus.APPLIED

    def _reject(self, incoming: SyncRecord, from_peer: Optional[str], reason: str):
        self._metrics.increment("registry_rejections_total", {"reason": "remote"})
        self._logger.warning(
            f"Rejected remote {incoming.name} from {from_peer or incoming.origin_cluster}: {reason}"
        )
        return ApplyStatus.REJECTED, reason

    def version_key(self, name: str) -> Optional[VersionKey]:
        """(logical clock, origin cluster) held locally for a name, tombstones included."""
        record = self._records.get(name)
        if record is not None:
            return (record.logical_clock, record.origin_cluster)
        tombstone = self._tombstones.get(name)
        if tombstone is not None:
            return (tombstone.logical_clock, tombstone.origin_cluster)
        return None

    # --------------------------------------------------------
    # Persistence
    # --------------------------------------------------------

    def to_state(self) -> Dict[str, Any]:
        """Serializable registry state for a state store."""
        return {
            "format_version": STATE_FORMAT_VERSION,
            "cluster_id": self.cluster_id,
            "records": [self._records[n].to_dict() for n in sorted(self._records)],
            "tombstones": [t.to_dict() for t in self.tombstones()],
        }

    async def load_state(self, state: Mapping[str, Any]) -> int:
        """
        Replace registry contents with persisted state. Publishes nothing.

        Returns:
            Number of live records restored

        Raises:
            StateStoreError: On malformed or incompatible state
        """
        if state.get("format_version") != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported registry state format: {state.get('format_version')}"
            )
        try:
            records = [
                ModuleRecord.from_dict(r, metric_window=self._config.metric_window)
                for r in state.get("records", [])
            ]
            tombstones = [Tombstone.from_dict(t) for t in state.get("tombstones", [])]
        except (KeyError, ValueError, TypeError, InvalidDescriptorError) as e:
            raise StateStoreError(f"Malformed registry state: {e}", cause=e) from e

        try:
            resolve(records)
        except CyclicDependency as e:
            raise StateStoreError(f"Persisted registry state is cyclic: {e.message}", cause=e) from e

        async with self._lock:
            self._records = {r.name: r for r in records}
            self._tombstones = {t.name: t for t in tombstones}
        self._metrics.set_gauge("registry_modules", len(self._records))
        self._logger.info(f"Restored {len(records)} modules and {len(tombstones)} tombstones")
        return len(records)

    # --------------------------------------------------------
    # Internal
    # --------------------------------------------------------

    def _check_acyclic(self, descriptor: ModuleDescriptor) -> None:
        graph = {name: r.descriptor.dependencies for name, r in self._records.items()}
        graph[descriptor.name] = descriptor.dependencies
        try:
            resolve(graph)
        except CyclicDependency as e:
            self._metrics.increment("registry_rejections_total", {"reason": "cycle"})
            self._logger.warning(
                f"Rejected {descriptor.name}: would close a cycle through {sorted(e.cycle_members)}"
            )
            raise

    def _next_clock(self, name: str) -> int:
        key = self.version_key(name)
        return (key[0] if key else 0) + 1

    def _replace_descriptor(
        self,
        record: ModuleRecord,
        descriptor: ModuleDescriptor,
        logical_clock: int,
        origin: str,
    ) -> None:
        record.descriptor = descriptor
        record.logical_clock = logical_clock
        record.origin_cluster = origin
        record.dependencies_satisfied = True
        record.pending_dependencies = ()
        record.updated_at = self._clock.now()

    def _terminate(self, record: ModuleRecord, logical_clock: int, origin: str) -> Tombstone:
        if not record.state.can_transition_to(ModuleState.TERMINATED):
            raise InvalidStateTransition(record.name, record.state.value, ModuleState.TERMINATED.value)
        record.state = ModuleState.TERMINATED
        tombstone = Tombstone(
            name=record.name,
            version=record.version,
            logical_clock=logical_clock,
            origin_cluster=origin,
            deleted_at=self._clock.now(),
        )
        del self._records[record.name]
        self._tombstones[record.name] = tombstone
        return tombstone

    async def _publish(self, event_type: EventType, payload: Any, origin: str = LOCAL_ORIGIN) -> None:
        await self._bus.publish(
            Event.create(
                event_type,
                REGISTRY_SOURCE,
                payload,
                origin_cluster=origin,
                timestamp=self._clock.now(),
            )
        )

    @staticmethod
    def _registered_payload(record: ModuleRecord) -> ModuleRegisteredPayload:
        d = record.descriptor
        return ModuleRegisteredPayload(
            name=d.name,
            version=d.version,
            record_id=record.record_id,
            state=record.state.value,
            dependencies=d.dependencies,
            capabilities=tuple(sorted(d.capabilities)),
            interfaces=tuple(sorted(d.interfaces)),
            logical_clock=record.logical_clock,
        )

    @staticmethod
    def _updated_payload(record: ModuleRecord, previous_version: str) -> ModuleUpdatedPayload:
        d = record.descriptor
        return ModuleUpdatedPayload(
            name=d.name,
            version=d.version,
            previous_version=previous_version,
            record_id=record.record_id,
            state=record.state.value,
            dependencies=d.dependencies,
            capabilities=tuple(sorted(d.capabilities)),
            interfaces=tuple(sorted(d.interfaces)),
            logical_clock=record.logical_clock,
        )


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ModuleRegistry",
]
