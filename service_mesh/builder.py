"""
Service Mesh - Builder.

============================================================
RESPONSIBILITY
============================================================
Derives who may call whom from the registry contents.

- Edge A -> B when A declares B as a dependency
- Edge A -> B when A requires an interface B satisfies
- Missing providers give pending edges, never errors
- After each rebuild every module's dependency status is
  pushed to the registry, which marks modules DEGRADED or
  heals them back to READY

============================================================
"""

import asyncio
import logging
from typing import Iterable, List, Optional

from core.clock import ClockProtocol, SystemClock
from core.constants import MESH_SOURCE
from eventbus.bus import EventBus, Subscription
from eventbus.models import Event, EventType, MeshRebuiltPayload
from orchestrator.models import ModuleRecord
from orchestrator.registry import ModuleRegistry
from orchestrator.vocabulary import Vocabulary

from .models import DEPENDENCY_VIA, EdgeKind, MeshEdge, MeshSnapshot


logger = logging.getLogger(__name__)

REBUILD_TRIGGERS = frozenset({
    EventType.MODULE_REGISTERED,
    EventType.MODULE_UPDATED,
    EventType.MODULE_UNREGISTERED,
})


class ServiceMeshBuilder:
    """Builds the mesh and keeps registry dependency status current."""

    def __init__(
        self,
        vocabulary: Optional[Vocabulary] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._vocabulary = vocabulary or Vocabulary.default()
        self._clock = clock or SystemClock()
        self._snapshot = MeshSnapshot()
        self._bus: Optional[EventBus] = None
        self._registry: Optional[ModuleRegistry] = None
        self._subscription: Optional[Subscription] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def snapshot(self) -> MeshSnapshot:
        """Latest mesh."""
        return self._snapshot

    # --------------------------------------------------------
    # Pure rebuild
    # --------------------------------------------------------

    def rebuild(self, records: Iterable[ModuleRecord]) -> MeshSnapshot:
        """Compute the mesh for a set of records. No side effects."""
        by_name = {r.name: r for r in records}
        edges: List[MeshEdge] = []

        for name in sorted(by_name):
            descriptor = by_name[name].descriptor

            for dep in descriptor.dependencies:
                edges.append(MeshEdge(
                    source=name,
                    target=dep,
                    via=DEPENDENCY_VIA,
                    kind=EdgeKind.DEPENDENCY,
                    pending=dep not in by_name,
                ))

            for interface in sorted(descriptor.requires):
                providers = self._providers(interface, name, by_name)
                if not providers:
                    edges.append(MeshEdge(
                        source=name,
                        target=None,
                        via=interface,
                        kind=EdgeKind.INTERFACE,
                        pending=True,
                    ))
                for provider in providers:
                    edges.append(MeshEdge(
                        source=name,
                        target=provider,
                        via=interface,
                        kind=EdgeKind.INTERFACE,
                    ))

        return MeshSnapshot(
            edges=tuple(edges),
            modules=tuple(sorted(by_name)),
            built_at=self._clock.now(),
        )

    def _providers(self, interface: str, consumer: str, by_name) -> List[str]:
        contract = self._vocabulary.contract(interface)
        providers = []
        for name in sorted(by_name):
            if name == consumer:
                continue
            descriptor = by_name[name].descriptor
            if contract is not None:
                if contract.is_satisfied_by(descriptor):
                    providers.append(name)
            elif interface in descriptor.interfaces:
                providers.append(name)
        return providers

    # --------------------------------------------------------
    # Registry integration
    # --------------------------------------------------------

    def attach(self, bus: EventBus, registry: ModuleRegistry) -> Subscription:
        """Rebuild on every registration change published on ``bus``."""
        self._bus = bus
        self._registry = registry
        self._subscription = bus.subscribe("module.*", self._on_event, name="service-mesh")
        return self._subscription

    def detach(self) -> None:
        if self._bus is not None and self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
        self._subscription = None

    async def _on_event(self, event: Event) -> None:
        if event.type in REBUILD_TRIGGERS:
            await self.refresh()

    async def refresh(self) -> MeshSnapshot:
        """
        Rebuild from the registry and push dependency status to it.

        Publishes mesh.rebuilt.
        """
        if self._registry is None or self._bus is None:
            raise RuntimeError("ServiceMeshBuilder is not attached")

        async with self._refresh_lock:
            snapshot = self.rebuild(self._registry.discover())
            self._snapshot = snapshot

            for name in snapshot.modules:
                pending = tuple(e.describe_pending for e in snapshot.pending_for(name))
                await self._registry.set_dependency_status(name, not pending, pending)

            await self._bus.publish(Event.create(
                EventType.MESH_REBUILT,
                MESH_SOURCE,
                MeshRebuiltPayload(
                    edge_count=len(snapshot.edges),
                    pending_count=len(snapshot.pending_edges),
                    unsatisfied_modules=tuple(snapshot.unsatisfied_modules),
                ),
                timestamp=self._clock.now(),
            ))
            logger.debug(
                f"Mesh rebuilt: {len(snapshot.edges)} edges, "
                f"{len(snapshot.pending_edges)} pending"
            )
            return snapshot


__all__ = [
    "REBUILD_TRIGGERS",
    "ServiceMeshBuilder",
]
