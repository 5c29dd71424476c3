"""
Federation - Sync.

============================================================
RESPONSIBILITY
============================================================
Eventually consistent replication of registry records
between independent clusters.

- Push: send records changed since the peer's acknowledged
  vector
- Pull: fetch the peer's records changed since what we have
  received from it
- Receive: last-writer-wins by logical clock, ties broken by
  cluster id
- Retry with exponential backoff and bounded jitter
- Peer state: CONNECTED -> DEGRADED -> UNREACHABLE

============================================================
FAILURE SEMANTICS
============================================================
Transport failures never escape sync_peer(): they become peer
state changes and a failed SyncResult. Vectors only advance
after a successful RPC, so an interrupted sync is safely
retryable.

============================================================
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.clock import ClockProtocol, SystemClock
from core.constants import FEDERATION_SOURCE
from core.exceptions import FederationError, FederationTimeout, PeerUnreachable
from core.task_group import run_all
from eventbus.bus import EventBus
from eventbus.models import Event, EventType, PeerStateChangedPayload, SyncCompletedPayload
from monitoring.metrics import MetricsCollector
from orchestrator.config import FederationConfig
from orchestrator.registry import ModuleRegistry

from .models import (
    ApplyStatus,
    DeltaResult,
    FederationPeer,
    PeerSyncState,
    SyncRecord,
    SyncResult,
    VersionKey,
    vector_from_wire,
    vector_to_wire,
)


logger = logging.getLogger(__name__)


# ============================================================
# TRANSPORT CONTRACT
# ============================================================

class PeerTransport(ABC):
    """How a FederationSync reaches its peers."""

    @abstractmethod
    async def push(self, peer_id: str, origin: str, records: List[SyncRecord]) -> Dict[str, VersionKey]:
        """Send records to a peer. Returns the versions the peer now holds for them."""

    @abstractmethod
    async def pull(self, peer_id: str, origin: str, since_vector: Mapping[str, VersionKey]) -> List[SyncRecord]:
        """Fetch the peer's records newer than ``since_vector``."""

    async def close(self) -> None:
        """Release transport resources."""


# ============================================================
# FEDERATION SYNC
# ============================================================

class FederationSync:
    """
    Replicates one registry with its peers.

    Each peer carries two vectors: what it has acknowledged from us
    (``last_sync_vector``, drives push) and what we have received from
    it (drives pull).
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        bus: EventBus,
        transport: PeerTransport,
        config: Optional[FederationConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._registry = registry
        self._bus = bus
        self._transport = transport
        self._config = config or FederationConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or bus.metrics
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._peers: Dict[str, FederationPeer] = {}
        self._received: Dict[str, Dict[str, VersionKey]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._logger = logging.getLogger(__name__)

        for peer in self._config.peers:
            self.add_peer(peer["cluster_id"], endpoint=peer.get("endpoint"))

    @property
    def cluster_id(self) -> str:
        return self._registry.cluster_id

    # --------------------------------------------------------
    # Peers
    # --------------------------------------------------------

    def add_peer(self, cluster_id: str, endpoint: Optional[str] = None) -> FederationPeer:
        """Add a peer cluster. Adding an existing peer returns it unchanged."""
        if cluster_id == self.cluster_id:
            raise FederationError("Cannot federate with the local cluster", peer_id=cluster_id)
        peer = self._peers.get(cluster_id)
        if peer is None:
            peer = FederationPeer(cluster_id=cluster_id, endpoint=endpoint)
            self._peers[cluster_id] = peer
            self._received[cluster_id] = {}
            self._logger.info(f"Added federation peer {cluster_id}")
        return peer

    def remove_peer(self, cluster_id: str) -> None:
        self._peers.pop(cluster_id, None)
        self._received.pop(cluster_id, None)

    def peer(self, cluster_id: str) -> FederationPeer:
        """
        Raises:
            PeerUnreachable: If the peer is unknown
        """
        peer = self._peers.get(cluster_id)
        if peer is None:
            raise PeerUnreachable(cluster_id, reason="unknown peer")
        return peer

    def peers(self) -> List[FederationPeer]:
        return [self._peers[p] for p in sorted(self._peers)]

    def active_peers(self) -> List[FederationPeer]:
        """Peers eligible for federation discovery (not UNREACHABLE)."""
        return [p for p in self.peers() if p.is_active]

    # --------------------------------------------------------
    # Outbound
    # --------------------------------------------------------

    async def push_delta(self, peer_id: str, deadline: Optional[float] = None) -> int:
        """
        Send local changes the peer has not acknowledged.

        Returns:
            Number of records pushed

        Raises:
            FederationTimeout, PeerUnreachable
        """
        peer = self.peer(peer_id)
        records = self._registry.export_delta(peer.last_sync_vector)
        if not records:
            return 0
        ack = await self._call(
            peer_id,
            self._transport.push(peer_id, self.cluster_id, records),
            deadline,
        )
        peer.acknowledge(ack)
        self._logger.debug(f"Pushed {len(records)} records to {peer_id}")
        return len(records)

    async def pull_delta(self, peer_id: str, deadline: Optional[float] = None) -> DeltaResult:
        """
        Fetch and apply the peer's changes.

        Raises:
            FederationTimeout, PeerUnreachable
        """
        self.peer(peer_id)
        since = dict(self._received.get(peer_id, {}))
        records = await self._call(
            peer_id,
            self._transport.pull(peer_id, self.cluster_id, since),
            deadline,
        )
        return await asyncio.shield(self.receive_delta(peer_id, records))

    async def _call(self, peer_id: str, coro: Awaitable[Any], deadline: Optional[float]) -> Any:
        timeout = self._config.rpc_timeout_seconds
        if deadline is not None:
            timeout = min(timeout, deadline)
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise FederationTimeout(peer_id, timeout) from None
        except FederationError:
            raise
        except (ConnectionError, OSError) as e:
            raise PeerUnreachable(peer_id, reason=str(e), cause=e) from e

    # --------------------------------------------------------
    # Inbound
    # --------------------------------------------------------

    async def receive_delta(self, from_peer: str, records: List[SyncRecord]) -> DeltaResult:
        """Apply records received from a peer, last writer wins."""
        result = DeltaResult()
        received = self._received.setdefault(from_peer, {})
        peer = self._peers.get(from_peer)

        for record in records:
            status, reason = await self._registry.apply_remote(record, from_peer=from_peer)
            result.record(record.name, status, reason)
            if status == ApplyStatus.REJECTED:
                continue
            seen = received.get(record.name)
            if seen is None or record.order_key > seen:
                received[record.name] = record.order_key
            held = self._registry.version_key(record.name)
            if peer is not None and held == record.order_key:
                peer.acknowledge({record.name: record.order_key})

        if result.applied or result.rejected:
            self._logger.info(
                f"Delta from {from_peer}: applied={len(result.applied)} "
                f"stale={len(result.stale)} rejected={len(result.rejected)}"
            )
        return result

    async def handle_push(self, from_peer: str, records: List[SyncRecord]) -> Dict[str, VersionKey]:
        """Server side of push. Returns the versions now held for the pushed names."""
        await self.receive_delta(from_peer, records)
        vector = self._registry.vector()
        return {r.name: vector[r.name] for r in records if r.name in vector}

    def serve_pull(self, since_vector: Mapping[str, VersionKey]) -> List[SyncRecord]:
        """Server side of pull."""
        return self._registry.export_delta(since_vector)

    def local_vector(self) -> Dict[str, VersionKey]:
        return self._registry.vector()

    # --------------------------------------------------------
    # Sync rounds
    # --------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff, capped, plus bounded uniform jitter."""
        base = min(
            self._config.backoff_max_seconds,
            self._config.backoff_base_seconds * (2 ** attempt),
        )
        return base + self._rng.uniform(0, self._config.jitter_seconds)

    async def sync_peer(self, peer_id: str, deadline: Optional[float] = None) -> SyncResult:
        """
        Push then pull with retries. Never raises for transport failures.

        Args:
            peer_id: Peer cluster id
            deadline: Upper bound in seconds for the whole sync, retries
                and backoff included. Each RPC is further capped by
                rpc_timeout_seconds.
        """
        peer = self.peer(peer_id)
        loop = asyncio.get_running_loop()
        expires_at = None if deadline is None else loop.time() + deadline
        max_attempts = self._config.max_retries + 1
        if peer.sync_state == PeerSyncState.UNREACHABLE:
            max_attempts = 1

        last_error: Optional[FederationError] = None
        for attempt in range(max_attempts):
            self._metrics.increment("federation_sync_attempts_total", {"peer": peer_id})
            try:
                pushed = await self.push_delta(peer_id, self._remaining(expires_at))
                delta = await self.pull_delta(peer_id, self._remaining(expires_at))
            except FederationError as e:
                last_error = e
                self._metrics.increment("federation_sync_failures_total", {"peer": peer_id})
                await self._mark_failure(peer, e)
                if peer.sync_state == PeerSyncState.UNREACHABLE or attempt + 1 >= max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                remaining = self._remaining(expires_at)
                if remaining is not None and delay >= remaining:
                    self._logger.warning(
                        f"Sync with {peer_id} failed (attempt {attempt + 1}/{max_attempts}): "
                        f"{e.message}; deadline of {deadline}s leaves no time to retry"
                    )
                    break
                self._logger.warning(
                    f"Sync with {peer_id} failed (attempt {attempt + 1}/{max_attempts}): "
                    f"{e.message}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            await self._mark_success(peer)
            result = SyncResult(
                peer_id=peer_id,
                success=True,
                pushed=pushed,
                applied=len(delta.applied),
                rejected=len(delta.rejected),
                attempts=attempt + 1,
                state=peer.sync_state,
            )
            await self._bus.publish(Event.create(
                EventType.SYNC_COMPLETED,
                FEDERATION_SOURCE,
                SyncCompletedPayload(
                    peer_id=peer_id,
                    pushed=pushed,
                    applied=len(delta.applied),
                    rejected=len(delta.rejected),
                ),
                timestamp=self._clock.now(),
            ))
            return result

        return SyncResult(
            peer_id=peer_id,
            success=False,
            attempts=attempt + 1,
            error=last_error.message if last_error else None,
            state=peer.sync_state,
        )

    @staticmethod
    def _remaining(expires_at: Optional[float]) -> Optional[float]:
        if expires_at is None:
            return None
        return max(0.0, expires_at - asyncio.get_running_loop().time())

    async def sync_all(self, deadline: Optional[float] = None) -> Dict[str, SyncResult]:
        """Sync every peer concurrently."""
        outcomes = await run_all({
            peer_id: (lambda p=peer_id: self.sync_peer(p, deadline))
            for peer_id in sorted(self._peers)
        })
        results = {}
        for peer_id, outcome in outcomes.outcomes.items():
            if outcome.ok:
                results[peer_id] = outcome.value
            else:
                self._logger.error(f"Sync with {peer_id} raised: {outcome.error_type}: {outcome.error}")
                results[peer_id] = SyncResult(
                    peer_id=peer_id,
                    success=False,
                    error=str(outcome.error),
                    state=self._peers[peer_id].sync_state if peer_id in self._peers else PeerSyncState.UNREACHABLE,
                )
        return results

    # --------------------------------------------------------
    # Peer state
    # --------------------------------------------------------

    async def _mark_failure(self, peer: FederationPeer, error: FederationError) -> None:
        now = self._clock.now()
        peer.consecutive_failures += 1
        peer.last_error = error.message
        if peer.first_failure_at is None:
            peer.first_failure_at = now

        failing_for = (now - peer.first_failure_at).total_seconds()
        if failing_for >= self._config.unreachable_after_seconds:
            target = PeerSyncState.UNREACHABLE
        else:
            target = PeerSyncState.DEGRADED
        await self._transition(peer, target, error.message)

    async def _mark_success(self, peer: FederationPeer) -> None:
        peer.consecutive_failures = 0
        peer.first_failure_at = None
        peer.last_error = None
        peer.last_success_at = self._clock.now()
        await self._transition(peer, PeerSyncState.CONNECTED, "sync succeeded")

    async def _transition(self, peer: FederationPeer, target: PeerSyncState, reason: str) -> None:
        if peer.sync_state == target:
            return
        previous = peer.sync_state
        peer.sync_state = target
        await self._bus.publish(Event.create(
            EventType.PEER_STATE_CHANGED,
            FEDERATION_SOURCE,
            PeerStateChangedPayload(
                peer_id=peer.cluster_id,
                from_state=previous.value,
                to_state=target.value,
                reason=reason,
            ),
            timestamp=self._clock.now(),
        ))
        log = self._logger.warning if target == PeerSyncState.UNREACHABLE else self._logger.info
        log(f"Peer {peer.cluster_id}: {previous.value} -> {target.value} ({reason})")

    # --------------------------------------------------------
    # Persistence
    # --------------------------------------------------------

    def to_state(self) -> Dict[str, Any]:
        """Sync vectors for a state store."""
        return {
            peer_id: {
                "last_sync_vector": vector_to_wire(peer.last_sync_vector),
                "received_vector": vector_to_wire(self._received.get(peer_id, {})),
                "endpoint": peer.endpoint,
            }
            for peer_id, peer in sorted(self._peers.items())
        }

    def load_state(self, state: Mapping[str, Any]) -> None:
        """Restore sync vectors for peers (unknown peers are added)."""
        for peer_id, data in state.items():
            peer = self.add_peer(peer_id, endpoint=data.get("endpoint"))
            peer.last_sync_vector = vector_from_wire(data.get("last_sync_vector", {}))
            self._received[peer_id] = vector_from_wire(data.get("received_vector", {}))

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start periodic sync of all peers."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="federation-sync")
        self._logger.info(
            f"Federation sync started for {self.cluster_id} "
            f"(peers={sorted(self._peers)}, interval={self._config.sync_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop periodic sync."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._transport.close()
        self._logger.info("Federation sync stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sync_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Federation round failed: {e}", exc_info=True)
            await asyncio.sleep(self._config.sync_interval_seconds)


__all__ = [
    "PeerTransport",
    "FederationSync",
]
