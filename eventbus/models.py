"""
Event Bus - Models.

============================================================
RESPONSIBILITY
============================================================
Defines the closed, versioned event vocabulary.

- EventType: every tag the engine may publish
- One frozen payload dataclass per event type (tagged union)
- Event: envelope with id, source, timestamp and metadata
- EventFilter: history queries

Subscribers can switch exhaustively on ``event.type``; an
unknown tag or a mismatched payload is rejected at creation.

============================================================
"""

import fnmatch
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type
from uuid import uuid4

from core.clock import SystemClock
from core.constants import LOCAL_ORIGIN
from core.exceptions import UnknownEventType


EVENT_SCHEMA_VERSION = 1


# ============================================================
# EVENT TYPES
# ============================================================

class EventType(str, Enum):
    """Closed vocabulary of event tags (schema version 1)."""

    MODULE_REGISTERED = "module.registered"
    MODULE_UPDATED = "module.updated"
    MODULE_UNREGISTERED = "module.unregistered"
    MODULE_STATE_CHANGED = "module.state_changed"
    HEALTH_SYSTEM_UPDATED = "health.system_updated"
    MESH_REBUILT = "mesh.rebuilt"
    SCALE_UP = "scaling.scale_up"
    SCALE_DOWN = "scaling.scale_down"
    SCALING_ACTION_FAILED = "scaling.action_failed"
    SUBSCRIBER_OVERFLOW = "subscriber.overflow"
    PEER_STATE_CHANGED = "federation.peer_state_changed"
    SYNC_COMPLETED = "federation.sync_completed"

    @classmethod
    def parse(cls, tag: str) -> "EventType":
        """Parse a tag, raising UnknownEventType outside the vocabulary."""
        try:
            return cls(tag)
        except ValueError:
            raise UnknownEventType(tag) from None

    def matches(self, pattern: str) -> bool:
        """Check if this tag matches an exact tag or wildcard pattern."""
        if pattern == "*" or pattern == self.value:
            return True
        return fnmatch.fnmatchcase(self.value, pattern)


# ============================================================
# PAYLOADS
# ============================================================

@dataclass(frozen=True)
class ModuleRegisteredPayload:
    name: str
    version: str
    record_id: str
    state: str
    dependencies: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    interfaces: Tuple[str, ...] = ()
    logical_clock: int = 0


@dataclass(frozen=True)
class ModuleUpdatedPayload:
    name: str
    version: str
    previous_version: str
    record_id: str
    state: str
    dependencies: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    interfaces: Tuple[str, ...] = ()
    logical_clock: int = 0


@dataclass(frozen=True)
class ModuleUnregisteredPayload:
    name: str
    version: str
    logical_clock: int = 0


@dataclass(frozen=True)
class ModuleStateChangedPayload:
    name: str
    from_state: str
    to_state: str
    reason: str = ""


@dataclass(frozen=True)
class SystemHealthPayload:
    status: str
    score: float
    previous_status: Optional[str] = None
    module_statuses: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class MeshRebuiltPayload:
    edge_count: int
    pending_count: int
    unsatisfied_modules: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScaleUpPayload:
    module: str
    delta: int
    current_instances: int
    target_instances: int
    samples: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ScaleDownPayload:
    module: str
    delta: int
    current_instances: int
    target_instances: int
    samples: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ScalingActionFailedPayload:
    module: str
    direction: str
    reason: str


@dataclass(frozen=True)
class SubscriberOverflowPayload:
    subscriber: str
    dropped_event_id: str
    dropped_event_type: str
    capacity: int


@dataclass(frozen=True)
class PeerStateChangedPayload:
    peer_id: str
    from_state: str
    to_state: str
    reason: str = ""


@dataclass(frozen=True)
class SyncCompletedPayload:
    peer_id: str
    pushed: int
    applied: int
    rejected: int = 0


PAYLOAD_TYPES: Dict[EventType, Type] = {
    EventType.MODULE_REGISTERED: ModuleRegisteredPayload,
    EventType.MODULE_UPDATED: ModuleUpdatedPayload,
    EventType.MODULE_UNREGISTERED: ModuleUnregisteredPayload,
    EventType.MODULE_STATE_CHANGED: ModuleStateChangedPayload,
    EventType.HEALTH_SYSTEM_UPDATED: SystemHealthPayload,
    EventType.MESH_REBUILT: MeshRebuiltPayload,
    EventType.SCALE_UP: ScaleUpPayload,
    EventType.SCALE_DOWN: ScaleDownPayload,
    EventType.SCALING_ACTION_FAILED: ScalingActionFailedPayload,
    EventType.SUBSCRIBER_OVERFLOW: SubscriberOverflowPayload,
    EventType.PEER_STATE_CHANGED: PeerStateChangedPayload,
    EventType.SYNC_COMPLETED: SyncCompletedPayload,
}


# ============================================================
# EVENT ENVELOPE
# ============================================================

@dataclass(frozen=True)
class EventMetadata:
    """Delivery and provenance metadata."""

    delivery_count: int = 0
    origin_cluster: str = LOCAL_ORIGIN
    schema_version: int = EVENT_SCHEMA_VERSION

    @property
    def is_federated(self) -> bool:
        """Check if the change arrived from a peer cluster."""
        return self.origin_cluster != LOCAL_ORIGIN


@dataclass(frozen=True)
class Event:
    """
    Immutable event envelope.

    Use ``Event.create`` rather than the constructor so the payload
    is checked against the vocabulary.
    """

    event_id: str
    type: EventType
    source: str
    timestamp: datetime
    payload: Any
    metadata: EventMetadata = field(default_factory=EventMetadata)

    @classmethod
    def create(
        cls,
        event_type: EventType,
        source: str,
        payload: Any,
        origin_cluster: str = LOCAL_ORIGIN,
        timestamp: Optional[datetime] = None,
    ) -> "Event":
        """
        Build an event, validating the payload schema.

        Raises:
            UnknownEventType: If the tag is unknown or the payload class
                does not belong to it
        """
        if not isinstance(event_type, EventType):
            event_type = EventType.parse(str(event_type))
        expected = PAYLOAD_TYPES[event_type]
        if type(payload) is not expected:
            raise UnknownEventType(
                event_type.value,
                reason=f"payload must be {expected.__name__}, got {type(payload).__name__}",
            )
        return cls(
            event_id=uuid4().hex,
            type=event_type,
            source=source,
            timestamp=timestamp or SystemClock().now(),
            payload=payload,
            metadata=EventMetadata(origin_cluster=origin_cluster),
        )

    def with_delivery_count(self, count: int) -> "Event":
        """Copy of this event with an updated delivery count."""
        return replace(self, metadata=replace(self.metadata, delivery_count=count))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "payload": asdict(self.payload),
            "metadata": asdict(self.metadata),
        }


# ============================================================
# HISTORY FILTER
# ============================================================

@dataclass
class EventFilter:
    """Query over the event history ring buffer. All set fields are ANDed."""

    pattern: Optional[str] = None
    source: Optional[str] = None
    since: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, event: Event) -> bool:
        """Check if an event satisfies this filter."""
        if self.pattern and not event.type.matches(self.pattern):
            return False
        if self.source and event.source != self.source:
            return False
        if self.since and event.timestamp < self.since:
            return False
        return True


__all__ = [
    "EVENT_SCHEMA_VERSION",
    "EventType",
    "ModuleRegisteredPayload",
    "ModuleUpdatedPayload",
    "ModuleUnregisteredPayload",
    "ModuleStateChangedPayload",
    "SystemHealthPayload",
    "MeshRebuiltPayload",
    "ScaleUpPayload",
    "ScaleDownPayload",
    "ScalingActionFailedPayload",
    "SubscriberOverflowPayload",
    "PeerStateChangedPayload",
    "SyncCompletedPayload",
    "PAYLOAD_TYPES",
    "EventMetadata",
    "Event",
    "EventFilter",
]
