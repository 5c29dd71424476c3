"""
Event Bus Package.

============================================================
PURPOSE
============================================================
In-process publish/subscribe used by every engine component
to announce state changes.

PRINCIPLES:
1. CLOSED VOCABULARY - every event has a known tag and payload
2. NON-BLOCKING - publishing only enqueues
3. ISOLATED - a slow subscriber never stalls the others
4. ORDERED - per subscriber, events arrive in publish order

============================================================
"""

from .models import (
    EVENT_SCHEMA_VERSION,
    PAYLOAD_TYPES,
    Event,
    EventFilter,
    EventMetadata,
    EventType,
    MeshRebuiltPayload,
    ModuleRegisteredPayload,
    ModuleStateChangedPayload,
    ModuleUnregisteredPayload,
    ModuleUpdatedPayload,
    PeerStateChangedPayload,
    ScaleDownPayload,
    ScaleUpPayload,
    ScalingActionFailedPayload,
    SubscriberOverflowPayload,
    SyncCompletedPayload,
    SystemHealthPayload,
)
from .bus import EventBus, EventHandler, PublishResult, Subscription, SubscriptionClosed


__all__ = [
    "EVENT_SCHEMA_VERSION",
    "PAYLOAD_TYPES",
    "Event",
    "EventFilter",
    "EventMetadata",
    "EventType",
    "MeshRebuiltPayload",
    "ModuleRegisteredPayload",
    "ModuleStateChangedPayload",
    "ModuleUnregisteredPayload",
    "ModuleUpdatedPayload",
    "PeerStateChangedPayload",
    "ScaleDownPayload",
    "ScaleUpPayload",
    "ScalingActionFailedPayload",
    "SubscriberOverflowPayload",
    "SyncCompletedPayload",
    "SystemHealthPayload",
    "EventBus",
    "EventHandler",
    "PublishResult",
    "Subscription",
    "SubscriptionClosed",
]
