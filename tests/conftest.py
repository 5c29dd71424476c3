"""
Shared fixtures for engine tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import List

import pytest

from core.clock import MockClock
from eventbus.bus import EventBus
from eventbus.models import Event
from monitoring.metrics import MetricsCollector
from orchestrator.config import EventBusConfig, RegistryConfig
from orchestrator.models import ModuleDescriptor
from orchestrator.registry import ModuleRegistry
from orchestrator.vocabulary import Vocabulary


START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def descriptor(name: str, *deps: str, version: str = "1.0.0", **kwargs) -> ModuleDescriptor:
    """Short-hand descriptor builder."""
    return ModuleDescriptor(name=name, version=version, dependencies=tuple(deps), **kwargs)


async def settle(bus: EventBus, timeout: float = 2.0) -> None:
    """Let push subscribers drain."""
    await asyncio.sleep(0)
    assert await bus.wait_idle(timeout=timeout)


class EventRecorder:
    """Push subscriber that keeps every event it receives."""

    def __init__(self):
        self.events: List[Event] = []

    async def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[Event]:
        return [e for e in self.events if e.type == event_type]


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Mock clock pinned to a fixed start time."""
    return MockClock(START)


@pytest.fixture
def metrics(clock):
    return MetricsCollector(clock=clock)


@pytest.fixture
def bus(metrics, clock):
    return EventBus(EventBusConfig(), metrics=metrics, clock=clock)


@pytest.fixture
def vocabulary():
    return Vocabulary.default()


@pytest.fixture
def registry(bus, vocabulary, clock, metrics):
    return ModuleRegistry(
        bus,
        vocabulary=vocabulary,
        config=RegistryConfig(cluster_id="alpha"),
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def recorder():
    return EventRecorder()
