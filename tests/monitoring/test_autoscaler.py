"""
Tests for the autoscaler control loop.

============================================================
PURPOSE
============================================================
- Hysteresis: every sample in the window must cross the threshold
- Cooldown by time and by fresh samples
- Instance bounds
- Failed actions are published, not retried

============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.exceptions import ConfigurationError, ScalingActionFailure
from eventbus.models import EventFilter, EventType
from monitoring.autoscaler import AutoScaler
from monitoring.models import ScalingDirection, ScalingPolicy
from orchestrator.config import AutoScalerConfig
from orchestrator.models import HealthSnapshot, HealthStatus

from conftest import descriptor


POLICY = ScalingPolicy(
    min_instances=1,
    max_instances=3,
    scale_up_threshold=80.0,
    scale_down_threshold=20.0,
    cooldown_samples=3,
    cooldown_seconds=60.0,
)


async def feed(registry, clock, name, *values, instances=0):
    """Record one health sample per value."""
    for value in values:
        snapshot = HealthSnapshot(
            HealthStatus.HEALTHY, clock.now(), instances, instances
        )
        await registry.record_health(name, snapshot, {"cpu": value})


def make_scaler(registry, bus, clock, metrics, handler=None, **config):
    scaler = AutoScaler(
        registry,
        bus,
        config=AutoScalerConfig(**config),
        handler=handler,
        clock=clock,
        metrics=metrics,
    )
    scaler.set_policy("api", POLICY)
    return scaler


def scaling_events(bus):
    return bus.get_event_history(EventFilter(pattern="scaling.*"))


# ============================================================
# DECISIONS
# ============================================================

class TestDecisions:
    """Tests for threshold hysteresis."""

    @pytest.mark.asyncio
    async def test_sustained_load_scales_up(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 85, 90, 88)
        decisions = await scaler.tick()

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.direction == ScalingDirection.UP
        assert (decision.current_instances, decision.target_instances) == (1, 2)
        assert decision.samples == (85.0, 90.0, 88.0)

        [event] = scaling_events(bus)
        assert event.type == EventType.SCALE_UP
        assert event.payload.module == "api"
        assert event.payload.delta == 1
        assert scaler.state("api").instances == 2

    @pytest.mark.asyncio
    async def test_single_spike_ignored(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 50, 60, 95)

        assert await scaler.tick() == []
        assert scaling_events(bus) == []

    @pytest.mark.asyncio
    async def test_too_few_samples(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 95, 95)
        assert await scaler.tick() == []

    @pytest.mark.asyncio
    async def test_sustained_idle_scales_down(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 10, 5, 12, instances=3)
        [decision] = await scaler.tick()

        assert decision.direction == ScalingDirection.DOWN
        assert (decision.current_instances, decision.target_instances) == (3, 2)
        assert scaling_events(bus)[0].type == EventType.SCALE_DOWN

    @pytest.mark.asyncio
    async def test_no_scale_up_at_max(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 95, 95, 95, instances=3)
        assert await scaler.tick() == []

    @pytest.mark.asyncio
    async def test_no_scale_down_at_min(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 1, 1, 1)
        assert await scaler.tick() == []

    @pytest.mark.asyncio
    async def test_module_without_policy_ignored(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        await registry.register(descriptor("db"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "db", 99, 99, 99)
        assert await scaler.tick() == []

    @pytest.mark.asyncio
    async def test_unregistered_module_ignored(self, registry, bus, clock, metrics):
        scaler = make_scaler(registry, bus, clock, metrics)
        assert await scaler.evaluate("api") is None


# ============================================================
# COOLDOWN
# ============================================================

class TestCooldown:
    """Tests for the post-decision cooldown."""

    @pytest.mark.asyncio
    async def test_time_and_fresh_samples_required(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 85, 90, 88)
        assert len(await scaler.tick()) == 1

        await feed(registry, clock, "api", 91, 92, 93)
        assert await scaler.tick() == []

        clock.advance(seconds=61)
        await feed(registry, clock, "api", 94)
        [decision] = await scaler.tick()
        assert decision.samples == (92.0, 93.0, 94.0)
        assert decision.target_instances == 3

    @pytest.mark.asyncio
    async def test_old_samples_do_not_count_after_cooldown(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)

        await feed(registry, clock, "api", 85, 90, 88)
        await scaler.tick()

        clock.advance(seconds=120)
        await feed(registry, clock, "api", 95)
        assert await scaler.tick() == []


# ============================================================
# ACTION HANDLER
# ============================================================

class TestActionHandler:
    """Tests for dispatching decisions to the external handler."""

    @pytest.mark.asyncio
    async def test_handler_receives_decision(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        handler = AsyncMock()

        scaler = make_scaler(registry, bus, clock, metrics, handler=handler)
        await feed(registry, clock, "api", 85, 90, 88)
        [decision] = await scaler.tick()

        handler.assert_awaited_once_with(decision)
        assert scaler.state("api").instances == 2

    @pytest.mark.asyncio
    async def test_handler_failure_published(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))

        async def handler(decision):
            raise ScalingActionFailure(decision.module, "quota exceeded")

        scaler = make_scaler(registry, bus, clock, metrics, handler=handler)
        await feed(registry, clock, "api", 85, 90, 88)
        await scaler.tick()

        failed = bus.get_event_history(EventFilter(pattern="scaling.action_failed"))
        assert len(failed) == 1
        assert failed[0].payload.reason == "quota exceeded"
        assert failed[0].payload.direction == "up"

        state = scaler.state("api")
        assert state.instances == 1
        assert list(state.failures) == ["quota exceeded"]
        assert not state.in_flight
        assert metrics.value("scaling_action_failures_total", {"module": "api"}) == 1

    @pytest.mark.asyncio
    async def test_handler_timeout(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))

        async def handler(decision):
            await asyncio.sleep(5)

        scaler = make_scaler(
            registry, bus, clock, metrics, handler=handler, action_timeout_seconds=0.01
        )
        await feed(registry, clock, "api", 85, 90, 88)
        await scaler.tick()

        [failed] = bus.get_event_history(EventFilter(pattern="scaling.action_failed"))
        assert "timed out" in failed.payload.reason

    @pytest.mark.asyncio
    async def test_failure_not_retried(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        calls = []

        async def handler(decision):
            calls.append(decision)
            raise RuntimeError("boom")

        scaler = make_scaler(registry, bus, clock, metrics, handler=handler)
        await feed(registry, clock, "api", 85, 90, 88)
        await scaler.tick()
        await scaler.tick()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_external_failure_report(self, registry, bus, clock, metrics):
        await registry.register(descriptor("api"))
        scaler = make_scaler(registry, bus, clock, metrics)
        await feed(registry, clock, "api", 85, 90, 88)
        await scaler.tick()

        await scaler.report_action_failure("api", "node pool exhausted")

        [failed] = bus.get_event_history(EventFilter(pattern="scaling.action_failed"))
        assert failed.payload.direction == "up"


# ============================================================
# POLICIES
# ============================================================

class TestPolicies:
    """Tests for policy configuration."""

    def test_invalid_policy_rejected(self, registry, bus, clock, metrics):
        scaler = AutoScaler(registry, bus, clock=clock, metrics=metrics)
        with pytest.raises(ConfigurationError):
            scaler.set_policy("api", ScalingPolicy(scale_down_threshold=90, scale_up_threshold=80))

    def test_config_overrides_defaults(self, registry, bus, clock, metrics):
        config = AutoScalerConfig(
            scale_up_threshold=70.0,
            policies={"api": {"max_instances": 5}},
        )
        scaler = AutoScaler(registry, bus, config=config, clock=clock, metrics=metrics)

        policy = scaler.policies()["api"]
        assert policy.max_instances == 5
        assert policy.scale_up_threshold == 70.0

    def test_unknown_policy_key(self, registry, bus, clock, metrics):
        config = AutoScalerConfig(policies={"api": {"max_instancez": 5}})
        with pytest.raises(ConfigurationError):
            AutoScaler(registry, bus, config=config, clock=clock, metrics=metrics)

    def test_remove_policy(self, registry, bus, clock, metrics):
        scaler = make_scaler(registry, bus, clock, metrics)
        scaler.remove_policy("api")
        assert scaler.policies() == {}
        assert scaler.state("api") is None
