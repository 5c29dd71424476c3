"""
Monitoring - AutoScaler.

============================================================
RESPONSIBILITY
============================================================
Hysteresis control loop turning metric samples into scaling
decisions.

- ScaleUp only if ALL of the last N samples exceed the
  scale-up threshold (N = cooldown_samples)
- ScaleDown only if ALL of the last N samples are below the
  scale-down threshold
- After a decision the module is in cooldown: only samples
  newer than the decision count, and no decision is made
  before cooldown_seconds have passed
- At most one decision in flight per module

Decisions are published as events and handed to an external
action handler. The AutoScaler never provisions anything.
Handler failures are published and recorded, never retried.

============================================================
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock
from core.constants import AUTOSCALER_SOURCE
from core.exceptions import ConfigurationError, ModuleNotFound, ScalingActionFailure
from eventbus.bus import EventBus
from eventbus.models import (
    Event,
    EventType,
    ScaleDownPayload,
    ScaleUpPayload,
    ScalingActionFailedPayload,
)
from orchestrator.config import AutoScalerConfig
from orchestrator.models import ModuleRecord
from orchestrator.registry import ModuleRegistry

from .metrics import MetricsCollector
from .models import ScalingDecision, ScalingDirection, ScalingPolicy


logger = logging.getLogger(__name__)

ScalingActionHandler = Callable[[ScalingDecision], Awaitable[None]]

FAILURE_HISTORY = 20


@dataclass
class ModuleScalingState:
    """Control-loop state of one module."""

    instances: int
    last_decision_seq: int = 0
    last_decision_at: Optional[datetime] = None
    last_decision: Optional[ScalingDecision] = None
    in_flight: bool = False
    failures: Deque[str] = field(default_factory=lambda: deque(maxlen=FAILURE_HISTORY))

    def to_dict(self):
        return {
            "instances": self.instances,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "in_flight": self.in_flight,
            "failures": list(self.failures),
        }


class AutoScaler:
    """Periodic scaling control loop."""

    def __init__(
        self,
        registry: ModuleRegistry,
        bus: EventBus,
        config: Optional[AutoScalerConfig] = None,
        handler: Optional[ScalingActionHandler] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._registry = registry
        self._bus = bus
        self._config = config or AutoScalerConfig()
        self._handler = handler
        self._clock = clock or SystemClock()
        self._metrics = metrics or bus.metrics
        self._policies: Dict[str, ScalingPolicy] = {}
        self._states: Dict[str, ModuleScalingState] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

        for name, overrides in self._config.policies.items():
            self.set_policy(name, self.policy_from_config(overrides))

    # --------------------------------------------------------
    # Policies
    # --------------------------------------------------------

    @property
    def default_policy(self) -> ScalingPolicy:
        """Policy built from the configured defaults."""
        c = self._config
        return ScalingPolicy(
            scale_up_threshold=c.scale_up_threshold,
            scale_down_threshold=c.scale_down_threshold,
            cooldown_samples=c.cooldown_samples,
            cooldown_seconds=c.cooldown_seconds,
            metric=c.metric,
            step=c.step,
        )

    def policy_from_config(self, overrides) -> ScalingPolicy:
        """Configured defaults overlaid with per-module keys."""
        try:
            return ScalingPolicy.from_dict(overrides or {}, defaults=self.default_policy)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid scaling policy: {e}", config_key="autoscaler.policies") from e

    def set_policy(self, name: str, policy: ScalingPolicy) -> None:
        """
        Attach a scaling policy to a module.

        Raises:
            ConfigurationError: If the policy is invalid
        """
        errors = policy.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid scaling policy for {name}: {'; '.join(errors)}",
                config_key=f"autoscaler.policies.{name}",
            )
        self._policies[name] = policy
        self._states.setdefault(name, ModuleScalingState(instances=policy.min_instances))
        logger.debug(f"Scaling policy set for {name}: {policy.to_dict()}")

    def remove_policy(self, name: str) -> None:
        self._policies.pop(name, None)
        self._states.pop(name, None)

    def policies(self) -> Dict[str, ScalingPolicy]:
        return dict(self._policies)

    def state(self, name: str) -> Optional[ModuleScalingState]:
        return self._states.get(name)

    # --------------------------------------------------------
    # Control loop
    # --------------------------------------------------------

    async def tick(self) -> List[ScalingDecision]:
        """Evaluate every module with a policy once."""
        decisions = []
        for name in sorted(self._policies):
            decision = await self.evaluate(name)
            if decision is not None:
                decisions.append(decision)
        return decisions

    async def evaluate(self, name: str) -> Optional[ScalingDecision]:
        """Evaluate one module. Returns the decision made, if any."""
        policy = self._policies.get(name)
        state = self._states.get(name)
        if policy is None or state is None or state.in_flight:
            return None

        try:
            record = self._registry.get(name)
        except ModuleNotFound:
            return None

        if state.last_decision_at is not None:
            if self._clock.seconds_since(state.last_decision_at) < policy.cooldown_seconds:
                return None

        fresh = [s for s in record.samples(policy.metric) if s.seq > state.last_decision_seq]
        if len(fresh) < policy.cooldown_samples:
            return None
        window = fresh[-policy.cooldown_samples:]
        values = tuple(s.value for s in window)
        current = self._current_instances(record, state)

        if all(v > policy.scale_up_threshold for v in values) and current < policy.max_instances:
            direction = ScalingDirection.UP
            target = min(policy.max_instances, current + policy.step)
        elif all(v < policy.scale_down_threshold for v in values) and current > policy.min_instances:
            direction = ScalingDirection.DOWN
            target = max(policy.min_instances, current - policy.step)
        else:
            return None

        decision = ScalingDecision(
            module=name,
            direction=direction,
            delta=abs(target - current),
            current_instances=current,
            target_instances=target,
            samples=values,
            decided_at=self._clock.now(),
        )

        state.in_flight = True
        state.last_decision_seq = window[-1].seq
        state.last_decision_at = decision.decided_at
        state.last_decision = decision
        try:
            await self._publish_decision(decision)
            if await self._dispatch(decision):
                state.instances = target
        finally:
            state.in_flight = False
        return decision

    def _current_instances(self, record: ModuleRecord, state: ModuleScalingState) -> int:
        if record.last_health is not None and record.last_health.total_instances > 0:
            state.instances = record.last_health.total_instances
        return state.instances

    async def _publish_decision(self, decision: ScalingDecision) -> None:
        if decision.direction == ScalingDirection.UP:
            event_type, payload_cls = EventType.SCALE_UP, ScaleUpPayload
        else:
            event_type, payload_cls = EventType.SCALE_DOWN, ScaleDownPayload
        await self._bus.publish(Event.create(
            event_type,
            AUTOSCALER_SOURCE,
            payload_cls(
                module=decision.module,
                delta=decision.delta,
                current_instances=decision.current_instances,
                target_instances=decision.target_instances,
                samples=decision.samples,
            ),
            timestamp=self._clock.now(),
        ))
        self._metrics.increment(
            "scaling_decisions_total",
            {"module": decision.module, "direction": decision.direction.value},
        )
        logger.info(
            f"Scale {decision.direction.value} {decision.module}: "
            f"{decision.current_instances} -> {decision.target_instances} (samples={list(decision.samples)})"
        )

    async def _dispatch(self, decision: ScalingDecision) -> bool:
        if self._handler is None:
            return True
        try:
            await asyncio.wait_for(
                self._handler(decision),
                timeout=self._config.action_timeout_seconds,
            )
            return True
        except asyncio.CancelledError:
            raise
        except ScalingActionFailure as e:
            reason = e.reason
        except asyncio.TimeoutError:
            reason = f"action timed out after {self._config.action_timeout_seconds}s"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
        await self.report_action_failure(decision.module, reason, decision.direction)
        return False

    async def report_action_failure(
        self,
        module: str,
        reason: str,
        direction: Optional[ScalingDirection] = None,
    ) -> None:
        """Record a failed scaling action and publish it. Not retried."""
        state = self._states.get(module)
        if state is not None:
            state.failures.append(reason)
        if direction is None and state is not None and state.last_decision is not None:
            direction = state.last_decision.direction

        await self._bus.publish(Event.create(
            EventType.SCALING_ACTION_FAILED,
            AUTOSCALER_SOURCE,
            ScalingActionFailedPayload(
                module=module,
                direction=direction.value if direction else "unknown",
                reason=reason,
            ),
            timestamp=self._clock.now(),
        ))
        self._metrics.increment("scaling_action_failures_total", {"module": module})
        logger.warning(f"Scaling action failed for {module}: {reason}")

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic loop."""
        if self._running or not self._config.enabled:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="autoscaler")
        logger.info(f"AutoScaler started (interval={self._config.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the periodic loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("AutoScaler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"AutoScaler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self._config.interval_seconds)


__all__ = [
    "ScalingActionHandler",
    "ModuleScalingState",
    "AutoScaler",
]
