"""
Event Bus - In-process Publish/Subscribe.

============================================================
RESPONSIBILITY
============================================================
Propagates engine events to every interested subscriber.

- Exact tag, "*" or wildcard ("module.*") subscriptions
- Push (handler + dedicated worker) or pull (async iteration)
- Bounded queue per subscriber; a full queue drops the event
  for that subscriber only and emits subscriber.overflow
- At-least-once delivery: failing handlers are retried
- Fixed-size history ring buffer (not a durable log)

============================================================
ORDERING
============================================================
Each subscriber has one FIFO queue and one worker, so events
reach a subscriber in publish order. Publishing never waits
for a subscriber: it only enqueues.

============================================================
"""

import asyncio
import inspect
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

from core.clock import ClockProtocol, SystemClock
from core.constants import EVENTBUS_SOURCE
from core.exceptions import EventError, SubscriberOverflow, UnknownEventType
from monitoring.metrics import MetricsCollector
from orchestrator.config import EventBusConfig

from .models import Event, EventFilter, EventType, SubscriberOverflowPayload


logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


# ============================================================
# RESULTS
# ============================================================

@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish call."""

    event_id: str
    delivered: Tuple[str, ...] = ()
    dropped: Tuple[str, ...] = ()
    overflows: Tuple[SubscriberOverflow, ...] = ()

    @property
    def fully_delivered(self) -> bool:
        return not self.dropped


class SubscriptionClosed(EventError):
    """Pull on a subscription that has been unsubscribed."""

    def __init__(self, name: str):
        super().__init__(f"Subscription closed: {name}", context={"subscription": name})


# ============================================================
# SUBSCRIPTION
# ============================================================

class Subscription:
    """
    One subscriber's view of the bus.

    Push subscriptions own a worker task that invokes the handler.
    Pull subscriptions are consumed with ``get()`` or ``async for``.
    """

    def __init__(
        self,
        bus: "EventBus",
        pattern: str,
        name: str,
        capacity: int,
        handler: Optional[EventHandler] = None,
    ):
        self.pattern = pattern
        self.name = name
        self.capacity = capacity
        self.handler = handler
        self.delivered = 0
        self.dropped = 0
        self.failures = 0
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._active = True
        self._closed = asyncio.Event()
        self._in_delivery = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_push(self) -> bool:
        return self.handler is not None

    @property
    def pending(self) -> int:
        """Events waiting in the queue."""
        return self._queue.qsize()

    @property
    def idle(self) -> bool:
        return self._queue.empty() and not self._in_delivery

    def matches(self, event_type: EventType) -> bool:
        return event_type.matches(self.pattern)

    # --------------------------------------------------------
    # Pull API
    # --------------------------------------------------------

    async def get(self, timeout: Optional[float] = None) -> Event:
        """
        Next event of a pull subscription.

        Raises:
            asyncio.TimeoutError: No event within ``timeout``
            SubscriptionClosed: Subscription closed and drained
        """
        if self.is_push:
            raise EventError(f"Subscription {self.name} is push-based")
        if not self._queue.empty():
            return self._take()
        if not self._active:
            raise SubscriptionClosed(self.name)

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, closer):
                if not task.done():
                    task.cancel()

        if getter in done:
            self._queue.task_done()
            self.delivered += 1
            return getter.result()
        if closer in done:
            raise SubscriptionClosed(self.name)
        raise asyncio.TimeoutError()

    def _take(self) -> Event:
        event = self._queue.get_nowait()
        self._queue.task_done()
        self.delivered += 1
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    # --------------------------------------------------------
    # Internal
    # --------------------------------------------------------

    def _offer(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    def _start(self) -> None:
        if self.is_push:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"eventbus-{self.name}"
            )

    async def _run(self) -> None:
        while self._active:
            event = await self._queue.get()
            self._in_delivery = True
            try:
                await self._bus._deliver(self, event)
            finally:
                self._in_delivery = False
                self._queue.task_done()

    def _stop(self) -> None:
        self._active = False
        self._closed.set()
        if self.is_push:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
        if self._worker is not None and not self._in_delivery:
            self._worker.cancel()

    def __repr__(self) -> str:
        kind = "push" if self.is_push else "pull"
        return f"Subscription(name={self.name!r}, pattern={self.pattern!r}, {kind})"


# ============================================================
# EVENT BUS
# ============================================================

class EventBus:
    """
    In-process event bus.

    Owned by the engine and passed to every component; there is no
    module-level bus.
    """

    def __init__(
        self,
        config: Optional[EventBusConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or EventBusConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)
        self._subscriptions: Dict[str, Subscription] = {}
        self._history: Deque[Event] = deque(maxlen=self._config.history_size)
        self._ids = itertools.count(1)
        self._closed = False
        self._logger = logging.getLogger(__name__)

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    # --------------------------------------------------------
    # Subscriptions
    # --------------------------------------------------------

    def subscribe(
        self,
        pattern: str,
        handler: Optional[EventHandler] = None,
        capacity: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to events whose tag matches ``pattern``.

        Must be called from a running event loop. Without a handler the
        subscription is pull-based.

        Raises:
            UnknownEventType: If an exact (non-wildcard) pattern is not a known tag
        """
        if self._closed:
            raise EventError("Event bus is closed")
        if not any(ch in pattern for ch in "*?["):
            EventType.parse(pattern)

        name = name or f"{pattern}#{next(self._ids)}"
        if name in self._subscriptions:
            raise EventError(f"Subscription name already in use: {name}")

        subscription = Subscription(
            bus=self,
            pattern=pattern,
            name=name,
            capacity=capacity or self._config.queue_capacity,
            handler=handler,
        )
        subscription._start()
        self._subscriptions[name] = subscription
        self._logger.debug(f"Subscribed {subscription}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """
        Stop delivery. An event already handed to the handler completes;
        events still queued for a push subscriber are discarded.
        """
        self._subscriptions.pop(subscription.name, None)
        subscription._stop()
        self._logger.debug(f"Unsubscribed {subscription}")

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    # --------------------------------------------------------
    # Publishing
    # --------------------------------------------------------

    async def publish(self, event: Event) -> PublishResult:
        """
        Enqueue an event for every matching subscriber.

        Never waits for subscriber processing. A full subscriber queue
        drops the event for that subscriber and emits subscriber.overflow.
        """
        if not isinstance(event, Event):
            raise UnknownEventType(type(event).__name__, reason="not an Event")

        self._history.append(event)
        self._metrics.increment("eventbus_published_total", {"type": event.type.value})

        delivered, dropped = [], []
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or not subscription.matches(event.type):
                continue
            queued = event if subscription.is_push else event.with_delivery_count(1)
            if subscription._offer(queued):
                delivered.append(subscription.name)
            else:
                dropped.append(subscription)

        overflows = []
        for subscription in dropped:
            overflow = SubscriberOverflow(subscription.name, event.event_id, subscription.capacity)
            overflows.append(overflow)
            self._metrics.increment("eventbus_dropped_total", {"subscriber": subscription.name})
            self._logger.warning(f"{overflow.message}, dropped {event.type.value} {event.event_id}")

        if event.type != EventType.SUBSCRIBER_OVERFLOW:
            for subscription in dropped:
                await self.publish(
                    Event.create(
                        EventType.SUBSCRIBER_OVERFLOW,
                        EVENTBUS_SOURCE,
                        SubscriberOverflowPayload(
                            subscriber=subscription.name,
                            dropped_event_id=event.event_id,
                            dropped_event_type=event.type.value,
                            capacity=subscription.capacity,
                        ),
                        timestamp=self._clock.now(),
                    )
                )

        return PublishResult(
            event_id=event.event_id,
            delivered=tuple(delivered),
            dropped=tuple(s.name for s in dropped),
            overflows=tuple(overflows),
        )

    async def _deliver(self, subscription: Subscription, event: Event) -> bool:
        """Invoke a push handler with retries. Returns True once it succeeds."""
        attempts = self._config.max_delivery_attempts
        for attempt in range(1, attempts + 1):
            delivery = event.with_delivery_count(attempt)
            try:
                result = subscription.handler(delivery)
                if inspect.isawaitable(result):
                    await asyncio.wait_for(result, timeout=self._config.handler_timeout_seconds)
                subscription.delivered += 1
                self._metrics.increment("eventbus_delivered_total", {"subscriber": subscription.name})
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                subscription.failures += 1
                self._metrics.increment(
                    "eventbus_handler_failures_total", {"subscriber": subscription.name}
                )
                if attempt < attempts:
                    self._logger.warning(
                        f"Handler {subscription.name} failed on {event.type.value} "
                        f"(attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
                    )
                else:
                    self._logger.error(
                        f"Handler {subscription.name} gave up on {event.type.value} "
                        f"{event.event_id} after {attempts} attempts",
                        exc_info=True,
                    )
        return False

    # --------------------------------------------------------
    # History
    # --------------------------------------------------------

    def get_event_history(self, event_filter: Optional[EventFilter] = None) -> List[Event]:
        """Past events, oldest first, from the bounded ring buffer."""
        events = list(self._history)
        if event_filter is None:
            return events
        events = [e for e in events if event_filter.matches(e)]
        if event_filter.limit is not None:
            events = events[-event_filter.limit:] if event_filter.limit > 0 else []
        return events

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every push subscriber has drained its queue.

        Returns:
            True when idle, False if ``timeout`` expired first
        """
        timeout = self._config.idle_timeout_seconds if timeout is None else timeout

        async def _drain() -> None:
            while True:
                pending = [s for s in self._subscriptions.values() if s.is_push and not s.idle]
                if not pending:
                    return
                for subscription in pending:
                    await subscription._queue.join()

        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            self._logger.warning(f"Event bus not idle after {timeout}s")
            return False

    async def close(self) -> None:
        """Cancel every worker and close all subscriptions."""
        self._closed = True
        workers = []
        for subscription in list(self._subscriptions.values()):
            subscription._stop()
            if subscription._worker is not None:
                subscription._worker.cancel()
                workers.append(subscription._worker)
        self._subscriptions.clear()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        """Per-subscriber counters."""
        return {
            "history_size": len(self._history),
            "subscriptions": {
                s.name: {
                    "pattern": s.pattern,
                    "mode": "push" if s.is_push else "pull",
                    "pending": s.pending,
                    "delivered": s.delivered,
                    "dropped": s.dropped,
                    "failures": s.failures,
                }
                for s in self._subscriptions.values()
            },
        }


__all__ = [
    "EventHandler",
    "PublishResult",
    "SubscriptionClosed",
    "Subscription",
    "EventBus",
]
