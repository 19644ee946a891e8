"""Async event bus for pipeline progress reporting.

The execution engine and the advisor publish typed PipelineEvents to a
single channel keyed by run id; presentation layers (the WebSocket
handler, tests, CLI consumers) subscribe instead of handing callbacks to
the engine.

The bus supports:
- Multiple subscribers per run
- Async event delivery via asyncio.Queue
- Buffering of events published before the first subscriber connects
- Per-run history for replay on reconnect
- Run lifecycle management (close_run terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, PipelineEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus for pipeline events.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. A run typically starts emitting before the
        WebSocket client has attached.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(PipelineEvent(
        ...     type=EventType.NODE_STATUS_CHANGED,
        ...     run_id="run_123",
        ...     node_id="requirements",
        ...     data={"status": "running"},
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")

    Attributes:
        _subscribers: Dict mapping run_id to list of subscriber queues
        _event_buffer: Dict mapping run_id to events awaiting a subscriber
        _event_history: Dict mapping run_id to every published event
        _lock: Lock guarding the registries above
    """

    # Maximum number of events to retain per run for replay on reconnect.
    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[PipelineEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[PipelineEvent]] = defaultdict(list)
        self._event_history: dict[str, list[PipelineEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[PipelineEvent]:
        """Subscribe to events for a run.

        If events were buffered for this run before anyone subscribed, they
        are delivered to the new subscriber immediately.

        Args:
            run_id: The run to subscribe to

        Returns:
            An asyncio.Queue that will receive PipelineEvent objects
        """
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        buffered_events: list[PipelineEvent] = []

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])
            if run_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(run_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[PipelineEvent]) -> None:
        """Remove a queue from a run's subscribers; unknown queues are a no-op."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]
            subscriber_count = len(queues)

        logger.info("subscriber_removed", run_id=run_id, subscriber_count=subscriber_count)

    async def publish(self, event: PipelineEvent) -> None:
        """Publish an event to all subscribers of its run.

        Events are recorded in the run's history. If the run has no
        subscribers yet the event is buffered until one connects.

        Args:
            event: The PipelineEvent to publish
        """
        with self._lock:
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

            subscribers = list(self._subscribers.get(event.run_id, []))

            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                logger.debug(
                    "event_buffered",
                    run_id=event.run_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.run_id]),
                )
                return

        # A stalled consumer must not block the engine
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            node_id=event.node_id,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, run_id: str) -> list[PipelineEvent]:
        """Return all stored events for a run in chronological order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Close a run's stream and notify all subscribers.

        Puts a RUN_CLOSED sentinel into each subscriber queue so consumers
        can leave their read loops, then drops subscribers and buffered
        events. History is kept for replay.

        Args:
            run_id: The run to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffered = self._event_buffer.pop(run_id, [])

        for queue in queues_to_signal:
            await queue.put(
                PipelineEvent(
                    type=EventType.RUN_CLOSED,
                    run_id=run_id,
                    data={"reason": "run_closed"},
                )
            )

        if queues_to_signal or buffered:
            logger.info(
                "run_stream_closed",
                run_id=run_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )
        else:
            logger.debug("close_run_not_found", run_id=run_id)

    def get_subscriber_count(self, run_id: str) -> int:
        """Return the number of subscribers for a run."""
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        """Forget the stored history of a run."""
        with self._lock:
            self._event_history.pop(run_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
