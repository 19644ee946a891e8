"""Event system for pipeline progress reporting.

This package is the single typed channel between the execution engine (and
the advisor) and any presentation layer. Publishers never know who is
listening; consumers subscribe per run id.

Key Components:
    - EventType: Enum of all event types in the system
    - PipelineEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, PipelineEvent, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(PipelineEvent(
    ...     type=EventType.LOG_LINE,
    ...     run_id="run_123",
    ...     data={"message": "Running: Requirements"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    PipelineEvent,
)

__all__ = [
    "EventType",
    "PipelineEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
