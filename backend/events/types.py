"""Event type definitions for the pipeline event system.

This module defines every event the execution engine and the advisor emit
for presentation layers. Every per-node state change produces an event; the
engine itself persists nothing.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the pipeline system.

    Events are categorized by:
    - Run lifecycle: start, completion, cancellation and failure of a run
    - Node progress: status changes, final outputs and streamed chunks
    - Run log: human-readable progress lines
    - Advisor: optimizer / auto-fix progress
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_CANCELLED = "run_cancelled"
    RUN_ERROR = "run_error"
    RUN_SUMMARY = "run_summary"
    RUN_CLOSED = "run_closed"

    # Node progress
    NODE_STATUS_CHANGED = "node_status_changed"
    NODE_OUTPUT = "node_output"
    NODE_CHUNK = "node_chunk"

    # Run log
    LOG_LINE = "log_line"

    # Advisor
    ADVISOR_PROGRESS = "advisor_progress"


class PipelineEvent(BaseModel):
    """An event emitted while a pipeline run (or an advisor call) progresses.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - run_id: Which run this event belongs to
    - node_id: Which node the event concerns (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    RUN_STARTED:
        - mode: str - Execution mode (dag, sequential, parallel)
        - levels: list - Scheduled levels of node ids
        - node_count: int - Number of nodes in the run

    NODE_STATUS_CHANGED:
        - status: str - New NodeStatus value

    NODE_OUTPUT:
        - output: str - Final output (or error marker) of the node

    NODE_CHUNK:
        - chunk: str - Incremental output text

    LOG_LINE:
        - message: str - Human-readable progress line

    RUN_SUMMARY:
        - summary: dict - RunSummary fields

    RUN_ERROR:
        - error: str - Error message
        - phase: str - Where the failure happened

    ADVISOR_PROGRESS:
        - operation: str - "optimize" or "auto_fix"
        - model: str - Model currently being asked
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "node_status_changed",
                    "timestamp": 1699876543.123,
                    "run_id": "run_abc123",
                    "node_id": "requirements",
                    "data": {"status": "running"},
                }
            ]
        }
    }
