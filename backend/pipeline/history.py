"""Metadata-only run records for run history."""

import time
import uuid
from collections.abc import Sequence

from models.schemas import Edge, ErrorCategory, Node, NodeStatus, RunRecord
from pipeline.engine import RunResult

PROJECT_DESCRIPTION_SHORT_CHARS = 120

_ERROR_PATTERNS: dict[ErrorCategory, str] = {
    ErrorCategory.AUTH: "auth_failure",
    ErrorCategory.RATE_LIMIT: "rate_limit",
    ErrorCategory.UNAVAILABLE: "network",
    ErrorCategory.TIMEOUT: "timeout",
    ErrorCategory.SERVER_ERROR: "server_error",
    ErrorCategory.UNKNOWN: "unknown",
}


def build_run_record(
    result: RunResult,
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    project_description: str,
    record_id: str | None = None,
) -> RunRecord:
    """Project a finished run onto a RunRecord. No outputs are copied."""
    failed = [node for node in nodes if result.statuses.get(node.id) == NodeStatus.ERROR]

    patterns: list[str] = []
    for category in result.error_categories.values():
        pattern = _ERROR_PATTERNS[category]
        if pattern not in patterns:
            patterns.append(pattern)

    summary = result.summary()
    return RunRecord(
        id=record_id or result.run_id or str(uuid.uuid4()),
        timestamp=result.finished_at or time.time(),
        project_description_short=(project_description or "")[:PROJECT_DESCRIPTION_SHORT_CHARS],
        mode=result.mode,
        total_nodes=len(nodes),
        edge_count=len(edges),
        success_count=summary.done_count,
        failed_count=summary.error_count,
        skipped_count=summary.skipped_count,
        heal_count=summary.healed_count,
        node_types=[node.template_id or node.id for node in nodes],
        failed_node_types=[node.template_id or node.id for node in failed],
        models_used=dict(result.models_used),
        error_patterns=patterns,
        duration_ms=result.duration_ms,
    )
