"""LLM-assisted pipeline advisor.

Two operations, each one meta-call to an analysis model:
- optimize: before a run, propose a model per node and a complete edge set
- auto_fix: after a run, diagnose error/skipped nodes and propose fixes

The analysis call walks the optimizer preference order over the available
models and advances on any non-cancellation failure. Replies are decoded
all-or-nothing: either a validated result or an exception, never a
partially applied change. Applying a result to the graph is left to the
pure helpers at the bottom of this module.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from catalog.models import ModelCatalog
from catalog.providers import ProviderAvailability
from catalog.templates import TemplateRegistry
from events.bus import EventBus
from events.types import EventType, PipelineEvent
from models.schemas import (
    AutoDriver,
    AutoFixResult,
    Edge,
    ModelDriver,
    Node,
    NodeStatus,
    OptimizerResult,
)
from pipeline.cancellation import CancellationToken
from pipeline.errors import AdvisorUnavailableError, PipelineCancelledError
from pipeline.prompts import (
    AUTO_FIX_SYSTEM_PROMPT,
    OPTIMIZER_SYSTEM_PROMPT,
    build_auto_fix_user_prompt,
    build_optimizer_user_prompt,
)
from pipeline.utils import decode_structured

if TYPE_CHECKING:
    from callers.base import NodeCaller

logger = structlog.get_logger(__name__)

OPTIMIZER_PREFERENCE: tuple[str, ...] = (
    "claude-sonnet",
    "claude-opus",
    "gpt-4o",
    "gemini-flash",
    "gemini-pro",
    "openrouter-claude",
    "deepseek-r1",
    "deepseek-chat",
    "llama-70b",
    "gpt-4o-mini",
    "llama-8b",
    "ollama-llama",
    "ollama-mistral",
    "ollama-gemma",
)

# Values a model may use to mean "let auto selection decide"
_AUTO_MODEL_VALUES = frozenset({"", "auto", "null", "none"})


def validate_edges(raw_edges: Any, node_ids: Sequence[str] | set[str]) -> list[Edge] | None:
    """Keep only well-formed edges between known, distinct nodes.

    Returns None when ``raw_edges`` is not a list at all. Entries that are
    not sequences of at least two items, reference unknown ids, or loop
    onto themselves are dropped silently.
    """
    if not isinstance(raw_edges, list):
        return None
    known = set(node_ids)
    valid: list[Edge] = []
    for entry in raw_edges:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            continue
        from_id, to_id = str(entry[0]), str(entry[1])
        if from_id in known and to_id in known and from_id != to_id:
            valid.append((from_id, to_id))
    return valid


def _normalize_model(model: str | None) -> str | None:
    if model is None or model.strip().lower() in _AUTO_MODEL_VALUES:
        return None
    return model.strip()


class PipelineAdvisor:
    """Optimizer and auto-fix over a NodeCaller.

    Attributes:
        caller: Performs the analysis calls
        catalog: Model catalog
        templates: Node template lookup
        event_bus: Where ADVISOR_PROGRESS events go (optional)
    """

    def __init__(
        self,
        caller: NodeCaller,
        *,
        catalog: ModelCatalog | None = None,
        templates: TemplateRegistry | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.caller = caller
        self.catalog = catalog or ModelCatalog()
        self.templates = templates or TemplateRegistry()
        self.event_bus = event_bus

    def candidate_models(self, availability: ProviderAvailability) -> list[str]:
        """Preferred available models first, then every other available model."""
        available = [option.id for option in self.catalog.available(availability)]
        ordered = [model_id for model_id in OPTIMIZER_PREFERENCE if model_id in available]
        ordered.extend(model_id for model_id in available if model_id not in ordered)
        return ordered

    async def optimize(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        project_description: str,
        availability: ProviderAvailability,
        cancel_token: CancellationToken | None = None,
        channel: str = "advisor",
    ) -> OptimizerResult:
        """Propose model assignments and a complete replacement edge list.

        Raises:
            AdvisorUnavailableError: No model configured, or every one failed
            AdvisorResponseMalformedError: The reply held no usable JSON object
            PipelineCancelledError: The token fired
        """
        available = self.catalog.available(availability)
        user_prompt = build_optimizer_user_prompt(
            nodes, edges, project_description, available, self.templates
        )
        raw, model_id = await self._call_with_fallback(
            "optimize", OPTIMIZER_SYSTEM_PROMPT, user_prompt, availability, cancel_token, channel
        )
        result = decode_structured(raw, OptimizerResult)

        node_ids = {node.id for node in nodes}
        dropped = [node_id for node_id in result.nodes if node_id not in node_ids]
        assignments = {
            node_id: assignment
            for node_id, assignment in result.nodes.items()
            if node_id in node_ids
        }
        edges_out = validate_edges(result.edges, node_ids) if result.edges is not None else None
        cleaned = result.model_copy(update={"nodes": assignments, "edges": edges_out})

        logger.info(
            "optimizer_complete",
            model=model_id,
            assignments=len(assignments),
            dropped_node_ids=dropped,
            edges=None if edges_out is None else len(edges_out),
        )
        return cleaned

    async def auto_fix(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        project_description: str,
        statuses: Mapping[str, NodeStatus],
        outputs: Mapping[str, str],
        execution_log: Sequence[str],
        availability: ProviderAvailability,
        cancel_token: CancellationToken | None = None,
        channel: str = "advisor",
    ) -> AutoFixResult:
        """Diagnose error/skipped nodes and prescribe per-node fixes.

        Raises:
            AdvisorUnavailableError: No model configured, or every one failed
            AdvisorResponseMalformedError: The reply held no usable JSON object
            PipelineCancelledError: The token fired
        """
        available = self.catalog.available(availability)
        user_prompt = build_auto_fix_user_prompt(
            nodes,
            edges,
            project_description,
            statuses,
            outputs,
            execution_log,
            available,
            self.templates,
        )
        raw, model_id = await self._call_with_fallback(
            "auto_fix", AUTO_FIX_SYSTEM_PROMPT, user_prompt, availability, cancel_token, channel
        )
        result = decode_structured(raw, AutoFixResult)

        node_ids = {node.id for node in nodes}
        fixes = {node_id: fix for node_id, fix in result.fixes.items() if node_id in node_ids}
        logger.info("auto_fix_complete", model=model_id, fixes=len(fixes))
        return result.model_copy(update={"fixes": fixes})

    async def _call_with_fallback(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        availability: ProviderAvailability,
        cancel_token: CancellationToken | None,
        channel: str,
    ) -> tuple[str, str]:
        cancel_token = cancel_token or CancellationToken()
        candidates = self.candidate_models(availability)
        if not candidates:
            raise AdvisorUnavailableError("No AI model configured: add a provider API key first")

        attempts: list[tuple[str, str]] = []
        for model_id in candidates:
            cancel_token.raise_if_cancelled()
            option = self.catalog.get(model_id)
            await self._progress(channel, operation, model_id, option.label if option else model_id)
            try:
                raw = await self.caller.call(
                    system_prompt, user_prompt, ModelDriver(model_id=model_id), cancel_token
                )
            except PipelineCancelledError:
                raise
            except Exception as e:
                attempts.append((model_id, str(e)))
                logger.warning(
                    "advisor_model_failed",
                    operation=operation,
                    model=model_id,
                    error=str(e)[:300],
                )
                continue
            return raw, model_id

        last_model, last_error = attempts[-1]
        raise AdvisorUnavailableError(
            f"All {len(attempts)} configured models failed for {operation}; "
            f"last error from {last_model}: {last_error}",
            attempts=attempts,
        )

    async def _progress(self, channel: str, operation: str, model_id: str, label: str) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            PipelineEvent(
                type=EventType.ADVISOR_PROGRESS,
                run_id=channel,
                data={"operation": operation, "model": model_id, "message": f"Analyzing with {label}"},
            )
        )


# -----------------------------------------------------------------------------
# Applying results
# -----------------------------------------------------------------------------


def apply_optimizer_result(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    result: OptimizerResult,
) -> tuple[list[Node], list[Edge]]:
    """Return nodes with recommended drivers and the replacement edge list.

    A recommendation of ``None`` resets the node to auto selection. Nodes
    without a recommendation keep their driver. Edges are replaced only
    when the result carries an edge list.
    """
    updated: list[Node] = []
    for node in nodes:
        recommendation = result.nodes.get(node.id)
        if recommendation is None:
            updated.append(node)
            continue
        model = _normalize_model(recommendation.model)
        driver = ModelDriver(model_id=model) if model else AutoDriver()
        updated.append(node.model_copy(update={"driver": driver}))

    new_edges = list(result.edges) if result.edges is not None else list(edges)
    return updated, [tuple(edge) for edge in new_edges]


def apply_auto_fix(
    nodes: Sequence[Node],
    statuses: Mapping[str, NodeStatus],
    result: AutoFixResult,
    templates: TemplateRegistry | None = None,
) -> tuple[list[Node], dict[str, NodeStatus]]:
    """Return nodes with fixes applied and statuses with fixed nodes cleared.

    The driver changes only when the fix carries a ``model`` key. A prompt
    addition is appended to the node's custom prompt, or to its template
    prompt when it has none. Error and skipped statuses of fixed nodes go
    back to idle.
    """
    templates = templates or TemplateRegistry()
    updated_statuses = dict(statuses)
    updated: list[Node] = []
    for node in nodes:
        fix = result.fixes.get(node.id)
        if fix is None:
            updated.append(node)
            continue

        changes: dict[str, Any] = {}
        if "model" in fix.model_fields_set:
            model = _normalize_model(fix.model)
            changes["driver"] = ModelDriver(model_id=model) if model else AutoDriver()
        if fix.prompt_addition.strip():
            template = templates.get(node.template_id)
            base = node.custom_prompt or (template.default_prompt if template else "")
            changes["custom_prompt"] = f"{base}\n\n{fix.prompt_addition}" if base else fix.prompt_addition
        updated.append(node.model_copy(update=changes) if changes else node)

        if updated_statuses.get(node.id) in (NodeStatus.ERROR, NodeStatus.SKIPPED):
            updated_statuses[node.id] = NodeStatus.IDLE
    return updated, updated_statuses
