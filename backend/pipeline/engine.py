"""Pipeline execution engine.

Runs a node graph level by level. Within a level every runnable node gets
its own asyncio task: resolve the driver, build the prompt from outputs of
earlier levels, call, and heal on failure by retrying against fallback
models. Each task returns a NodeOutcome; node failures never stop the run.
Only cancellation propagates out of a level.

Every state change is published to the EventBus as a typed PipelineEvent
and recorded in the live RunResult. The engine persists nothing.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from catalog.models import ModelCatalog, resolve_auto_model
from catalog.providers import ProviderAvailability
from catalog.templates import TemplateRegistry
from events.bus import EventBus
from events.types import EventType, PipelineEvent
from models.schemas import (
    AgentDriver,
    Driver,
    Edge,
    ErrorCategory,
    ExecutionMode,
    ModelDriver,
    ModelTier,
    Node,
    NodeStatus,
    RunSummary,
)
from pipeline.cancellation import CancellationToken
from pipeline.context import (
    NodePrompt,
    build_agent_payload,
    build_node_prompt,
    display_name,
    upstream_ids,
)
from pipeline.errors import PipelineCancelledError
from pipeline.scheduler import execution_levels, find_unscheduled_nodes
from pipeline.selfheal import MAX_HEAL_ATTEMPTS, classify_error, fallback_chain

if TYPE_CHECKING:
    from callers.base import NodeCaller, ResolvedDriver

logger = structlog.get_logger(__name__)

HEAL_ERROR_PREVIEW_CHARS = 120


@dataclass
class NodeOutcome:
    """Result value of one node task."""

    node_id: str
    success: bool
    output: str
    model_used: str | None = None
    healed: bool = False
    category: ErrorCategory | None = None


@dataclass
class RunResult:
    """Live and final state of one run.

    The engine updates it in place while running, so a holder can read
    statuses and outputs mid-run. Each node task writes only its own keys.
    """

    run_id: str
    mode: ExecutionMode
    node_ids: list[str] = field(default_factory=list)
    levels: list[list[str]] = field(default_factory=list)
    statuses: dict[str, NodeStatus] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    models_used: dict[str, str] = field(default_factory=dict)
    healed: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    error_categories: dict[str, ErrorCategory] = field(default_factory=dict)
    log: list[str] = field(default_factory=list)
    unscheduled: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    cancelled: bool = False

    @property
    def duration_ms(self) -> int:
        end = self.finished_at or time.time()
        return max(0, int((end - self.started_at) * 1000))

    def summary(self) -> RunSummary:
        """Counts-only projection of this run."""
        statuses = [self.statuses.get(node_id, NodeStatus.IDLE) for node_id in self.node_ids]
        categories: list[ErrorCategory] = []
        for category in self.error_categories.values():
            if category not in categories:
                categories.append(category)
        return RunSummary(
            total_nodes=len(self.node_ids),
            done_count=statuses.count(NodeStatus.DONE),
            error_count=statuses.count(NodeStatus.ERROR),
            skipped_count=statuses.count(NodeStatus.SKIPPED),
            healed_count=len(self.healed),
            error_categories=categories,
            models_used=dict(self.models_used),
            duration_ms=self.duration_ms,
        )

    def completed_outputs(self) -> dict[str, str]:
        """Outputs of nodes that finished successfully."""
        return {
            node_id: output
            for node_id, output in self.outputs.items()
            if self.statuses.get(node_id) == NodeStatus.DONE
        }


class PipelineEngine:
    """Executes pipeline runs against a NodeCaller.

    Usage:
        >>> engine = PipelineEngine(caller, event_bus=bus, availability=availability)
        >>> result = await engine.execute("run_1", nodes, edges, "A todo app")
        >>> result.summary().done_count

    Attributes:
        caller: Performs model and agent calls
        event_bus: Where progress events are published (optional)
        templates: Node template lookup
        catalog: Model catalog
        availability: Providers callable for auto selection and healing
        max_heal_attempts: Fallback candidates tried per failed node
        stream_output: Forward streamed chunks as NODE_CHUNK events
    """

    def __init__(
        self,
        caller: NodeCaller,
        *,
        event_bus: EventBus | None = None,
        templates: TemplateRegistry | None = None,
        catalog: ModelCatalog | None = None,
        availability: ProviderAvailability | None = None,
        max_heal_attempts: int = MAX_HEAL_ATTEMPTS,
        stream_output: bool = True,
    ) -> None:
        self.caller = caller
        self.event_bus = event_bus
        self.templates = templates or TemplateRegistry()
        self.catalog = catalog or ModelCatalog()
        self.availability = availability or ProviderAvailability()
        self.max_heal_attempts = max_heal_attempts
        self.stream_output = stream_output

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def execute(
        self,
        run_id: str,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        project_description: str,
        mode: ExecutionMode = ExecutionMode.DAG,
        cancel_token: CancellationToken | None = None,
        result: RunResult | None = None,
    ) -> RunResult:
        """Run every node once, level by level.

        Args:
            run_id: Identifier used for events and logs
            nodes: Nodes of the run, ids unique
            edges: Dependency edges (from_id, to_id)
            project_description: Free-text description fed to every node
            mode: dag, sequential or parallel
            cancel_token: Shared cancellation signal for the run
            result: Optional live result object to update in place

        Returns:
            The RunResult with final statuses, outputs and log

        Raises:
            PipelineCancelledError: The token fired; statuses stay as they were
        """
        cancel_token = cancel_token or CancellationToken()
        node_ids = [node.id for node in nodes]
        nodes_by_id = {node.id: node for node in nodes}

        result = result or RunResult(run_id=run_id, mode=mode)
        result.node_ids = node_ids
        result.levels = execution_levels(node_ids, edges, mode)
        if mode != ExecutionMode.PARALLEL:
            result.unscheduled = find_unscheduled_nodes(node_ids, edges)

        logger.info(
            "pipeline_run_started",
            run_id=run_id,
            mode=mode.value,
            node_count=len(node_ids),
            level_count=len(result.levels),
        )
        await self._publish(
            run_id,
            EventType.RUN_STARTED,
            data={"mode": mode.value, "levels": result.levels, "node_count": len(node_ids)},
        )

        if result.unscheduled:
            logger.warning("pipeline_cycle_detected", run_id=run_id, node_ids=result.unscheduled)
            names = ", ".join(display_name(n, nodes_by_id, self.templates) for n in result.unscheduled)
            await self._log(result, f"⚠ Cycle detected, running in input order: {names}")

        for node_id in node_ids:
            await self._set_status(result, node_id, NodeStatus.WAITING)

        try:
            for level in result.levels:
                cancel_token.raise_if_cancelled()
                await self._run_level(result, level, nodes_by_id, edges, project_description, mode, cancel_token)
        except PipelineCancelledError:
            result.cancelled = True
            result.finished_at = time.time()
            logger.info("pipeline_run_cancelled", run_id=run_id, duration_ms=result.duration_ms)
            await self._log(result, "■ Pipeline cancelled")
            await self._publish(run_id, EventType.RUN_CANCELLED, data={"statuses": dict(result.statuses)})
            raise

        result.finished_at = time.time()
        await self._log(result, "🏁 Pipeline finished")
        summary = result.summary()
        logger.info(
            "pipeline_run_complete",
            run_id=run_id,
            done=summary.done_count,
            errors=summary.error_count,
            skipped=summary.skipped_count,
            healed=summary.healed_count,
            duration_ms=summary.duration_ms,
        )
        await self._publish(run_id, EventType.RUN_SUMMARY, data={"summary": summary.model_dump(mode="json")})
        await self._publish(run_id, EventType.RUN_COMPLETE, data={"statuses": dict(result.statuses)})
        return result

    async def retry_node(
        self,
        result: RunResult,
        node_id: str,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        project_description: str,
        driver: Driver | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> NodeOutcome:
        """Re-execute exactly one node against the existing upstream outputs.

        Every other node's status and output are left untouched.

        Raises:
            KeyError: ``node_id`` is not one of ``nodes``
            PipelineCancelledError: The token fired during the retry
        """
        cancel_token = cancel_token or CancellationToken()
        nodes_by_id = {node.id: node for node in nodes}
        node = nodes_by_id[node_id]
        if driver is not None:
            node = node.model_copy(update={"driver": driver})
            nodes_by_id[node_id] = node

        if node_id not in result.node_ids:
            result.node_ids.append(node_id)
        logger.info("node_retry_started", run_id=result.run_id, node_id=node_id, driver=node.driver.kind)
        await self._log(result, f"↻ Retrying {display_name(node_id, nodes_by_id, self.templates)}")
        await self._set_status(result, node_id, NodeStatus.RUNNING)

        outcome = await self._run_node(
            result,
            node,
            result.completed_outputs(),
            nodes_by_id,
            edges,
            project_description,
            cancel_token,
        )
        if outcome.success:
            result.failed.discard(node_id)
        else:
            result.failed.add(node_id)
        return outcome

    def resolve_driver(self, node: Node) -> ResolvedDriver:
        """Explicit model or agent as given; auto becomes a concrete model."""
        if isinstance(node.driver, (ModelDriver, AgentDriver)):
            return node.driver
        template = self.templates.get(node.template_id)
        tier = template.tier if template else ModelTier.MID
        return ModelDriver(model_id=resolve_auto_model(tier, self.availability, self.catalog))

    # -----------------------------------------------------------------
    # Levels and nodes
    # -----------------------------------------------------------------

    async def _run_level(
        self,
        result: RunResult,
        level: list[str],
        nodes_by_id: dict[str, Node],
        edges: Sequence[Edge],
        project_description: str,
        mode: ExecutionMode,
        cancel_token: CancellationToken,
    ) -> None:
        skipped: list[str] = []
        runnable: list[str] = []
        for node_id in level:
            if mode != ExecutionMode.PARALLEL and any(
                upstream in result.failed for upstream in upstream_ids(node_id, edges)
            ):
                skipped.append(node_id)
            else:
                runnable.append(node_id)

        for node_id in skipped:
            result.failed.add(node_id)
            await self._set_status(result, node_id, NodeStatus.SKIPPED)
            name = display_name(node_id, nodes_by_id, self.templates)
            await self._log(result, f"⊘ {name} skipped (upstream failed)")

        if not runnable:
            return

        names = ", ".join(display_name(n, nodes_by_id, self.templates) for n in runnable)
        suffix = " (parallel)" if len(runnable) > 1 else ""
        await self._log(result, f"▶ Running: {names}{suffix}")
        for node_id in runnable:
            await self._set_status(result, node_id, NodeStatus.RUNNING)

        # Nodes only see outputs from earlier levels
        snapshot = result.completed_outputs()
        tasks = [
            asyncio.create_task(
                self._run_node(
                    result,
                    nodes_by_id[node_id],
                    snapshot,
                    nodes_by_id,
                    edges,
                    project_description,
                    cancel_token,
                ),
                name=f"{result.run_id}:{node_id}",
            )
            for node_id in runnable
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # Never leave sibling nodes running past a failed level
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for outcome in outcomes:
            if not outcome.success:
                result.failed.add(outcome.node_id)

    async def _run_node(
        self,
        result: RunResult,
        node: Node,
        outputs: dict[str, str],
        nodes_by_id: dict[str, Node],
        edges: Sequence[Edge],
        project_description: str,
        cancel_token: CancellationToken,
    ) -> NodeOutcome:
        name = display_name(node.id, nodes_by_id, self.templates)
        driver = self.resolve_driver(node)
        prompt = build_node_prompt(
            node, project_description, outputs, edges, nodes=nodes_by_id, templates=self.templates
        )
        first_prompt = prompt
        if isinstance(driver, AgentDriver):
            agent_payload = build_agent_payload(
                node, project_description, outputs, edges, nodes=nodes_by_id, templates=self.templates
            )
            first_prompt = NodePrompt(
                instructions=agent_payload.task,
                payload=json.dumps(agent_payload.to_dict()),
            )

        primary = driver.model_id if isinstance(driver, ModelDriver) else driver.agent_id
        try:
            output = await self._call(result.run_id, node.id, first_prompt, driver, cancel_token)
        except PipelineCancelledError:
            raise
        except Exception as e:
            return await self._heal(result, node, name, prompt, primary, e, cancel_token)

        return await self._finish_success(result, node.id, name, output, primary, healed=False)

    async def _heal(
        self,
        result: RunResult,
        node: Node,
        name: str,
        prompt: NodePrompt,
        failed_id: str,
        error: Exception,
        cancel_token: CancellationToken,
    ) -> NodeOutcome:
        """Retry a failed node against fallback models; terminal error if all fail."""
        category = classify_error(str(error))
        result.error_categories[node.id] = category
        available = [option.id for option in self.catalog.available(self.availability)]
        candidates = fallback_chain(failed_id, category, available, catalog=self.catalog)
        candidates = candidates[: self.max_heal_attempts]

        logger.warning(
            "node_call_failed",
            run_id=result.run_id,
            node_id=node.id,
            failed=failed_id,
            category=category.value,
            error=str(error)[:HEAL_ERROR_PREVIEW_CHARS],
            candidates=candidates,
        )

        for candidate in candidates:
            cancel_token.raise_if_cancelled()
            label = self._model_label(candidate)
            await self._set_status(result, node.id, NodeStatus.HEALING)
            await self._log(
                result,
                f"🔄 {name} → trying {label} ({category.value} error on {failed_id})",
            )
            try:
                output = await self._call(
                    result.run_id, node.id, prompt, ModelDriver(model_id=candidate), cancel_token
                )
            except PipelineCancelledError:
                raise
            except Exception as heal_error:
                heal_category = classify_error(str(heal_error))
                await self._log(
                    result,
                    f"✗ {label} failed ({heal_category.value}): "
                    f"{str(heal_error)[:HEAL_ERROR_PREVIEW_CHARS]}",
                )
                continue

            result.healed.add(node.id)
            logger.info("node_healed", run_id=result.run_id, node_id=node.id, model=candidate)
            return await self._finish_success(result, node.id, name, output, candidate, healed=True)

        marker = f"ERROR: {error}"
        result.outputs[node.id] = marker
        result.models_used[node.id] = failed_id
        await self._publish(result.run_id, EventType.NODE_OUTPUT, node.id, {"output": marker})
        await self._set_status(result, node.id, NodeStatus.ERROR)
        await self._log(result, f"✗ {name} failed, all recovery attempts exhausted")
        logger.error(
            "node_failed",
            run_id=result.run_id,
            node_id=node.id,
            category=category.value,
            attempts=len(candidates) + 1,
        )
        return NodeOutcome(
            node_id=node.id,
            success=False,
            output=marker,
            model_used=failed_id,
            category=category,
        )

    async def _finish_success(
        self,
        result: RunResult,
        node_id: str,
        name: str,
        output: str,
        model_used: str,
        *,
        healed: bool,
    ) -> NodeOutcome:
        result.outputs[node_id] = output
        result.models_used[node_id] = model_used
        await self._publish(result.run_id, EventType.NODE_OUTPUT, node_id, {"output": output})
        await self._set_status(result, node_id, NodeStatus.DONE)
        if healed:
            await self._log(result, f"✓ {name} healed via {self._model_label(model_used)}")
        else:
            await self._log(result, f"✓ {name} complete")
        return NodeOutcome(node_id=node_id, success=True, output=output, model_used=model_used, healed=healed)

    async def _call(
        self,
        run_id: str,
        node_id: str,
        prompt: NodePrompt,
        driver: ResolvedDriver,
        cancel_token: CancellationToken,
    ) -> str:
        on_chunk = None
        if self.stream_output and self.event_bus is not None:
            async def on_chunk(chunk: str) -> None:
                await self._publish(run_id, EventType.NODE_CHUNK, node_id, {"chunk": chunk})

        return await self.caller.call(prompt.instructions, prompt.payload, driver, cancel_token, on_chunk)

    # -----------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------

    def _model_label(self, model_id: str) -> str:
        option = self.catalog.get(model_id)
        return option.label if option else model_id

    async def _set_status(self, result: RunResult, node_id: str, status: NodeStatus) -> None:
        result.statuses[node_id] = status
        await self._publish(result.run_id, EventType.NODE_STATUS_CHANGED, node_id, {"status": status.value})

    async def _log(self, result: RunResult, message: str) -> None:
        result.log.append(message)
        await self._publish(result.run_id, EventType.LOG_LINE, data={"message": message})

    async def _publish(
        self,
        run_id: str,
        event_type: EventType,
        node_id: str | None = None,
        data: dict | None = None,
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            PipelineEvent(type=event_type, run_id=run_id, node_id=node_id, data=data or {})
        )
