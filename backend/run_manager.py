"""Run manager for orchestrating pipeline runs.

This module provides the RunManager class that owns the lifecycle of
pipeline runs: starting them as background tasks, tracking their live
state, cancelling them through their cancellation token, re-running single
nodes, closing their event streams and persisting history records.

The RunManager coordinates between:
- PipelineEngine: Level-by-level node execution with self-heal
- PipelineAdvisor: Optimizer and auto-fix analysis calls
- EventBus: Real-time event streaming to WebSocket clients
- RunHistoryStore: Metadata-only run history in SQLite

Usage:
    >>> from callers import DriverCaller, LiteLLMCaller
    >>> from events import get_event_bus
    >>> from run_manager import RunManager
    >>>
    >>> manager = RunManager(DriverCaller(LiteLLMCaller()), get_event_bus())
    >>> run_id = await manager.create_run(nodes, edges, "A todo app")
    >>> info = manager.get_run(run_id)
    >>> print(info.status)
    >>> await manager.cleanup_all()
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from callers.base import NodeCaller
from catalog.models import ModelCatalog
from catalog.providers import ProviderAvailability
from catalog.templates import TemplateRegistry
from config import Settings, settings as default_settings
from events import EventBus
from events.types import EventType, PipelineEvent
from models.database import RunHistoryStore
from models.schemas import Driver, Edge, ExecutionMode, Node, RunStatus
from pipeline.advisor import PipelineAdvisor
from pipeline.cancellation import CancellationToken
from pipeline.context import display_name
from pipeline.engine import PipelineEngine, RunResult
from pipeline.errors import PipelineCancelledError
from pipeline.history import build_run_record

logger = structlog.get_logger(__name__)


class RunActiveError(RuntimeError):
    """The run (or a node retry within it) is still executing."""


@dataclass
class RunInfo:
    """Information about a pipeline run.

    Attributes:
        run_id: Unique identifier (e.g. "run_abc123def456")
        mode: Execution mode
        nodes: Nodes as submitted (retries may replace a node's driver)
        edges: Dependency edges
        project_description: Free-text project description
        status: Run lifecycle status
        result: Live RunResult updated by the engine
        cancel_token: Cancellation signal shared by the run's calls
        created_at: Unix timestamp of creation
        completed_at: Unix timestamp when the last execution finished
        error_message: Message of an unexpected failure
    """

    run_id: str
    mode: ExecutionMode
    nodes: list[Node]
    edges: list[Edge]
    project_description: str
    status: RunStatus
    result: RunResult
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    error_message: str | None = None


class RunManager:
    """Manages the lifecycle of pipeline runs.

    Thread Safety:
        All registry operations use an asyncio.Lock.

    Attributes:
        caller: Node caller shared by the engine and the advisor
        event_bus: Event bus for real-time event streaming
        history_store: Optional SQLite store for run records
        advisor: Optimizer / auto-fix advisor
    """

    def __init__(
        self,
        caller: NodeCaller,
        event_bus: EventBus,
        history_store: RunHistoryStore | None = None,
        settings: Settings | None = None,
        templates: TemplateRegistry | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.caller = caller
        self.event_bus = event_bus
        self.history_store = history_store
        self.settings = settings or default_settings
        self.templates = templates or TemplateRegistry()
        self.catalog = catalog or ModelCatalog()
        self.advisor = PipelineAdvisor(
            caller, catalog=self.catalog, templates=self.templates, event_bus=event_bus
        )
        self._runs: dict[str, RunInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("run_manager_initialized")

    def _generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex[:12]}"

    def availability(self) -> ProviderAvailability:
        """Provider availability from the current settings."""
        return ProviderAvailability.from_settings(self.settings)

    def _create_engine(self) -> PipelineEngine:
        return PipelineEngine(
            self.caller,
            event_bus=self.event_bus,
            templates=self.templates,
            catalog=self.catalog,
            availability=self.availability(),
            max_heal_attempts=self.settings.max_heal_attempts,
            stream_output=self.settings.stream_node_output,
        )

    async def _schedule_task(self, run_id: str, coro) -> None:
        """Create and register the background task for a run."""
        async with self._lock:
            background_task = asyncio.create_task(coro, name=f"run_{run_id}")
            self._tasks[run_id] = background_task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                if self._tasks.get(rid) is t:
                    self._tasks.pop(rid, None)

            background_task.add_done_callback(_remove_task)

    # -----------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------

    async def create_run(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        project_description: str,
        mode: ExecutionMode | None = None,
    ) -> str:
        """Register a run and start executing it in the background.

        Returns:
            The unique run id
        """
        mode = mode or ExecutionMode(self.settings.default_execution_mode)
        run_id = self._generate_run_id()
        info = RunInfo(
            run_id=run_id,
            mode=mode,
            nodes=list(nodes),
            edges=[tuple(edge) for edge in edges],
            project_description=project_description,
            status=RunStatus.RUNNING,
            result=RunResult(run_id=run_id, mode=mode),
        )
        async with self._lock:
            self._runs[run_id] = info

        logger.info(
            "create_run",
            run_id=run_id,
            mode=mode.value,
            node_count=len(info.nodes),
            edge_count=len(info.edges),
        )
        await self._schedule_task(run_id, self._execute(info))
        return run_id

    async def _execute(self, info: RunInfo) -> None:
        engine = self._create_engine()
        try:
            await engine.execute(
                info.run_id,
                info.nodes,
                info.edges,
                info.project_description,
                mode=info.mode,
                cancel_token=info.cancel_token,
                result=info.result,
            )
            info.status = RunStatus.COMPLETE
        except (PipelineCancelledError, asyncio.CancelledError):
            info.status = RunStatus.CANCELLED
        except Exception as e:
            info.status = RunStatus.ERROR
            info.error_message = str(e)
            logger.error("run_failed", run_id=info.run_id, error=str(e), error_type=type(e).__name__)
            await self.event_bus.publish(
                PipelineEvent(
                    type=EventType.RUN_ERROR,
                    run_id=info.run_id,
                    data={"error": str(e), "phase": "execution"},
                )
            )
        finally:
            info.completed_at = time.time()
            if info.result.finished_at is None:
                info.result.finished_at = info.completed_at
            if info.status != RunStatus.CANCELLED:
                await self._save_history(info)
            await self.event_bus.close_run(info.run_id)

    async def _save_history(self, info: RunInfo) -> None:
        if self.history_store is None:
            return
        record = build_run_record(info.result, info.nodes, info.edges, info.project_description)
        await self.history_store.save_run(record)

    async def retry_node(self, run_id: str, node_id: str, driver: Driver | None = None) -> None:
        """Re-run one node of a finished run in the background.

        Raises:
            KeyError: Unknown run or node
            RunActiveError: The run is still executing
        """
        async with self._lock:
            info = self._runs.get(run_id)
            if info is None:
                raise KeyError(f"Run '{run_id}' not found")
            if info.status == RunStatus.RUNNING:
                raise RunActiveError(f"Run '{run_id}' is still running")
            if all(node.id != node_id for node in info.nodes):
                raise KeyError(f"Node '{node_id}' not found in run '{run_id}'")
            info.status = RunStatus.RUNNING
            info.cancel_token = CancellationToken()
            if driver is not None:
                info.nodes = [
                    node.model_copy(update={"driver": driver}) if node.id == node_id else node
                    for node in info.nodes
                ]

        logger.info("retry_node", run_id=run_id, node_id=node_id)
        await self._schedule_task(run_id, self._execute_retry(info, node_id))

    async def _execute_retry(self, info: RunInfo, node_id: str) -> None:
        engine = self._create_engine()
        try:
            await engine.retry_node(
                info.result,
                node_id,
                info.nodes,
                info.edges,
                info.project_description,
                cancel_token=info.cancel_token,
            )
            info.status = RunStatus.COMPLETE
        except (PipelineCancelledError, asyncio.CancelledError):
            info.status = RunStatus.CANCELLED
        except Exception as e:
            info.status = RunStatus.ERROR
            info.error_message = str(e)
            logger.error("node_retry_failed", run_id=info.run_id, node_id=node_id, error=str(e))
        finally:
            info.completed_at = time.time()
            await self.event_bus.close_run(info.run_id)

    async def cancel_run(self, run_id: str) -> None:
        """Fire the run's cancellation token and wait for it to stop.

        Raises:
            KeyError: If the run doesn't exist
        """
        async with self._lock:
            info = self._runs.get(run_id)
            if info is None:
                raise KeyError(f"Run '{run_id}' not found")
            task = self._tasks.get(run_id)

        if info.status != RunStatus.RUNNING:
            logger.info("cancel_run_noop_terminal_state", run_id=run_id, status=info.status.value)
            return

        logger.info("cancel_run_start", run_id=run_id)
        info.cancel_token.cancel()
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("cancel_run_complete", run_id=run_id, status=info.status.value)

    def get_run(self, run_id: str) -> RunInfo | None:
        return self._runs.get(run_id)

    def get_all_runs(self) -> list[RunInfo]:
        return list(self._runs.values())

    def active_run_count(self) -> int:
        return sum(1 for info in self._runs.values() if info.status == RunStatus.RUNNING)

    async def cleanup_all(self) -> None:
        """Cancel every background task and close every run stream.

        Called during application shutdown.
        """
        logger.info("cleanup_all_start", run_count=len(self._runs))
        for info in self._runs.values():
            info.cancel_token.cancel()

        async with self._lock:
            tasks_to_cancel = list(self._tasks.items())
            self._tasks.clear()

        for run_id, task in tasks_to_cancel:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", run_id=run_id, error=str(e))

        for run_id in list(self._runs):
            await self.event_bus.close_run(run_id)
        logger.info("cleanup_all_complete")

    # -----------------------------------------------------------------
    # Export
    # -----------------------------------------------------------------

    def render_markdown(self, run_id: str) -> str:
        """Markdown document with every node output of a run.

        Raises:
            KeyError: If the run doesn't exist
        """
        info = self._runs.get(run_id)
        if info is None:
            raise KeyError(f"Run '{run_id}' not found")

        nodes_by_id = {node.id: node for node in info.nodes}
        generated = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(info.completed_at or time.time()))
        lines = [
            "# Pipeline Outputs\n",
            f"**Project:** {info.project_description}\n",
            f"**Generated:** {generated}\n",
            "---\n",
        ]
        for node in info.nodes:
            output = info.result.outputs.get(node.id)
            if output is None:
                continue
            lines.append(f"\n## {display_name(node.id, nodes_by_id, self.templates)}")
            model_id = info.result.models_used.get(node.id)
            option = self.catalog.get(model_id) if model_id else None
            if option is not None:
                lines.append(f"*Model: {option.label}*\n")
            lines.append("")
            lines.append(output)
            lines.append("\n---")
        return "\n".join(lines)
