"""HTTP API routes for the pipeline orchestrator backend.

This module defines the HTTP endpoints for the catalog, runs, the advisor
(optimize / auto-fix), run history and health checks. Real-time events are
handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status
from fastapi.responses import PlainTextResponse

from models.schemas import (
    AutoFixRequest,
    AutoFixResponse,
    CreateRunRequest,
    HealthResponse,
    OptimizeRequest,
    OptimizeResponse,
    RetryNodeRequest,
    RunDetailResponse,
    RunRecord,
    RunResponse,
    RunStatus,
)
from pipeline.advisor import apply_auto_fix, apply_optimizer_result
from pipeline.errors import (
    AdvisorResponseMalformedError,
    AdvisorUnavailableError,
    PipelineCancelledError,
)
from run_manager import RunActiveError

if TYPE_CHECKING:
    from run_manager import RunInfo, RunManager

logger = structlog.get_logger(__name__)

router = APIRouter()


# Run manager dependency (set during application startup)
_run_manager: RunManager | None = None


def set_run_manager(manager: RunManager) -> None:
    """Set the run manager instance for the routes.

    This should be called during application startup to inject the run
    manager dependency.

    Args:
        manager: The RunManager instance to use for all routes.
    """
    global _run_manager
    _run_manager = manager
    logger.info("run_manager_configured")


def get_run_manager() -> RunManager:
    """Get the run manager instance.

    Raises:
        RuntimeError: If the run manager has not been configured.
    """
    if _run_manager is None:
        logger.error("run_manager_not_configured")
        raise RuntimeError("RunManager not configured. Call set_run_manager() during startup.")
    return _run_manager


def _require_run(run_id: str) -> RunInfo:
    run = get_run_manager().get_run(run_id)
    if run is None:
        logger.warning("run_not_found", run_id=run_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return run


def _advisor_http_error(operation: str, e: Exception) -> HTTPException:
    """Map advisor failures onto HTTP errors."""
    if isinstance(e, AdvisorUnavailableError):
        logger.warning(f"{operation}_unavailable", error=str(e))
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, AdvisorResponseMalformedError):
        logger.warning(f"{operation}_malformed_response", error=str(e))
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    logger.error(f"{operation}_failed", error=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{operation} failed: {e}",
    )


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------


@router.get(
    "/api/templates",
    summary="List node and pipeline templates",
)
async def list_templates() -> dict[str, Any]:
    manager = get_run_manager()
    return {
        "nodes": manager.templates.list_templates(),
        "pipelines": manager.templates.list_pipelines(),
    }


@router.get(
    "/api/models",
    summary="List catalog models",
    description="List every catalog model with whether its provider is configured.",
)
async def list_models() -> list[dict[str, Any]]:
    manager = get_run_manager()
    availability = manager.availability()
    return [
        {**option.model_dump(), "available": availability.is_available(option.provider)}
        for option in manager.catalog
    ]


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/runs",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a pipeline run",
    description="Start executing a pipeline graph in the background.",
)
async def create_run(request: CreateRunRequest) -> RunResponse:
    """Create a run and start executing it.

    Returns:
        RunResponse with run_id, websocket_url, and initial status.
    """
    manager = get_run_manager()
    try:
        run_id = await manager.create_run(
            nodes=request.nodes,
            edges=request.edges,
            project_description=request.project_description,
            mode=request.mode,
        )
    except Exception as e:
        logger.error("run_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create run: {e}",
        ) from e

    logger.info(
        "run_created",
        run_id=run_id,
        node_count=len(request.nodes),
        description_length=len(request.project_description),
    )
    return RunResponse(run_id=run_id, websocket_url=f"/ws/{run_id}", status=RunStatus.RUNNING)


@router.get(
    "/api/runs/{run_id}",
    response_model=RunDetailResponse,
    summary="Get run details",
    description="Get the current statuses, outputs and log of a run.",
)
async def get_run(run_id: Annotated[str, Path(description="The run ID")]) -> RunDetailResponse:
    run = _require_run(run_id)
    result = run.result
    return RunDetailResponse(
        run_id=run.run_id,
        mode=run.mode,
        status=run.status,
        statuses=dict(result.statuses),
        outputs=dict(result.outputs),
        models_used=dict(result.models_used),
        log=list(result.log),
        summary=result.summary() if run.status != RunStatus.RUNNING else None,
        error_message=run.error_message,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


@router.post(
    "/api/runs/{run_id}/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel a running pipeline",
)
async def cancel_run(run_id: Annotated[str, Path(description="The run ID")]) -> dict[str, str]:
    """Cancel a run. Cancelling a finished run is a no-op."""
    run = _require_run(run_id)
    await get_run_manager().cancel_run(run_id)
    logger.info("run_cancel_requested", run_id=run_id)
    return {"message": f"Run {run_id} {run.status.value}"}


@router.post(
    "/api/runs/{run_id}/nodes/{node_id}/retry",
    response_model=RunResponse,
    summary="Re-run a single node",
    description="Re-run one node of a finished run, optionally with a new driver.",
)
async def retry_node(
    run_id: Annotated[str, Path(description="The run ID")],
    node_id: Annotated[str, Path(description="The node ID")],
    request: RetryNodeRequest | None = None,
) -> RunResponse:
    manager = get_run_manager()
    try:
        await manager.retry_node(run_id, node_id, request.driver if request else None)
    except KeyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e.args[0])) from None
    except RunActiveError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return RunResponse(run_id=run_id, websocket_url=f"/ws/{run_id}", status=RunStatus.RUNNING)


@router.get(
    "/api/runs/{run_id}/export",
    response_class=PlainTextResponse,
    summary="Export run outputs as markdown",
)
async def export_run(run_id: Annotated[str, Path(description="The run ID")]) -> PlainTextResponse:
    run = _require_run(run_id)
    if run.status == RunStatus.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run {run_id} is still running",
        )
    content = get_run_manager().render_markdown(run_id)
    return PlainTextResponse(
        content,
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="pipeline-{run_id}.md"'},
    )


# -----------------------------------------------------------------------------
# Advisor
# -----------------------------------------------------------------------------


@router.post(
    "/api/optimize",
    response_model=OptimizeResponse,
    summary="Optimize a pipeline",
    description="Ask an analysis model for per-node models and a complete edge set.",
)
async def optimize(request: OptimizeRequest) -> OptimizeResponse:
    manager = get_run_manager()
    try:
        result = await manager.advisor.optimize(
            request.nodes,
            request.edges,
            request.project_description,
            manager.availability(),
        )
    except PipelineCancelledError:
        raise
    except Exception as e:
        raise _advisor_http_error("optimize", e) from e

    nodes, edges = apply_optimizer_result(request.nodes, request.edges, result)
    return OptimizeResponse(result=result, nodes=nodes, edges=edges)


@router.post(
    "/api/autofix",
    response_model=AutoFixResponse,
    summary="Auto-fix a failed run",
    description="Diagnose error and skipped nodes and apply the proposed fixes.",
)
async def auto_fix(request: AutoFixRequest) -> AutoFixResponse:
    manager = get_run_manager()
    try:
        result = await manager.advisor.auto_fix(
            request.nodes,
            request.edges,
            request.project_description,
            request.statuses,
            request.outputs,
            request.execution_log,
            manager.availability(),
        )
    except PipelineCancelledError:
        raise
    except Exception as e:
        raise _advisor_http_error("auto_fix", e) from e

    nodes, statuses = apply_auto_fix(request.nodes, request.statuses, result, manager.templates)
    return AutoFixResponse(result=result, nodes=nodes, statuses=statuses)


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


@router.get(
    "/api/history",
    response_model=list[RunRecord],
    summary="List run history",
    description="List recent run records, newest first. Records carry no outputs.",
)
async def list_history(
    limit: Annotated[int | None, Query(description="Maximum records to return", ge=1, le=200)] = None,
) -> list[RunRecord]:
    store = get_run_manager().history_store
    if store is None:
        return []
    return await store.list_runs(limit=limit)


@router.delete(
    "/api/history",
    summary="Clear run history",
)
async def clear_history() -> dict[str, int]:
    store = get_run_manager().history_store
    if store is None:
        return {"deleted": 0}
    try:
        deleted = await store.clear_all()
    except Exception as e:
        logger.error("clear_history_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to clear history: {e}",
        ) from e
    logger.info("history_cleared", deleted=deleted)
    return {"deleted": deleted}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check with configured providers and active run count.",
)
async def health_check() -> HealthResponse:
    """Report the usable providers and how many runs are executing."""
    manager = get_run_manager()
    providers = sorted(manager.availability().providers)
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        configured_providers=providers,
        active_runs=manager.active_run_count(),
    )
