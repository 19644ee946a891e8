"""FastAPI application entry point for the pipeline orchestrator backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_run_manager as set_routes_run_manager
from api.websocket import set_run_manager as set_websocket_run_manager
from api.websocket import websocket_router
from callers import AgentCaller, DriverCaller, LiteLLMCaller, load_agent_configs
from catalog import ModelCatalog
from config import configure_logging, settings
from events import get_event_bus
from models.database import RunHistoryStore
from run_manager import RunManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the callers, the history store and the run manager on startup,
    and cancels every in-flight run on shutdown.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        default_execution_mode=settings.default_execution_mode,
    )

    event_bus = get_event_bus()
    catalog = ModelCatalog()

    history_store: RunHistoryStore | None = None
    try:
        history_store = RunHistoryStore(settings.database_path, limit=settings.run_history_limit)
        await history_store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("history_store_init_failed", error=str(e))
        history_store = None

    try:
        agents = load_agent_configs(settings.agents_file)
    except Exception as e:
        logger.warning("agent_configs_load_failed", path=settings.agents_file, error=str(e))
        agents = {}

    caller = DriverCaller(
        LiteLLMCaller(catalog, settings),
        AgentCaller(agents, settings),
    )
    run_manager = RunManager(
        caller,
        event_bus,
        history_store=history_store,
        settings=settings,
        catalog=catalog,
    )

    set_routes_run_manager(run_manager)
    set_websocket_run_manager(run_manager)

    app.state.run_manager = run_manager
    app.state.history_store = history_store

    logger.info(
        "application_started",
        configured_providers=sorted(run_manager.availability().providers),
        agent_count=len(agents),
    )

    yield

    logger.info("application_shutting_down")
    await app.state.run_manager.cleanup_all()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Pipeline Orchestrator",
    description="Backend API for running multi-stage LLM pipelines with "
    "self-healing model fallback, an optimizer and auto-fix.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["pipelines"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Pipeline Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
