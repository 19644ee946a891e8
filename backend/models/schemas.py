"""Pydantic schemas for the pipeline domain and the HTTP API.

This module defines the node/edge data model shared by the scheduler, the
execution engine and the advisor, the catalog entries they look up, the
advisor result shapes, and the request/response models of the HTTP API.
All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    SecretStr,
    model_validator,
)

# An edge is an ordered (from_id, to_id) pair: "from feeds into to".
Edge = tuple[str, str]

# Free-text advisor fields; models often reply null for "nothing to say".
AdvisorText = Annotated[str, BeforeValidator(lambda v: "" if v is None else v)]


class NodeStatus(StrEnum):
    """Per-node, per-run execution status."""

    IDLE = "idle"
    WAITING = "waiting"
    RUNNING = "running"
    HEALING = "healing"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


class ExecutionMode(StrEnum):
    """How the engine turns the graph into levels."""

    DAG = "dag"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ErrorCategory(StrEnum):
    """Failure categories used to pick a fallback strategy."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class ModelTier(StrEnum):
    """Quality/cost tier of a model or of the work a template needs."""

    FRONTIER = "frontier"
    MID = "mid"
    LOCAL = "local"


class RunStatus(StrEnum):
    """Lifecycle status of a whole run."""

    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


# -----------------------------------------------------------------------------
# Drivers
# -----------------------------------------------------------------------------


class AutoDriver(BaseModel):
    """Pick a model from the node template's tier at run time."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["auto"] = "auto"


class ModelDriver(BaseModel):
    """Run the node on one specific catalog model."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    kind: Literal["model"] = "model"
    model_id: str = Field(min_length=1)


class AgentDriver(BaseModel):
    """Delegate the node to a configured external agent."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["agent"] = "agent"
    agent_id: str = Field(min_length=1)


Driver = Annotated[AutoDriver | ModelDriver | AgentDriver, Field(discriminator="kind")]


# -----------------------------------------------------------------------------
# Graph
# -----------------------------------------------------------------------------


class Node(BaseModel):
    """One configured generation step in the pipeline.

    The flat ``model`` / ``agent_id`` fields accepted on input are folded
    into ``driver``; an agent wins when both are present.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, examples=["requirements"])
    template_id: str = Field(examples=["requirements"])
    driver: Driver = Field(default_factory=AutoDriver)
    custom_prompt: str | None = None
    custom_label: str | None = None

    @model_validator(mode="before")
    @classmethod
    def fold_flat_driver_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        model = data.pop("model", None)
        agent_id = data.pop("agent_id", None)
        if "driver" not in data:
            if agent_id:
                data["driver"] = {"kind": "agent", "agent_id": agent_id}
            elif model:
                data["driver"] = {"kind": "model", "model_id": model}
        return data

    @property
    def model_id(self) -> str | None:
        """The explicitly chosen model, if the driver is a model."""
        return self.driver.model_id if isinstance(self.driver, ModelDriver) else None


# -----------------------------------------------------------------------------
# Catalog entries
# -----------------------------------------------------------------------------


class NodeTemplate(BaseModel):
    """A reusable generation step definition."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    tier: ModelTier
    default_prompt: str
    description: str = ""
    web_search: bool = False


class PipelineTemplate(BaseModel):
    """A ready-made set of nodes and edges."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    description: str = ""
    nodes: list[str]
    edges: list[Edge]


class ModelOption(BaseModel):
    """A callable model: catalog id, provider and LiteLLM model string."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    provider: str
    litellm_model: str
    tier: ModelTier


class AgentProtocol(StrEnum):
    """Wire protocols supported for external agents."""

    HTTP_SIMPLE = "http_simple"
    OPENAI_ASSISTANT = "openai_assistant"


class AgentConfig(BaseModel):
    """Connection details of an external agent.

    Secrets are held as SecretStr so they never render in logs or reprs.
    """

    id: str
    label: str = "New Agent"
    protocol: AgentProtocol = AgentProtocol.HTTP_SIMPLE
    endpoint: str = ""
    bearer_token: SecretStr = SecretStr("")
    api_key: SecretStr = SecretStr("")
    assistant_id: str = ""
    capabilities: list[str] = Field(default_factory=list)
    timeout_seconds: float | None = None


# -----------------------------------------------------------------------------
# Advisor results
# -----------------------------------------------------------------------------


class NodeAssignment(BaseModel):
    """Optimizer recommendation for one node; ``model=None`` means auto."""

    model: str | None = None
    reason: AdvisorText = ""


class OptimizerResult(BaseModel):
    """Model assignments plus a complete replacement edge list."""

    strategy: AdvisorText = ""
    connection_rationale: AdvisorText = Field(
        default="",
        validation_alias=AliasChoices("connection_rationale", "connectionRationale"),
    )
    nodes: dict[str, NodeAssignment] = Field(default_factory=dict)
    # Raw pairs as replied; the advisor filters them into valid edges
    edges: list[Any] | None = None


class NodeFix(BaseModel):
    """Auto-fix prescription for one node.

    ``model`` only changes the node when the key was present in the
    response (check ``model_fields_set``).
    """

    model: str | None = None
    prompt_addition: AdvisorText = Field(
        default="",
        validation_alias=AliasChoices("prompt_addition", "promptAddition"),
    )
    reason: AdvisorText = ""


class AutoFixResult(BaseModel):
    """Diagnosis summary plus per-node fixes."""

    summary: AdvisorText = ""
    fixes: dict[str, NodeFix] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Run reporting
# -----------------------------------------------------------------------------


class RunSummary(BaseModel):
    """Counts-only projection of a finished run, for history/telemetry."""

    total_nodes: int = Field(ge=0)
    done_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    skipped_count: int = Field(default=0, ge=0)
    healed_count: int = Field(default=0, ge=0)
    error_categories: list[ErrorCategory] = Field(default_factory=list)
    models_used: dict[str, str] = Field(default_factory=dict)
    duration_ms: int = Field(default=0, ge=0)


class RunRecord(BaseModel):
    """Metadata-only history record of one run (no outputs are kept)."""

    id: str
    timestamp: float
    project_description_short: str = ""
    mode: ExecutionMode
    total_nodes: int = 0
    edge_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    heal_count: int = 0
    node_types: list[str] = Field(default_factory=list)
    failed_node_types: list[str] = Field(default_factory=list)
    models_used: dict[str, str] = Field(default_factory=dict)
    error_patterns: list[str] = Field(default_factory=list)
    duration_ms: int = 0


# -----------------------------------------------------------------------------
# HTTP API
# -----------------------------------------------------------------------------


class PipelineGraph(BaseModel):
    """Nodes and edges as submitted by a client, validated for consistency."""

    nodes: list[Node] = Field(min_length=1)
    edges: list[Edge] = Field(default_factory=list)
    project_description: str = Field(default="", max_length=20000)

    @model_validator(mode="after")
    def check_graph_references(self) -> "PipelineGraph":
        node_ids = [node.id for node in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("Node ids must be unique")
        known = set(node_ids)
        for from_id, to_id in self.edges:
            if from_id not in known or to_id not in known:
                raise ValueError(f"Edge ({from_id}, {to_id}) references an unknown node")
            if from_id == to_id:
                raise ValueError(f"Edge ({from_id}, {to_id}) is a self-loop")
        return self


class CreateRunRequest(PipelineGraph):
    """Request body for starting a pipeline run."""

    project_description: str = Field(
        min_length=1,
        max_length=20000,
        description="What the pipeline should produce",
        examples=["A habit tracker with streaks and reminders"],
    )
    mode: ExecutionMode | None = Field(
        default=None,
        description="Execution mode (defaults to the configured mode)",
    )


class RunResponse(BaseModel):
    """Response for run creation."""

    run_id: str = Field(examples=["run_abc123def456"])
    websocket_url: str = Field(examples=["/ws/run_abc123def456"])
    status: RunStatus


class RunDetailResponse(BaseModel):
    """Current state of a run."""

    run_id: str
    mode: ExecutionMode
    status: RunStatus
    statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    models_used: dict[str, str] = Field(default_factory=dict)
    log: list[str] = Field(default_factory=list)
    summary: RunSummary | None = None
    error_message: str | None = None
    created_at: float
    completed_at: float | None = None


class RetryNodeRequest(BaseModel):
    """Request body for re-running one node with an optional new driver."""

    driver: Driver | None = None


class OptimizeRequest(PipelineGraph):
    """Request body for the pre-run optimizer."""


class OptimizeResponse(BaseModel):
    """Optimizer result together with the graph it produces when applied."""

    result: OptimizerResult
    nodes: list[Node]
    edges: list[Edge]


class AutoFixRequest(PipelineGraph):
    """Request body for the post-run auto-fix advisor."""

    statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    execution_log: list[str] = Field(default_factory=list)


class AutoFixResponse(BaseModel):
    """Auto-fix result together with the patched nodes and statuses."""

    result: AutoFixResult
    nodes: list[Node]
    statuses: dict[str, NodeStatus]


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    timestamp: float
    version: str = "0.1.0"
    configured_providers: list[str] = Field(default_factory=list)
    active_runs: int = 0
