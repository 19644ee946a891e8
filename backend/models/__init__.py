"""Models module for Pydantic schemas.

This module exposes the pipeline data model and the request/response
models used by the API.
"""

from models.schemas import (
    AgentConfig,
    AgentDriver,
    AgentProtocol,
    AutoDriver,
    AutoFixRequest,
    AutoFixResponse,
    AutoFixResult,
    CreateRunRequest,
    Driver,
    Edge,
    ErrorCategory,
    ExecutionMode,
    HealthResponse,
    ModelDriver,
    ModelOption,
    ModelTier,
    Node,
    NodeAssignment,
    NodeFix,
    NodeStatus,
    NodeTemplate,
    OptimizeRequest,
    OptimizeResponse,
    OptimizerResult,
    PipelineGraph,
    PipelineTemplate,
    RetryNodeRequest,
    RunDetailResponse,
    RunRecord,
    RunResponse,
    RunStatus,
    RunSummary,
)

__all__ = [
    "AgentConfig",
    "AgentDriver",
    "AgentProtocol",
    "AutoDriver",
    "AutoFixRequest",
    "AutoFixResponse",
    "AutoFixResult",
    "CreateRunRequest",
    "Driver",
    "Edge",
    "ErrorCategory",
    "ExecutionMode",
    "HealthResponse",
    "ModelDriver",
    "ModelOption",
    "ModelTier",
    "Node",
    "NodeAssignment",
    "NodeFix",
    "NodeStatus",
    "NodeTemplate",
    "OptimizeRequest",
    "OptimizeResponse",
    "OptimizerResult",
    "PipelineGraph",
    "PipelineTemplate",
    "RetryNodeRequest",
    "RunDetailResponse",
    "RunRecord",
    "RunResponse",
    "RunStatus",
    "RunSummary",
]
