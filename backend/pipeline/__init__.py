"""Pipeline core: scheduling, context building, self-heal, execution and advice.

Key Components:
    - topological_levels / execution_levels: Dependency graph to ordered levels
    - build_node_prompt: Instructions plus upstream context for one node
    - classify_error / fallback_chain: Failure categories and retry candidates
    - PipelineEngine: Level-by-level execution with healing and skip propagation
    - PipelineAdvisor: LLM optimizer and auto-fix with provider fallback
"""

from pipeline.advisor import (
    OPTIMIZER_PREFERENCE,
    PipelineAdvisor,
    apply_auto_fix,
    apply_optimizer_result,
    validate_edges,
)
from pipeline.cancellation import CancellationToken
from pipeline.context import (
    NodePrompt,
    build_agent_payload,
    build_node_prompt,
    display_name,
    sanitize_agent_output,
)
from pipeline.engine import NodeOutcome, PipelineEngine, RunResult
from pipeline.errors import (
    AdvisorResponseMalformedError,
    AdvisorUnavailableError,
    PipelineCancelledError,
    PipelineError,
    ProviderCallError,
    UnknownAgentError,
)
from pipeline.history import build_run_record
from pipeline.scheduler import execution_levels, find_unscheduled_nodes, topological_levels
from pipeline.selfheal import FALLBACK_PRIORITY, MAX_HEAL_ATTEMPTS, classify_error, fallback_chain
from pipeline.utils import decode_structured, extract_json

__all__ = [
    "FALLBACK_PRIORITY",
    "MAX_HEAL_ATTEMPTS",
    "OPTIMIZER_PREFERENCE",
    "AdvisorResponseMalformedError",
    "AdvisorUnavailableError",
    "CancellationToken",
    "NodeOutcome",
    "NodePrompt",
    "PipelineAdvisor",
    "PipelineCancelledError",
    "PipelineEngine",
    "PipelineError",
    "ProviderCallError",
    "RunResult",
    "UnknownAgentError",
    "apply_auto_fix",
    "apply_optimizer_result",
    "build_agent_payload",
    "build_node_prompt",
    "build_run_record",
    "classify_error",
    "decode_structured",
    "display_name",
    "execution_levels",
    "extract_json",
    "fallback_chain",
    "find_unscheduled_nodes",
    "sanitize_agent_output",
    "topological_levels",
    "validate_edges",
]
