"""Prompts for the pipeline advisor.

This module contains the prompt templates used by the two advisor calls:
- OPTIMIZER_SYSTEM_PROMPT: Pre-run edge design and model assignment
- AUTO_FIX_SYSTEM_PROMPT: Post-run failure diagnosis
- build_optimizer_user_prompt / build_auto_fix_user_prompt: Per-call context
"""

from collections.abc import Mapping, Sequence

from catalog.templates import TemplateRegistry
from models.schemas import AgentDriver, Edge, ModelOption, Node, NodeStatus
from pipeline.context import display_name

AUTO_FIX_OUTPUT_SNIPPET_CHARS = 400
AUTO_FIX_LOG_LINES = 40

OPTIMIZER_SYSTEM_PROMPT = """\
You are an expert AI pipeline architect. Given a set of pipeline nodes and a project description, you do two things:

1. CONNECT the nodes: design the optimal DAG by specifying which nodes feed into which.
2. ASSIGN models: pick the best available AI model for each node.

=== CONNECTION RULES ===
- Requirements -> DB Schema, API Contract, UI Wireframes (requirements informs all design)
- DB Schema -> Backend Code, API Contract (schema drives implementation)
- API Contract -> Frontend Code, Backend Code (contract drives both sides)
- UI Wireframes -> Frontend Code (wireframes drive UI implementation)
- Backend Code -> Auth & Security, Payments (they wrap the server)
- Backend Code + Frontend Code -> Tests (test both sides)
- Tests -> Deployment (deploy after tests pass)
- NEVER create cycles (A->B and B->A is forbidden)
- If a node type has no natural dependency on others, leave it as a root (no incoming edges)
- Custom / unknown node types: use the node's label to infer its role and place it logically

=== MODEL ASSIGNMENT RULES ===
- FRONTIER (claude-sonnet, claude-opus, gpt-4o, gemini-flash, openrouter-claude, deepseek-r1): code generation, security, architecture, payments
- MID (llama-70b, gpt-4o-mini, deepseek-chat): requirements, schemas, documentation, tests
- LOCAL (llama-8b, ollama-*): deployment configs, simple templating only
- Assign null for model if the node's default auto-selection is already correct
- Nodes with many dependents need higher quality

You MUST respond with ONLY a valid JSON object. No markdown, no prose, no explanation outside the JSON."""

AUTO_FIX_SYSTEM_PROMPT = """\
You are an expert AI pipeline debugger. Diagnose failed nodes and prescribe targeted fixes.

Rules:
- "401" / "auth" / "Unauthorized" -> different provider
- "429" / "rate_limit" / "quota" -> different provider
- "500" / "overloaded" -> more reliable model
- "context_length" / "too many tokens" -> larger context model (claude-sonnet, gpt-4o)
- Skipped nodes -> fix their failed upstream dependency
- Empty/garbled output -> frontier model + prompt_addition

For prompt_addition: SHORT instruction to append. Empty string if not needed.
You MUST respond with ONLY valid JSON. No markdown, no prose outside the JSON."""

OPTIMIZER_RESPONSE_SHAPE = """\
{
  "strategy": "<one sentence: overall model assignment rationale>",
  "connection_rationale": "<one sentence: why you designed these connections>",
  "nodes": {
    "<exact-node-id>": { "model": "<model-id or null>", "reason": "<brief>" }
  },
  "edges": [
    ["<from-node-id>", "<to-node-id>"]
  ]
}"""

AUTO_FIX_RESPONSE_SHAPE = """\
{
  "summary": "<root cause and fix strategy>",
  "fixes": {
    "<exact-node-id>": { "model": "<model-id or null>", "prompt_addition": "<instruction or empty>", "reason": "<brief>" }
  }
}"""

def describe_driver(node: Node) -> str:
    """"agent:<id>", the model id, or "auto"."""
    if isinstance(node.driver, AgentDriver):
        return f"agent:{node.driver.agent_id}"
    return node.model_id or "auto"


def describe_nodes(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    templates: TemplateRegistry,
) -> str:
    """One block per node: id, type, label, tier, current model, neighbours."""
    by_id = {node.id: node for node in nodes}
    blocks: list[str] = []
    for node in nodes:
        template = templates.get(node.template_id)
        tier = template.tier.value if template else "mid"
        web_search = " [web-search]" if template and template.web_search else ""
        parts = [
            f'- id="{node.id}" type="{template.id if template else node.id}" '
            f'label="{display_name(node.id, by_id, templates)}" tier={tier}{web_search}'
        ]
        if isinstance(node.driver, AgentDriver) or node.model_id:
            parts.append(f"  current-model={describe_driver(node)}")
        upstream = [display_name(f, by_id, templates) for f, t in edges if t == node.id]
        downstream = [display_name(t, by_id, templates) for f, t in edges if f == node.id]
        if upstream:
            parts.append(f"  currently receives from: {', '.join(upstream)}")
        if downstream:
            parts.append(f"  currently feeds into: {', '.join(downstream)}")
        blocks.append("\n".join(parts))
    return "\n".join(blocks)


def describe_models(models: Sequence[ModelOption]) -> str:
    return "\n".join(f"- {m.id}: {m.label} ({m.provider}, tier:{m.tier.value})" for m in models)


def build_optimizer_user_prompt(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    project_description: str,
    available_models: Sequence[ModelOption],
    templates: TemplateRegistry,
) -> str:
    if edges:
        edge_lines = "\n".join(f'  ["{f}", "{t}"]' for f, t in edges)
    else:
        edge_lines = "  (none, no edges defined yet)"
    project = project_description or "(no description provided, use node types to infer)"
    return f"""\
PROJECT: {project}

PIPELINE NODES (use exact id values in your response):
{describe_nodes(nodes, edges, templates)}

CURRENT EDGES (you may keep, change, or replace these entirely):
{edge_lines}

AVAILABLE MODELS:
{describe_models(available_models)}

Respond with this EXACT JSON structure (no other text):
{OPTIMIZER_RESPONSE_SHAPE}

RULES:
- Include EVERY node id in "nodes"
- "edges" must be the COMPLETE desired edge list (not just additions); use [] if no edges make sense
- Use ONLY the exact id values shown in PIPELINE NODES above"""


def describe_failures(
    nodes: Sequence[Node],
    statuses: Mapping[str, NodeStatus],
    outputs: Mapping[str, str],
    templates: TemplateRegistry,
) -> str:
    """Diagnostic blocks for error and skipped nodes only."""
    by_id = {node.id: node for node in nodes}
    blocks: list[str] = []
    for node in nodes:
        status = statuses.get(node.id, NodeStatus.IDLE)
        if status not in (NodeStatus.ERROR, NodeStatus.SKIPPED):
            continue
        output = outputs.get(node.id, "")
        blocks.append(
            "\n".join(
                [
                    f'Node: "{display_name(node.id, by_id, templates)}" (id: {node.id})',
                    f"  Status: {status.value.upper()}",
                    f"  Current model: {describe_driver(node)}",
                    f"  Output snippet: {output[:AUTO_FIX_OUTPUT_SNIPPET_CHARS]}",
                ]
            )
        )
    return "\n\n".join(blocks)


def build_auto_fix_user_prompt(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    project_description: str,
    statuses: Mapping[str, NodeStatus],
    outputs: Mapping[str, str],
    execution_log: Sequence[str],
    available_models: Sequence[ModelOption],
    templates: TemplateRegistry,
) -> str:
    failures = describe_failures(nodes, statuses, outputs, templates)
    log_tail = "\n".join(execution_log[-AUTO_FIX_LOG_LINES:])
    return f"""\
PROJECT: {project_description or "(no description)"}

PIPELINE NODES:
{describe_nodes(nodes, edges, templates)}

FAILED / SKIPPED NODES:
{failures or "(none)"}

EXECUTION LOG (last {AUTO_FIX_LOG_LINES}):
{log_tail or "(empty)"}

AVAILABLE MODELS:
{describe_models(available_models)}

Respond with ONLY this JSON:
{AUTO_FIX_RESPONSE_SHAPE}

Only include nodes that need changes. Include ALL failed/skipped nodes."""
