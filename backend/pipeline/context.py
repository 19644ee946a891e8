"""Per-node prompt assembly.

Builds the instructions and payload a node runs with: the node's custom
prompt (or its template's default prompt), the project description, and
the outputs of its direct upstream dependencies. External agents get a
structured read-only payload instead, and their replies are sanitized
before they enter the pipeline.
"""

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from catalog.templates import TemplateRegistry
from models.schemas import Edge, Node

AGENT_OUTPUT_MAX_CHARS = 102400
TRUNCATION_NOTICE = "\n\n[Output truncated at 100KB]"

# Role markers an agent could use to smuggle instructions into downstream prompts
_INJECTION_PATTERNS = (
    re.compile(r"---\s*SYSTEM\s*---", re.IGNORECASE),
    re.compile(r"<\|system\|>", re.IGNORECASE),
    re.compile(r"<\|assistant\|>", re.IGNORECASE),
    re.compile(r"<\|user\|>", re.IGNORECASE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"\[/INST\]", re.IGNORECASE),
)


@dataclass(frozen=True)
class NodePrompt:
    """Instructions (system role) and payload (user role) for one node call."""

    instructions: str
    payload: str


@dataclass(frozen=True)
class AgentPayload:
    """Read-only payload sent to an external agent. Carries no secrets."""

    task: str
    project_description: str
    node_label: str
    node_type: str
    upstream_context: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "projectDescription": self.project_description,
            "nodeLabel": self.node_label,
            "nodeType": self.node_type,
            "upstreamContext": dict(self.upstream_context),
        }


def upstream_ids(node_id: str, edges: Sequence[Edge]) -> list[str]:
    """Direct upstream dependencies of a node, in edge-list order."""
    return [from_id for from_id, to_id in edges if to_id == node_id]


def display_name(node_id: str, nodes: Mapping[str, Node], templates: TemplateRegistry) -> str:
    """Custom label, else template label, else the node id."""
    node = nodes.get(node_id)
    if node is None:
        return node_id
    if node.custom_label:
        return node.custom_label
    template = templates.get(node.template_id)
    return template.label if template else node_id


def node_instructions(node: Node, templates: TemplateRegistry) -> str:
    if node.custom_prompt:
        return node.custom_prompt
    template = templates.get(node.template_id)
    return template.default_prompt if template else ""


def _upstream_outputs(
    node: Node,
    outputs: Mapping[str, str],
    edges: Sequence[Edge],
    nodes: Mapping[str, Node],
    templates: TemplateRegistry,
) -> list[tuple[str, str]]:
    return [
        (display_name(from_id, nodes, templates), outputs[from_id])
        for from_id in upstream_ids(node.id, edges)
        if outputs.get(from_id)
    ]


def build_node_prompt(
    node: Node,
    project_description: str,
    outputs: Mapping[str, str],
    edges: Sequence[Edge],
    *,
    nodes: Mapping[str, Node],
    templates: TemplateRegistry,
) -> NodePrompt:
    """Assemble the prompt for one node.

    Args:
        node: The node to build for
        project_description: Free-text project description
        outputs: Outputs available to this node (never mutated)
        edges: The run's edges; only edges into ``node`` matter
        nodes: All nodes of the run by id, for upstream display names
        templates: Template lookup

    Returns:
        NodePrompt with the node's instructions and the context payload
    """
    payload = f"PROJECT DESCRIPTION:\n{project_description}"
    upstream = _upstream_outputs(node, outputs, edges, nodes, templates)
    if upstream:
        payload += "\n\nUPSTREAM CONTEXT:"
        for name, output in upstream:
            payload += f"\n\n--- {name} Output ---\n{output}"
    return NodePrompt(instructions=node_instructions(node, templates), payload=payload)


def build_agent_payload(
    node: Node,
    project_description: str,
    outputs: Mapping[str, str],
    edges: Sequence[Edge],
    *,
    nodes: Mapping[str, Node],
    templates: TemplateRegistry,
) -> AgentPayload:
    """Structured payload for an external agent: task, project and direct upstream outputs only."""
    template = templates.get(node.template_id)
    return AgentPayload(
        task=node_instructions(node, templates),
        project_description=project_description,
        node_label=display_name(node.id, nodes, templates),
        node_type=template.id if template else node.id,
        upstream_context=dict(_upstream_outputs(node, outputs, edges, nodes, templates)),
    )


def sanitize_agent_output(text: Any, max_chars: int = AGENT_OUTPUT_MAX_CHARS) -> str:
    """Cap agent output size and redact role-injection markers."""
    if not isinstance(text, str):
        text = str(text) if text else ""
    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_NOTICE
    for pattern in _INJECTION_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text
