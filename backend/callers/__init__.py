"""Provider calling layer: LiteLLM models, external agents, driver dispatch."""

from callers.agents import AgentCaller, load_agent_configs
from callers.base import ChunkCallback, DriverCaller, NodeCaller, ResolvedDriver
from callers.llm import LiteLLMCaller

__all__ = [
    "AgentCaller",
    "ChunkCallback",
    "DriverCaller",
    "LiteLLMCaller",
    "NodeCaller",
    "ResolvedDriver",
    "load_agent_configs",
]
