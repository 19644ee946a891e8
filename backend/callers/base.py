"""Caller protocol and driver dispatch.

The execution engine and the advisor never talk to providers directly.
They hand a resolved driver plus instructions and payload to a NodeCaller,
which returns the generated text or raises.
"""

from collections.abc import Awaitable, Callable
from typing import Protocol

from models.schemas import AgentDriver, ModelDriver
from pipeline.cancellation import CancellationToken
from pipeline.errors import UnknownAgentError

ChunkCallback = Callable[[str], Awaitable[None]]

ResolvedDriver = ModelDriver | AgentDriver


class NodeCaller(Protocol):
    """Anything that can run one node generation.

    Implementations raise PipelineCancelledError when the token fires and
    any other exception (message keeping provider status text) on failure.
    """

    async def call(
        self,
        instructions: str,
        payload: str,
        driver: ResolvedDriver,
        cancel_token: CancellationToken,
        on_chunk: ChunkCallback | None = None,
    ) -> str: ...


class DriverCaller:
    """Routes model drivers to the model caller and agent drivers to the agent caller."""

    def __init__(self, model_caller: NodeCaller, agent_caller: NodeCaller | None = None) -> None:
        self.model_caller = model_caller
        self.agent_caller = agent_caller

    async def call(
        self,
        instructions: str,
        payload: str,
        driver: ResolvedDriver,
        cancel_token: CancellationToken,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        if isinstance(driver, AgentDriver):
            if self.agent_caller is None:
                raise UnknownAgentError(driver.agent_id)
            return await self.agent_caller.call(instructions, payload, driver, cancel_token, on_chunk)
        return await self.model_caller.call(instructions, payload, driver, cancel_token, on_chunk)
