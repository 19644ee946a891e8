"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a scripted NodeCaller that never touches a real
provider, and small graph factories.
"""

import asyncio
import sys
from dataclasses import dataclass
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from pipeline.engine import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from catalog.providers import ProviderAvailability  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import PipelineEvent  # noqa: E402
from models.schemas import AgentDriver, ModelDriver, Node  # noqa: E402
from pipeline.cancellation import CancellationToken  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Scripted caller
# ---------------------------------------------------------------------------


@dataclass
class RecordedCall:
    instructions: str
    payload: str
    target: str
    kind: str


class ScriptedCaller:
    """NodeCaller fake that answers per model or agent id.

    ``script`` maps a model id or agent id to a string reply, an exception
    to raise, or a list of those consumed one per call (the last entry
    repeats). Unscripted ids answer ``"output from <id>"``. When ``gate``
    is set, every call blocks on it (through the cancellation token) before
    answering.
    """

    def __init__(
        self,
        script: dict[str, Any] | None = None,
        gate: asyncio.Event | None = None,
        chunks: list[str] | None = None,
    ) -> None:
        self.script: dict[str, Any] = dict(script or {})
        self.gate = gate
        self.chunks = chunks
        self.calls: list[RecordedCall] = []
        self.started = asyncio.Event()

    @property
    def targets(self) -> list[str]:
        return [call.target for call in self.calls]

    async def call(
        self,
        instructions: str,
        payload: str,
        driver: ModelDriver | AgentDriver,
        cancel_token: CancellationToken,
        on_chunk: Any = None,
    ) -> str:
        target = driver.model_id if isinstance(driver, ModelDriver) else driver.agent_id
        self.calls.append(RecordedCall(instructions, payload, target, driver.kind))
        self.started.set()

        if self.gate is not None:
            await cancel_token.guard(self.gate.wait())

        entry = self.script.get(target, f"output from {target}")
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(entry, BaseException):
            raise entry
        if on_chunk is not None and self.chunks:
            for chunk in self.chunks:
                await on_chunk(chunk)
        return entry


@pytest.fixture()
def scripted_caller() -> ScriptedCaller:
    return ScriptedCaller()


# ---------------------------------------------------------------------------
# Graph factories
# ---------------------------------------------------------------------------


def make_node(
    node_id: str,
    template_id: str | None = None,
    model: str | None = None,
    agent_id: str | None = None,
    **kwargs: Any,
) -> Node:
    """Create a Node; ``model`` / ``agent_id`` become its driver."""
    data: dict[str, Any] = {"id": node_id, "template_id": template_id or node_id, **kwargs}
    if model:
        data["model"] = model
    if agent_id:
        data["agent_id"] = agent_id
    return Node.model_validate(data)


@pytest.fixture()
def only_groq() -> ProviderAvailability:
    """Groq configured; Ollama is always available on top."""
    return ProviderAvailability.of("groq")


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def collect_events(event_bus: EventBus, run_id: str) -> list[PipelineEvent]:
    """Every event the bus recorded for a run, in publish order."""
    return event_bus.get_event_history(run_id)
