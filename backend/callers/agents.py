"""External agent caller over HTTP (httpx).

Supported protocols:
- http_simple: POST ``{task, context}`` to the agent endpoint; the reply's
  ``result`` / ``output`` / ``content`` / ``message`` field is the output.
- openai_assistant: OpenAI Assistants API (thread, message, run, poll
  until terminal, read the latest assistant message).

Agents only ever receive the task and the structured payload built for
them; every reply is sanitized before it enters the pipeline.
"""

import json
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import TypeAdapter

from callers.base import ChunkCallback
from config import Settings, settings as default_settings
from models.schemas import AgentConfig, AgentDriver, AgentProtocol, ModelDriver
from pipeline.cancellation import CancellationToken
from pipeline.context import sanitize_agent_output
from pipeline.errors import PipelineCancelledError, ProviderCallError, UnknownAgentError

logger = structlog.get_logger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
_RUN_PENDING_STATES = ("queued", "in_progress")
_RESULT_KEYS = ("result", "output", "content", "message")


def load_agent_configs(path: str) -> dict[str, AgentConfig]:
    """Load agent definitions from a JSON file holding a list of AgentConfig objects."""
    if not path:
        return {}
    raw = Path(path).read_text(encoding="utf-8")
    agents = TypeAdapter(list[AgentConfig]).validate_json(raw)
    logger.info("agent_configs_loaded", path=path, agent_count=len(agents))
    return {agent.id: agent for agent in agents}


class AgentCaller:
    """Calls configured external agents.

    Attributes:
        agents: Agent configurations by id
        settings: Timeout, poll interval and output cap defaults
    """

    def __init__(
        self,
        agents: Mapping[str, AgentConfig] | Iterable[AgentConfig] | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        openai_base_url: str = OPENAI_API_BASE,
    ) -> None:
        if agents is None:
            agents = {}
        if not isinstance(agents, Mapping):
            agents = {agent.id: agent for agent in agents}
        self.agents: dict[str, AgentConfig] = dict(agents)
        self.settings = settings or default_settings
        self._transport = transport
        self._openai_base_url = openai_base_url

    def get(self, agent_id: str) -> AgentConfig | None:
        return self.agents.get(agent_id)

    async def call(
        self,
        instructions: str,
        payload: str,
        driver: ModelDriver | AgentDriver,
        cancel_token: CancellationToken,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Send the task to the agent and return its sanitized reply.

        Raises:
            UnknownAgentError: The driver names an agent that is not configured
            PipelineCancelledError: The token fired during the call
            ProviderCallError: The agent failed, timed out or was unreachable
        """
        if not isinstance(driver, AgentDriver):
            raise ProviderCallError(f"Agent caller cannot run driver kind {driver.kind!r}")
        agent = self.agents.get(driver.agent_id)
        if agent is None:
            raise UnknownAgentError(driver.agent_id)

        timeout = agent.timeout_seconds or self.settings.agent_timeout_seconds
        start_time = time.time()

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                if agent.protocol == AgentProtocol.OPENAI_ASSISTANT:
                    raw = await self._call_openai_assistant(
                        client, agent, instructions, payload, cancel_token, timeout
                    )
                else:
                    raw = await cancel_token.guard(
                        self._call_http_simple(client, agent, instructions, payload)
                    )
        except (PipelineCancelledError, ProviderCallError):
            raise
        except httpx.TimeoutException as e:
            raise ProviderCallError(f"Agent timeout after {timeout}s") from e
        except httpx.ConnectError as e:
            raise ProviderCallError(f"Agent unreachable at {agent.endpoint or 'OpenAI'}: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Agent network error: {e}") from e

        output = sanitize_agent_output(raw, self.settings.agent_output_max_chars)
        logger.info(
            "agent_call_complete",
            agent_id=agent.id,
            protocol=agent.protocol.value,
            output_chars=len(output),
            latency_ms=int((time.time() - start_time) * 1000),
        )
        return output

    async def _call_http_simple(
        self,
        client: httpx.AsyncClient,
        agent: AgentConfig,
        task: str,
        context: str,
    ) -> str:
        if not agent.endpoint:
            raise ProviderCallError(f"Agent {agent.id} has no endpoint configured")
        headers = {"Content-Type": "application/json"}
        token = agent.bearer_token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = await client.post(agent.endpoint, json={"task": task, "context": context}, headers=headers)
        _raise_for_status(response)

        try:
            body = response.json()
        except json.JSONDecodeError:
            return response.text
        if not isinstance(body, dict):
            return json.dumps(body)
        for key in _RESULT_KEYS:
            if body.get(key) is not None:
                value = body[key]
                return value if isinstance(value, str) else json.dumps(value)
        return json.dumps(body)

    async def _call_openai_assistant(
        self,
        client: httpx.AsyncClient,
        agent: AgentConfig,
        task: str,
        context: str,
        cancel_token: CancellationToken,
        timeout: float,
    ) -> str:
        base = self._openai_base_url
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {agent.api_key.get_secret_value()}",
            "OpenAI-Beta": "assistants=v2",
        }

        async def post(url: str, body: dict[str, Any] | None, step: str) -> dict[str, Any]:
            response = await cancel_token.guard(client.post(url, json=body or {}, headers=headers))
            _raise_for_status(response, step)
            return response.json()

        thread = await post(f"{base}/threads", None, "Thread creation")
        thread_id = thread["id"]
        await post(
            f"{base}/threads/{thread_id}/messages",
            {"role": "user", "content": f"{task}\n\nContext:\n{context}"},
            "Message add",
        )
        run = await post(
            f"{base}/threads/{thread_id}/runs",
            {"assistant_id": agent.assistant_id},
            "Run creation",
        )
        run_id = run["id"]

        deadline = time.monotonic() + timeout
        status = run.get("status", "queued")
        while status in _RUN_PENDING_STATES:
            if time.monotonic() > deadline:
                raise ProviderCallError(f"Agent timeout after {timeout}s")
            await cancel_token.sleep(self.settings.agent_poll_interval_seconds)
            response = await cancel_token.guard(
                client.get(f"{base}/threads/{thread_id}/runs/{run_id}", headers=headers)
            )
            _raise_for_status(response, "Run poll")
            status = response.json().get("status", "")
            logger.debug("assistant_run_polled", agent_id=agent.id, status=status)

        if status != "completed":
            raise ProviderCallError(f"Assistant run ended with status: {status}")

        response = await cancel_token.guard(
            client.get(
                f"{base}/threads/{thread_id}/messages",
                params={"order": "desc", "limit": 1},
                headers=headers,
            )
        )
        _raise_for_status(response, "Messages fetch")
        messages = response.json().get("data") or []
        message = next((m for m in messages if m.get("role") == "assistant"), None)
        if message is None:
            raise ProviderCallError("No assistant response in thread")
        parts = message.get("content") or []
        first = parts[0] if parts else {}
        if first.get("type") == "text":
            return first["text"]["value"]
        return json.dumps(parts)


def _raise_for_status(response: httpx.Response, step: str = "") -> None:
    if response.is_success:
        return
    prefix = f"{step} failed: " if step else ""
    raise ProviderCallError(
        f"{prefix}HTTP {response.status_code}: {response.reason_phrase}",
        status_code=response.status_code,
    )
