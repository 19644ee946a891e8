"""LiteLLM-backed model caller.

One call is one system+user completion against the model a ModelDriver
names. Provider failures come back as ProviderCallError with the provider's
status code and text in the message so the self-heal subsystem can
classify them. Every request is raced against the run's cancellation token.
"""

import time
from typing import Any

import structlog
from litellm import acompletion
from litellm.exceptions import APIConnectionError, Timeout

from callers.base import ChunkCallback
from catalog.models import ModelCatalog
from config import Settings, settings as default_settings
from models.schemas import AgentDriver, ModelDriver
from pipeline.cancellation import CancellationToken
from pipeline.errors import PipelineCancelledError, ProviderCallError

logger = structlog.get_logger(__name__)

ERROR_TEXT_MAX_CHARS = 300


class LiteLLMCaller:
    """Model caller built on ``litellm.acompletion``.

    Attributes:
        catalog: Model catalog used to map catalog ids to LiteLLM strings
        settings: Provider keys, timeouts, token limits and streaming flag
    """

    def __init__(
        self,
        catalog: ModelCatalog | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.catalog = catalog or ModelCatalog()
        self.settings = settings or default_settings

    def _request_kwargs(self, instructions: str, payload: str, model_id: str) -> tuple[str, dict[str, Any]]:
        option = self.catalog.get(model_id)
        if option is None and "/" not in model_id:
            raise ProviderCallError(f"Unknown model: {model_id}")

        label = option.label if option else model_id
        litellm_model = option.litellm_model if option else model_id
        provider = self.catalog.provider_of(model_id) or ""

        messages = []
        if instructions:
            messages.append({"role": "system", "content": instructions})
        messages.append({"role": "user", "content": payload})

        kwargs: dict[str, Any] = {
            "model": litellm_model,
            "messages": messages,
            "max_tokens": self.settings.llm_max_tokens,
            "timeout": self.settings.llm_request_timeout_seconds,
        }
        api_key = self.settings.provider_api_keys().get(provider)
        if api_key:
            kwargs["api_key"] = api_key
        if provider == "ollama":
            kwargs["api_base"] = self.settings.ollama_api_base
        return label, kwargs

    async def call(
        self,
        instructions: str,
        payload: str,
        driver: ModelDriver | AgentDriver,
        cancel_token: CancellationToken,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Run one completion and return its text.

        Raises:
            PipelineCancelledError: The token fired before the call finished
            ProviderCallError: The provider rejected or failed the request
        """
        if not isinstance(driver, ModelDriver):
            raise ProviderCallError(f"Model caller cannot run driver kind {driver.kind!r}")

        label, kwargs = self._request_kwargs(instructions, payload, driver.model_id)
        stream = bool(on_chunk) and self.settings.stream_node_output
        start_time = time.time()

        try:
            if stream:
                content = await cancel_token.guard(self._stream(kwargs, on_chunk))
            else:
                response = await cancel_token.guard(acompletion(**kwargs))
                content = response.choices[0].message.content or ""
        except (PipelineCancelledError, ProviderCallError):
            raise
        except Timeout as e:
            raise ProviderCallError(
                f"{label} API timeout after {self.settings.llm_request_timeout_seconds}s",
                provider=kwargs["model"].split("/", 1)[0],
                status_code=408,
            ) from e
        except APIConnectionError as e:
            raise ProviderCallError(
                f"{label} API connection refused: {str(e)[:ERROR_TEXT_MAX_CHARS]}",
                provider=kwargs["model"].split("/", 1)[0],
            ) from e
        except Exception as e:
            # litellm exceptions carry the provider status code
            status_code = getattr(e, "status_code", None)
            raise ProviderCallError(
                f"{label} API {status_code or 'error'}: {str(e)[:ERROR_TEXT_MAX_CHARS]}",
                status_code=status_code,
            ) from e

        if not content.strip():
            raise ProviderCallError(f"{label} returned an empty response")

        logger.info(
            "model_call_complete",
            model=driver.model_id,
            streamed=stream,
            output_chars=len(content),
            latency_ms=int((time.time() - start_time) * 1000),
        )
        return content

    async def _stream(self, kwargs: dict[str, Any], on_chunk: ChunkCallback) -> str:
        parts: list[str] = []
        response = await acompletion(**kwargs, stream=True)
        async for chunk in response:
            delta = chunk.choices[0].delta.content if chunk.choices else None
            if delta:
                parts.append(delta)
                await on_chunk(delta)
        return "".join(parts)
