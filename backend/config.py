"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the pipeline
orchestrator backend. All settings can be overridden via environment
variables or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        anthropic_api_key: API key for Anthropic (Claude) models.
        openai_api_key: API key for OpenAI models.
        groq_api_key: API key for Groq-hosted models.
        gemini_api_key: API key for Google Gemini models.
        openrouter_api_key: API key for OpenRouter.
        deepseek_api_key: API key for DeepSeek models.
        ollama_api_base: Base URL of the local Ollama server.
        max_heal_attempts: Fallback models tried per failed node.
        llm_request_timeout_seconds: Per-request timeout for provider calls.
        llm_max_tokens: Maximum tokens requested per node generation.
        stream_node_output: If True, node output is streamed as chunk events.
        agent_timeout_seconds: Timeout for one external agent call.
        agent_poll_interval_seconds: Poll interval for polling-based agents.
        agent_output_max_chars: Cap applied to sanitized agent output.
        agents_file: Optional JSON file listing external agent configurations.
        default_execution_mode: Execution mode used when a run omits one.
        run_history_limit: Maximum number of run records kept.
        database_path: Location of the run history SQLite database.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Provider credentials (never logged)
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    groq_api_key: str = ""
    gemini_api_key: str = ""
    openrouter_api_key: str = ""
    deepseek_api_key: str = ""
    # Ollama needs no key; it is always treated as available
    ollama_api_base: str = "http://localhost:11434"

    # Self-heal
    max_heal_attempts: int = 3

    # Provider calls
    llm_request_timeout_seconds: int = 120
    llm_max_tokens: int = 8192
    stream_node_output: bool = True

    # External agents
    agent_timeout_seconds: int = 120
    agent_poll_interval_seconds: float = 2.0
    agent_output_max_chars: int = 102400
    agents_file: str = ""

    # Execution
    default_execution_mode: str = "dag"

    # Run history
    run_history_limit: int = 25
    database_path: str = "./data/runs.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:5173"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:5173"]'
        - Comma-separated: 'http://localhost:5173,http://localhost:8080'
        - Single value: 'http://localhost:5173'
        - Already a list: ["http://localhost:5173"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:5173"]

    @field_validator("default_execution_mode")
    @classmethod
    def validate_execution_mode(cls, v: str) -> str:
        """Reject execution modes the engine does not know."""
        normalized = v.strip().lower()
        if normalized not in ("dag", "sequential", "parallel"):
            raise ValueError(f"Unknown execution mode: {v}")
        return normalized

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def provider_api_keys(self) -> dict[str, str]:
        """Return the configured API key for every keyed provider."""
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "groq": self.groq_api_key,
            "gemini": self.gemini_api_key,
            "openrouter": self.openrouter_api_key,
            "deepseek": self.deepseek_api_key,
        }

    def model_post_init(self, __context: Any) -> None:
        """Export the Ollama API base to os.environ for LiteLLM discovery."""
        if self.ollama_api_base:
            os.environ.setdefault("OLLAMA_API_BASE", self.ollama_api_base)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
