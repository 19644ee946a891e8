"""Exception hierarchy for pipeline execution and the advisor."""


class PipelineError(Exception):
    """Base class for every error raised by the pipeline core."""


class PipelineCancelledError(PipelineError):
    """The run's cancellation token fired; aborts the run, never retried."""

    def __init__(self, message: str = "Pipeline run cancelled") -> None:
        super().__init__(message)


class ProviderCallError(PipelineError):
    """A model or agent call failed.

    The message keeps the provider's status code and text so that the
    self-heal subsystem can classify it.
    """

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class UnknownAgentError(PipelineError):
    """A node references an agent id that is not configured."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class AdvisorResponseMalformedError(PipelineError):
    """The advisor model replied without a usable JSON object."""

    def __init__(self, message: str, preview: str = "") -> None:
        super().__init__(message)
        self.preview = preview


class AdvisorUnavailableError(PipelineError):
    """Every candidate model for an advisor call failed, or none is configured."""

    def __init__(self, message: str, attempts: list[tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []
