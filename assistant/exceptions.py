"""Error taxonomy for the message pipeline."""

from typing import Optional


class AssistantError(Exception):
    """Base class for all pipeline errors."""


class MessageValidationError(AssistantError):
    """Malformed or missing request fields. Never reaches an agent."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class GenerationError(AssistantError):
    """The generation service failed or returned something unusable."""


class GenerationTimeout(GenerationError):
    pass


class GenerationValidationError(GenerationError):
    """Structured output did not match the requested schema."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class RoutingExhausted(AssistantError):
    """No agent matched and no fallback agent is configured."""


class PersistenceError(AssistantError):
    pass


class RateLimitExceeded(AssistantError):
    """Too many requests under one key; carries the delay until a slot frees up."""

    def __init__(self, key: str, reset_ms: int, limit: int):
        super().__init__(f"Rate limit exceeded for {key}. Retry in {reset_ms}ms")
        self.key = key
        self.reset_ms = reset_ms
        self.limit = limit

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.reset_ms // 1000))


class PipelineError(AssistantError):
    """A pipeline stage failed; carries enough context to diagnose it."""

    def __init__(
        self,
        message: str,
        task_id: Optional[str] = None,
        channel: Optional[str] = None,
        input_preview: Optional[str] = None,
    ):
        super().__init__(message)
        self.task_id = task_id
        self.channel = channel
        self.input_preview = input_preview
