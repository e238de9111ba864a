"""Agent system schemas."""

from .context import (
    MessageRole,
    ContextMessage,
    ContextOptions,
    ConversationContext,
)
from .task import (
    TaskType,
    AgentContext,
    AgentTask,
    AgentCapability,
    AgentResult,
)
from .classification import (
    MessageType,
    Relevance,
    Classification,
    FastResponse,
)
from .trace import (
    TraceEventType,
    TraceEvent,
    ExecutionTrace,
)

__all__ = [
    "MessageRole",
    "ContextMessage",
    "ContextOptions",
    "ConversationContext",
    "TaskType",
    "AgentContext",
    "AgentTask",
    "AgentCapability",
    "AgentResult",
    "MessageType",
    "Relevance",
    "Classification",
    "FastResponse",
    "TraceEventType",
    "TraceEvent",
    "ExecutionTrace",
]
