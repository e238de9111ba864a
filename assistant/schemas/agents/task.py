"""Task and result schemas for the multi-agent message pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from ...utils import utcnow
from .context import ContextMessage


class TaskType(str, Enum):
    """Kinds of work an agent task can carry.

    The first four mirror the classifier's message types; the rest are
    explicit requests coming from callers that already know the intent.
    """
    GENERAL = "general"
    QUESTION = "question"
    EVENT = "event"
    CHAT = "chat"
    IRRELEVANT = "irrelevant"

    CREATE_EVENT = "create_event"
    REMINDER = "reminder"
    CREATE_REMINDER = "create_reminder"


class AgentContext(BaseModel):
    """Who sent the message and where it came from."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    channel: str = "web"
    household_id: Optional[str] = None
    timezone: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentTask(BaseModel):
    """A unit of work handed to exactly one agent.

    Tasks are immutable. Quality revisions build a new task with
    `with_metadata` instead of editing the original.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    type: TaskType = TaskType.GENERAL
    input: str
    context: AgentContext = Field(default_factory=AgentContext)
    message_history: List[ContextMessage] = Field(default_factory=list)
    priority: int = 1
    created_at: datetime = Field(default_factory=utcnow)

    def with_metadata(self, **updates: Any) -> "AgentTask":
        """Return a copy whose context metadata is extended with `updates`."""
        context = self.context.model_copy(
            update={"metadata": {**self.context.metadata, **updates}}
        )
        return self.model_copy(update={"context": context})


class AgentCapability(BaseModel):
    """Declarative description of something an agent can do. Not used for routing."""
    name: str
    description: str
    category: str
    confidence: float = Field(ge=0, le=1)


class AgentResult(BaseModel):
    """Outcome of one agent run. Never modified after it is returned."""
    model_config = ConfigDict(frozen=True)

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    confidence: Optional[float] = None
    message: Optional[str] = None
