"""Conversation context schemas shared by the context assembler and the agents."""

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ...utils import utcnow


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ContextMessage(BaseModel):
    """A single stored message as seen by the pipeline."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    role: MessageRole
    text: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ContextOptions(BaseModel):
    max_messages: int = Field(default=10, ge=1)
    include_system_messages: bool = False
    max_age_hours: float = Field(default=24, gt=0)


class ConversationContext(BaseModel):
    """Recent history of one conversation, oldest message first."""
    conversation_id: str
    messages: List[ContextMessage] = Field(default_factory=list)
    total_messages: int = 0
    has_more_messages: bool = False
