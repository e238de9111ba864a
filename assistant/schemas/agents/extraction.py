"""Structured-output schemas requested from the generation service.

Field descriptions are sent to the model as part of the JSON schema, so
they double as extraction instructions.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...utils import map_priority

Priority = Literal["low", "medium", "high", "urgent"]


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


class EventExtraction(BaseModel):
    title: str = Field(description="Short event title")
    description: Optional[str] = Field(default=None, description="Longer free-text description")
    type: Literal["expense", "purchase", "task", "maintenance", "other"] = Field(
        description="Event category"
    )
    priority: Priority = Field(default="medium", description="Priority: low, medium, high or urgent")
    amount: Optional[float] = Field(default=None, description="Money amount, if any")
    currency: str = Field(default="RUB", description="ISO currency code, RUB when not stated")
    occurred_at: Optional[str] = Field(
        default=None, description="When it happened or is due, ISO-8601"
    )
    tags: List[str] = Field(default_factory=list)
    properties: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(ge=0, le=1, description="Extraction confidence")
    needs_confirmation: bool = False

    @field_validator("priority", mode="before")
    @classmethod
    def _map_priority(cls, value: Any) -> str:
        return map_priority(value if isinstance(value, str) else None)

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return _lower(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        if value is None:
            return "RUB"
        return value.strip().upper() if isinstance(value, str) else value


class ExtractedEntities(BaseModel):
    datetime: Optional[str] = None
    location: Optional[str] = None
    people: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class ReminderExtraction(BaseModel):
    title: str = Field(description="Short reminder title")
    description: Optional[str] = None
    type: Literal["task", "event", "deadline", "meeting", "call", "follow_up", "custom"] = "custom"
    priority: Priority = "medium"
    reminder_time: str = Field(description="When to remind, ISO-8601")
    recurrence: Literal["none", "daily", "weekly", "monthly", "yearly", "custom"] = "none"
    recurrence_pattern: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    needs_confirmation: bool = False
    extracted_entities: ExtractedEntities = Field(default_factory=ExtractedEntities)

    @field_validator("priority", mode="before")
    @classmethod
    def _map_priority(cls, value: Any) -> str:
        return map_priority(value if isinstance(value, str) else None)

    @field_validator("type", "recurrence", mode="before")
    @classmethod
    def _lower_enums(cls, value: Any) -> Any:
        return _lower(value)


class ReminderContextAnalysis(BaseModel):
    is_reminder_related: bool
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""
    suggested_action: Optional[Literal["create", "update", "list", "none"]] = None


class FastAnalysis(BaseModel):
    """Decision on whether a message can be answered without the full pipeline."""
    is_simple_query: bool
    response_type: Literal["direct", "template", "ai_generated"] = "ai_generated"
    template_key: Optional[str] = Field(
        default=None, description="Stable key for reusable replies, e.g. 'greeting'"
    )
    suggested_response: Optional[str] = None
    confidence: float = Field(ge=0, le=1)
    needs_full_processing: bool = True
    reasoning: str = ""


class QualityEvaluation(BaseModel):
    accuracy: float = Field(ge=0, le=1)
    relevance: float = Field(ge=0, le=1)
    completeness: float = Field(ge=0, le=1)
    clarity: float = Field(ge=0, le=1)
    helpfulness: float = Field(ge=0, le=1)
    overall_score: float = Field(ge=0, le=1)
    reasoning: str = ""
    suggestions: List[str] = Field(default_factory=list)
    needs_improvement: bool = False
