"""Classifier and fast-path decision schemas."""

from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MessageType(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["question", "event", "chat", "irrelevant"]
    subtype: Optional[str] = None
    confidence: float = Field(ge=0, le=1)
    need_logging: bool = Field(
        default=False,
        validation_alias=AliasChoices("need_logging", "needLogging"),
    )


class Relevance(BaseModel):
    relevant: bool
    score: Optional[float] = Field(default=None, ge=0, le=1)
    category: Optional[str] = None


class Classification(BaseModel):
    """Combined message type and relevance verdict for one message.

    Advisory only: callers check `confidence` before acting on it.
    """
    model_config = ConfigDict(populate_by_name=True)

    message_type: MessageType = Field(
        validation_alias=AliasChoices("message_type", "messageType"),
    )
    relevance: Relevance

    @classmethod
    def fallback(cls) -> "Classification":
        """Safe default used whenever classification fails."""
        return cls(
            message_type=MessageType(type="chat", subtype=None, confidence=0.3, need_logging=False),
            relevance=Relevance(relevant=False, score=0),
        )


class FastResponse(BaseModel):
    should_send_fast: bool
    fast_response: str = ""
    needs_full_processing: bool
    confidence: float = 0
    processing_type: Literal["fast", "full", "none"] = "full"

    @classmethod
    def full_processing(cls) -> "FastResponse":
        return cls(
            should_send_fast=False,
            fast_response="",
            needs_full_processing=True,
            confidence=0,
            processing_type="full",
        )
