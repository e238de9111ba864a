"""Per-message execution trace.

One ExecutionTrace follows a message from context assembly to the stored
reply. It is only used for diagnostics: the trace id goes back to the
caller, the summary goes to the debug log.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...utils import utcnow

ProcessingMode = Literal["agents", "fast", "error"]


class TraceEventType(str, Enum):
    """Pipeline milestones, roughly in the order they happen."""
    CONTEXT_ASSEMBLED = "context_assembled"
    FAST_PATH_SERVED = "fast_path_served"
    MESSAGE_PERSISTED = "message_persisted"
    CLASSIFIED = "classified"
    AGENT_ROUTED = "agent_routed"
    FALLBACK_TRIGGERED = "fallback_triggered"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    LLM_CALL = "llm_call"
    QUALITY_EVALUATED = "quality_evaluated"


class TraceEvent(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    timestamp: datetime = Field(default_factory=utcnow)
    event_type: TraceEventType
    agent: Optional[str] = None
    task_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: Optional[float] = None


class ExecutionTrace(BaseModel):
    """Everything recorded while one message was processed.

    Counters (`llm_calls`, `tasks_executed`, `tasks_failed`) are derived
    from the events as they are added.
    """
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    channel: str
    user_input: str
    conversation_id: Optional[str] = None
    task_id: Optional[str] = None
    agent: Optional[str] = None
    processing_mode: ProcessingMode = "agents"
    events: List[TraceEvent] = Field(default_factory=list)
    llm_calls: int = 0
    tasks_executed: int = 0
    tasks_failed: int = 0
    final_response: Optional[str] = None
    success: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    total_duration_ms: float = 0

    def add_event(
        self,
        event_type: TraceEventType,
        agent: Optional[str] = None,
        task_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
    ) -> TraceEvent:
        event = TraceEvent(
            event_type=event_type,
            agent=agent,
            task_id=task_id,
            data=data or {},
            duration_ms=duration_ms,
        )
        self.events.append(event)

        if event.event_type == TraceEventType.LLM_CALL.value:
            self.llm_calls += 1
        elif event.event_type == TraceEventType.TASK_COMPLETED.value:
            self.tasks_executed += 1
        elif event.event_type == TraceEventType.TASK_FAILED.value:
            self.tasks_failed += 1
        return event

    def events_of(self, event_type: TraceEventType) -> List[TraceEvent]:
        return [e for e in self.events if e.event_type == TraceEventType(event_type).value]

    def finalize(
        self,
        response: Optional[str] = None,
        success: bool = False,
        mode: Optional[ProcessingMode] = None,
    ) -> None:
        self.final_response = response
        self.success = success
        if mode is not None:
            self.processing_mode = mode
        self.total_duration_ms = (utcnow() - self.started_at).total_seconds() * 1000
