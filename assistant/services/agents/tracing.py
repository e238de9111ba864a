"""Tracing utilities for debugging and observability.

The orchestrator binds one ExecutionTrace per request with `bind_trace`;
agents and helpers record into it through `current_trace()` without the
trace being threaded through every call signature.
"""

import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Generator, Optional

from ...schemas.agents.trace import ExecutionTrace, TraceEventType
from ...utils import truncate_for_logging

_current_trace: ContextVar[Optional[ExecutionTrace]] = ContextVar("current_trace", default=None)


def current_trace() -> Optional[ExecutionTrace]:
    return _current_trace.get()


@contextmanager
def bind_trace(trace: ExecutionTrace) -> Generator[ExecutionTrace, None, None]:
    """Make `trace` the current trace for the duration of the block."""
    token = _current_trace.set(trace)
    try:
        yield trace
    finally:
        _current_trace.reset(token)


@contextmanager
def trace_task(
    trace: Optional[ExecutionTrace],
    task_id: str,
    agent_name: str,
) -> Generator[Dict[str, Any], None, None]:
    """Record start/end events around an agent run and measure its duration.

    Yields a dict the caller fills with data for the completion event.
    """
    start_time = time.time()
    result_data: Dict[str, Any] = {}

    if trace:
        trace.add_event(TraceEventType.TASK_STARTED, agent=agent_name, task_id=task_id)

    try:
        yield result_data
    except Exception as e:
        if trace:
            trace.add_event(
                TraceEventType.TASK_FAILED,
                agent=agent_name,
                task_id=task_id,
                data={"error": str(e)},
                duration_ms=(time.time() - start_time) * 1000,
            )
        raise

    if trace:
        event_type = (
            TraceEventType.TASK_COMPLETED
            if result_data.get("success", True)
            else TraceEventType.TASK_FAILED
        )
        trace.add_event(
            event_type,
            agent=agent_name,
            task_id=task_id,
            data=result_data,
            duration_ms=(time.time() - start_time) * 1000,
        )


def trace_llm_call(
    agent_name: str,
    purpose: str,
    prompt_preview: str,
    response_preview: Optional[str] = None,
    duration_ms: float = 0,
) -> None:
    """Record a generation call in the current trace, if any."""
    trace = current_trace()
    if trace is None:
        return
    trace.add_event(
        TraceEventType.LLM_CALL,
        agent=agent_name,
        data={
            "purpose": purpose,
            "prompt_preview": truncate_for_logging(prompt_preview),
            "response_preview": truncate_for_logging(response_preview) if response_preview else None,
        },
        duration_ms=duration_ms,
    )


def format_trace_summary(trace: ExecutionTrace) -> str:
    lines = [
        f"Trace {trace.trace_id} ({trace.user_input[:50]}...)",
        f"  Channel: {trace.channel} (conversation {trace.conversation_id or '-'})",
        f"  Mode: {trace.processing_mode}",
        f"  Task: {trace.task_id or '-'} via {trace.agent or '-'}",
        f"  Duration: {trace.total_duration_ms:.0f}ms",
        f"  LLM calls: {trace.llm_calls}",
        f"  Tasks: {trace.tasks_executed} completed, {trace.tasks_failed} failed",
        f"  Success: {trace.success}",
    ]
    for event in trace.events:
        duration = f" {event.duration_ms:.0f}ms" if event.duration_ms is not None else ""
        agent = f" [{event.agent}]" if event.agent else ""
        lines.append(f"    - {event.event_type}{agent}{duration}")
    return "\n".join(lines)
