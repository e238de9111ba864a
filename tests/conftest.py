"""Shared test fixtures: in-memory fakes for the generation service and the stores."""

import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from pydantic import BaseModel

from assistant.exceptions import GenerationError, PersistenceError
from assistant.schemas.agents.context import ContextMessage
from assistant.services.agents.base import BaseAgent
from assistant.services.events import summarize_by_currency
from assistant.services.rate_limit import RateLimiter
from assistant.utils import utcnow


class FakeGenerationService:
    """GenerationService double.

    `text` is a string, a list consumed in order, an exception, or a dict
    mapping a marker found in the system prompt to one of those.
    `objects` maps a schema class to a dict/model, a list, or an exception.
    """

    model_name = "fake-model"

    def __init__(self, text: Any = "ok", objects: Optional[Dict[type, Any]] = None):
        self.text = text
        self.objects = dict(objects or {})
        self.calls: List[Dict[str, Any]] = []

    @staticmethod
    def _resolve(response: Any) -> Any:
        if isinstance(response, list):
            if not response:
                raise GenerationError("Fake responses exhausted")
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_text(self, system, prompt, temperature=0.7, timeout=None):
        self.calls.append({"kind": "text", "system": system, "prompt": prompt, "temperature": temperature})
        response = self.text
        if isinstance(response, dict):
            matched = [value for marker, value in response.items() if marker in system]
            if not matched:
                raise GenerationError("No fake text response for this prompt")
            response = matched[0]
        return self._resolve(response)

    async def generate_object(self, system, prompt, schema, temperature=0, timeout=None):
        self.calls.append({"kind": "object", "schema": schema.__name__, "prompt": prompt, "temperature": temperature})
        if schema not in self.objects:
            raise GenerationError(f"No fake response for {schema.__name__}")
        response = self._resolve(self.objects[schema])
        if isinstance(response, BaseModel):
            return response
        return schema.model_validate(response)

    def calls_for(self, kind: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]


class FakeContextStore:
    def __init__(self):
        self.conversations: Dict[tuple, str] = {}
        self.messages: Dict[str, List[ContextMessage]] = {}
        self.models: Dict[str, Optional[str]] = {}
        self.touched: List[str] = []
        self.fail_appends = False
        self._ids = itertools.count(1)

    async def find_or_create_conversation(self, user_id, channel, chat_id=None):
        key = (user_id, channel, chat_id)
        if key not in self.conversations:
            conversation_id = f"conv-{len(self.conversations) + 1}"
            self.conversations[key] = conversation_id
            self.messages[conversation_id] = []
        return self.conversations[key]

    async def list_recent_messages(self, conversation_id, limit, since=None):
        rows = [m for m in self.messages.get(conversation_id, []) if since is None or m.created_at >= since]
        rows.sort(key=lambda m: m.created_at, reverse=True)
        return rows[:limit]

    async def append_message(self, conversation_id, role, text, model=None):
        if self.fail_appends:
            raise PersistenceError("store unavailable")
        message_id = f"msg-{next(self._ids)}"
        self.messages.setdefault(conversation_id, []).append(
            ContextMessage(id=message_id, role=role, text=text, created_at=utcnow())
        )
        self.models[message_id] = model
        return message_id

    async def touch_conversation(self, conversation_id):
        self.touched.append(conversation_id)

    def add_history(self, conversation_id: str, role: str, text: str, minutes_ago: int) -> None:
        self.messages.setdefault(conversation_id, []).append(
            ContextMessage(
                id=f"msg-{next(self._ids)}",
                role=role,
                text=text,
                created_at=utcnow() - timedelta(minutes=minutes_ago),
            )
        )


class FakeEntityStore:
    def __init__(self, events: Optional[List[Dict[str, Any]]] = None):
        self.events: List[Dict[str, Any]] = list(events or [])
        self.reminders: List[Dict[str, Any]] = []
        self.logs: List[Dict[str, Any]] = []
        self.fail_logs = False
        self.failing_tools: set = set()

    def _check(self, tool: str) -> None:
        if tool in self.failing_tools:
            raise PersistenceError(f"{tool} unavailable")

    async def create_event(self, **fields):
        event = {"id": f"evt-{len(self.events) + 1}", "status": "active", "created_at": utcnow(), **fields}
        self.events.append(event)
        return event

    async def create_reminder(self, **fields):
        reminder = {"id": f"rem-{len(self.reminders) + 1}", "status": "pending", **fields}
        self.reminders.append(reminder)
        return reminder

    async def create_event_log(self, source, chat_id, text, original_text=None, meta=None):
        if self.fail_logs:
            raise PersistenceError("event log unavailable")
        self.logs.append({"source": source, "chat_id": chat_id, "text": text, "meta": meta or {}})
        return len(self.logs)

    async def list_events(self, household_id=None, user_id=None, limit=10):
        self._check("list_events")
        return self.events[:limit]

    async def recent_events(self, household_id=None, user_id=None, days=7, limit=50):
        self._check("recent_events")
        since = utcnow() - timedelta(days=days)
        return [e for e in self.events if e.get("occurred_at") and e["occurred_at"] >= since][:limit]

    async def upcoming_tasks(self, household_id=None, user_id=None, days=7, limit=10):
        self._check("upcoming_tasks")
        return [e for e in self.events if e.get("type") == "task"][:limit]

    async def search_events(self, query, household_id=None, user_id=None, limit=10):
        self._check("search_events")
        found = [e for e in self.events if query.lower() in (e.get("title") or "").lower()]
        return {"query": query, "total": len(found), "events": found[:limit]}

    async def expense_summary(self, household_id=None, user_id=None, days=30):
        self._check("expense_summary")
        expenses = [e for e in self.events if e.get("type") in ("expense", "purchase")]
        return {"days": days, "count": len(expenses), "by_currency": summarize_by_currency(expenses), "top_categories": []}

    async def event_stats(self, household_id=None, user_id=None):
        self._check("event_stats")
        return {"total": len(self.events), "by_type": {}, "by_status": {}, "by_currency": summarize_by_currency(self.events)}


def make_event(title: str, type: str = "expense", amount: Optional[float] = None, days_ago: int = 0, **extra) -> Dict[str, Any]:
    return {
        "id": f"evt-{title}",
        "title": title,
        "type": type,
        "amount": amount,
        "currency": "RUB" if amount is not None else None,
        "occurred_at": utcnow() - timedelta(days=days_ago),
        "priority": "medium",
        "status": "active",
        "notes": None,
        "tags": [],
        **extra,
    }


@pytest.fixture(autouse=True)
def clear_agent_cache():
    BaseAgent.clear_cache()
    yield
    BaseAgent.clear_cache()


@pytest.fixture
def llm() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def context_store() -> FakeContextStore:
    return FakeContextStore()


@pytest.fixture
def entity_store() -> FakeEntityStore:
    return FakeEntityStore()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter()


class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


def at(minutes: int) -> datetime:
    """A fixed timestamp `minutes` after a reference point."""
    return datetime(2025, 1, 1, 12, 0) + timedelta(minutes=minutes)
