"""Entity storage for events, reminders and event logs.

Agents talk to the `EntityStore` protocol; `SqlEntityStore` implements it
on the SQLAlchemy models. Records cross the protocol as plain dicts so
they can go straight into an AgentResult.
"""

import logging
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..exceptions import PersistenceError
from ..utils import utcnow

logger = logging.getLogger(__name__)

EXPENSE_TYPES = ("expense", "purchase")


class EntityStore(Protocol):
    async def create_event(self, **fields: Any) -> Dict[str, Any]: ...

    async def create_reminder(self, **fields: Any) -> Dict[str, Any]: ...

    async def create_event_log(
        self,
        source: str,
        chat_id: str,
        text: str,
        original_text: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int: ...

    async def list_events(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 10
    ) -> List[Dict[str, Any]]: ...

    async def recent_events(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 7, limit: int = 50
    ) -> List[Dict[str, Any]]: ...

    async def upcoming_tasks(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 7, limit: int = 10
    ) -> List[Dict[str, Any]]: ...

    async def search_events(
        self, query: str, household_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 10
    ) -> Dict[str, Any]: ...

    async def expense_summary(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 30
    ) -> Dict[str, Any]: ...

    async def event_stats(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Dict[str, Any]: ...


def event_to_dict(event: models.Event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "household_id": event.household_id,
        "user_id": event.user_id,
        "source": event.source,
        "type": event.type,
        "title": event.title,
        "notes": event.notes,
        "amount": event.amount,
        "currency": event.currency,
        "occurred_at": event.occurred_at,
        "priority": event.priority,
        "status": event.status,
        "tags": list(event.tags or []),
        "properties": dict(event.properties or {}),
        "data": dict(event.data or {}),
        "created_at": event.created_at,
    }


def reminder_to_dict(reminder: models.Reminder) -> Dict[str, Any]:
    return {
        "id": reminder.id,
        "user_id": reminder.user_id,
        "title": reminder.title,
        "description": reminder.description,
        "type": reminder.type,
        "priority": reminder.priority,
        "reminder_time": reminder.reminder_time,
        "recurrence": reminder.recurrence,
        "status": reminder.status,
        "ai_generated": reminder.ai_generated,
        "ai_context": dict(reminder.ai_context or {}),
        "tags": list(reminder.tags or []),
        "created_at": reminder.created_at,
    }


def summarize_by_currency(events: List[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    """Total, average and count of event amounts, grouped by currency."""
    grouped: Dict[str, List[float]] = defaultdict(list)
    for event in events:
        if event.get("amount") is not None:
            grouped[event.get("currency") or "RUB"].append(float(event["amount"]))
    return {
        currency: {
            "total_amount": round(sum(amounts), 2),
            "average_amount": round(sum(amounts) / len(amounts), 2),
            "count": len(amounts),
        }
        for currency, amounts in grouped.items()
    }


class SqlEntityStore:
    """EntityStore backed by the events, reminders and event_logs tables."""

    def __init__(self, db: AsyncSession, clock=utcnow):
        self.db = db
        self._clock = clock

    def _scoped(self, stmt, household_id: Optional[str], user_id: Optional[str]):
        if household_id:
            stmt = stmt.where(models.Event.household_id == household_id)
        if user_id:
            stmt = stmt.where(models.Event.user_id == user_id)
        return stmt

    async def _commit(self, obj, what: str) -> None:
        try:
            self.db.add(obj)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Could not save {what}: {e}") from e

    async def create_event(self, **fields: Any) -> Dict[str, Any]:
        event = models.Event(**fields)
        await self._commit(event, "event")
        logger.info(f"[EntityStore] Created {event.type} event {event.id}: {event.title}")
        return event_to_dict(event)

    async def create_reminder(self, **fields: Any) -> Dict[str, Any]:
        reminder = models.Reminder(**fields)
        await self._commit(reminder, "reminder")
        logger.info(f"[EntityStore] Created reminder {reminder.id} at {reminder.reminder_time}")
        return reminder_to_dict(reminder)

    async def create_event_log(
        self,
        source: str,
        chat_id: str,
        text: str,
        original_text: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int:
        log = models.EventLog(
            source=source,
            chat_id=chat_id,
            type="text",
            text=text,
            original_text=original_text,
            meta=meta or {},
        )
        await self._commit(log, "event log")
        return log.id

    async def list_events(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 10
    ) -> List[Dict[str, Any]]:
        stmt = self._scoped(select(models.Event), household_id, user_id)
        stmt = stmt.order_by(models.Event.occurred_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return [event_to_dict(e) for e in result.scalars().all()]

    async def recent_events(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 7, limit: int = 50
    ) -> List[Dict[str, Any]]:
        since = self._clock() - timedelta(days=days)
        stmt = self._scoped(select(models.Event), household_id, user_id)
        stmt = (
            stmt.where(models.Event.occurred_at >= since)
            .order_by(models.Event.occurred_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [event_to_dict(e) for e in result.scalars().all()]

    async def upcoming_tasks(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 7, limit: int = 10
    ) -> List[Dict[str, Any]]:
        now = self._clock()
        stmt = self._scoped(select(models.Event), household_id, user_id)
        stmt = (
            stmt.where(
                models.Event.type == "task",
                models.Event.status == "active",
                models.Event.occurred_at >= now,
                models.Event.occurred_at <= now + timedelta(days=days),
            )
            .order_by(models.Event.occurred_at.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [event_to_dict(e) for e in result.scalars().all()]

    async def search_events(
        self, query: str, household_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 10
    ) -> Dict[str, Any]:
        pattern = f"%{query}%"
        matches = or_(models.Event.title.ilike(pattern), models.Event.notes.ilike(pattern))

        count_stmt = self._scoped(select(func.count(models.Event.id)), household_id, user_id).where(matches)
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = self._scoped(select(models.Event), household_id, user_id)
        stmt = stmt.where(matches).order_by(models.Event.occurred_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return {
            "query": query,
            "total": total,
            "events": [event_to_dict(e) for e in result.scalars().all()],
        }

    async def expense_summary(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None, days: int = 30
    ) -> Dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        stmt = self._scoped(select(models.Event), household_id, user_id)
        stmt = stmt.where(models.Event.type.in_(EXPENSE_TYPES), models.Event.occurred_at >= since)
        result = await self.db.execute(stmt)
        expenses = [event_to_dict(e) for e in result.scalars().all()]

        categories: Dict[tuple, Dict[str, Any]] = {}
        for expense in expenses:
            if expense["amount"] is None:
                continue
            category = expense["properties"].get("category") or expense["type"]
            key = (category, expense["currency"] or "RUB")
            entry = categories.setdefault(key, {"category": category, "currency": key[1], "amount": 0.0, "count": 0})
            entry["amount"] += float(expense["amount"])
            entry["count"] += 1

        return {
            "days": days,
            "count": len(expenses),
            "by_currency": summarize_by_currency(expenses),
            "top_categories": sorted(categories.values(), key=lambda c: c["amount"], reverse=True)[:5],
        }

    async def event_stats(
        self, household_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        stmt = self._scoped(select(models.Event), household_id, user_id)
        result = await self.db.execute(stmt)
        events = [event_to_dict(e) for e in result.scalars().all()]

        return {
            "total": len(events),
            "by_type": dict(Counter(e["type"] for e in events)),
            "by_status": dict(Counter(e["status"] for e in events)),
            "by_currency": summarize_by_currency(events),
        }
