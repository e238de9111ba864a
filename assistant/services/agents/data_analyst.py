"""Statistical analysis of stored events with a generated narrative."""

import json
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask, TaskType
from ..events import summarize_by_currency
from .base import BaseAgent, compile_keywords
from .database_agent import extract_days

logger = logging.getLogger(__name__)

KEYWORDS = [
    "анализ",
    "статистик",
    "данные",
    "отчет",
    "отчёт",
    "метрики",
    "тренд",
    "график",
    "числа",
    "расчет",
    "сколько",
    "analy",
    "stats",
    "statistics",
    "report",
    "trend",
]
KEYWORD_PATTERN = compile_keywords(KEYWORDS)

# Requests to record something are never analysis, whatever their wording
RECORDING_TYPES = (
    TaskType.EVENT.value,
    TaskType.CREATE_EVENT.value,
    TaskType.REMINDER.value,
    TaskType.CREATE_REMINDER.value,
)

DEFAULT_WINDOW_DAYS = 30

ANALYST_SYSTEM_PROMPT = """Ты аналитик личных данных пользователя: расходов, покупок, задач и событий.
Тебе дана статистика, посчитанная по сохраненным событиям. Опирайся только на нее,
не придумывай чисел. Объясни главное: на что уходит больше всего денег, как менялись
траты по дням, какие события повторяются. Дай 1-2 практичных совета.
Отвечай на языке пользователя, кратко и структурированно."""


def compute_statistics(events: List[Dict[str, Any]], days: int) -> Dict[str, Any]:
    """Aggregate counts and money totals over a list of event dicts."""
    daily: Dict[str, float] = defaultdict(float)
    for event in events:
        if event.get("amount") is not None and event.get("occurred_at"):
            daily[event["occurred_at"].strftime("%Y-%m-%d")] += float(event["amount"])

    titles = Counter((event.get("title") or "").strip().lower() for event in events)
    titles.pop("", None)

    return {
        "window_days": days,
        "total_events": len(events),
        "by_type": dict(Counter(event.get("type") for event in events)),
        "by_currency": summarize_by_currency(events),
        "daily_totals": {day: round(total, 2) for day, total in sorted(daily.items())},
        "top_titles": [{"title": title, "count": count} for title, count in titles.most_common(5)],
    }


class DataAnalystAgent(BaseAgent):
    supports_revision = True
    temperature = 0.5

    @property
    def name(self) -> str:
        return "Data Analyst"

    @property
    def description(self) -> str:
        return "Анализ данных, статистики и трендов по событиям пользователя"

    @property
    def capabilities(self) -> List[AgentCapability]:
        return [
            AgentCapability(name="Data Analysis", description="Анализ данных, метрик и трендов", category="analysis", confidence=0.85),
            AgentCapability(name="Spending Statistics", description="Статистика расходов по валютам и дням", category="analysis", confidence=0.8),
        ]

    async def can_handle(self, task: AgentTask) -> bool:
        if task.type in RECORDING_TYPES:
            return False
        return bool(KEYWORD_PATTERN.search(task.input))

    async def collect(self, task: AgentTask, days: int) -> Optional[Dict[str, Any]]:
        if self.entities is None:
            return None
        events = await self.entities.recent_events(
            household_id=task.context.household_id,
            user_id=task.context.user_id,
            days=days,
            limit=500,
        )
        return compute_statistics(events, days)

    async def process(self, task: AgentTask) -> AgentResult:
        days = extract_days(task.input) or DEFAULT_WINDOW_DAYS
        try:
            stats = await self.collect(task, days)
            data_block = (
                f"Статистика за {days} дн.:\n{json.dumps(stats, ensure_ascii=False, indent=2)}"
                if stats
                else "Сохраненных данных нет."
            )
            narrative = await self.generate_text(
                ANALYST_SYSTEM_PROMPT,
                self.build_prompt(task, data_block),
                purpose="analyze",
            )
        except Exception as e:
            logger.error(f"[DataAnalyst] Analysis failed for task {task.id}: {e}")
            return self._failure(
                "Извините, произошла ошибка при анализе данных. Убедитесь, что данные корректно представлены."
            )

        return self._success(data={"statistics": stats, "analysis": narrative}, message=narrative, confidence=0.85)
