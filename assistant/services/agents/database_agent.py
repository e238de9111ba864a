"""Retrieval of stored events, tasks and expenses, formatted as markdown."""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask, TaskType
from ...utils import truncate_for_logging
from .base import BaseAgent, compile_keywords

logger = logging.getLogger(__name__)

# Statistics and analysis requests belong to the data analyst
KEYWORDS = [
    "события",
    "задачи",
    "расходы",
    "история",
    "events",
    "tasks",
    "expenses",
    "history",
    "recent",
    "показать",
    "покажи",
    "найти",
    "найди",
    "получить",
    "посмотреть",
    "show",
    "find",
    "get",
    "view",
]
KEYWORD_PATTERN = compile_keywords(KEYWORDS)

SEARCH_PATTERNS = [
    re.compile(r"найди\s+(.+)", re.IGNORECASE),
    re.compile(r"поиск\s+(.+)", re.IGNORECASE),
    re.compile(r"search\s+(.+)", re.IGNORECASE),
]

DAYS_PATTERN = re.compile(r"(\d+)\s*(дн|день|дней|days?)", re.IGNORECASE)

DEFAULT_HOUSEHOLD = "default"

ToolCall = Tuple[str, Dict[str, Any]]


def extract_days(text: str) -> Optional[int]:
    """'за 14 дней' -> 14."""
    match = DAYS_PATTERN.search(text)
    return int(match.group(1)) if match else None


def extract_search_query(text: str) -> Optional[str]:
    for pattern in SEARCH_PATTERNS:
        match = pattern.search(text)
        if match:
            query = match.group(1).strip()
            return query or None
    return None


def _fmt_number(value: Any) -> str:
    if isinstance(value, (int, float)):
        return f"{value:.2f}"
    return "0.00"


def format_events(events: List[Dict[str, Any]], title: str) -> str:
    if not events:
        return f"{title}: События не найдены.\n\n"

    lines = [f"## {title}", ""] if title else []
    for index, event in enumerate(events, start=1):
        lines.append(f"{index}. **{event.get('title') or 'Без названия'}**")
        lines.append(f"   - Тип: {event.get('type')}")
        lines.append(f"   - Статус: {event.get('status')}")
        lines.append(f"   - Приоритет: {event.get('priority')}")
        occurred_at = event.get("occurred_at")
        if occurred_at:
            lines.append(f"   - Дата: {occurred_at.strftime('%d.%m.%Y')}")
        if event.get("amount"):
            lines.append(f"   - Сумма: {event['amount']} {event.get('currency') or ''}".rstrip())
        if event.get("notes"):
            lines.append(f"   - Заметки: {event['notes']}")
        if event.get("tags"):
            lines.append(f"   - Теги: {', '.join(str(t) for t in event['tags'])}")
        lines.append("")
    return "\n".join(lines) + "\n"


def format_currency_block(by_currency: Dict[str, Dict[str, Any]]) -> List[str]:
    lines = []
    for currency, data in by_currency.items():
        lines.append(
            f"- {currency}: {_fmt_number(data.get('total_amount'))}"
            f" (среднее: {_fmt_number(data.get('average_amount'))}, количество: {data.get('count', 0)})"
        )
    return lines


def format_stats(stats: Dict[str, Any]) -> str:
    lines = ["## Статистика", "", f"- **Всего событий**: {stats.get('total', 0)}"]
    if stats.get("by_currency"):
        lines += ["**По валютам:**", *format_currency_block(stats["by_currency"]), ""]
    if stats.get("by_type"):
        lines += ["**По типам:**", *[f"- {k}: {v}" for k, v in stats["by_type"].items()], ""]
    if stats.get("by_status"):
        lines += ["**По статусам:**", *[f"- {k}: {v}" for k, v in stats["by_status"].items()], ""]
    return "\n".join(lines) + "\n"


def format_search(result: Dict[str, Any]) -> str:
    text = f"## Результаты поиска по запросу \"{result.get('query')}\"\n\n"
    text += f"Найдено: {result.get('total', 0)} событий\n\n"
    if result.get("events"):
        text += format_events(result["events"], "")
    else:
        text += "События не найдены.\n"
    return text


def format_expenses(summary: Dict[str, Any]) -> str:
    lines = [f"## Анализ расходов за {summary.get('days')} дн.", ""]
    if summary.get("by_currency"):
        lines += ["**Общая сумма:**", *format_currency_block(summary["by_currency"]), ""]
    else:
        lines += ["Расходов не найдено.", ""]
    if summary.get("top_categories"):
        lines.append("**Топ категории:**")
        for index, category in enumerate(summary["top_categories"], start=1):
            lines.append(
                f"{index}. {category.get('category') or 'N/A'}: {_fmt_number(category.get('amount'))}"
                f" {category.get('currency')} ({category.get('count', 0)} операций)"
            )
        lines.append("")
    return "\n".join(lines) + "\n"


class DatabaseAgent(BaseAgent):
    """Answers "show me my ..." questions straight from the entity store.

    Tools are chosen from the wording of the request. A failing tool is
    reported in the reply instead of failing the whole request.
    """

    @property
    def name(self) -> str:
        return "Database Agent"

    @property
    def description(self) -> str:
        return "Получение информации о делах, событиях и расходах пользователя из базы данных"

    @property
    def capabilities(self) -> List[AgentCapability]:
        return [
            AgentCapability(name="Recent Events", description="Недавние события", category="database", confidence=0.95),
            AgentCapability(name="Upcoming Tasks", description="Предстоящие задачи", category="database", confidence=0.9),
            AgentCapability(name="Event Search", description="Поиск событий по тексту", category="database", confidence=0.9),
            AgentCapability(name="Expense Summary", description="Сводка расходов", category="database", confidence=0.85),
        ]

    async def can_handle(self, task: AgentTask) -> bool:
        if task.type in (
            TaskType.EVENT.value,
            TaskType.CREATE_EVENT.value,
            TaskType.CHAT.value,
            TaskType.IRRELEVANT.value,
        ):
            return False
        return bool(KEYWORD_PATTERN.search(task.input))

    def plan_tools(self, task: AgentTask) -> List[ToolCall]:
        text = task.input.lower()
        scope = {
            "household_id": task.context.household_id or DEFAULT_HOUSEHOLD,
            "user_id": task.context.user_id,
        }
        days = extract_days(text) or 7
        tools: List[ToolCall] = []

        if "статистика" in text or "stats" in text:
            tools.append(("event_stats", dict(scope)))
        if "недавн" in text or "recent" in text:
            tools.append(("recent_events", {**scope, "days": days}))
        if "предстоящ" in text or "upcoming" in text or "задач" in text:
            tools.append(("upcoming_tasks", {**scope, "days": days}))
        if "расход" in text or "expense" in text:
            tools.append(("expense_summary", {**scope, "days": extract_days(text) or 30}))
        if "найди" in text or "поиск" in text or "search" in text:
            query = extract_search_query(text)
            if query:
                tools.append(("search_events", {**scope, "query": query}))

        if not tools:
            tools.append(("list_events", {**scope, "limit": 10}))
        return tools

    async def run_tools(self, tools: List[ToolCall]) -> List[Tuple[str, Any]]:
        store = self._require_entities()
        results = []
        for tool, params in tools:
            try:
                result = await getattr(store, tool)(**params)
            except Exception as e:
                logger.error(f"[DatabaseAgent] Tool {tool} failed: {e}")
                result = {"error": f"Ошибка выполнения {tool}: {e}"}
            results.append((tool, result))
        return results

    def format_results(self, results: List[Tuple[str, Any]]) -> str:
        parts = []
        for tool, result in results:
            if isinstance(result, dict) and "error" in result:
                parts.append(f"{tool}: {result['error']}\n\n")
            elif tool == "list_events":
                parts.append(format_events(result, "События"))
            elif tool == "recent_events":
                parts.append(format_events(result, "Недавние события"))
            elif tool == "upcoming_tasks":
                parts.append(format_events(result, "Предстоящие задачи"))
            elif tool == "event_stats":
                parts.append(format_stats(result))
            elif tool == "search_events":
                parts.append(format_search(result))
            elif tool == "expense_summary":
                parts.append(format_expenses(result))
        return "".join(parts).strip()

    async def process(self, task: AgentTask) -> AgentResult:
        if not task.context.user_id:
            return self._failure("Не указан пользователь для запроса к базе данных")

        logger.info(f"[DatabaseAgent] Query: {truncate_for_logging(task.input)}")
        tools = self.plan_tools(task)
        try:
            results = await self.run_tools(tools)
        except Exception as e:
            logger.exception(f"[DatabaseAgent] Failed to query store: {e}")
            return self._failure(f"Ошибка при обработке запроса: {e}")

        response = self.format_results(results)
        return self._success(
            data={"response": response, "tools": [tool for tool, _ in tools]},
            message=response,
            confidence=0.9,
        )
