"""Event creation from natural language: expenses, purchases, tasks, maintenance."""

import logging
from typing import List

from ...config import MESSAGE_PROCESSING_CONFIG
from ...schemas.agents.extraction import EventExtraction
from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask, TaskType
from ...utils import parse_iso_datetime, to_utc_naive, utcnow
from .base import BaseAgent, compile_keywords
from .prompts import PRIORITY_RULES, temporal_rules

logger = logging.getLogger(__name__)

KEYWORDS = [
    "трат",
    "потратил",
    "покупк",
    "купил",
    "деньг",
    "расход",
    "задач",
    "событи",
    "ремонт",
    "починк",
    "обслуж",
    "встреч",
    "важно",
    "срочно",
    "завтра",
    "сегодня",
]
KEYWORD_PATTERN = compile_keywords(KEYWORDS)

EXTRACTION_SYSTEM_PROMPT = """Ты эксперт по извлечению структурированной информации о событиях из естественного языка.

ТИПЫ СОБЫТИЙ:
- expense: траты, расходы, платежи
- purchase: покупки товаров
- task: задачи, дела, планы
- maintenance: ремонт, обслуживание, починка
- other: встречи и все остальное

{priority_rules}

{temporal_rules}

ПРАВИЛА:
- Для expense и purchase всегда указывай amount и currency (по умолчанию RUB)
- Для task и maintenance обычно needs_confirmation = true
- Если информация неоднозначна, указывай более низкую confidence
- Используй релевантные теги для категоризации"""


class EventCreationAgent(BaseAgent):
    """Turns a message into a stored event.

    Extraction below the confidence floor is rejected rather than saved.
    The side event log is best effort: its failure never fails the task.
    """

    @property
    def name(self) -> str:
        return "Event Creation Agent"

    @property
    def description(self) -> str:
        return "Создание событий (расходов, покупок, задач) из текста на естественном языке"

    @property
    def capabilities(self) -> List[AgentCapability]:
        return [
            AgentCapability(name="Event Creation", description="Создание событий из текста", category="event", confidence=0.95),
            AgentCapability(name="Text Parsing", description="Парсинг текста в структурированные данные", category="parsing", confidence=0.9),
            AgentCapability(name="Data Extraction", description="Извлечение суммы, даты и приоритета", category="extraction", confidence=0.85),
        ]

    async def can_handle(self, task: AgentTask) -> bool:
        if task.type in (TaskType.EVENT.value, TaskType.CREATE_EVENT.value):
            return True
        # Confident questions and chat never create records, whatever their wording
        if task.type in (TaskType.QUESTION.value, TaskType.CHAT.value, TaskType.IRRELEVANT.value):
            return False
        return bool(KEYWORD_PATTERN.search(task.input))

    async def extract(self, task: AgentTask) -> EventExtraction:
        system = EXTRACTION_SYSTEM_PROMPT.format(
            priority_rules=PRIORITY_RULES,
            temporal_rules=temporal_rules(task.context.timezone),
        )
        prompt = self.build_prompt(task, "Извлеки информацию о событии из сообщения.")
        return await self.generate_object(system, prompt, EventExtraction, purpose="extract_event")

    async def process(self, task: AgentTask) -> AgentResult:
        household_id = task.context.household_id
        if not household_id:
            return self._failure("Не указан householdId")

        try:
            store = self._require_entities()
            info = await self.extract(task)
        except Exception as e:
            logger.error(f"[EventCreation] Extraction failed for task {task.id}: {e}")
            return self._failure(f"Не удалось извлечь информацию о событии: {e}")

        if info.confidence < MESSAGE_PROCESSING_CONFIG["EXTRACTION"]["MIN_CONFIDENCE"]:
            return self._failure("Недостаточно информации для создания события", confidence=info.confidence)

        occurred_at = to_utc_naive(parse_iso_datetime(info.occurred_at, task.created_at))
        processing_ms = int((utcnow() - task.created_at).total_seconds() * 1000)

        try:
            event = await store.create_event(
                household_id=household_id,
                user_id=task.context.user_id,
                source="api",
                type=info.type,
                title=info.title,
                notes=info.description,
                amount=info.amount,
                currency=info.currency,
                occurred_at=occurred_at,
                priority=info.priority,
                status="active",
                data={
                    "agent_name": self.name,
                    "task_id": task.id,
                    "original_input": task.input,
                    "channel": task.context.channel,
                    "message_id": task.context.message_id,
                },
                properties={
                    "agent_confidence": info.confidence,
                    "processing_time": processing_ms,
                    **info.properties,
                },
                tags=info.tags,
            )
        except Exception as e:
            logger.error(f"[EventCreation] Could not store event for task {task.id}: {e}")
            return self._failure(f"Ошибка создания события: {e}")

        try:
            await store.create_event_log(
                source="event-creation-agent",
                chat_id=task.context.chat_id or task.context.channel,
                text=f"Создано событие: {event['title']}",
                original_text=task.input,
                meta={
                    "message_id": task.context.message_id,
                    "user_id": task.context.user_id,
                    "task_id": task.id,
                    "event_id": event["id"],
                    "household_id": household_id,
                },
            )
        except Exception as e:
            logger.error(f"[EventCreation] Failed to create event log: {e}")

        return self._success(
            data={
                "event": event,
                "confidence": info.confidence,
                "needs_confirmation": info.needs_confirmation,
            },
            message=f"Создано событие \"{event['title']}\" типа {event['type']}",
            confidence=info.confidence,
        )
