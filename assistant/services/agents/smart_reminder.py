"""Reminder scheduling from natural language."""

import logging
from typing import List

from ...config import MESSAGE_PROCESSING_CONFIG
from ...schemas.agents.extraction import ReminderContextAnalysis, ReminderExtraction
from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask, TaskType
from ...utils import input_hash, parse_iso_datetime, to_utc_naive
from .base import BaseAgent
from .prompts import PRIORITY_RULES, temporal_rules

logger = logging.getLogger(__name__)

EXPLICIT_TYPES = (TaskType.REMINDER.value, TaskType.CREATE_REMINDER.value)

# Minimum confidence of the context analysis for the agent to claim a task
ROUTING_CONFIDENCE = 0.7

CONTEXT_SYSTEM_PROMPT = """Ты эксперт по анализу текста на предмет создания напоминаний.
Определи, просит ли пользователь напомнить ему о чем-то в будущем.

Ключевые индикаторы:
- Явная просьба: "напомни", "не дай забыть", "remind me"
- Время в будущем вместе с действием: "завтра в 10 позвонить врачу"
- Дедлайны: "сдать отчет до пятницы"

Примеры:
+ "Напомни мне завтра позвонить маме"
+ "Встреча с клиентом в 14:00, напомни за час"
- "Как дела?"
- "Потратил 500 рублей на продукты"
- "Покажи мои расходы"

suggested_action: create, update, list или none."""

EXTRACTION_SYSTEM_PROMPT = """Ты эксперт по извлечению информации о напоминаниях из текста.
Извлеки из текста все данные для создания напоминания.

ТИПЫ: task, event, deadline, meeting, call, follow_up, custom.
ПОВТОРЕНИЕ: none, daily, weekly, monthly, yearly, custom.

{priority_rules}

{temporal_rules}"""


class SmartReminderAgent(BaseAgent):
    """Creates reminders.

    Whether an unlabelled message is about reminders is inherently fuzzy, so
    routing asks the generation service; the answer is cached per input.
    """

    @property
    def name(self) -> str:
        return "Smart Reminder Agent"

    @property
    def description(self) -> str:
        return "Создание умных напоминаний на основе естественного языка"

    @property
    def capabilities(self) -> List[AgentCapability]:
        return [
            AgentCapability(name="create_reminder_from_text", description="Создание напоминания из текста", category="reminder", confidence=0.9),
            AgentCapability(name="analyze_reminder_context", description="Определение связи текста с напоминаниями", category="reminder", confidence=0.85),
            AgentCapability(name="extract_temporal_info", description="Извлечение временной информации", category="temporal", confidence=0.9),
        ]

    async def analyze_context(self, text: str) -> ReminderContextAnalysis:
        """Never raises: a failed analysis means "not reminder related"."""
        cache_key = f"context-{input_hash(text)}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            analysis = await self.generate_object(
                CONTEXT_SYSTEM_PROMPT,
                f'Анализируемый текст: "{text}"',
                ReminderContextAnalysis,
                purpose="reminder_context",
            )
        except Exception as e:
            logger.warning(f"[SmartReminder] Context analysis failed: {e}")
            return ReminderContextAnalysis(
                is_reminder_related=False, confidence=0, reasoning="Ошибка анализа", suggested_action="none"
            )

        self._set_cached(cache_key, analysis)
        return analysis

    async def can_handle(self, task: AgentTask) -> bool:
        if task.type in EXPLICIT_TYPES:
            return True
        if task.type == TaskType.IRRELEVANT.value:
            return False
        analysis = await self.analyze_context(task.input)
        return analysis.is_reminder_related and analysis.confidence > ROUTING_CONFIDENCE

    async def extract(self, task: AgentTask) -> ReminderExtraction:
        system = EXTRACTION_SYSTEM_PROMPT.format(
            priority_rules=PRIORITY_RULES,
            temporal_rules=temporal_rules(task.context.timezone),
        )
        prompt = self.build_prompt(task, "Извлеки информацию о напоминании из сообщения.")
        return await self.generate_object(system, prompt, ReminderExtraction, purpose="extract_reminder")

    async def process(self, task: AgentTask) -> AgentResult:
        user_id = task.context.user_id
        if not user_id:
            return self._failure("Не указан пользователь для напоминания")

        if task.type not in EXPLICIT_TYPES:
            analysis = await self.analyze_context(task.input)
            if not analysis.is_reminder_related:
                return self._failure("Текст не связан с созданием напоминаний", confidence=analysis.confidence)

        try:
            store = self._require_entities()
            info = await self.extract(task)
        except Exception as e:
            logger.error(f"[SmartReminder] Extraction failed for task {task.id}: {e}")
            return self._failure(f"Не удалось извлечь информацию о напоминании: {e}")

        if info.confidence < MESSAGE_PROCESSING_CONFIG["EXTRACTION"]["MIN_CONFIDENCE"]:
            return self._failure("Недостаточно информации для создания напоминания", confidence=info.confidence)

        reminder_time = to_utc_naive(parse_iso_datetime(info.reminder_time, task.created_at))

        try:
            reminder = await store.create_reminder(
                user_id=user_id,
                title=info.title,
                description=info.description,
                type=info.type,
                priority=info.priority,
                reminder_time=reminder_time,
                recurrence=info.recurrence,
                ai_generated=True,
                ai_context={
                    "source": "smart_reminder_agent",
                    "intent": "create_reminder",
                    "entities": info.extracted_entities.model_dump(),
                    "confidence": info.confidence,
                    "task_id": task.id,
                },
                tags=info.tags,
            )
        except Exception as e:
            logger.error(f"[SmartReminder] Could not store reminder for task {task.id}: {e}")
            return self._failure(f"Ошибка создания напоминания: {e}")

        return self._success(
            data={
                "reminder": reminder,
                "confidence": info.confidence,
                "needs_confirmation": info.needs_confirmation,
            },
            message=f"Создано напоминание \"{reminder['title']}\" на {reminder_time.strftime('%d.%m.%Y %H:%M')}",
            confidence=info.confidence,
        )
