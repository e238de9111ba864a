import logging
from typing import List

from ...config import GENERIC_ERROR_RESPONSE
from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask
from .base import BaseAgent

logger = logging.getLogger(__name__)

ASSISTANT_SYSTEM_PROMPT = """Ты персональный ИИ-ассистент. Ты помогаешь записывать покупки, расходы,
задачи и встречи, напоминаешь о делах и отвечаешь на вопросы о сохраненных данных.
Отвечай дружелюбно, конкретно и по делу, обычно 2-4 предложения, на языке пользователя.
Если пользователь хочет что-то записать, подскажи, как сформулировать сообщение."""


class GeneralAssistantAgent(BaseAgent):
    """Fallback agent: answers anything no specialist claimed."""

    supports_revision = True
    temperature = 0.7

    @property
    def name(self) -> str:
        return "General Assistant"

    @property
    def description(self) -> str:
        return "Универсальный помощник для общих вопросов и беседы"

    @property
    def capabilities(self) -> List[AgentCapability]:
        return [
            AgentCapability(name="General Help", description="Ответы на общие вопросы", category="general", confidence=0.85),
            AgentCapability(name="Conversation", description="Дружелюбная беседа", category="chat", confidence=0.8),
            AgentCapability(name="Basic Q&A", description="Базовые ответы без спец. экспертизы", category="question", confidence=0.75),
        ]

    async def can_handle(self, task: AgentTask) -> bool:
        return True

    async def process(self, task: AgentTask) -> AgentResult:
        try:
            response = await self.generate_text(ASSISTANT_SYSTEM_PROMPT, self.build_prompt(task))
        except Exception as e:
            logger.error(f"[GeneralAssistant] Generation failed for task {task.id}: {e}")
            return self._failure(GENERIC_ERROR_RESPONSE)

        if not response:
            return self._failure("Пустой ответ от модели")
        return self._success(data=response, message=response, confidence=0.8)
