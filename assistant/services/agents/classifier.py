"""Message classifier: message type and relevance in one generation call."""

import logging
import time
from typing import Any, Dict, List, Optional

from ...config import MESSAGE_PROCESSING_CONFIG
from ...exceptions import GenerationError
from ...schemas.agents.classification import Classification
from ...schemas.agents.context import ContextMessage
from ...utils import truncate_for_logging
from .llm import GenerationService, parse_structured
from .tracing import trace_llm_call

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = """Ты классификатор сообщений персонального ассистента.
Определи тип сообщения и его релевантность.

Типы сообщений:
- question: пользователь что-то спрашивает или просит показать данные
- event: пользователь сообщает о факте, который стоит записать (покупка, расход, задача, ремонт, встреча, напоминание)
- chat: приветствие, благодарность, светская беседа
- irrelevant: спам, бессмыслица, не относится к ассистенту

need_logging = true, если из сообщения нужно создать запись (событие, расход, задачу, напоминание).
subtype: уточнение типа (например purchase, expense, task, reminder, greeting) или null.
relevance.score и confidence: числа от 0 до 1.

Ответь ТОЛЬКО JSON-объектом без пояснений:
{"messageType": {"type": "...", "subtype": "...", "confidence": 0.0, "need_logging": false},
 "relevance": {"relevant": true, "score": 0.0, "category": "..."}}"""

ROLE_LABELS = {"user": "Пользователь", "assistant": "Ассистент"}


def is_confident(classification: Classification, threshold: Optional[float] = None) -> bool:
    """Whether the classification is trustworthy enough to drive routing."""
    if threshold is None:
        threshold = MESSAGE_PROCESSING_CONFIG["CLASSIFICATION"]["MIN_CONFIDENCE"]
    return classification.message_type.confidence >= threshold


class MessageClassifier:
    """Classifies raw text. Never raises: failures produce `Classification.fallback()`."""

    def __init__(self, llm: GenerationService, timeout: Optional[float] = None):
        self.llm = llm
        self.timeout = timeout

    def _build_prompt(self, text: str, history: Optional[List[ContextMessage]]) -> str:
        if not history:
            return f"Message: {text}\nJSON:"

        lines = ["Контекст беседы:"]
        for index, msg in enumerate(history, start=1):
            lines.append(f"{index}. {ROLE_LABELS.get(msg.role, msg.role)}: {msg.text}")
        lines.append("")
        lines.append(f"Текущее сообщение для классификации: {text}")
        lines.append("JSON:")
        return "\n".join(lines)

    async def classify(
        self,
        text: str,
        history: Optional[List[ContextMessage]] = None,
        telemetry: Optional[Dict[str, Any]] = None,
    ) -> Classification:
        purpose = (telemetry or {}).get("function_id", "classify")
        prompt = self._build_prompt(text, history)
        start = time.time()

        try:
            raw = await self.llm.generate_text(
                CLASSIFIER_SYSTEM_PROMPT, prompt, temperature=0, timeout=self.timeout
            )
            trace_llm_call("classifier", purpose, prompt, raw, (time.time() - start) * 1000)
            classification = parse_structured(raw, Classification)
        except GenerationError as e:
            logger.warning(f"[Classifier] Falling back to default for '{truncate_for_logging(text)}': {e}")
            return Classification.fallback()
        except Exception as e:
            logger.exception(f"[Classifier] Unexpected error: {e}")
            return Classification.fallback()

        logger.info(
            f"[Classifier] {classification.message_type.type}"
            f" ({classification.message_type.confidence:.2f}),"
            f" relevant={classification.relevance.relevant}"
        )
        return classification
