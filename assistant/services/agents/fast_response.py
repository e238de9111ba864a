"""Fast-response path for trivial messages (greetings, thanks, small talk).

The decision itself comes from the generation service; this module owns the
caches, the reply templates and the statistics. Every failure resolves to
"needs full processing", so a broken fast path can never swallow a message.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ...config import MESSAGE_PROCESSING_CONFIG
from ...schemas.agents.classification import FastResponse
from ...schemas.agents.extraction import FastAnalysis
from ...utils import input_hash, truncate_for_logging
from .llm import GenerationService, get_generation_service
from .tracing import trace_llm_call

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = """Ты эксперт по быстрому анализу пользовательских запросов.
Определи, можно ли дать быстрый ответ на этот запрос или нужна полная обработка.

БЫСТРЫЙ ОТВЕТ (is_simple_query: true, needs_full_processing: false):
- Приветствия: "привет", "здравствуй", "добрый день"
- Благодарности: "спасибо", "благодарю"
- Подтверждения: "да", "нет", "ок", "хорошо"
- Прощания: "пока", "до свидания"
- Вопросы о возможностях: "что ты умеешь?"
- Светская беседа: "как дела?"

ПОЛНАЯ ОБРАБОТКА (is_simple_query: false, needs_full_processing: true):
- Запись дел, задач, покупок, расходов
- Напоминания, события, встречи, дедлайны
- Статистика, отчеты, анализ, поиск по данным
- Любые сообщения с датами, временем, суммами или конкретными действиями

Если сомневаешься, выбирай полную обработку.

response_type: direct (короткий ответ в suggested_response), template (типовой ответ,
укажи template_key: greeting, thanks, capabilities, help, confirmation, farewell),
ai_generated (сгенерировать ответ)."""

RESPONSE_SYSTEM_PROMPT = """Ты дружелюбный ИИ-помощник.
Дай краткий и полезный ответ на сообщение пользователя.
Предлагай дальнейшую помощь, где уместно. Отвечай на языке пользователя."""

TEMPLATE_SYSTEM_PROMPT = """Ты создаешь шаблоны ответов для чат-бота.
Шаблон должен быть коротким, дружелюбным и универсальным.
Можно использовать переменные {user}, {time} и {date}.
Верни только текст шаблона."""


@dataclass
class CachedReply:
    response: str
    confidence: float
    timestamp: float
    usage_count: int = 1


def fill_template(template: str, user: Optional[str], now: datetime) -> str:
    return (
        template.replace("{user}", user or "")
        .replace("{time}", now.strftime("%H:%M"))
        .replace("{date}", now.strftime("%d.%m.%Y"))
    )


class FastResponseService:
    """Decides whether a message can be answered immediately and produces the reply."""

    def __init__(
        self,
        llm: GenerationService,
        min_confidence: Optional[float] = None,
        cache_ttl_seconds: Optional[float] = None,
        clock=time.time,
    ):
        config = MESSAGE_PROCESSING_CONFIG["FAST_PATH"]
        self.llm = llm
        self.min_confidence = config["MIN_CONFIDENCE"] if min_confidence is None else min_confidence
        self.cache_ttl_seconds = config["CACHE_TTL_SECONDS"] if cache_ttl_seconds is None else cache_ttl_seconds
        self._clock = clock

        self._analysis_cache: Dict[str, Tuple[float, FastAnalysis]] = {}
        self._reply_cache: Dict[str, CachedReply] = {}
        self._templates: Dict[str, str] = {}

        self._analyses = 0
        self._avg_response_ms = 0.0

    # ---- public API ----

    async def analyze(
        self,
        text: str,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> FastResponse:
        start = self._clock()
        try:
            result = await self._analyze(text, user_id)
        except Exception as e:
            logger.warning(f"[FastResponse] Falling back to full processing for chat {chat_id}: {e}")
            result = FastResponse.full_processing()
        self._record_latency((self._clock() - start) * 1000)
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self._analysis_cache) + len(self._reply_cache),
            "templates_count": len(self._templates),
            "total_usage": sum(entry.usage_count for entry in self._reply_cache.values()),
            "average_response_time_ms": round(self._avg_response_ms, 2),
        }

    def clear_cache(self) -> None:
        self._analysis_cache.clear()
        self._reply_cache.clear()

    # ---- internals ----

    def _record_latency(self, elapsed_ms: float) -> None:
        self._analyses += 1
        self._avg_response_ms += (elapsed_ms - self._avg_response_ms) / self._analyses

    def _is_fresh(self, timestamp: float) -> bool:
        return self._clock() - timestamp < self.cache_ttl_seconds

    async def _analyze(self, text: str, user_id: Optional[str]) -> FastResponse:
        analysis = await self._get_analysis(text)

        if (
            not analysis.is_simple_query
            or analysis.needs_full_processing
            or analysis.confidence < self.min_confidence
        ):
            return FastResponse(
                should_send_fast=False,
                fast_response="",
                needs_full_processing=True,
                confidence=analysis.confidence,
                processing_type="full",
            )

        if analysis.response_type == "direct" and analysis.suggested_response:
            reply = analysis.suggested_response
        elif analysis.response_type == "template":
            template = await self._get_template(analysis.template_key or "general")
            reply = fill_template(template, user_id, datetime.now())
        else:
            reply = await self._generate_reply(text)

        reply = reply.strip()
        if not reply:
            return FastResponse.full_processing()

        logger.info(f"[FastResponse] Fast reply ({analysis.response_type}) for '{truncate_for_logging(text)}'")
        return FastResponse(
            should_send_fast=True,
            fast_response=reply,
            needs_full_processing=False,
            confidence=analysis.confidence,
            processing_type="fast",
        )

    async def _get_analysis(self, text: str) -> FastAnalysis:
        key = input_hash(text)
        cached = self._analysis_cache.get(key)
        if cached and self._is_fresh(cached[0]):
            return cached[1]

        start = time.time()
        prompt = f'Проанализируй запрос: "{text}"'
        analysis = await self.llm.generate_object(
            ANALYSIS_SYSTEM_PROMPT, prompt, FastAnalysis, temperature=0.1
        )
        trace_llm_call("fast_response", "fast_analysis", prompt, analysis.model_dump_json(), (time.time() - start) * 1000)

        self._analysis_cache[key] = (self._clock(), analysis)
        return analysis

    async def _generate_reply(self, text: str) -> str:
        key = input_hash(text)
        cached = self._reply_cache.get(key)
        if cached and self._is_fresh(cached.timestamp):
            cached.usage_count += 1
            logger.debug("[FastResponse] Using cached reply")
            return cached.response

        start = time.time()
        prompt = f'Дай быстрый ответ на: "{text}"'
        reply = await self.llm.generate_text(RESPONSE_SYSTEM_PROMPT, prompt, temperature=0.2)
        trace_llm_call("fast_response", "fast_reply", prompt, reply, (time.time() - start) * 1000)

        self._reply_cache[key] = CachedReply(response=reply.strip(), confidence=1.0, timestamp=self._clock())
        return reply

    async def _get_template(self, template_key: str) -> str:
        if template_key not in self._templates:
            template = await self.llm.generate_text(
                TEMPLATE_SYSTEM_PROMPT,
                f"Создай шаблон ответа для: {template_key}",
                temperature=0.3,
            )
            self._templates[template_key] = template.strip()
        return self._templates[template_key]


# Global service instance
_service: Optional[FastResponseService] = None


def get_fast_response_service() -> FastResponseService:
    global _service
    if _service is None:
        _service = FastResponseService(get_generation_service())
    return _service
