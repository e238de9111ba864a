"""End-to-end runs of the orchestrator against in-memory stores and a scripted model."""

import json

import pytest

from assistant.config import GENERIC_ERROR_RESPONSE, MESSAGE_PROCESSING_CONFIG
from assistant.exceptions import MessageValidationError, RateLimitExceeded
from assistant.schemas.agents.classification import Classification
from assistant.schemas.agents.extraction import (
    EventExtraction,
    FastAnalysis,
    QualityEvaluation,
    ReminderContextAnalysis,
)
from assistant.schemas.agents.task import AgentResult, AgentTask
from assistant.schemas.messages import AgentOptions, ProcessMessageRequest
from assistant.services.agents.orchestrator import (
    EVENT_FAILURE_RESPONSE,
    Orchestrator,
    format_reply,
    rate_limit_identity,
    resolve_task_type,
)
from assistant.services.rate_limit import RateLimiter

from conftest import FakeContextStore, FakeEntityStore, FakeGenerationService, ManualClock, make_event

CLASSIFIER_MARKER = "классификатор сообщений"
ASSISTANT_MARKER = "персональный ИИ-ассистент"
ANALYST_MARKER = "аналитик личных данных"

NOT_SIMPLE = {"is_simple_query": False, "needs_full_processing": True, "confidence": 0.9}
NOT_REMINDER = {"is_reminder_related": False, "confidence": 0.9}


def classification(type, confidence=0.9, need_logging=False, relevant=True):
    return json.dumps({
        "messageType": {"type": type, "subtype": None, "confidence": confidence, "need_logging": need_logging},
        "relevance": {"relevant": relevant, "score": 0.9, "category": "general"},
    })


def web_request(text, **overrides):
    fields = {"text": text, "channel": "web", "user_id": "u1", "household_id": "h1"}
    fields.update(overrides)
    return ProcessMessageRequest(**fields)


def orchestrator(llm, context_store=None, entity_store=None, rate_limiter=None):
    return Orchestrator(
        context_store if context_store is not None else FakeContextStore(),
        entity_store if entity_store is not None else FakeEntityStore(),
        llm=llm,
        rate_limiter=rate_limiter if rate_limiter is not None else RateLimiter(),
    )


async def test_purchase_is_recorded_as_event():
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("event", need_logging=True)},
        objects={
            FastAnalysis: NOT_SIMPLE,
            ReminderContextAnalysis: NOT_REMINDER,
            EventExtraction: {
                "title": "Хлеб",
                "type": "purchase",
                "amount": 45,
                "currency": "RUB",
                "confidence": 0.9,
            },
        },
    )
    contexts, entities = FakeContextStore(), FakeEntityStore()

    response = await orchestrator(llm, contexts, entities).process_message(web_request("Купил хлеб за 45 рублей"))

    assert response.success is True
    assert response.message_type.type == "event"
    assert response.parsed["event"]["type"] == "purchase"
    assert response.parsed["event"]["amount"] == 45
    assert response.parsed["event"]["currency"] == "RUB"
    assert len(entities.events) == 1
    assert response.agent_metadata.agents_used == ["event-creation-agent"]
    assert response.agent_metadata.processing_mode == "agents"
    assert response.agent_metadata.should_log_event is True

    conversation_id = response.agent_metadata.conversation_id
    saved = contexts.messages[conversation_id]
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[0].text == "Купил хлеб за 45 рублей"
    assert saved[1].text == response.response
    assert contexts.models[saved[1].id] == "fake-model"


async def test_greeting_takes_the_fast_path():
    llm = FakeGenerationService(
        objects={
            FastAnalysis: {
                "is_simple_query": True,
                "response_type": "direct",
                "suggested_response": "Привет! Чем могу помочь?",
                "confidence": 0.95,
                "needs_full_processing": False,
            }
        },
    )
    contexts = FakeContextStore()

    response = await orchestrator(llm, contexts).process_message(web_request("Привет!"))

    assert response.success is True
    assert response.response == "Привет! Чем могу помочь?"
    assert response.agent_metadata.processing_mode == "fast"
    assert llm.calls_for("text") == []

    saved = contexts.messages[response.agent_metadata.conversation_id]
    assert [m.role for m in saved] == ["user", "assistant"]
    assert contexts.models[saved[1].id] == "fast-response"


async def test_fast_path_can_be_disabled_per_request():
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("chat"), ASSISTANT_MARKER: "Здравствуйте!"},
    )

    response = await orchestrator(llm).process_message(
        web_request("Привет!", agent_options=AgentOptions(use_fast_path=False))
    )

    assert response.response == "Здравствуйте!"
    assert response.agent_metadata.agents_used == ["general-assistant"]
    assert all(call.get("schema") != "FastAnalysis" for call in llm.calls)


async def test_rate_limit_rejects_fourth_request(monkeypatch):
    monkeypatch.setitem(MESSAGE_PROCESSING_CONFIG["RATE_LIMIT"], "LIMIT", 3)
    clock = ManualClock()
    limiter = RateLimiter(clock=clock)
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("chat"), ASSISTANT_MARKER: "Ответ"},
        objects={FastAnalysis: NOT_SIMPLE},
    )
    pipeline = orchestrator(llm, rate_limiter=limiter)
    request = web_request("что нового")

    for _ in range(3):
        assert (await pipeline.process_message(request)).success is True

    with pytest.raises(RateLimitExceeded) as excinfo:
        await pipeline.process_message(request)

    assert excinfo.value.reset_ms > 0
    assert excinfo.value.retry_after_seconds == 60
    status = limiter.status(rate_limit_identity(request), limit=3)
    assert status.allowed is False
    assert status.reset_ms > 0

    clock.advance(60_001)
    assert (await pipeline.process_message(request)).success is True


@pytest.mark.parametrize(
    "fields, field",
    [
        ({"text": "   ", "user_id": "u1"}, "text"),
        ({"text": "hi", "channel": "telegram"}, "chat_id"),
        ({"text": "hi", "channel": "web"}, "user_id"),
        ({"text": "hi", "channel": "mobile"}, "user_id"),
    ],
)
async def test_invalid_requests_are_rejected_before_any_work(fields, field):
    llm = FakeGenerationService()
    limiter = RateLimiter()

    with pytest.raises(MessageValidationError) as excinfo:
        await orchestrator(llm, rate_limiter=limiter).process_message(ProcessMessageRequest(**fields))

    assert excinfo.value.field == field
    assert llm.calls == []
    assert len(limiter) == 0


async def test_anonymous_telegram_chat_is_accepted():
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("chat"), ASSISTANT_MARKER: "Ответ"},
        objects={FastAnalysis: NOT_SIMPLE},
    )
    limiter = RateLimiter()
    contexts = FakeContextStore()

    response = await orchestrator(llm, contexts, rate_limiter=limiter).process_message(
        ProcessMessageRequest(text="как жизнь", channel="telegram", chat_id="777")
    )

    assert response.success is True
    assert (None, "telegram", "777") in contexts.conversations
    assert limiter.status("process:telegram:777").remaining == MESSAGE_PROCESSING_CONFIG["RATE_LIMIT"]["LIMIT"] - 1


async def test_store_failure_becomes_generic_reply():
    contexts = FakeContextStore()
    contexts.fail_appends = True
    llm = FakeGenerationService(objects={FastAnalysis: NOT_SIMPLE})

    response = await orchestrator(llm, contexts).process_message(web_request("запиши расход"))

    assert response.success is False
    assert response.response == GENERIC_ERROR_RESPONSE
    assert response.agent_metadata.processing_mode == "error"


async def test_failed_extraction_asks_for_clarification():
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("event")},
        objects={
            FastAnalysis: NOT_SIMPLE,
            ReminderContextAnalysis: NOT_REMINDER,
            EventExtraction: {"title": "?", "type": "other", "confidence": 0.2},
        },
    )
    entities = FakeEntityStore()

    response = await orchestrator(llm, entity_store=entities).process_message(web_request("Купил что-то"))

    assert response.success is False
    assert response.response == EVENT_FAILURE_RESPONSE
    assert response.parsed is None
    assert entities.events == []


async def test_unclassifiable_message_goes_to_general_assistant():
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: "не JSON", ASSISTANT_MARKER: "Я вас слушаю."},
        objects={FastAnalysis: NOT_SIMPLE, ReminderContextAnalysis: NOT_REMINDER},
    )

    response = await orchestrator(llm).process_message(web_request("ммм"))

    assert response.success is True
    assert response.message_type.type == "chat"
    assert response.agent_metadata.agents_used == ["general-assistant"]


async def test_history_is_passed_to_the_classifier():
    contexts = FakeContextStore()
    conversation_id = await contexts.find_or_create_conversation("u1", "web")
    contexts.add_history(conversation_id, "user", "Я был в магазине", minutes_ago=5)
    contexts.add_history(conversation_id, "assistant", "Что купили?", minutes_ago=4)
    llm = FakeGenerationService(
        text={CLASSIFIER_MARKER: classification("chat"), ASSISTANT_MARKER: "Понятно."},
        objects={FastAnalysis: NOT_SIMPLE, ReminderContextAnalysis: NOT_REMINDER},
    )

    await orchestrator(llm, contexts).process_message(web_request("ничего особенного"))

    classifier_prompt = llm.calls_for("text")[0]["prompt"]
    assert "Контекст беседы:" in classifier_prompt
    assert "1. Пользователь: Я был в магазине" in classifier_prompt
    assert "2. Ассистент: Что купили?" in classifier_prompt


async def test_quality_control_revises_analysis():
    entities = FakeEntityStore([make_event("Кофе", amount=200, days_ago=1)])
    llm = FakeGenerationService(
        text={
            CLASSIFIER_MARKER: classification("question"),
            ANALYST_MARKER: ["Черновик", "Улучшенный анализ"],
        },
        objects={
            FastAnalysis: NOT_SIMPLE,
            ReminderContextAnalysis: NOT_REMINDER,
            QualityEvaluation: [
                _evaluation(0.5),
                _evaluation(0.9),
            ],
        },
    )

    response = await orchestrator(llm, entity_store=entities).process_message(
        web_request(
            "Сделай анализ трат",
            agent_options=AgentOptions(use_quality_control=True, max_quality_iterations=2, target_quality=0.8),
        )
    )

    assert response.response == "Улучшенный анализ"
    assert response.agent_metadata.agents_used == ["data-analyst"]
    assert response.agent_metadata.quality_score == 0.9
    assert response.agent_metadata.total_steps == 2


def _evaluation(score):
    return {
        "accuracy": score,
        "relevance": score,
        "completeness": score,
        "clarity": score,
        "helpfulness": score,
        "overall_score": score,
        "suggestions": ["Добавьте цифры"],
        "needs_improvement": score < 0.8,
    }


def test_explicit_task_type_overrides_classification():
    confident_chat = Classification.model_validate_json(classification("chat"))
    unsure = Classification.model_validate_json(classification("event", confidence=0.2))

    assert resolve_task_type(web_request("x", metadata={"task_type": "create_reminder"}), confident_chat) == "create_reminder"
    assert resolve_task_type(web_request("x", metadata={"task_type": "bogus"}), confident_chat) == "chat"
    assert resolve_task_type(web_request("x"), unsure) == "general"


def test_format_reply_fallbacks():
    task = AgentTask(type="event", input="x")
    assert format_reply(task, AgentResult(success=True, data={"event": {"title": "Хлеб"}})) == "Записал: Хлеб"
    assert format_reply(task, AgentResult(success=False, error="boom")) == EVENT_FAILURE_RESPONSE

    general = AgentTask(input="x")
    assert format_reply(general, AgentResult(success=True, data="текст")) == "текст"
    assert format_reply(general, AgentResult(success=True, data={"response": "ответ"})) == "ответ"
    assert format_reply(general, AgentResult(success=True)) == "Готово."
    assert format_reply(general, AgentResult(success=False, error="boom")) == GENERIC_ERROR_RESPONSE
