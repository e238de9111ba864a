"""Orchestrator for message processing.

The orchestrator coordinates the flow for one inbound message:
1. Validate the request and apply the per-identity rate limit
2. Assemble the conversation context and trim it to a token budget
3. Try the fast path for trivial messages
4. Classify the message and build an AgentTask
5. Route the task to exactly one agent, optionally under quality control
6. Persist both sides of the exchange and reply
"""

import logging
import time
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ...config import GENERIC_ERROR_RESPONSE, MESSAGE_PROCESSING_CONFIG
from ...exceptions import MessageValidationError, PipelineError
from ...schemas.agents.classification import Classification
from ...schemas.agents.context import ContextOptions, MessageRole
from ...schemas.agents.task import AgentContext, AgentResult, AgentTask, TaskType
from ...schemas.agents.trace import ExecutionTrace, TraceEventType
from ...schemas.messages import (
    AgentMetadata,
    AgentSystemStats,
    ProcessMessageRequest,
    ProcessMessageResponse,
)
from ...utils import truncate_for_logging
from ..context import ContextAssembler, ContextStore, SqlContextStore, determine_max_tokens
from ..events import EntityStore, SqlEntityStore
from ..rate_limit import RateLimiter, build_rate_limit_key, get_rate_limiter
from .base import AgentRegistry
from .classifier import MessageClassifier, is_confident
from .data_analyst import DataAnalystAgent
from .database_agent import DatabaseAgent
from .event_creation import EventCreationAgent
from .fast_response import FastResponseService, get_fast_response_service
from .general import GeneralAssistantAgent
from .llm import GenerationService, get_generation_service
from .quality import QualityController
from .smart_reminder import SmartReminderAgent
from .tracing import bind_trace, format_trace_summary, trace_task

logger = logging.getLogger(__name__)

FAST_PATH_MODEL = "fast-response"

EVENT_FAILURE_RESPONSE = (
    "Не получилось сохранить запись. Уточните, пожалуйста, что именно, "
    "когда и на какую сумму."
)


def build_registry(llm: GenerationService, entities: Optional[EntityStore] = None) -> AgentRegistry:
    """Register all agents. Order is routing priority; the general assistant is the fallback."""
    registry = AgentRegistry()
    for agent in (
        DatabaseAgent(llm, entities),
        SmartReminderAgent(llm, entities),
        DataAnalystAgent(llm, entities),
        EventCreationAgent(llm, entities),
    ):
        registry.register(agent)
    registry.set_fallback(GeneralAssistantAgent(llm, entities))
    return registry


def validate_request(request: ProcessMessageRequest) -> None:
    if not request.text or not request.text.strip():
        raise MessageValidationError("Message text is empty", field="text")
    if request.channel == "telegram":
        if not request.chat_id:
            raise MessageValidationError("Telegram messages require chat_id", field="chat_id")
    elif not request.user_id:
        raise MessageValidationError(f"{request.channel} messages require user_id", field="user_id")


def rate_limit_identity(request: ProcessMessageRequest) -> str:
    if request.user_id:
        return build_rate_limit_key(["process", request.user_id])
    return build_rate_limit_key(["process", request.channel, request.chat_id])


def resolve_task_type(request: ProcessMessageRequest, classification: Classification) -> str:
    """Explicit caller intent wins; otherwise a confident classification; otherwise general."""
    explicit = request.metadata.get("task_type")
    if explicit in {t.value for t in TaskType}:
        return explicit
    if is_confident(classification):
        return classification.message_type.type
    return TaskType.GENERAL.value


def format_reply(task: AgentTask, result: AgentResult) -> str:
    """User-facing text for an agent result. Error details stay in the logs."""
    if not result.success:
        if task.type in (TaskType.EVENT.value, TaskType.CREATE_EVENT.value):
            return EVENT_FAILURE_RESPONSE
        return GENERIC_ERROR_RESPONSE

    if result.message:
        return result.message
    data: Any = result.data
    if isinstance(data, str) and data.strip():
        return data
    if isinstance(data, dict):
        if data.get("response"):
            return str(data["response"])
        if task.type in (TaskType.EVENT.value, TaskType.CREATE_EVENT.value) and data.get("event"):
            return f"Записал: {data['event'].get('title')}"
        if data.get("reminder"):
            return f"Напоминание создано: {data['reminder'].get('title')}"
    return "Готово."


class Orchestrator:
    """Runs one message through the pipeline.

    Built per request around the caller's stores; the generation service,
    the fast-path service and the rate limiter are shared process-wide.
    """

    def __init__(
        self,
        context_store: ContextStore,
        entity_store: Optional[EntityStore] = None,
        llm: Optional[GenerationService] = None,
        registry: Optional[AgentRegistry] = None,
        fast_path: Optional[FastResponseService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classifier: Optional[MessageClassifier] = None,
        quality: Optional[QualityController] = None,
    ):
        self.llm = llm or get_generation_service()
        self.assembler = ContextAssembler(context_store)
        self.registry = registry or build_registry(self.llm, entity_store)
        self.fast_path = fast_path or FastResponseService(self.llm)
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_rate_limiter()
        self.classifier = classifier or MessageClassifier(self.llm)
        self.quality = quality or QualityController(self.llm)

    async def process_message(self, request: ProcessMessageRequest) -> ProcessMessageResponse:
        """Process one message.

        Raises MessageValidationError and RateLimitExceeded before any work
        is done. Every later failure becomes a generic reply with
        `success=False`.
        """
        validate_request(request)

        limits = MESSAGE_PROCESSING_CONFIG["RATE_LIMIT"]
        self.rate_limiter.enforce(rate_limit_identity(request), limits["WINDOW_MS"], limits["LIMIT"])

        start_time = time.time()
        trace = ExecutionTrace(channel=request.channel, user_input=request.text)

        try:
            with bind_trace(trace):
                response = await self._run(request, trace, start_time)
        except Exception as e:
            error = e if isinstance(e, PipelineError) else PipelineError(
                str(e),
                task_id=trace.task_id,
                channel=request.channel,
                input_preview=truncate_for_logging(request.text),
            )
            logger.exception(
                f"[Orchestrator] Pipeline failed (task={error.task_id}, channel={error.channel},"
                f" input='{error.input_preview}'): {e}"
            )
            trace.finalize(response=GENERIC_ERROR_RESPONSE, success=False, mode="error")
            return ProcessMessageResponse(
                success=False,
                response=GENERIC_ERROR_RESPONSE,
                agent_metadata=AgentMetadata(
                    processing_time_ms=(time.time() - start_time) * 1000,
                    processing_mode="error",
                    task_id=trace.task_id,
                    trace_id=trace.trace_id,
                ),
            )

        logger.debug(format_trace_summary(trace))
        return response

    async def _run(
        self,
        request: ProcessMessageRequest,
        trace: ExecutionTrace,
        start_time: float,
    ) -> ProcessMessageResponse:
        options = request.agent_options
        context_config = MESSAGE_PROCESSING_CONFIG["CONTEXT"]

        # Step 1: Conversation context
        context = await self.assembler.get_context(
            request.user_id,
            request.channel,
            request.chat_id,
            ContextOptions(
                max_messages=context_config["MAX_MESSAGES"],
                include_system_messages=context_config["INCLUDE_SYSTEM_MESSAGES"],
                max_age_hours=context_config["MAX_AGE_HOURS"],
            ),
        )
        history = self.assembler.get_message_history(context, determine_max_tokens(request.text))
        trace.conversation_id = context.conversation_id
        trace.add_event(
            TraceEventType.CONTEXT_ASSEMBLED,
            data={"conversation_id": context.conversation_id, "history": len(history)},
        )

        # Step 2: Fast path
        use_fast_path = MESSAGE_PROCESSING_CONFIG["FAST_PATH"]["ENABLED"]
        if options and options.use_fast_path is not None:
            use_fast_path = options.use_fast_path

        if use_fast_path:
            fast = await self.fast_path.analyze(
                request.text, request.user_id, request.chat_id, request.message_id
            )
            if fast.should_send_fast and fast.fast_response:
                await self.assembler.save_message(context.conversation_id, MessageRole.USER.value, request.text)
                await self.assembler.save_message(
                    context.conversation_id, MessageRole.ASSISTANT.value, fast.fast_response, model=FAST_PATH_MODEL
                )
                trace.add_event(TraceEventType.FAST_PATH_SERVED, data={"confidence": fast.confidence})
                trace.finalize(response=fast.fast_response, success=True, mode="fast")
                logger.info(f"[Orchestrator] Fast reply for '{truncate_for_logging(request.text)}'")
                return ProcessMessageResponse(
                    success=True,
                    response=fast.fast_response,
                    agent_metadata=AgentMetadata(
                        agents_used=[FAST_PATH_MODEL],
                        total_steps=1,
                        quality_score=fast.confidence,
                        processing_time_ms=(time.time() - start_time) * 1000,
                        processing_mode="fast",
                        trace_id=trace.trace_id,
                        conversation_id=context.conversation_id,
                    ),
                )

        # Step 3: Persist the user message, then classify
        await self.assembler.save_message(context.conversation_id, MessageRole.USER.value, request.text)
        trace.add_event(TraceEventType.MESSAGE_PERSISTED, data={"role": MessageRole.USER.value})

        classification = await self.classifier.classify(
            request.text, history, telemetry={"function_id": "classify-message"}
        )
        trace.add_event(
            TraceEventType.CLASSIFIED,
            data={
                "type": classification.message_type.type,
                "confidence": classification.message_type.confidence,
                "relevant": classification.relevance.relevant,
            },
        )

        task = AgentTask(
            type=resolve_task_type(request, classification),
            input=request.text,
            context=AgentContext(
                user_id=request.user_id,
                chat_id=request.chat_id,
                message_id=request.message_id,
                conversation_id=context.conversation_id,
                channel=request.channel,
                household_id=request.household_id,
                timezone=request.timezone,
                metadata=dict(request.metadata),
            ),
            message_history=history,
        )
        trace.task_id = task.id

        # Step 4: Route and process
        agent = await self.registry.route(task)
        trace.agent = agent.name
        trace.add_event(TraceEventType.AGENT_ROUTED, agent=agent.name, task_id=task.id, data={"type": task.type})
        if agent is self.registry.fallback:
            trace.add_event(TraceEventType.FALLBACK_TRIGGERED, task_id=task.id, data={"reason": "no_agent_matched"})

        with trace_task(trace, task.id, agent.name) as outcome:
            result = await agent.process(task)
            outcome["success"] = result.success
            if result.error:
                outcome["error"] = result.error

        if not result.success:
            logger.warning(f"[Orchestrator] {agent.name} failed task {task.id}: {result.error}")

        # Step 5: Optional quality control
        use_quality = MESSAGE_PROCESSING_CONFIG["QUALITY"]["ENABLED"]
        if options and options.use_quality_control is not None:
            use_quality = options.use_quality_control

        quality_score = result.confidence or 0
        total_steps = 1
        if use_quality and agent.supports_revision and result.success:
            checked = await self.quality.run(
                task,
                agent,
                result,
                max_iterations=options.max_quality_iterations if options else None,
                target_quality=options.target_quality if options else None,
            )
            result = checked.result
            quality_score = checked.score
            total_steps += checked.iterations

        # Step 6: Persist the reply
        reply = format_reply(task, result)
        await self.assembler.save_message(
            context.conversation_id, MessageRole.ASSISTANT.value, reply, model=self.llm.model_name
        )
        trace.add_event(TraceEventType.MESSAGE_PERSISTED, data={"role": MessageRole.ASSISTANT.value})
        trace.finalize(response=reply, success=result.success)

        logger.info(
            f"[Orchestrator] Task {task.id} ({task.type}) handled by {agent.key}:"
            f" success={result.success}, {trace.llm_calls} LLM calls"
        )

        return ProcessMessageResponse(
            success=result.success,
            response=reply,
            message_type=classification.message_type,
            relevance=classification.relevance,
            parsed=result.data if result.success else None,
            agent_metadata=AgentMetadata(
                agents_used=[agent.key],
                total_steps=total_steps,
                quality_score=quality_score,
                processing_time_ms=(time.time() - start_time) * 1000,
                processing_mode="agents",
                should_log_event=classification.message_type.need_logging,
                task_id=task.id,
                trace_id=trace.trace_id,
                conversation_id=context.conversation_id,
            ),
        )


def get_orchestrator(db: AsyncSession) -> Orchestrator:
    """Orchestrator bound to the request's database session."""
    return Orchestrator(
        SqlContextStore(db),
        SqlEntityStore(db),
        llm=get_generation_service(),
        fast_path=get_fast_response_service(),
        rate_limiter=get_rate_limiter(),
    )


async def process_message(db: AsyncSession, request: ProcessMessageRequest) -> ProcessMessageResponse:
    """Main entry point for inbound messages.

    This is the function that should be called from the router.
    """
    orchestrator = get_orchestrator(db)
    return await orchestrator.process_message(request)


def get_agent_system_stats() -> AgentSystemStats:
    registry = build_registry(get_generation_service())
    return AgentSystemStats(
        agents=registry.get_stats(),
        available_agents=registry.describe(),
        fast_path=get_fast_response_service().get_stats(),
    )
