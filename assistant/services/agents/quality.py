"""Quality control: score an agent's answer and ask the agent for bounded revisions."""

import json
import logging
import time
from typing import List, Optional

from pydantic import BaseModel, Field

from ...config import MESSAGE_PROCESSING_CONFIG
from ...schemas.agents.extraction import QualityEvaluation
from ...schemas.agents.task import AgentResult, AgentTask
from ...schemas.agents.trace import TraceEventType
from .base import Agent
from .llm import GenerationService
from .tracing import current_trace, trace_llm_call

logger = logging.getLogger(__name__)

EVALUATOR_SYSTEM_PROMPT = """Ты эксперт по оценке качества ответов ИИ-ассистента.
Оцени ответ по критериям (каждый от 0 до 1):
1. accuracy: корректность фактической информации
2. relevance: соответствие ответа запросу
3. completeness: достаточность информации для решения задачи
4. clarity: понятность и структурированность
5. helpfulness: практическая ценность для пользователя
overall_score: общая оценка.

Ассистент помогает записывать покупки, задачи, встречи и анализировать их.
Ответы должны быть дружелюбными, конкретными и практичными, обычно 2-4 предложения.

Отличный ответ 0.9+, хороший 0.7-0.9, приемлемый 0.5-0.7, плохой ниже 0.5.
В suggestions перечисли конкретные улучшения."""


class QualityOutcome(BaseModel):
    result: AgentResult
    score: float
    iterations: int = 0  # revision passes actually run
    evaluations: List[QualityEvaluation] = Field(default_factory=list)


def result_text(result: AgentResult) -> str:
    if result.message:
        return result.message
    if isinstance(result.data, str):
        return result.data
    return json.dumps(result.data, ensure_ascii=False, default=str)


def fallback_evaluation() -> QualityEvaluation:
    return QualityEvaluation(
        accuracy=0.5,
        relevance=0.5,
        completeness=0.5,
        clarity=0.5,
        helpfulness=0.5,
        overall_score=0.5,
        reasoning="Evaluation unavailable",
        suggestions=["Проверить ответ агента"],
        needs_improvement=True,
    )


def format_feedback(evaluation: QualityEvaluation) -> str:
    lines = [f"Оценка: {evaluation.overall_score:.2f}"]
    if evaluation.reasoning:
        lines.append(f"Обоснование: {evaluation.reasoning}")
    lines.extend(f"- {s}" for s in evaluation.suggestions)
    return "\n".join(lines)


class QualityController:
    """Evaluator-optimizer loop around a single agent.

    The loop stops when the score reaches the target, when the revision
    budget is spent, or when the agent fails or raises. The best-scoring
    successful result is returned; ties keep the earlier one.
    """

    def __init__(
        self,
        llm: GenerationService,
        max_iterations: Optional[int] = None,
        target_quality: Optional[float] = None,
    ):
        config = MESSAGE_PROCESSING_CONFIG["QUALITY"]
        self.llm = llm
        self.max_iterations = config["MAX_ITERATIONS"] if max_iterations is None else max_iterations
        self.target_quality = config["TARGET_QUALITY"] if target_quality is None else target_quality

    async def evaluate(self, task: AgentTask, result: AgentResult) -> QualityEvaluation:
        """Score `result` against the task input. Judge failures score 0.5."""
        prompt = (
            "ОЦЕНКА КАЧЕСТВА ОТВЕТА\n\n"
            f'Запрос пользователя: "{task.input}"\n'
            f'Ответ агента: "{result_text(result)}"\n\n'
            "Проанализируй качество ответа по всем критериям и дай объективную оценку."
        )
        start = time.time()
        try:
            evaluation = await self.llm.generate_object(
                EVALUATOR_SYSTEM_PROMPT, prompt, QualityEvaluation, temperature=0.2
            )
        except Exception as e:
            logger.warning(f"[QualityController] Evaluation failed, using neutral score: {e}")
            return fallback_evaluation()
        trace_llm_call("quality_controller", "evaluate", prompt, evaluation.model_dump_json(), (time.time() - start) * 1000)
        return evaluation

    def _record(self, task: AgentTask, agent: Agent, evaluation: QualityEvaluation, iteration: int) -> None:
        trace = current_trace()
        if trace:
            trace.add_event(
                TraceEventType.QUALITY_EVALUATED,
                agent=agent.name,
                task_id=task.id,
                data={"score": evaluation.overall_score, "iteration": iteration},
            )

    async def run(
        self,
        task: AgentTask,
        agent: Agent,
        initial: AgentResult,
        max_iterations: Optional[int] = None,
        target_quality: Optional[float] = None,
    ) -> QualityOutcome:
        max_iterations = self.max_iterations if max_iterations is None else max_iterations
        target = self.target_quality if target_quality is None else target_quality

        if not initial.success:
            return QualityOutcome(result=initial, score=0)

        evaluation = await self.evaluate(task, initial)
        evaluations = [evaluation]
        self._record(task, agent, evaluation, 0)

        best, best_score = initial, evaluation.overall_score
        current, current_eval = initial, evaluation
        iterations = 0

        while best_score < target and iterations < max_iterations:
            revision_task = task.with_metadata(
                previous_output=result_text(current),
                quality_feedback=format_feedback(current_eval),
            )
            try:
                revised = await agent.process(revision_task)
            except Exception as e:
                logger.warning(f"[QualityController] {agent.name} raised during revision: {e}")
                break
            iterations += 1

            if not revised.success:
                logger.info(f"[QualityController] {agent.name} revision failed: {revised.error}")
                break

            current_eval = await self.evaluate(task, revised)
            evaluations.append(current_eval)
            self._record(task, agent, current_eval, iterations)
            current = revised

            if current_eval.overall_score > best_score:
                best, best_score = revised, current_eval.overall_score

        logger.info(
            f"[QualityController] {agent.name}: score {best_score:.2f} after {iterations} revision(s)"
        )
        return QualityOutcome(result=best, score=best_score, iterations=iterations, evaluations=evaluations)
