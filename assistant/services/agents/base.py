"""Base agent protocol, shared agent helpers and the routing registry."""

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, TypeVar, runtime_checkable

from pydantic import BaseModel

from ...exceptions import PersistenceError, RoutingExhausted
from ...schemas.agents.task import AgentCapability, AgentResult, AgentTask
from ...schemas.messages import AgentInfo, AgentRegistryStats
from ..events import EntityStore
from .llm import GenerationService
from .tracing import trace_llm_call

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

ROLE_LABELS = {"user": "Пользователь", "assistant": "Ассистент"}


def normalize_agent_key(name: str) -> str:
    """"Database Agent" -> "database-agent". Non-Latin characters are dropped."""
    key = re.sub(r"[^a-zA-Z0-9\s]", "", name)
    key = re.sub(r"\s+", "-", key).strip("-")
    return key.lower()


def compile_keywords(keywords: List[str]) -> "re.Pattern[str]":
    """Match any of `keywords` at the start of a word, case-insensitively.

    Keywords are word prefixes: "расход" matches "расходы" and "расходам"
    but "дела" does not match "Сделай".
    """
    alternatives = "|".join(re.escape(k) for k in keywords)
    return re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)


@runtime_checkable
class Agent(Protocol):
    """Interface every agent exposes to the registry and the orchestrator."""

    @property
    def name(self) -> str:
        ...

    @property
    def key(self) -> str:
        ...

    @property
    def description(self) -> str:
        ...

    @property
    def capabilities(self) -> List[AgentCapability]:
        ...

    @property
    def supports_revision(self) -> bool:
        """Whether the agent may be re-run with quality feedback."""
        ...

    async def can_handle(self, task: AgentTask) -> bool:
        ...

    async def process(self, task: AgentTask) -> AgentResult:
        """Handle the task. Expected failures come back as `success=False`."""
        ...


class BaseAgent(ABC):
    """Common functionality for agents backed by the generation service."""

    supports_revision: bool = False
    temperature: float = 0.3
    cache_ttl_seconds: float = 5 * 60

    # Shared across instances; keys are prefixed with the agent key
    _cache: Dict[str, Tuple[float, Any]] = {}

    def __init__(self, llm: GenerationService, entities: Optional[EntityStore] = None):
        self.llm = llm
        self.entities = entities

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def capabilities(self) -> List[AgentCapability]:
        pass

    @property
    def key(self) -> str:
        return normalize_agent_key(self.name)

    @abstractmethod
    async def can_handle(self, task: AgentTask) -> bool:
        pass

    @abstractmethod
    async def process(self, task: AgentTask) -> AgentResult:
        pass

    # ---- generation helpers ----

    async def generate_text(
        self,
        system: str,
        prompt: str,
        temperature: Optional[float] = None,
        purpose: str = "respond",
    ) -> str:
        start = time.time()
        text = await self.llm.generate_text(
            system, prompt, temperature=self.temperature if temperature is None else temperature
        )
        trace_llm_call(self.name, purpose, prompt, text, (time.time() - start) * 1000)
        return text.strip()

    async def generate_object(
        self,
        system: str,
        prompt: str,
        schema: Type[T],
        temperature: float = 0,
        purpose: str = "extract",
    ) -> T:
        start = time.time()
        obj = await self.llm.generate_object(system, prompt, schema, temperature=temperature)
        trace_llm_call(self.name, purpose, prompt, obj.model_dump_json(), (time.time() - start) * 1000)
        return obj

    def build_prompt(self, task: AgentTask, instructions: str = "") -> str:
        """User prompt with the conversation history and any revision feedback."""
        parts = []
        if task.message_history:
            lines = [
                f"{ROLE_LABELS.get(m.role, m.role)}: {m.text}"
                for m in task.message_history
            ]
            parts.append("История беседы:\n" + "\n".join(lines))

        metadata = task.context.metadata
        if metadata.get("previous_output"):
            parts.append(f"Предыдущий вариант ответа:\n{metadata['previous_output']}")
        if metadata.get("quality_feedback"):
            parts.append(f"Замечания к предыдущему ответу:\n{metadata['quality_feedback']}")

        if instructions:
            parts.append(instructions)
        parts.append(f"Сообщение пользователя: {task.input}")
        return "\n\n".join(parts)

    # ---- results ----

    def _success(
        self,
        data: Any = None,
        message: Optional[str] = None,
        confidence: float = 1.0,
    ) -> AgentResult:
        return AgentResult(success=True, data=data, message=message, confidence=confidence)

    def _failure(self, error: str, confidence: float = 0, data: Any = None) -> AgentResult:
        return AgentResult(success=False, error=error, confidence=confidence, data=data)

    def _require_entities(self) -> EntityStore:
        if self.entities is None:
            raise PersistenceError(f"{self.name} has no entity store configured")
        return self.entities

    # ---- capabilities ----

    def get_best_capability(self, category: str) -> Optional[AgentCapability]:
        matching = [
            cap for cap in self.capabilities
            if cap.category == category or category.lower() in cap.name.lower()
        ]
        if not matching:
            return None
        return max(matching, key=lambda cap: cap.confidence)

    # ---- cache ----

    def _get_cached(self, key: str) -> Optional[Any]:
        entry = self._cache.get(f"{self.key}:{key}")
        if entry is None:
            return None
        stored_at, value = entry
        if time.time() - stored_at >= self.cache_ttl_seconds:
            del self._cache[f"{self.key}:{key}"]
            return None
        return value

    def _set_cached(self, key: str, value: Any) -> None:
        self._cache[f"{self.key}:{key}"] = (time.time(), value)

    @classmethod
    def clear_cache(cls) -> None:
        BaseAgent._cache.clear()


class AgentRegistry:
    """Ordered set of agents plus a designated fallback.

    Routing is first match in registration order; when nothing matches the
    fallback agent takes the task.
    """

    def __init__(self):
        self._agents: Dict[str, Agent] = {}
        self._fallback_key: Optional[str] = None

    def register(self, agent: Agent) -> None:
        key = normalize_agent_key(agent.name)
        if not key:
            raise ValueError(f"Agent name {agent.name!r} does not produce a usable key")
        if key in self._agents:
            logger.warning(f"[AgentRegistry] Replacing agent '{key}'")
        self._agents[key] = agent

    def set_fallback(self, agent: Agent) -> None:
        """Designate the agent that receives unmatched tasks, registering it if needed."""
        key = normalize_agent_key(agent.name)
        if key not in self._agents:
            self.register(agent)
        self._fallback_key = key

    def get(self, key: str) -> Optional[Agent]:
        return self._agents.get(key)

    def has(self, key: str) -> bool:
        return key in self._agents

    def unregister(self, key: str) -> bool:
        if key not in self._agents:
            return False
        del self._agents[key]
        if self._fallback_key == key:
            self._fallback_key = None
        return True

    def list_agents(self) -> List[str]:
        return list(self._agents.keys())

    @property
    def fallback(self) -> Optional[Agent]:
        return self._agents.get(self._fallback_key) if self._fallback_key else None

    async def route(self, task: AgentTask) -> Agent:
        """Pick exactly one agent for `task`."""
        for key, agent in self._agents.items():
            if key == self._fallback_key:
                continue
            try:
                matched = await agent.can_handle(task)
            except Exception as e:
                logger.warning(f"[AgentRegistry] can_handle failed for '{key}': {e}")
                continue
            if matched:
                logger.info(f"[AgentRegistry] Task {task.id} ({task.type}) -> {key}")
                return agent

        fallback = self.fallback
        if fallback is None:
            raise RoutingExhausted(f"No agent can handle task {task.id} and no fallback is set")
        logger.info(f"[AgentRegistry] Task {task.id} ({task.type}) -> fallback {self._fallback_key}")
        return fallback

    def describe(self) -> List[AgentInfo]:
        infos = []
        for key, agent in self._agents.items():
            infos.append(AgentInfo(
                key=key,
                name=agent.name,
                description=agent.description,
                capabilities=list(agent.capabilities),
                supports_revision=agent.supports_revision,
            ))
        return infos

    def get_stats(self) -> AgentRegistryStats:
        return AgentRegistryStats(
            total_agents=len(self._agents),
            agent_list=self.list_agents(),
            fallback_agent=self._fallback_key,
        )
