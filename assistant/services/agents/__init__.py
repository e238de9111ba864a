"""Multi-agent message processing.

Main entry point:
    process_message(db, request) -> ProcessMessageResponse

Architecture:
    Orchestrator
    ├── FastResponseService (LLM) → immediate reply for trivial messages
    ├── MessageClassifier (LLM) → message type and relevance
    ├── AgentRegistry → first matching agent
    │   ├── DatabaseAgent
    │   ├── SmartReminderAgent
    │   ├── EventCreationAgent
    │   ├── DataAnalystAgent
    │   └── GeneralAssistantAgent (fallback)
    └── QualityController (LLM) → bounded revisions
"""

from .orchestrator import (
    Orchestrator,
    build_registry,
    get_agent_system_stats,
    get_orchestrator,
    process_message,
)
from .llm import get_generation_service, get_rate_limit_status
from .fast_response import get_fast_response_service

__all__ = [
    "Orchestrator",
    "build_registry",
    "get_agent_system_stats",
    "get_orchestrator",
    "process_message",
    "get_generation_service",
    "get_rate_limit_status",
    "get_fast_response_service",
]
