from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

from .agents.classification import MessageType, Relevance
from .agents.task import AgentCapability


class AgentOptions(BaseModel):
    """Per-request overrides for the agent pipeline."""
    use_fast_path: Optional[bool] = None
    use_quality_control: Optional[bool] = None
    max_quality_iterations: Optional[int] = Field(default=None, ge=1, le=5)
    target_quality: Optional[float] = Field(default=None, ge=0, le=1)


class ProcessMessageRequest(BaseModel):
    """Inbound message from a channel adapter or client.

    Emptiness of `text` is checked by the orchestrator, not here, so that
    it surfaces as a validation error of the pipeline itself.
    """
    text: str
    channel: Literal["telegram", "web", "mobile"] = "web"
    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    household_id: Optional[str] = None
    timezone: Optional[str] = None
    metadata: Dict[str, Any] = {}
    agent_options: Optional[AgentOptions] = None


class AgentMetadata(BaseModel):
    agents_used: List[str] = []
    total_steps: int = 0
    quality_score: float = 0
    processing_time_ms: float = 0
    processing_mode: Literal["agents", "fast", "error"] = "agents"
    should_log_event: bool = False
    task_id: Optional[str] = None
    trace_id: Optional[str] = None
    conversation_id: Optional[str] = None


class ProcessMessageResponse(BaseModel):
    success: bool
    response: str
    message_type: Optional[MessageType] = None
    relevance: Optional[Relevance] = None
    parsed: Optional[Any] = None  # entity or data produced by the agent
    agent_metadata: Optional[AgentMetadata] = None


class AgentInfo(BaseModel):
    key: str
    name: str
    description: str
    capabilities: List[AgentCapability] = []
    supports_revision: bool = False


class AgentRegistryStats(BaseModel):
    total_agents: int
    agent_list: List[str]
    fallback_agent: Optional[str] = None


class AgentSystemStats(BaseModel):
    agents: AgentRegistryStats
    available_agents: List[AgentInfo]
    fast_path: Dict[str, Any] = {}
