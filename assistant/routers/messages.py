from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..exceptions import MessageValidationError, RateLimitExceeded
from ..schemas.messages import AgentSystemStats, ProcessMessageRequest, ProcessMessageResponse
from ..services.agents import get_agent_system_stats, get_rate_limit_status, process_message

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.post("/process", response_model=ProcessMessageResponse)
async def process_incoming_message(
    request: ProcessMessageRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Process one inbound message from a channel (telegram, web, mobile).

    The message is classified, routed to a single agent and both sides of the
    exchange are stored in the caller's conversation.

    **Identity:**
    - `web` and `mobile` require `user_id`
    - `telegram` requires `chat_id`

    **Errors:**
    - 400 when the text is empty or the identity is missing
    - 429 when the identity sent too many messages; `Retry-After` holds the delay

    Failures inside the pipeline are not HTTP errors: the reply is a generic
    apology with `success: false`.
    """
    try:
        return await process_message(db, request)
    except MessageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RateLimitExceeded as e:
        raise HTTPException(
            status_code=429,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after_seconds)},
        )


@router.get("/agents", response_model=AgentSystemStats)
async def list_agents():
    """Registered agents in routing order, the fallback agent and fast-path statistics."""
    return get_agent_system_stats()


@router.get("/rate-limit")
async def get_rate_limit():
    """
    Get current upstream quota for generation calls.

    Returns daily and per-minute remaining requests.
    """
    return get_rate_limit_status()
