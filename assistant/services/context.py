"""Conversation context: loading recent history and trimming it to a token budget."""

import logging
import math
import re
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..config import MESSAGE_PROCESSING_CONFIG
from ..exceptions import PersistenceError
from ..schemas.agents.context import (
    ContextMessage,
    ContextOptions,
    ConversationContext,
    MessageRole,
)
from ..utils import utcnow

logger = logging.getLogger(__name__)

# Synthetic characters charged per message for role and metadata
MESSAGE_OVERHEAD_CHARS = 50
CHARS_PER_TOKEN = 4
ALWAYS_KEEP_LAST = 2
IMPORTANT_LENGTH = 100

IMPORTANT_KEYWORDS = re.compile(
    r"\b(как|что|где|когда|почему|зачем|помоги|покажи|объясни"
    r"|how|what|where|when|why|help|show|explain)\b",
    re.IGNORECASE,
)


# ============================================
# Token budget
# ============================================

def message_token_cost(message: ContextMessage) -> int:
    return math.ceil((len(message.text) + MESSAGE_OVERHEAD_CHARS) / CHARS_PER_TOKEN)


def estimate_token_count(messages: List[ContextMessage]) -> int:
    """Rough token estimate: 4 characters per token plus a fixed per-message overhead."""
    total_chars = sum(len(m.text) for m in messages)
    overhead = len(messages) * MESSAGE_OVERHEAD_CHARS
    return math.ceil((total_chars + overhead) / CHARS_PER_TOKEN)


def is_important_message(message: ContextMessage) -> bool:
    text = message.text
    return "?" in text or len(text) > IMPORTANT_LENGTH or bool(IMPORTANT_KEYWORDS.search(text))


def trim_context_by_tokens(messages: List[ContextMessage], max_tokens: int) -> List[ContextMessage]:
    """Cut `messages` down to roughly `max_tokens`.

    Retention order: the last two messages always, then important messages
    (questions, long or request-like text) newest first, skipping any that
    do not fit, then ordinary messages newest first until one overflows.
    The result is in chronological order.
    """
    if estimate_token_count(messages) <= max_tokens:
        return messages

    position = {id(m): i for i, m in enumerate(messages)}
    selected: List[ContextMessage] = list(messages[-ALWAYS_KEEP_LAST:])
    current_tokens = sum(message_token_cost(m) for m in selected)

    if current_tokens < max_tokens:
        older = messages[:-ALWAYS_KEEP_LAST]
        selected_ids = {m.id for m in selected}

        for msg in reversed([m for m in older if is_important_message(m)]):
            cost = message_token_cost(msg)
            if current_tokens + cost <= max_tokens:
                selected.append(msg)
                selected_ids.add(msg.id)
                current_tokens += cost

        for msg in reversed(older):
            if msg.id in selected_ids:
                continue
            cost = message_token_cost(msg)
            if current_tokens + cost > max_tokens:
                break
            selected.append(msg)
            selected_ids.add(msg.id)
            current_tokens += cost

    return sorted(selected, key=lambda m: (m.created_at, position[id(m)]))


def determine_max_tokens(text: str) -> int:
    """Questions and short chat turns get more history than long event statements."""
    tokens = MESSAGE_PROCESSING_CONFIG["TOKENS"]
    if "?" in text or len(text) < tokens["SHORT_MESSAGE_THRESHOLD"]:
        return tokens["QUESTION_OR_CHAT"]
    return tokens["EVENT"]


# ============================================
# Storage
# ============================================

class ContextStore(Protocol):
    """Durable conversation and message storage consumed by the assembler."""

    async def find_or_create_conversation(
        self, user_id: Optional[str], channel: str, chat_id: Optional[str] = None
    ) -> str:
        ...

    async def list_recent_messages(
        self, conversation_id: str, limit: int, since: Optional[datetime] = None
    ) -> List[ContextMessage]:
        """Newest message first."""
        ...

    async def append_message(
        self, conversation_id: str, role: str, text: str, model: Optional[str] = None
    ) -> str:
        ...

    async def touch_conversation(self, conversation_id: str) -> None:
        ...


def _message_text(content) -> str:
    if isinstance(content, dict) and "text" in content:
        return str(content["text"])
    return "" if content is None else str(content)


class SqlContextStore:
    """ContextStore on top of the conversations/messages tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_or_create_conversation(
        self, user_id: Optional[str], channel: str, chat_id: Optional[str] = None
    ) -> str:
        Conversation = models.Conversation
        conversation = None

        if user_id:
            conditions = [Conversation.owner_user_id == user_id, Conversation.channel == channel]
            if chat_id:
                conditions.append(Conversation.title == chat_id)
            result = await self.db.execute(select(Conversation).where(and_(*conditions)))
            conversation = result.scalars().first()
        elif channel == "telegram" and chat_id:
            result = await self.db.execute(
                select(Conversation).where(
                    Conversation.telegram_chat_id == chat_id,
                    Conversation.channel == "telegram",
                )
            )
            conversation = result.scalars().first()

        if conversation:
            return conversation.id

        conversation = Conversation(
            channel=channel,
            title=chat_id or f"{channel}_conversation",
            status="active",
            last_message_at=utcnow(),
        )
        if user_id:
            conversation.owner_user_id = user_id
        elif channel == "telegram" and chat_id:
            conversation.telegram_chat_id = chat_id

        try:
            self.db.add(conversation)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Could not create conversation: {e}") from e

        logger.info(f"[Context] Created conversation {conversation.id} ({channel})")
        return conversation.id

    async def list_recent_messages(
        self, conversation_id: str, limit: int, since: Optional[datetime] = None
    ) -> List[ContextMessage]:
        Message = models.Message
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if since is not None:
            stmt = stmt.where(Message.created_at >= since)
        stmt = stmt.order_by(Message.created_at.desc()).limit(limit)

        result = await self.db.execute(stmt)
        return [
            ContextMessage(
                id=row.id,
                role=row.role,
                text=_message_text(row.content),
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]

    async def append_message(
        self, conversation_id: str, role: str, text: str, model: Optional[str] = None
    ) -> str:
        message = models.Message(
            conversation_id=conversation_id,
            role=role,
            content={"text": text},
            model=model,
            status="completed",
        )
        try:
            self.db.add(message)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Could not save {role} message: {e}") from e
        return message.id

    async def touch_conversation(self, conversation_id: str) -> None:
        now = utcnow()
        try:
            await self.db.execute(
                update(models.Conversation)
                .where(models.Conversation.id == conversation_id)
                .values(last_message_at=now, updated_at=now)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Could not update conversation {conversation_id}: {e}") from e


# ============================================
# Assembler
# ============================================

class ContextAssembler:
    """Builds the conversation context handed to classification and agents."""

    def __init__(self, store: ContextStore, clock=utcnow):
        self.store = store
        self._clock = clock

    async def get_context(
        self,
        user_id: Optional[str],
        channel: str,
        chat_id: Optional[str] = None,
        options: Optional[ContextOptions] = None,
    ) -> ConversationContext:
        """Load the most recent messages of the caller's conversation.

        Fetches one row more than `max_messages` to learn whether older
        messages exist. The conversation is created on first contact.
        """
        options = options or ContextOptions()
        conversation_id = await self.store.find_or_create_conversation(user_id, channel, chat_id)

        since = self._clock() - timedelta(hours=options.max_age_hours)
        rows = await self.store.list_recent_messages(
            conversation_id, options.max_messages + 1, since=since
        )

        if not options.include_system_messages:
            rows = [m for m in rows if m.role != MessageRole.SYSTEM.value]

        has_more = len(rows) > options.max_messages
        messages = list(reversed(rows[: options.max_messages]))

        logger.debug(
            f"[Context] Conversation {conversation_id}: {len(messages)} messages"
            f"{' (truncated)' if has_more else ''}"
        )
        return ConversationContext(
            conversation_id=conversation_id,
            messages=messages,
            total_messages=len(rows),
            has_more_messages=has_more,
        )

    async def save_message(
        self,
        conversation_id: str,
        role: str,
        text: str,
        model: Optional[str] = None,
    ) -> str:
        """Append a message and bump the conversation's activity time. Errors propagate."""
        message_id = await self.store.append_message(conversation_id, role, text, model)
        await self.store.touch_conversation(conversation_id)
        return message_id

    def get_message_history(
        self, context: ConversationContext, max_tokens: int
    ) -> List[ContextMessage]:
        messages = [m for m in context.messages if m.role != MessageRole.SYSTEM.value]
        trimmed = trim_context_by_tokens(messages, max_tokens)
        if len(trimmed) < len(messages):
            logger.debug(f"[Context] Trimmed history {len(messages)} -> {len(trimmed)} messages")
        return trimmed
