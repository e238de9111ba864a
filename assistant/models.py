import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .database import Base
from .utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_user_id = Column(String, index=True, nullable=True)
    telegram_chat_id = Column(String, index=True, nullable=True)  # anonymous telegram chats
    channel = Column(String, index=True)  # telegram, web, mobile
    title = Column(String)
    status = Column(String, default="active")
    last_message_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    messages = relationship("Message", back_populates="conversation")


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), index=True)
    role = Column(String)  # user, assistant, system, tool
    content = Column(JSON)  # {"text": ...}
    model = Column(String, nullable=True)
    status = Column(String, default="completed")
    created_at = Column(DateTime, default=utcnow, index=True)
    conversation = relationship("Conversation", back_populates="messages")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_new_id)
    household_id = Column(String, index=True)
    user_id = Column(String, index=True, nullable=True)
    source = Column(String, default="api")
    type = Column(String, index=True)  # expense, purchase, task, maintenance, other
    title = Column(String)
    notes = Column(Text, nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    occurred_at = Column(DateTime, index=True)
    priority = Column(String, default="medium")  # low, medium, high, urgent
    status = Column(String, default="active")
    data = Column(JSON, default=dict)
    properties = Column(JSON, default=dict)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, index=True)
    title = Column(String)
    description = Column(Text, nullable=True)
    type = Column(String)  # task, event, deadline, meeting, call, follow_up, custom
    priority = Column(String, default="medium")
    reminder_time = Column(DateTime, index=True)
    recurrence = Column(String, default="none")
    status = Column(String, default="pending")
    ai_generated = Column(Boolean, default=True)
    ai_context = Column(JSON, default=dict)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)


class EventLog(Base):
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    source = Column(String)
    chat_id = Column(String, index=True)
    type = Column(String, default="text")
    text = Column(Text)
    original_text = Column(Text, nullable=True)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
