from datetime import timedelta

import pytest
from pydantic import ValidationError

from assistant.schemas.agents.context import ContextMessage, ContextOptions, ConversationContext, MessageRole
from assistant.services.context import (
    ContextAssembler,
    determine_max_tokens,
    estimate_token_count,
    is_important_message,
    message_token_cost,
    trim_context_by_tokens,
)
from assistant.utils import utcnow

from conftest import at


def msg(id, text, minute, role="user"):
    return ContextMessage(id=id, role=role, text=text, created_at=at(minute))


def test_context_message_stores_role_value():
    message = ContextMessage(id="1", role=MessageRole.ASSISTANT, text="ok")

    assert message.role == "assistant"
    assert type(message.role) is str
    assert message.model_dump()["role"] == "assistant"
    with pytest.raises(ValidationError):
        ContextMessage(id="2", role="moderator")


def test_estimate_token_count():
    messages = [msg("1", "a" * 10, 0), msg("2", "b" * 30, 1)]
    # (40 chars + 2 * 50 overhead) / 4
    assert estimate_token_count(messages) == 35
    assert estimate_token_count([]) == 0
    assert message_token_cost(msg("3", "x" * 3, 0)) == 14


def test_is_important_message():
    assert is_important_message(msg("1", "сколько стоит", 0)) is False
    assert is_important_message(msg("2", "сколько стоит?", 0)) is True
    assert is_important_message(msg("3", "x" * 101, 0)) is True
    assert is_important_message(msg("4", "покажи расходы", 0)) is True
    assert is_important_message(msg("5", "please help me", 0)) is True
    assert is_important_message(msg("6", "ok", 0)) is False


def test_trim_returns_input_when_under_budget():
    messages = [msg("1", "hi", 0), msg("2", "hello", 1)]
    assert trim_context_by_tokens(messages, 1000) == messages


def test_trim_always_keeps_last_two_even_over_budget():
    messages = [msg("1", "ok", 0), msg("2", "x" * 400, 1), msg("3", "y" * 400, 2)]
    trimmed = trim_context_by_tokens(messages, 10)
    assert [m.id for m in trimmed] == ["2", "3"]


def test_trim_prefers_important_messages_over_newer_ordinary_ones():
    messages = [
        msg("q", "где чек?", 0),           # important, cost 15
        msg("o1", "ладно", 1),             # ordinary, cost 14
        msg("o2", "понятно", 2),           # ordinary, cost 15
        msg("l1", "да", 3),                # last two, cost 13 each
        msg("l2", "ок", 4),
    ]
    # 26 for the last two + 15 for the question leaves no room for ordinary messages
    trimmed = trim_context_by_tokens(messages, 41)
    assert [m.id for m in trimmed] == ["q", "l1", "l2"]


def test_trim_skips_oversized_important_but_keeps_smaller_one():
    messages = [
        msg("small", "что?", 0),                 # important, cost 14
        msg("big", "почему " + "z" * 300, 1),    # important, too big
        msg("l1", "да", 2),
        msg("l2", "ок", 3),
    ]
    trimmed = trim_context_by_tokens(messages, 40)
    assert [m.id for m in trimmed] == ["small", "l1", "l2"]


def test_trim_stops_ordinary_messages_at_first_overflow():
    messages = [
        msg("o1", "a", 0),            # cost 13, would fit
        msg("o2", "b" * 90, 1),       # cost 35, overflows
        msg("o3", "c", 2),            # cost 13
        msg("l1", "d", 3),
        msg("l2", "e", 4),
    ]
    trimmed = trim_context_by_tokens(messages, 60)
    # o3 fits; o2 overflows and stops the scan so o1 is never considered
    assert [m.id for m in trimmed] == ["o3", "l1", "l2"]


def test_trim_result_is_chronological_with_stable_ties():
    messages = [msg("a", "x" * 300, 0), msg("b", "?", 5), msg("c", "one", 5), msg("d", "two", 6)]
    trimmed = trim_context_by_tokens(messages, 60)
    assert [m.id for m in trimmed] == ["b", "c", "d"]


def test_determine_max_tokens():
    assert determine_max_tokens("Сколько я потратил за неделю на продукты и бытовую химию?") == 2000
    assert determine_max_tokens("Привет") == 2000
    assert determine_max_tokens("Купил сегодня новый чайник и две кружки в магазине у дома") == 1000


async def test_get_context_is_chronological_and_flags_more(context_store):
    conversation_id = await context_store.find_or_create_conversation("u1", "web")
    for i in range(5):
        context_store.add_history(conversation_id, "user", f"m{i}", minutes_ago=50 - i)

    assembler = ContextAssembler(context_store)
    context = await assembler.get_context("u1", "web", options=ContextOptions(max_messages=3))

    assert context.conversation_id == conversation_id
    assert [m.text for m in context.messages] == ["m2", "m3", "m4"]
    assert context.has_more_messages is True


async def test_get_context_includes_system_when_requested(context_store):
    conversation_id = await context_store.find_or_create_conversation("u1", "web")
    context_store.add_history(conversation_id, "user", "hello", minutes_ago=2)
    context_store.add_history(conversation_id, "system", "sys", minutes_ago=1)

    assembler = ContextAssembler(context_store)
    options = ContextOptions(max_messages=5, include_system_messages=True)
    context = await assembler.get_context("u1", "web", options=options)

    assert [m.text for m in context.messages] == ["hello", "sys"]
    assert context.has_more_messages is False


async def test_get_context_drops_messages_older_than_max_age(context_store):
    conversation_id = await context_store.find_or_create_conversation("u1", "web")
    context_store.add_history(conversation_id, "user", "old", minutes_ago=3 * 60)
    context_store.add_history(conversation_id, "user", "new", minutes_ago=5)

    assembler = ContextAssembler(context_store)
    context = await assembler.get_context("u1", "web", options=ContextOptions(max_age_hours=1))

    assert [m.text for m in context.messages] == ["new"]


async def test_save_message_appends_and_touches(context_store):
    assembler = ContextAssembler(context_store)
    conversation_id = await context_store.find_or_create_conversation("u1", "web")

    message_id = await assembler.save_message(conversation_id, "assistant", "hi", model="fake-model")

    assert context_store.models[message_id] == "fake-model"
    assert context_store.touched == [conversation_id]


def test_get_message_history_drops_system_and_trims(context_store):
    assembler = ContextAssembler(context_store)
    now = utcnow()
    context = ConversationContext(
        conversation_id="c",
        messages=[
            ContextMessage(id="s", role="system", text="sys", created_at=now - timedelta(minutes=3)),
            ContextMessage(id="1", role="user", text="x" * 400, created_at=now - timedelta(minutes=2)),
            ContextMessage(id="2", role="assistant", text="ok", created_at=now - timedelta(minutes=1)),
            ContextMessage(id="3", role="user", text="ну", created_at=now),
        ],
    )
    history = assembler.get_message_history(context, 30)
    assert [m.id for m in history] == ["2", "3"]
