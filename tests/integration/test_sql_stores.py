from datetime import timedelta

import pytest

from assistant.database import build_engine, build_session_factory, init_db
from assistant.services.context import ContextAssembler, SqlContextStore
from assistant.services.events import SqlEntityStore
from assistant.utils import utcnow


@pytest.fixture
async def session(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'assistant.db'}")
    await init_db(bind=engine)
    async with build_session_factory(engine)() as db:
        yield db
    await engine.dispose()


async def test_conversation_is_reused_per_user_and_channel(session):
    store = SqlContextStore(session)

    first = await store.find_or_create_conversation("u1", "web")
    again = await store.find_or_create_conversation("u1", "web")
    mobile = await store.find_or_create_conversation("u1", "mobile")

    assert first == again
    assert mobile != first


async def test_anonymous_telegram_chat_gets_its_own_conversation(session):
    store = SqlContextStore(session)

    chat = await store.find_or_create_conversation(None, "telegram", "555")
    same_chat = await store.find_or_create_conversation(None, "telegram", "555")
    other_chat = await store.find_or_create_conversation(None, "telegram", "556")

    assert chat == same_chat
    assert other_chat != chat


async def test_messages_round_trip_through_assembler(session):
    store = SqlContextStore(session)
    assembler = ContextAssembler(store)
    context = await assembler.get_context("u1", "web")

    await assembler.save_message(context.conversation_id, "user", "Купил хлеб")
    await assembler.save_message(context.conversation_id, "assistant", "Записал", model="fake-model")

    reloaded = await assembler.get_context("u1", "web")
    assert reloaded.conversation_id == context.conversation_id
    assert sorted(m.text for m in reloaded.messages) == ["Записал", "Купил хлеб"]
    assert reloaded.has_more_messages is False


async def test_list_recent_messages_respects_limit_and_age(session):
    store = SqlContextStore(session)
    conversation_id = await store.find_or_create_conversation("u1", "web")
    for text in ("one", "two", "three"):
        await store.append_message(conversation_id, "user", text)

    newest = await store.list_recent_messages(conversation_id, 2)
    assert len(newest) == 2

    future = await store.list_recent_messages(conversation_id, 10, since=utcnow() + timedelta(hours=1))
    assert future == []


async def test_entity_store_creates_and_queries_events(session):
    store = SqlEntityStore(session)
    now = utcnow()

    bread = await store.create_event(
        household_id="h1", user_id="u1", type="purchase", title="Bread",
        amount=45, currency="RUB", occurred_at=now - timedelta(days=1), tags=["food"],
    )
    await store.create_event(
        household_id="h1", user_id="u1", type="expense", title="Taxi",
        amount=300, currency="RUB", occurred_at=now - timedelta(days=40),
    )
    await store.create_event(
        household_id="h1", user_id="u1", type="task", title="Fix tap",
        occurred_at=now + timedelta(days=2),
    )
    await store.create_event(household_id="h2", type="expense", title="Other household", amount=1, occurred_at=now)

    assert bread["id"]
    assert bread["tags"] == ["food"]
    assert bread["status"] == "active"

    listed = await store.list_events(household_id="h1")
    assert [e["title"] for e in listed] == ["Fix tap", "Bread", "Taxi"]

    recent = await store.recent_events(household_id="h1", days=7)
    assert {e["title"] for e in recent} == {"Bread", "Fix tap"}

    upcoming = await store.upcoming_tasks(household_id="h1", days=7)
    assert [e["title"] for e in upcoming] == ["Fix tap"]

    found = await store.search_events("bread", household_id="h1")
    assert found["total"] == 1
    assert found["events"][0]["id"] == bread["id"]

    summary = await store.expense_summary(household_id="h1", days=30)
    assert summary["count"] == 1
    assert summary["by_currency"]["RUB"]["total_amount"] == 45
    assert summary["top_categories"][0]["category"] == "purchase"

    stats = await store.event_stats(household_id="h1")
    assert stats["total"] == 3
    assert stats["by_type"] == {"purchase": 1, "expense": 1, "task": 1}


async def test_entity_store_creates_reminders_and_logs(session):
    store = SqlEntityStore(session)
    when = utcnow() + timedelta(days=1)

    reminder = await store.create_reminder(
        user_id="u1", title="Call mom", type="call", priority="high",
        reminder_time=when, recurrence="none", ai_context={"source": "test"},
    )
    log_id = await store.create_event_log("event-creation-agent", "42", "created", meta={"event_id": "e1"})

    assert reminder["status"] == "pending"
    assert reminder["reminder_time"] == when
    assert reminder["ai_context"] == {"source": "test"}
    assert isinstance(log_id, int)
