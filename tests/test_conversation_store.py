import asyncio
import sqlite3

import pytest

from taskpilot.domain.context.memory.conversation_store import (
    InMemoryConversationStore, SQLiteConversationStore,
)
from taskpilot.domain.models.agent_state import Role
from taskpilot.domain.models.errors import MemoryUnavailable


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryConversationStore()
    else:
        backend = SQLiteConversationStore(tmp_path / "memory" / "turns.db")
    yield backend
    await backend.close()


async def test_append_assigns_increasing_sequence(store):
    first = await store.append("alice", "s1", Role.USER, "hello")
    second = await store.append("alice", "s1", Role.ASSISTANT, "hi there")

    assert (first.sequence, second.sequence) == (1, 2)
    assert second.role == Role.ASSISTANT


async def test_recent_turns_are_oldest_first_and_limited(store):
    for i in range(5):
        await store.append("alice", "s1", Role.USER, f"message {i}")

    turns = await store.recent_turns("alice", "s1", limit=3)

    assert [t.content for t in turns] == ["message 2", "message 3", "message 4"]
    assert [t.sequence for t in turns] == [3, 4, 5]


async def test_sessions_and_users_are_isolated(store):
    await store.append("alice", "s1", Role.USER, "alice s1")
    await store.append("alice", "s2", Role.USER, "alice s2")
    await store.append("bob", "s1", Role.USER, "bob s1")

    assert [t.content for t in await store.recent_turns("alice", "s1")] == ["alice s1"]
    assert [t.content for t in await store.recent_turns("bob", "s1")] == ["bob s1"]
    assert (await store.recent_turns("alice", "s2"))[0].sequence == 1


async def test_concurrent_appends_get_contiguous_sequences(store):
    turns = await asyncio.gather(
        *(store.append("alice", "s1", Role.USER, f"m{i}") for i in range(25))
    )

    sequences = sorted(t.sequence for t in turns)
    assert sequences == list(range(1, 26))
    stored = await store.recent_turns("alice", "s1", limit=100)
    assert [t.sequence for t in stored] == list(range(1, 26))


async def test_non_positive_limit_returns_nothing(store):
    await store.append("alice", "s1", Role.USER, "hello")

    assert await store.recent_turns("alice", "s1", limit=0) == []


async def test_turns_are_immutable(store):
    turn = await store.append("alice", "s1", Role.USER, "hello")

    with pytest.raises(Exception):
        turn.content = "changed"


async def test_sqlite_turns_survive_reopen(tmp_path):
    path = tmp_path / "turns.db"
    store = SQLiteConversationStore(path)
    await store.append("alice", "s1", Role.USER, "persisted")
    await store.close()

    reopened = SQLiteConversationStore(path)
    try:
        turns = await reopened.recent_turns("alice", "s1")
        appended = await reopened.append("alice", "s1", Role.ASSISTANT, "next")
    finally:
        await reopened.close()

    assert [t.content for t in turns] == ["persisted"]
    assert appended.sequence == 2


async def test_storage_errors_surface_as_memory_unavailable(tmp_path):
    store = SQLiteConversationStore(tmp_path / "turns.db")
    await store.close()

    with pytest.raises(MemoryUnavailable):
        await store.append("alice", "s1", Role.USER, "hello")
    with pytest.raises(MemoryUnavailable):
        await store.recent_turns("alice", "s1")


def test_sqlite_layout_is_keyed_by_user_session_sequence(tmp_path):
    path = tmp_path / "turns.db"
    SQLiteConversationStore(path).connection.close()

    connection = sqlite3.connect(path)
    try:
        columns = {row[1]: row[5] for row in connection.execute("PRAGMA table_info(conversation_turns)")}
    finally:
        connection.close()

    assert {"user_id", "session_id", "sequence", "role", "content", "timestamp"} <= set(columns)
    assert columns["user_id"] == 1 and columns["session_id"] == 2 and columns["sequence"] == 3


async def test_session_locks_are_released_when_idle(store):
    await asyncio.gather(*(store.append("alice", f"s{i}", Role.USER, "hi") for i in range(20)))

    assert len(store._session_locks) == 0
