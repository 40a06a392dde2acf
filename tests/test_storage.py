"""
Tests for SQLite session storage.
Uses a temp database for each test.
"""

import pytest

from stepsync.memory import ConversationMemory
from stepsync.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


def _record(session_id="s1", last="2026-03-01T12:00:00+00:00", messages=None):
    return {
        "id": session_id,
        "startTime": "2026-03-01T11:00:00+00:00",
        "lastActivityTime": last,
        "messages": messages if messages is not None else [
            {"content": "steps missing", "role": "user",
             "timestamp": "2026-03-01T11:00:00+00:00", "metadata": {"intent": "data_missing"}},
            {"content": "Which days?", "role": "assistant",
             "timestamp": "2026-03-01T11:00:01+00:00"},
        ],
        "metadata": {"platform": "android"},
    }


def test_save_and_load(store):
    """A saved record comes back unchanged."""
    record = _record()
    store.save_session(record)
    assert store.load_session("s1") == record


def test_load_missing(store):
    assert store.load_session("nope") is None


def test_save_replaces(store):
    store.save_session(_record())
    store.save_session(_record(messages=[]))
    assert store.load_session("s1")["messages"] == []
    assert store.get_stats() == {"sessions": 1, "messages": 0}


def test_list_sessions_most_recent_first(store):
    store.save_session(_record("old", last="2026-03-01T10:00:00+00:00"))
    store.save_session(_record("new", last="2026-03-02T10:00:00+00:00"))
    sessions = store.list_sessions()
    assert [s["id"] for s in sessions] == ["new", "old"]
    assert sessions[0]["message_count"] == 2
    assert "messages" not in sessions[0]
    assert len(store.list_sessions(limit=1)) == 1


def test_delete(store):
    store.save_session(_record())
    assert store.delete_session("s1") is True
    assert store.delete_session("s1") is False
    assert store.load_session("s1") is None


def test_stats(store):
    store.save_session(_record("a"))
    store.save_session(_record("b"))
    assert store.get_stats() == {"sessions": 2, "messages": 4}


def test_round_trip_through_memory(store):
    """Memory export → store → memory import preserves the session."""
    source = ConversationMemory()
    source.add_user_message("s1", "my FITNESS_APP is off", metadata={"intent": "steps_not_syncing"})
    source.add_assistant_message("s1", "Let's look.")
    store.save_session(source.export_session("s1"))

    target = ConversationMemory()
    target.import_session(store.load_session("s1"))
    assert [m.content for m in target.get_history("s1")] == ["my FITNESS_APP is off", "Let's look."]
    assert target.get_history("s1")[0].metadata["intent"] == "steps_not_syncing"


def test_creates_parent_dirs(tmp_path):
    SQLiteStore(str(tmp_path / "nested" / "dir" / "s.db"))
    assert (tmp_path / "nested" / "dir" / "s.db").exists()


def test_from_config(monkeypatch, tmp_path):
    from stepsync import config as cfg_mod
    monkeypatch.setattr(cfg_mod, "_config", {"storage": {"enabled": False}})
    assert SQLiteStore.from_config() is None

    db = tmp_path / "cfg.db"
    monkeypatch.setattr(cfg_mod, "_config", {"storage": {"enabled": True, "sqlite_path": str(db)}})
    store = SQLiteStore.from_config()
    assert store is not None
    assert store.db_path == db
