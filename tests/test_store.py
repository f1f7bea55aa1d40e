from __future__ import annotations

from pathlib import Path

import pytest

from streamchat.errors import PersistenceFailure
from streamchat.store import DiskTranscriptStore


def test_messages_roundtrip_in_creation_order(tmp_path: Path):
    store = DiskTranscriptStore(str(tmp_path))
    cid = store.create_conversation("alice", "New conversation")

    store.insert_message(cid, "user", "second", created_at=20.0)
    store.insert_message(cid, "model", "first", created_at=10.0)
    store.insert_message(cid, "user", "third", created_at=20.0)

    msgs = store.list_messages(cid)
    assert [m.content for m in msgs] == ["first", "second", "third"]
    assert all(m.conversation_id == cid for m in msgs)


def test_list_conversations_filters_owner_and_orders_by_update(tmp_path: Path, monkeypatch):
    import streamchat.store as store_mod

    ticks = iter(range(100, 200))
    monkeypatch.setattr(store_mod.time, "time", lambda: float(next(ticks)))

    store = DiskTranscriptStore(str(tmp_path))
    older = store.create_conversation("alice", "older")
    newer = store.create_conversation("alice", "newer")
    store.create_conversation("bob", "not mine")

    assert [c.id for c in store.list_conversations("alice")] == [newer, older]

    store.update_conversation_title(older, "Voyage à Paris")
    convs = store.list_conversations("alice")
    assert [c.id for c in convs] == [older, newer]
    assert convs[0].title == "Voyage à Paris"


def test_insert_into_unknown_conversation_fails(tmp_path: Path):
    store = DiskTranscriptStore(str(tmp_path))
    with pytest.raises(PersistenceFailure):
        store.insert_message("missing", "user", "hello")


def test_insert_rejects_unknown_role(tmp_path: Path):
    store = DiskTranscriptStore(str(tmp_path))
    cid = store.create_conversation("alice", "t")
    with pytest.raises(ValueError):
        store.insert_message(cid, "system", "nope")


def test_corrupt_file_is_moved_aside(tmp_path: Path):
    store = DiskTranscriptStore(str(tmp_path))
    cid = store.create_conversation("alice", "t")
    path = store.conversations_dir / f"{cid}.json"
    path.write_text("{not json", encoding="utf-8")

    assert store.list_messages(cid) == []
    assert not path.exists()
    assert path.with_suffix(".corrupt.json").exists()
    assert store.list_conversations("alice") == []


def test_missing_conversation_reads_empty(tmp_path: Path):
    store = DiskTranscriptStore(str(tmp_path))
    assert store.list_messages("nope") == []
    assert store.get_conversation("nope") is None
