import json
import tempfile
from pathlib import Path

import pytest

from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import NotFoundError, StorageError, ValidationError
from chat_core.infrastructure.storage import json_store as json_store_module
from chat_core.infrastructure.storage.json_store import JsonConversationStore


def test_json_store_create_and_append_turn():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create()
        assert conv.id.startswith("c-")
        assert store.get(conv.id).messages == []

        store.append_turn(conv.id, Message(role="user", content="Hello"), Message(role="model", content="Hi there"))
        store.append_turn(conv.id, Message(role="user", content="How are you?"), Message(role="model", content="Fine"))

        msgs = store.get(conv.id).messages
        assert [(m.role, m.content) for m in msgs] == [
            ("user", "Hello"),
            ("model", "Hi there"),
            ("user", "How are you?"),
            ("model", "Fine"),
        ]


def test_json_store_survives_reopen():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        conv = JsonConversationStore(root=root).create()
        JsonConversationStore(root=root).append_turn(
            conv.id, Message(role="user", content="a"), Message(role="model", content="b")
        )
        reopened = JsonConversationStore(root=root).get(conv.id)
        assert reopened.id == conv.id
        assert [m.content for m in reopened.messages] == ["a", "b"]


def test_json_store_unknown_id():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        with pytest.raises(NotFoundError):
            store.get("nonexistent")
        with pytest.raises(NotFoundError):
            store.get("c-" + "0" * 32)
        with pytest.raises(NotFoundError):
            store.get("../../etc/passwd")
        with pytest.raises(NotFoundError):
            store.append_turn("nonexistent", Message(role="user", content="a"), Message(role="model", content="b"))
        assert store.list() == []


def test_json_store_rejects_wrong_turn_roles():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create()
        with pytest.raises(ValidationError):
            store.append_turn(conv.id, Message(role="model", content="a"), Message(role="user", content="b"))
        assert store.get(conv.id).messages == []


def test_json_store_failed_write_keeps_previous_state(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create()
        store.append_turn(conv.id, Message(role="user", content="u0"), Message(role="model", content="m0"))

        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(json_store_module.os, "replace", failing_replace)
        with pytest.raises(StorageError) as exc:
            store.append_turn(conv.id, Message(role="user", content="u1"), Message(role="model", content="m1"))
        assert exc.value.code == "STORE_WRITE_ERROR"
        monkeypatch.undo()

        assert [m.content for m in store.get(conv.id).messages] == ["u0", "m0"]
        assert list((root / "conversations").glob("*.tmp")) == []


def test_json_store_list_returns_all():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        ids = [store.create().id for _ in range(3)]
        listed = store.list()
        assert sorted(c.id for c in listed) == sorted(ids)


def test_json_store_corrupt_record_raises():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create()
        path = root / "conversations" / f"{conv.id}.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError) as exc:
            store.get(conv.id)
        assert exc.value.code == "STORE_READ_ERROR"
        with pytest.raises(StorageError):
            store.list()


def test_json_store_record_layout():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create()
        store.append_turn(conv.id, Message(role="user", content="q"), Message(role="model", content="a"))
        data = json.loads((root / "conversations" / f"{conv.id}.json").read_text(encoding="utf-8"))
        assert data["id"] == conv.id
        assert [m["role"] for m in data["messages"]] == ["user", "model"]
        assert data["messages"][0]["created_at"].endswith("Z")


def test_json_store_list_skips_vanished_record(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        kept = store.create()
        gone = store.create()
        original_read = store._read

        def read_after_delete(path, conversation_id):
            if conversation_id == gone.id:
                path.unlink()
            return original_read(path, conversation_id)

        monkeypatch.setattr(store, "_read", read_after_delete)
        assert [c.id for c in store.list()] == [kept.id]
