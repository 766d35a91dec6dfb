from __future__ import annotations

import json
from pathlib import Path

import pytest

from plug_chat.errors import StoreUnavailableError
from plug_chat.models import Role
from plug_chat.store import MessageStore, derive_title


def test_append_and_load_in_creation_order(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "user-1")
    store.append("s1", Role.USER, "hi", True)
    store.append("s1", Role.ASSISTANT, "hello")
    store.append("s2", Role.USER, "other session", True)
    store.append("s1", Role.USER, "how are you?")

    msgs = store.load_by_session("s1", limit=50)
    assert [(m.role, m.content) for m in msgs] == [
        (Role.USER, "hi"),
        (Role.ASSISTANT, "hello"),
        (Role.USER, "how are you?"),
    ]
    assert [m.created_at for m in msgs] == sorted(m.created_at for m in msgs)


def test_load_returns_most_recent_window(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    for i in range(8):
        store.append("s", Role.USER, f"m{i}", i == 0)
    assert [m.content for m in store.load_by_session("s", limit=3)] == ["m5", "m6", "m7"]
    assert store.load_by_session("s", limit=0) == []


def test_first_user_message_sets_title(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    text = "Tell me about backend roles in Tel Aviv that pay well"
    store.append("s", Role.USER, text, True)
    assert store.session_title("s") == text[:60]


def test_title_truncated_to_sixty_characters(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    long = "x" * 100
    store.append("s", Role.USER, long, True)
    title = store.session_title("s")
    assert title == "x" * 60


def test_title_only_on_first_user_message(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    store.append("s", Role.ASSISTANT, "greeting", True)
    assert store.session_title("s") is None
    store.append("s", Role.USER, "later", False)
    assert store.session_title("s") is None

    rows = [json.loads(line) for line in store.path.read_text(encoding="utf-8").splitlines()]
    assert all("session_title" not in r for r in rows)


def test_latest_session_id(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    assert store.latest_session_id() is None
    store.append("a", Role.USER, "1", True)
    store.append("b", Role.USER, "2", True)
    store.append("a", Role.ASSISTANT, "3")
    assert store.latest_session_id() == "a"


def test_identities_are_isolated(tmp_data_dir: Path):
    MessageStore(str(tmp_data_dir), "alice").append("s", Role.USER, "hi", True)
    assert MessageStore(str(tmp_data_dir), "bob").load_by_session("s", 10) == []


def test_corrupt_lines_are_skipped(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    store.append("s", Role.USER, "ok", True)
    with store.path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")
    store.append("s", Role.ASSISTANT, "still ok")
    assert [m.content for m in store.load_by_session("s", 10)] == ["ok", "still ok"]


def test_unwritable_store_raises(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")
    store = MessageStore(str(blocker / "nested"), "u")
    with pytest.raises(StoreUnavailableError):
        store.append("s", Role.USER, "hi", True)


def test_message_id_is_kept(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    msg = store.append("s", Role.ASSISTANT, "reply", message_id="draft-1")
    assert msg.id == "draft-1"
    assert store.load_by_session("s", 1)[0].id == "draft-1"


def test_derive_title_strips_whitespace():
    assert derive_title("   hello  ") == "hello"
    assert derive_title("abcdef", max_chars=3) == "abc"


def test_rows_with_unknown_sender_are_skipped(tmp_data_dir: Path):
    store = MessageStore(str(tmp_data_dir), "u")
    store.append("s", Role.USER, "hi", True)
    with store.path.open("a", encoding="utf-8") as f:
        f.write(json.dumps({"id": "x", "session_id": "s", "sender": "ai", "message": "legacy"}) + "\n")
    store.append("s", Role.ASSISTANT, "hello")
    assert [m.content for m in store.load_by_session("s", 10)] == ["hi", "hello"]
