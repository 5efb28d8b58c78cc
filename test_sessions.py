"""Tests for task persistence and the global settings store."""

import json
import os

import pytest

from agent.events import EventType, ProtocolEvent, SayType
from sessions import (
    CONVERSATION_FILE,
    EVENTS_FILE,
    ConversationStore,
    GlobalStateStore,
    HistoryItem,
    TaskNotFoundError,
)


def _events():
    return [
        ProtocolEvent(ts=1, type=EventType.SAY, subtype=SayType.TASK, text="fix the bug"),
        ProtocolEvent(ts=2, type=EventType.SAY, subtype=SayType.API_REQ_FINISHED,
                      data={"tokens_in": 10, "cost": 0.5}),
    ]


def _conversation():
    return [{"role": "user", "content": [{"type": "text", "text": "<task>\nfix the bug\n</task>"}]}]


def test_save_and_load_round_trip(store):
    store.upsert_history(HistoryItem(id="t1", ts=100, task="fix the bug", tokens_in=10,
                                     excluded_files=["secrets.env"]))
    store.save("t1", _conversation(), _events())

    loaded = store.load("t1")
    assert loaded.conversation == _conversation()
    assert [e.to_dict() for e in loaded.events] == [e.to_dict() for e in _events()]
    assert loaded.history_item.excluded_files == ["secrets.env"]


def test_load_missing_conversation_purges_history_item(store):
    store.upsert_history(HistoryItem(id="ghost", ts=100, task="gone"))
    with pytest.raises(TaskNotFoundError) as exc:
        store.load("ghost")
    assert exc.value.task_id == "ghost"
    assert store.get_history_item("ghost") is None


def test_load_without_history_item_raises(store):
    store.save("orphan", _conversation(), _events())
    with pytest.raises(TaskNotFoundError):
        store.load("orphan")


def test_delete_removes_both_artifacts_and_directory(store):
    store.save("t1", _conversation(), _events())
    task_dir = os.path.join(store.tasks_dir, "t1")
    assert os.path.exists(os.path.join(task_dir, CONVERSATION_FILE))
    assert os.path.exists(os.path.join(task_dir, EVENTS_FILE))

    store.delete("t1")
    assert not os.path.exists(task_dir)


def test_delete_of_unknown_task_is_harmless(store):
    store.delete("never-existed")


def test_upsert_replaces_in_place(store):
    store.upsert_history(HistoryItem(id="a", ts=1, task="first"))
    store.upsert_history(HistoryItem(id="b", ts=2, task="second"))
    store.upsert_history(HistoryItem(id="a", ts=1, task="first", total_cost=1.5))

    ids = [h.id for h in store._read_history()]
    assert ids == ["a", "b"]
    assert store.get_history_item("a").total_cost == 1.5


def test_list_history_is_newest_first_and_skips_incomplete_items(store):
    store.upsert_history(HistoryItem(id="old", ts=1, task="old"))
    store.upsert_history(HistoryItem(id="new", ts=5, task="new"))
    store.upsert_history(HistoryItem(id="blank", ts=3, task=""))
    assert [h.id for h in store.list_history()] == ["new", "old"]


def test_history_file_uses_camel_case_keys(store):
    store.upsert_history(HistoryItem(id="a", ts=1, task="t", tokens_in=3, whitelisted_files=["x"]))
    with open(os.path.join(store.base_dir, "task_history.json")) as f:
        raw = json.load(f)
    assert raw[0]["tokensIn"] == 3
    assert raw[0]["whitelistedFiles"] == ["x"]
    assert HistoryItem.from_dict(raw[0]).whitelisted_files == ["x"]


def test_clear_history_drops_index_and_tasks(store):
    store.upsert_history(HistoryItem(id="a", ts=1, task="t"))
    store.save("a", _conversation(), _events())
    store.clear_history()
    assert store.list_history() == []
    assert os.listdir(store.tasks_dir) == []


@pytest.mark.parametrize("bad_id", ["", "..", "a/b"])
def test_invalid_task_ids_are_rejected(store, bad_id):
    with pytest.raises(ValueError):
        store.save(bad_id, [], [])


def test_corrupt_history_file_reads_as_empty(store):
    with open(os.path.join(store.base_dir, "task_history.json"), "w") as f:
        f.write("{not json")
    assert store.list_history() == []


def test_global_state_update_and_remove(state_store):
    state_store.update("maxRequestsPerTask", 20)
    state_store.update("customInstructions", "be brief")
    assert state_store.get("maxRequestsPerTask") == 20
    assert state_store.all() == {"maxRequestsPerTask": 20, "customInstructions": "be brief"}

    state_store.update("customInstructions", None)
    assert state_store.get("customInstructions") is None
    assert state_store.get("missing", "fallback") == "fallback"


def test_global_state_survives_new_instance(storage_dir):
    GlobalStateStore(storage_dir).update("excludedFiles", ["secrets.env"])
    assert GlobalStateStore(storage_dir).get("excludedFiles") == ["secrets.env"]
