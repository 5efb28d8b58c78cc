"""
Task persistence for Bedrock Dev.
Stores each task's model conversation and UI event log as JSON files so tasks
can be resumed, exported and deleted, plus the task history index and the
user's persisted settings.
"""

import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from agent.events import ProtocolEvent

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = os.path.join(os.path.expanduser("~"), ".bedrock-dev")

CONVERSATION_FILE = "api_conversation_history.json"
EVENTS_FILE = "ui_messages.json"
HISTORY_FILE = "task_history.json"
STATE_FILE = "state.json"


class TaskNotFoundError(Exception):
    """The task's persisted conversation is missing."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


@dataclass
class HistoryItem:
    """Persisted summary of a task, enough to list, resume and export it."""
    id: str
    ts: int
    task: str
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0
    excluded_files: List[str] = field(default_factory=list)
    whitelisted_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "task": self.task,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "cacheWrites": self.cache_writes,
            "cacheReads": self.cache_reads,
            "totalCost": self.total_cost,
            "excludedFiles": list(self.excluded_files),
            "whitelistedFiles": list(self.whitelisted_files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryItem":
        return cls(
            id=str(data.get("id", "")),
            ts=int(data.get("ts") or 0),
            task=data.get("task") or "",
            tokens_in=int(data.get("tokensIn", 0) or 0),
            tokens_out=int(data.get("tokensOut", 0) or 0),
            cache_writes=int(data.get("cacheWrites", 0) or 0),
            cache_reads=int(data.get("cacheReads", 0) or 0),
            total_cost=float(data.get("totalCost", 0.0) or 0.0),
            excluded_files=list(data.get("excludedFiles") or []),
            whitelisted_files=list(data.get("whitelistedFiles") or []),
        )


@dataclass
class LoadedTask:
    history_item: HistoryItem
    conversation: List[Dict[str, Any]]
    events: List[ProtocolEvent]


def _write_json_atomic(path: str, data: Any) -> None:
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _read_json(path: str, default: Any) -> Any:
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read {path}: {e}")
        return default


class ConversationStore:
    """
    Manages task files on disk.

    File layout:
        {base_dir}/tasks/{task_id}/api_conversation_history.json
        {base_dir}/tasks/{task_id}/ui_messages.json
        {base_dir}/task_history.json
    """

    def __init__(self, base_dir: str = DEFAULT_BASE_DIR):
        self.base_dir = base_dir
        self.tasks_dir = os.path.join(base_dir, "tasks")
        self._history_lock = threading.Lock()
        os.makedirs(self.tasks_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Task artifacts
    # ------------------------------------------------------------------

    def save(
        self,
        task_id: str,
        conversation: List[Dict[str, Any]],
        events: List[ProtocolEvent],
    ) -> None:
        """Write both artifacts of a task."""
        self.save_conversation(task_id, conversation)
        self.save_events(task_id, events)

    def save_conversation(self, task_id: str, conversation: List[Dict[str, Any]]) -> None:
        task_dir = self._task_dir(task_id)
        os.makedirs(task_dir, exist_ok=True)
        _write_json_atomic(os.path.join(task_dir, CONVERSATION_FILE), conversation)

    def save_events(self, task_id: str, events: List[ProtocolEvent]) -> None:
        task_dir = self._task_dir(task_id)
        os.makedirs(task_dir, exist_ok=True)
        _write_json_atomic(os.path.join(task_dir, EVENTS_FILE), [e.to_dict() for e in events])

    def load(self, task_id: str) -> LoadedTask:
        """Load a task. A missing conversation purges the stale history item and raises."""
        item = self.get_history_item(task_id)
        conversation_path = os.path.join(self._task_dir(task_id), CONVERSATION_FILE)
        if item is None or not os.path.exists(conversation_path):
            self.delete_history(task_id)
            raise TaskNotFoundError(task_id)

        with open(conversation_path, "r", encoding="utf-8") as f:
            conversation = json.load(f)
        raw_events = _read_json(os.path.join(self._task_dir(task_id), EVENTS_FILE), [])
        events = [ProtocolEvent.from_dict(r) for r in raw_events]
        return LoadedTask(history_item=item, conversation=conversation, events=events)

    def delete(self, task_id: str) -> None:
        """Remove both artifacts, then the task directory if it is now empty."""
        task_dir = self._task_dir(task_id)
        for name in (CONVERSATION_FILE, EVENTS_FILE):
            path = os.path.join(task_dir, name)
            if os.path.exists(path):
                os.remove(path)
        try:
            os.rmdir(task_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Task directory not removed (not empty?): {task_dir}: {e}")
        logger.info(f"Task deleted: {task_id}")

    # ------------------------------------------------------------------
    # History index
    # ------------------------------------------------------------------

    def list_history(self) -> List[HistoryItem]:
        """Items with a timestamp and task text, newest first."""
        items = [i for i in self._read_history() if i.ts and i.task]
        items.sort(key=lambda i: i.ts, reverse=True)
        return items

    def get_history_item(self, task_id: str) -> Optional[HistoryItem]:
        for item in self._read_history():
            if item.id == task_id:
                return item
        return None

    def upsert_history(self, item: HistoryItem) -> List[HistoryItem]:
        """Replace the item with the same id in place, or append it."""
        with self._history_lock:
            history = self._read_history()
            for idx, existing in enumerate(history):
                if existing.id == item.id:
                    history[idx] = item
                    break
            else:
                history.append(item)
            self._write_history(history)
            return history

    def delete_history(self, task_id: str) -> None:
        with self._history_lock:
            history = self._read_history()
            remaining = [h for h in history if h.id != task_id]
            if len(remaining) != len(history):
                self._write_history(remaining)

    def clear_history(self) -> None:
        """Drop the whole index and every task directory."""
        with self._history_lock:
            self._write_history([])
        shutil.rmtree(self.tasks_dir, ignore_errors=True)
        os.makedirs(self.tasks_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _task_dir(self, task_id: str) -> str:
        if not task_id or os.sep in task_id or task_id in (".", ".."):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return os.path.join(self.tasks_dir, task_id)

    def _history_path(self) -> str:
        return os.path.join(self.base_dir, HISTORY_FILE)

    def _read_history(self) -> List[HistoryItem]:
        raw = _read_json(self._history_path(), [])
        return [HistoryItem.from_dict(r) for r in raw if isinstance(r, dict)]

    def _write_history(self, history: List[HistoryItem]) -> None:
        _write_json_atomic(self._history_path(), [h.to_dict() for h in history])


class GlobalStateStore:
    """Small key/value JSON store for user settings that outlive a task."""

    def __init__(self, base_dir: str = DEFAULT_BASE_DIR):
        self.base_dir = base_dir
        self._lock = threading.Lock()
        os.makedirs(self.base_dir, exist_ok=True)

    @property
    def path(self) -> str:
        return os.path.join(self.base_dir, STATE_FILE)

    def get(self, key: str, default: Any = None) -> Any:
        return _read_json(self.path, {}).get(key, default)

    def update(self, key: str, value: Any) -> None:
        """Set (or with None, remove) a key and write immediately."""
        with self._lock:
            state = _read_json(self.path, {})
            if value is None:
                state.pop(key, None)
            else:
                state[key] = value
            _write_json_atomic(self.path, state)
        logger.debug(f"Updated global state: {key}")

    def all(self) -> Dict[str, Any]:
        return dict(_read_json(self.path, {}))
