"""
Typed channel between the UI and the TaskController.

Every inbound message carries a `type` discriminant and a fixed set of
required fields for that type; every outbound message is one of a few
envelope kinds with a dict payload.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from agent.events import AskResponse, check_exhaustive


class InvalidMessageError(ValueError):
    """A UI message is malformed or missing a field its type requires."""


class UiMessageType(str, Enum):
    NEW_TASK = "new_task"
    ASK_RESPONSE = "ask_response"
    CLEAR_TASK = "clear_task"
    SHOW_TASK = "show_task"
    DELETE_TASK = "delete_task"
    EXPORT_TASK = "export_task"
    EXPORT_CURRENT_TASK = "export_current_task"
    MAX_REQUESTS_PER_TASK = "max_requests_per_task"
    CUSTOM_INSTRUCTIONS = "custom_instructions"
    APPROVE_READ = "approve_read"
    APPROVE_LIST_TOP_LEVEL = "approve_list_top_level"
    APPROVE_LIST_RECURSIVE = "approve_list_recursive"
    APPROVE_WRITE = "approve_write"
    APPROVE_EXECUTE = "approve_execute"
    UPDATE_EXCLUDED_FILES = "update_excluded_files"
    UPDATE_WHITELISTED_FILES = "update_whitelisted_files"
    REQUEST_STATE = "request_state"
    CLEAR_TASK_HISTORY = "clear_task_history"


_TOGGLE = frozenset({"value"})
_TASK_ID = frozenset({"task_id"})
_PATHS = frozenset({"paths"})
_NONE: FrozenSet[str] = frozenset()

REQUIRED_FIELDS: Dict[UiMessageType, FrozenSet[str]] = {
    UiMessageType.NEW_TASK: _NONE,
    UiMessageType.ASK_RESPONSE: frozenset({"ask_response"}),
    UiMessageType.CLEAR_TASK: _NONE,
    UiMessageType.SHOW_TASK: _TASK_ID,
    UiMessageType.DELETE_TASK: _TASK_ID,
    UiMessageType.EXPORT_TASK: _TASK_ID,
    UiMessageType.EXPORT_CURRENT_TASK: _NONE,
    UiMessageType.MAX_REQUESTS_PER_TASK: _NONE,
    UiMessageType.CUSTOM_INSTRUCTIONS: _NONE,
    UiMessageType.APPROVE_READ: _TOGGLE,
    UiMessageType.APPROVE_LIST_TOP_LEVEL: _TOGGLE,
    UiMessageType.APPROVE_LIST_RECURSIVE: _TOGGLE,
    UiMessageType.APPROVE_WRITE: _TOGGLE,
    UiMessageType.APPROVE_EXECUTE: _TOGGLE,
    UiMessageType.UPDATE_EXCLUDED_FILES: _PATHS,
    UiMessageType.UPDATE_WHITELISTED_FILES: _PATHS,
    UiMessageType.REQUEST_STATE: _NONE,
    UiMessageType.CLEAR_TASK_HISTORY: _NONE,
}
check_exhaustive(REQUIRED_FIELDS, UiMessageType, "REQUIRED_FIELDS")

EXPORT_FORMATS = ("json", "markdown")


@dataclass
class UiMessage:
    type: UiMessageType
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    task_id: Optional[str] = None
    ask_response: Optional[AskResponse] = None
    value: Any = None
    paths: List[str] = field(default_factory=list)
    format: str = "json"

    @classmethod
    def from_dict(cls, raw: Any) -> "UiMessage":
        if not isinstance(raw, dict):
            raise InvalidMessageError("Message must be a JSON object")
        try:
            msg_type = UiMessageType(raw.get("type"))
        except ValueError:
            raise InvalidMessageError(f"Unknown message type: {raw.get('type')!r}")

        missing = [name for name in REQUIRED_FIELDS[msg_type] if raw.get(name) is None]
        if missing:
            raise InvalidMessageError(f"{msg_type.value} requires: {', '.join(sorted(missing))}")

        ask_response = None
        if raw.get("ask_response") is not None:
            if not isinstance(raw["ask_response"], dict):
                raise InvalidMessageError("ask_response must be an object")
            try:
                ask_response = AskResponse.from_dict(raw["ask_response"])
            except ValueError as e:
                raise InvalidMessageError(f"Invalid ask_response: {e}")

        if msg_type in (UiMessageType.APPROVE_READ, UiMessageType.APPROVE_LIST_TOP_LEVEL,
                        UiMessageType.APPROVE_LIST_RECURSIVE, UiMessageType.APPROVE_WRITE,
                        UiMessageType.APPROVE_EXECUTE) and not isinstance(raw["value"], bool):
            raise InvalidMessageError(f"{msg_type.value} requires a boolean value")

        paths = raw.get("paths") or []
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise InvalidMessageError("paths must be a list of strings")

        export_format = raw.get("format") or "json"
        if export_format not in EXPORT_FORMATS:
            raise InvalidMessageError(f"Unsupported export format: {export_format!r}")

        images = raw.get("images") or []
        if not isinstance(images, list):
            raise InvalidMessageError("images must be a list")

        return cls(
            type=msg_type,
            text=raw.get("text"),
            images=list(images),
            task_id=raw.get("task_id"),
            ask_response=ask_response,
            value=raw.get("value"),
            paths=list(paths),
            format=export_format,
        )


class OutboundType(str, Enum):
    STATE = "state"      # full state snapshot
    EVENT = "event"      # one ask/say event as it is emitted
    EXPORT = "export"    # an export artifact to download
    ACTION = "action"    # UI navigation hint, e.g. show chat
    ERROR = "error"


@dataclass
class OutboundMessage:
    type: OutboundType
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}
