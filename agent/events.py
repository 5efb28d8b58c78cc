"""
Protocol event types exchanged between the agent and the UI, plus the
cancellation token every asynchronous step checks before mutating task state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Type, Union


class EventType(str, Enum):
    ASK = "ask"   # blocks until a response arrives
    SAY = "say"   # informational, append-only


class AskType(str, Enum):
    FOLLOWUP = "followup"
    TOOL = "tool"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    COMPLETION_RESULT = "completion_result"
    RESUME_TASK = "resume_task"
    RESUME_COMPLETED_TASK = "resume_completed_task"
    REQUEST_LIMIT_REACHED = "request_limit_reached"
    API_REQ_FAILED = "api_req_failed"


class SayType(str, Enum):
    TASK = "task"
    TEXT = "text"
    ERROR = "error"
    API_REQ_STARTED = "api_req_started"
    API_REQ_FINISHED = "api_req_finished"
    API_REQ_RETRIED = "api_req_retried"
    TOOL = "tool"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    COMPLETION_RESULT = "completion_result"
    USER_FEEDBACK = "user_feedback"


Subtype = Union[AskType, SayType]


class ResponseKind(str, Enum):
    YES = "yes"
    NO = "no"
    TEXT = "text"


def check_exhaustive(table: Mapping[Any, Any], enum_cls: Type[Enum], name: str) -> None:
    """Fail at import time when a dispatch table misses (or invents) a subtype."""
    missing = set(enum_cls) - set(table)
    extra = set(table) - set(enum_cls)
    if missing or extra:
        raise TypeError(
            f"{name} must cover every {enum_cls.__name__}: "
            f"missing={sorted(m.value for m in missing)} extra={sorted(str(e) for e in extra)}"
        )


# Responses each ask accepts. "yes"/"no" map to the primary/secondary buttons.
ASK_RESPONSES: Dict[AskType, FrozenSet[ResponseKind]] = {
    AskType.FOLLOWUP: frozenset({ResponseKind.TEXT}),
    AskType.TOOL: frozenset({ResponseKind.YES, ResponseKind.NO, ResponseKind.TEXT}),
    AskType.COMMAND: frozenset({ResponseKind.YES, ResponseKind.NO, ResponseKind.TEXT}),
    AskType.COMMAND_OUTPUT: frozenset({ResponseKind.YES, ResponseKind.TEXT}),
    AskType.COMPLETION_RESULT: frozenset({ResponseKind.YES, ResponseKind.TEXT}),
    AskType.RESUME_TASK: frozenset({ResponseKind.YES, ResponseKind.TEXT}),
    AskType.RESUME_COMPLETED_TASK: frozenset({ResponseKind.YES, ResponseKind.TEXT}),
    AskType.REQUEST_LIMIT_REACHED: frozenset({ResponseKind.YES, ResponseKind.NO}),
    AskType.API_REQ_FAILED: frozenset({ResponseKind.YES, ResponseKind.NO}),
}
check_exhaustive(ASK_RESPONSES, AskType, "ASK_RESPONSES")


@dataclass
class ProtocolEvent:
    """One ask/say event of a task, ordered by ts"""
    ts: int
    type: EventType
    subtype: Subtype
    text: str = ""
    images: List[str] = field(default_factory=list)
    partial: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        expected = AskType if self.type == EventType.ASK else SayType
        if not isinstance(self.subtype, expected):
            self.subtype = expected(self.subtype)

    @property
    def is_ask(self) -> bool:
        return self.type == EventType.ASK

    def is_(self, subtype: Subtype) -> bool:
        """True if this event has the given ask/say subtype (the enum picks the direction)."""
        expected = EventType.ASK if isinstance(subtype, AskType) else EventType.SAY
        return self.type == expected and self.subtype == subtype

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ts": self.ts,
            "type": self.type.value,
            "subtype": self.subtype.value,
            "text": self.text,
        }
        if self.images:
            out["images"] = list(self.images)
        if self.partial:
            out["partial"] = True
        if self.data:
            out["data"] = dict(self.data)
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProtocolEvent":
        return cls(
            ts=int(raw.get("ts", 0)),
            type=EventType(raw["type"]),
            subtype=raw["subtype"],
            text=raw.get("text") or "",
            images=list(raw.get("images") or []),
            partial=bool(raw.get("partial", False)),
            data=dict(raw.get("data") or {}),
        )


@dataclass
class AskResponse:
    """A user's answer to the pending ask. `path` names the subject of a file approval."""
    kind: ResponseKind
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    path: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AskResponse":
        return cls(
            kind=ResponseKind(raw.get("kind", "text")),
            text=raw.get("text"),
            images=list(raw.get("images") or []),
            path=raw.get("path"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value}
        if self.text is not None:
            out["text"] = self.text
        if self.images:
            out["images"] = list(self.images)
        if self.path:
            out["path"] = self.path
        return out


class TaskAborted(Exception):
    """Raised inside the agent loop once its task has been aborted"""


class CancellationToken:
    """Flipped by abort() before the loop reference is released."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskAborted()
