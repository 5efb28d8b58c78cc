"""
Transcript reconciliation: pure functions that collapse a raw ask/say event
sequence into display rows and total its API cost.

None of these functions mutate their input; the persisted log is always the
raw sequence and reconciliation happens on read.
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from .events import (
    AskType,
    EventType,
    ProtocolEvent,
    SayType,
    check_exhaustive,
)

_API_SAYS = (SayType.API_REQ_STARTED, SayType.API_REQ_FINISHED, SayType.API_REQ_RETRIED)
_API_PARTNERS = (SayType.API_REQ_FINISHED, SayType.API_REQ_RETRIED)


@dataclass
class ApiMetrics:
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0

    def __add__(self, other: "ApiMetrics") -> "ApiMetrics":
        return ApiMetrics(
            tokens_in=self.tokens_in + other.tokens_in,
            tokens_out=self.tokens_out + other.tokens_out,
            cache_writes=self.cache_writes + other.cache_writes,
            cache_reads=self.cache_reads + other.cache_reads,
            total_cost=self.total_cost + other.total_cost,
        )

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ApiMetrics":
        return cls(
            tokens_in=int(data.get("tokens_in", 0) or 0),
            tokens_out=int(data.get("tokens_out", 0) or 0),
            cache_writes=int(data.get("cache_writes", 0) or 0),
            cache_reads=int(data.get("cache_reads", 0) or 0),
            total_cost=float(data.get("cost", 0.0) or 0.0),
        )

    def to_data(self) -> Dict[str, Any]:
        return {
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cache_writes": self.cache_writes,
            "cache_reads": self.cache_reads,
            "cost": self.total_cost,
        }


# ----------------------------------------------------------------------
# Command sequences
# ----------------------------------------------------------------------

def _is_command_head(event: ProtocolEvent) -> bool:
    return event.is_(AskType.COMMAND) or event.is_(SayType.COMMAND)


def _is_command_output(event: ProtocolEvent) -> bool:
    return event.is_(AskType.COMMAND_OUTPUT) or event.is_(SayType.COMMAND_OUTPUT)


def _command_status(finished: bool, exit_code: Optional[int]) -> str:
    if not finished:
        return "running"
    return "success" if exit_code == 0 else "failed"


def combine_command_sequences(events: Sequence[ProtocolEvent]) -> List[ProtocolEvent]:
    """
    Fold each command event and the command_output events that follow it into
    one row: text is the concatenated output, data carries the command line,
    exit code and status.
    """
    out: List[ProtocolEvent] = []
    i = 0
    n = len(events)
    while i < n:
        event = events[i]
        if not _is_command_head(event) or event.data.get("combined"):
            out.append(event)
            i += 1
            continue

        j = i + 1
        chunks: List[str] = []
        finished = False
        exit_code: Optional[int] = None
        while j < n and _is_command_output(events[j]):
            output = events[j]
            j += 1
            if output.type == EventType.SAY:
                chunks.append(output.text)
                if not output.partial:
                    finished = True
                    exit_code = output.data.get("exit_code")
                    break

        if j == i + 1:
            # Nothing ran yet (pending approval or rejected)
            out.append(event)
            i += 1
            continue

        out.append(replace(
            event,
            text="".join(chunks),
            partial=False,
            data={
                **event.data,
                "command": event.text,
                "exit_code": exit_code,
                "status": _command_status(finished, exit_code),
                "combined": True,
            },
        ))
        i = j
    return out


# ----------------------------------------------------------------------
# API requests
# ----------------------------------------------------------------------

def _request_status(start: ProtocolEvent, partner: Optional[ProtocolEvent]) -> str:
    if partner is None:
        return start.data.get("status", "pending")
    return "finished" if partner.is_(SayType.API_REQ_FINISHED) else "retried"


def combine_api_requests(events: Sequence[ProtocolEvent]) -> List[ProtocolEvent]:
    """
    Merge each api_req_started with the first api_req_finished/api_req_retried
    before the next api_req_started. A retried attempt that was re-issued is
    dropped and its metrics move into the next attempt's row.
    """
    n = len(events)
    starts = [i for i, e in enumerate(events) if e.is_(SayType.API_REQ_STARTED)]

    partner_of: Dict[int, int] = {}
    for k, s in enumerate(starts):
        limit = starts[k + 1] if k + 1 < len(starts) else n
        for j in range(s + 1, limit):
            e = events[j]
            if e.type == EventType.SAY and e.subtype in _API_PARTNERS:
                partner_of[s] = j
                break

    consumed = set(partner_of.values())
    superseded = set()
    merged: Dict[int, ProtocolEvent] = {}
    carry = ApiMetrics()
    carry_attempts = 0

    for k, s in enumerate(starts):
        start = events[s]
        p = partner_of.get(s)
        partner = events[p] if p is not None else None

        metrics = ApiMetrics.from_data(start.data) + carry
        if partner is not None:
            metrics = metrics + ApiMetrics.from_data(partner.data)
        attempts = int(start.data.get("attempts", 1)) + carry_attempts

        if partner is not None and partner.is_(SayType.API_REQ_RETRIED) and k + 1 < len(starts):
            superseded.add(s)
            carry = metrics
            carry_attempts = attempts
            continue

        carry = ApiMetrics()
        carry_attempts = 0
        merged[s] = replace(start, data={
            **start.data,
            **metrics.to_data(),
            "attempts": attempts,
            "status": _request_status(start, partner),
        })

    out: List[ProtocolEvent] = []
    for i, e in enumerate(events):
        if i in superseded or i in consumed:
            continue
        out.append(merged.get(i, e))
    return out


def get_api_metrics(events: Sequence[ProtocolEvent]) -> ApiMetrics:
    """Sum usage and cost over raw or combined sequences alike."""
    total = ApiMetrics()
    for e in events:
        if e.type == EventType.SAY and e.subtype in _API_SAYS:
            total = total + ApiMetrics.from_data(e.data)
    return total


# ----------------------------------------------------------------------
# Display filtering
# ----------------------------------------------------------------------

@dataclass
class _FilterContext:
    last_success_index: int


VisibilityRule = Callable[[ProtocolEvent, int, _FilterContext], bool]


def _always(event: ProtocolEvent, index: int, ctx: _FilterContext) -> bool:
    return True


def _never(event: ProtocolEvent, index: int, ctx: _FilterContext) -> bool:
    return False


def _has_text(event: ProtocolEvent, index: int, ctx: _FilterContext) -> bool:
    return event.text != ""


def _has_text_or_images(event: ProtocolEvent, index: int, ctx: _FilterContext) -> bool:
    return event.text != "" or bool(event.images)


def _not_superseded(event: ProtocolEvent, index: int, ctx: _FilterContext) -> bool:
    return index > ctx.last_success_index


_ASK_VISIBILITY: Dict[AskType, VisibilityRule] = {
    AskType.FOLLOWUP: _always,
    AskType.TOOL: _always,
    AskType.COMMAND: _always,
    AskType.COMMAND_OUTPUT: _has_text,
    AskType.COMPLETION_RESULT: _has_text,
    AskType.RESUME_TASK: _never,
    AskType.RESUME_COMPLETED_TASK: _never,
    AskType.REQUEST_LIMIT_REACHED: _always,
    AskType.API_REQ_FAILED: _not_superseded,
}

_SAY_VISIBILITY: Dict[SayType, VisibilityRule] = {
    SayType.TASK: _always,
    SayType.TEXT: _has_text_or_images,
    SayType.ERROR: _always,
    SayType.API_REQ_STARTED: _always,
    SayType.API_REQ_FINISHED: _never,
    SayType.API_REQ_RETRIED: _never,
    SayType.TOOL: _always,
    SayType.COMMAND: _always,
    SayType.COMMAND_OUTPUT: _always,
    SayType.COMPLETION_RESULT: _always,
    SayType.USER_FEEDBACK: _always,
}

check_exhaustive(_ASK_VISIBILITY, AskType, "_ASK_VISIBILITY")
check_exhaustive(_SAY_VISIBILITY, SayType, "_SAY_VISIBILITY")


def _is_success(event: ProtocolEvent) -> bool:
    if event.is_(SayType.API_REQ_FINISHED) or event.is_(SayType.COMPLETION_RESULT):
        return True
    return event.is_(SayType.API_REQ_STARTED) and event.data.get("status") == "finished"


def visible_events(events: Sequence[ProtocolEvent]) -> List[ProtocolEvent]:
    """Display-only filter; the persisted log keeps everything."""
    last_success = -1
    for i, e in enumerate(events):
        if _is_success(e):
            last_success = i
    ctx = _FilterContext(last_success_index=last_success)

    visible = []
    for i, e in enumerate(events):
        table = _ASK_VISIBILITY if e.type == EventType.ASK else _SAY_VISIBILITY
        if table[e.subtype](e, i, ctx):
            visible.append(e)
    return visible


def reconcile(events: Sequence[ProtocolEvent]) -> List[ProtocolEvent]:
    """Full display pipeline: command folding, request merging, filtering."""
    return visible_events(combine_api_requests(combine_command_sequences(events)))
