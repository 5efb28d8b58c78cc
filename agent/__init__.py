"""
Agent package - task orchestration for the coding agent.

- events: ask/say protocol events, responses and the cancellation token
- approval: ApprovalGate and the per-kind / per-path policy it enforces
- transcript: pure reconciliation of event logs into display rows and metrics
- session: the TaskSession context shared by controller, loop and executor
- prompts: system prompt composition
- loop: AgentLoop, the per-task state machine

Only the modules without storage or tool dependencies are re-exported here;
import agent.loop / agent.session directly.
"""

from .events import (
    AskResponse,
    AskType,
    CancellationToken,
    EventType,
    ProtocolEvent,
    ResponseKind,
    SayType,
    TaskAborted,
)
from .approval import ApprovalGate, ApprovalPolicy, Decision, OperationKind
from .transcript import (
    ApiMetrics,
    combine_api_requests,
    combine_command_sequences,
    get_api_metrics,
    reconcile,
    visible_events,
)

__all__ = [
    # Protocol events
    "AskResponse",
    "AskType",
    "CancellationToken",
    "EventType",
    "ProtocolEvent",
    "ResponseKind",
    "SayType",
    "TaskAborted",

    # Approval
    "ApprovalGate",
    "ApprovalPolicy",
    "Decision",
    "OperationKind",

    # Transcript
    "ApiMetrics",
    "combine_api_requests",
    "combine_command_sequences",
    "get_api_metrics",
    "reconcile",
    "visible_events",
]
