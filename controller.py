"""
TaskController: owns the single active AgentLoop and the session context it
runs in, answers UI messages and pushes state and events to the UI outbox.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agent.approval import ApprovalGate, ApprovalPolicy, OperationKind, default_toggles
from agent.events import ProtocolEvent, check_exhaustive
from agent.loop import AgentLoop
from agent.session import TaskSession, TaskSettings
from agent.transcript import get_api_metrics, reconcile
from backend import Backend
from config import app_config, validate_max_requests
from messages import InvalidMessageError, OutboundMessage, OutboundType, UiMessage, UiMessageType
from sessions import ConversationStore, GlobalStateStore, TaskNotFoundError

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[str], Any]

# GlobalStateStore keys
STATE_MAX_REQUESTS = "maxRequestsPerTask"
STATE_CUSTOM_INSTRUCTIONS = "customInstructions"
STATE_APPROVAL_TOGGLES = "approvalToggles"
STATE_EXCLUDED_FILES = "excludedFiles"
STATE_WHITELISTED_FILES = "whitelistedFiles"

_TOGGLE_MESSAGES: Dict[UiMessageType, OperationKind] = {
    UiMessageType.APPROVE_READ: OperationKind.READ,
    UiMessageType.APPROVE_LIST_TOP_LEVEL: OperationKind.LIST_TOP_LEVEL,
    UiMessageType.APPROVE_LIST_RECURSIVE: OperationKind.LIST_RECURSIVE,
    UiMessageType.APPROVE_WRITE: OperationKind.WRITE,
    UiMessageType.APPROVE_EXECUTE: OperationKind.EXECUTE,
}


@dataclass
class ExportArtifact:
    """A downloadable serialization of one task's conversation"""
    filename: str
    content: str
    media_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "content": self.content, "media_type": self.media_type}


def _export_stem(ts: int) -> str:
    dt = datetime.fromtimestamp(ts / 1000)
    return f"bedrock_dev_task_{dt:%b-%d-%Y_%I-%M-%S-%p}".lower()


def _format_block_markdown(block: Any) -> str:
    if isinstance(block, str):
        return block
    kind = block.get("type")
    if kind == "text":
        return block.get("text", "")
    if kind == "image":
        return "[Image]"
    if kind == "tool_use":
        params = block.get("input") or {}
        lines = [f"[Tool Use: {block.get('name', '')}]"]
        lines.extend(f"{key.capitalize()}: {value}" for key, value in params.items())
        return "\n".join(lines)
    if kind == "tool_result":
        content = block.get("content")
        if isinstance(content, list):
            body = "\n".join(_format_block_markdown(b) for b in content)
        else:
            body = str(content or "")
        label = "[Tool Result (Error)]" if block.get("is_error") else "[Tool Result]"
        return f"{label}\n{body}"
    return f"[Unexpected content type: {kind}]"


def conversation_to_markdown(conversation: List[Dict[str, Any]]) -> str:
    """Human-readable transcript of a conversation record."""
    parts = []
    for message in conversation:
        role = "**User:**" if message.get("role") == "user" else "**Assistant:**"
        content = message.get("content")
        if isinstance(content, list):
            body = "\n".join(_format_block_markdown(b) for b in content)
        else:
            body = str(content or "")
        parts.append(f"{role}\n\n{body}\n\n")
    return "---\n\n".join(parts)


class TaskController:
    """
    One active task at a time. Every UI message goes through handle_message();
    everything the UI should see is put on `outbox`.
    """

    def __init__(
        self,
        store: ConversationStore,
        state_store: GlobalStateStore,
        service_factory: ServiceFactory,
        backend: Backend,
        settings: Optional[TaskSettings] = None,
    ):
        self.store = store
        self.state_store = state_store
        self.backend = backend
        self._service_factory = service_factory
        self.outbox: "asyncio.Queue[OutboundMessage]" = asyncio.Queue()
        self.session = TaskSession(
            gate=self._build_gate(),
            settings=self._load_settings(settings or TaskSettings.from_config()),
            store=store,
            state_store=state_store,
        )
        self.loop: Optional[AgentLoop] = None
        self._supervisor: Optional[asyncio.Task] = None

        self._handlers: Dict[UiMessageType, Callable[[UiMessage], Awaitable[None]]] = {
            UiMessageType.NEW_TASK: self._on_new_task,
            UiMessageType.ASK_RESPONSE: self._on_ask_response,
            UiMessageType.CLEAR_TASK: self._on_clear_task,
            UiMessageType.SHOW_TASK: self._on_show_task,
            UiMessageType.DELETE_TASK: self._on_delete_task,
            UiMessageType.EXPORT_TASK: self._on_export_task,
            UiMessageType.EXPORT_CURRENT_TASK: self._on_export_current_task,
            UiMessageType.MAX_REQUESTS_PER_TASK: self._on_max_requests,
            UiMessageType.CUSTOM_INSTRUCTIONS: self._on_custom_instructions,
            UiMessageType.APPROVE_READ: self._on_toggle,
            UiMessageType.APPROVE_LIST_TOP_LEVEL: self._on_toggle,
            UiMessageType.APPROVE_LIST_RECURSIVE: self._on_toggle,
            UiMessageType.APPROVE_WRITE: self._on_toggle,
            UiMessageType.APPROVE_EXECUTE: self._on_toggle,
            UiMessageType.UPDATE_EXCLUDED_FILES: self._on_update_excluded,
            UiMessageType.UPDATE_WHITELISTED_FILES: self._on_update_whitelisted,
            UiMessageType.REQUEST_STATE: self._on_request_state,
            UiMessageType.CLEAR_TASK_HISTORY: self._on_clear_task_history,
        }
        check_exhaustive(self._handlers, UiMessageType, "TaskController._handlers")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _build_gate(self) -> ApprovalGate:
        toggles = default_toggles()
        toggles.update({
            OperationKind.READ: app_config.auto_approve_read,
            OperationKind.LIST_TOP_LEVEL: app_config.auto_approve_list_top_level,
            OperationKind.LIST_RECURSIVE: app_config.auto_approve_list_recursive,
            OperationKind.WRITE: app_config.auto_approve_write,
            OperationKind.EXECUTE: app_config.auto_approve_execute,
        })
        stored = self.state_store.get(STATE_APPROVAL_TOGGLES) or {}
        for key, value in stored.items():
            try:
                toggles[OperationKind(key)] = bool(value)
            except ValueError:
                logger.warning(f"Ignoring unknown approval toggle in state: {key}")
        policy = ApprovalPolicy(
            toggles=toggles,
            excluded_files=set(self.state_store.get(STATE_EXCLUDED_FILES) or []),
            whitelisted_files=set(self.state_store.get(STATE_WHITELISTED_FILES) or []),
        )
        return ApprovalGate(policy, persist=self._persist_paths, normalize=self.backend.relative_path)

    def _load_settings(self, settings: TaskSettings) -> TaskSettings:
        state = self.state_store.all()
        if STATE_MAX_REQUESTS in state:
            try:
                settings.max_requests = validate_max_requests(state[STATE_MAX_REQUESTS])
            except ValueError as e:
                logger.warning(f"Ignoring stored max requests: {e}")
        if STATE_CUSTOM_INSTRUCTIONS in state:
            settings.custom_instructions = state[STATE_CUSTOM_INSTRUCTIONS] or ""
        return settings

    def _persist_paths(self, excluded: List[str], whitelisted: List[str]) -> None:
        self.state_store.update(STATE_EXCLUDED_FILES, excluded)
        self.state_store.update(STATE_WHITELISTED_FILES, whitelisted)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def create(self, task_text: Optional[str] = None,
                     images: Optional[List[str]] = None) -> AgentLoop:
        """Abort whatever is running and start a fresh task."""
        await self.abort()
        loop = self._new_loop()
        loop.start(task_text, images)
        self._watch(loop)
        logger.info(f"Created task {loop.task.id}")
        await self.post_state()
        return loop

    async def resume(self, task_id: str) -> AgentLoop:
        """Abort whatever is running and continue a task from history."""
        await self.abort()
        loaded = self.store.load(task_id)
        item = loaded.history_item
        self.session.gate.replace_paths(item.excluded_files, item.whitelisted_files)
        loop = self._new_loop(history=loaded)
        loop.resume()
        self._watch(loop)
        logger.info(f"Resumed task {task_id}")
        await self.post_state()
        return loop

    async def abort(self) -> None:
        """Stop the active task, if any, and release it. Persistence is kept."""
        loop = self.loop
        if loop is None:
            return
        loop.abort()
        self.loop = None
        current = asyncio.current_task()
        pending = [t for t in (loop.run_task, self._supervisor) if t is not None and t is not current]
        self._supervisor = None
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def delete_task(self, task_id: str) -> None:
        if self.loop is not None and self.loop.task.id == task_id:
            await self.abort()
        self.store.delete(task_id)
        self.store.delete_history(task_id)
        await self.post_state()

    async def show_task(self, task_id: str) -> None:
        if self.loop is None or self.loop.task.id != task_id:
            await self.resume(task_id)
        await self.outbox.put(OutboundMessage(OutboundType.ACTION, {"action": "show_chat"}))

    def export_task(self, task_id: str, fmt: str = "json") -> ExportArtifact:
        """JSON round-trips with ConversationStore.load; Markdown is for reading."""
        loaded = self.store.load(task_id)
        item = loaded.history_item
        stem = _export_stem(item.ts)
        if fmt == "markdown":
            return ExportArtifact(
                filename=f"{stem}.md",
                content=conversation_to_markdown(loaded.conversation),
                media_type="text/markdown",
            )
        payload = {"id": item.id, "ts": item.ts, "task": item.task, "conversation": loaded.conversation}
        return ExportArtifact(
            filename=f"{stem}.json",
            content=json.dumps(payload, indent=2, ensure_ascii=False),
            media_type="application/json",
        )

    async def clear_task_history(self) -> None:
        await self.abort()
        self.store.clear_history()
        logger.info("Cleared task history")
        await self.post_state()

    async def wait(self) -> None:
        """Wait for the active run (and any task it hands off to) to finish."""
        while True:
            supervisor = self._supervisor
            if supervisor is None:
                return
            await asyncio.gather(supervisor, return_exceptions=True)
            if self._supervisor is supervisor:
                return

    def _new_loop(self, history=None) -> AgentLoop:
        loop: Optional[AgentLoop] = None

        async def sink(event: ProtocolEvent) -> None:
            # Events of a released loop never reach the UI
            if loop is None or self.loop is not loop:
                return
            await self.outbox.put(OutboundMessage(
                OutboundType.EVENT, {"task_id": loop.task.id, "event": event.to_dict()},
            ))

        service = self._service_factory(self.session.settings.model_id)
        loop = AgentLoop(self.session, service, self.backend, on_event=sink, history=history)
        self.loop = loop
        return loop

    def _watch(self, loop: AgentLoop) -> None:
        self._supervisor = asyncio.create_task(self._supervise(loop))

    async def _supervise(self, loop: AgentLoop) -> None:
        try:
            await loop.run_task
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.exception(f"Task {loop.task.id} failed")
            await self.outbox.put(OutboundMessage(OutboundType.ERROR, {"message": str(e)}))
            return
        if self.loop is not loop:
            return
        feedback = loop.completion_feedback
        if feedback is not None:
            logger.info(f"Starting follow-up task after completion of {loop.task.id}")
            await self.create(feedback.text, feedback.images)
            return
        await self.post_state()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        settings = self.session.settings
        gate = self.session.gate
        loop = self.loop
        events = list(loop.events) if loop is not None else []
        pending = loop.pending_ask if loop is not None else None
        return {
            "taskId": loop.task.id if loop is not None else None,
            "taskStatus": loop.state.value if loop is not None else None,
            "maxRequestsPerTask": settings.max_requests,
            "customInstructions": settings.custom_instructions,
            "approvalToggles": {kind.value: gate.is_auto_approved(kind) for kind in OperationKind},
            "events": [e.to_dict() for e in events],
            "transcript": [e.to_dict() for e in reconcile(events)],
            "metrics": get_api_metrics(events).to_data(),
            "pendingAsk": pending.to_dict() if pending is not None else None,
            "taskHistory": [h.to_dict() for h in self.store.list_history()],
            "excludedFiles": gate.excluded_files,
            "whitelistedFiles": gate.whitelisted_files,
        }

    async def post_state(self) -> None:
        await self.outbox.put(OutboundMessage(OutboundType.STATE, self.get_state()))

    # ------------------------------------------------------------------
    # UI channel
    # ------------------------------------------------------------------

    async def handle_message(self, message: Union[UiMessage, Dict[str, Any]]) -> None:
        """Dispatch one UI message. Bad input is reported on the outbox, not raised."""
        try:
            msg = message if isinstance(message, UiMessage) else UiMessage.from_dict(message)
            await self._handlers[msg.type](msg)
        except (InvalidMessageError, TaskNotFoundError) as e:
            logger.warning(f"Rejected UI message: {e}")
            await self.outbox.put(OutboundMessage(OutboundType.ERROR, {"message": str(e)}))
            await self.post_state()

    async def _on_new_task(self, msg: UiMessage) -> None:
        await self.create(msg.text, msg.images)

    async def _on_ask_response(self, msg: UiMessage) -> None:
        if self.loop is None:
            raise InvalidMessageError("No active task to respond to")
        try:
            self.loop.handle_response(msg.ask_response)
        except ValueError as e:
            raise InvalidMessageError(str(e))

    async def _on_clear_task(self, msg: UiMessage) -> None:
        await self.abort()
        logger.info("Cleared task")
        await self.post_state()

    async def _on_show_task(self, msg: UiMessage) -> None:
        await self.show_task(msg.task_id)

    async def _on_delete_task(self, msg: UiMessage) -> None:
        await self.delete_task(msg.task_id)

    async def _on_export_task(self, msg: UiMessage) -> None:
        artifact = self.export_task(msg.task_id, msg.format)
        await self.outbox.put(OutboundMessage(OutboundType.EXPORT, artifact.to_dict()))

    async def _on_export_current_task(self, msg: UiMessage) -> None:
        if self.loop is None:
            raise InvalidMessageError("No active task to export")
        artifact = self.export_task(self.loop.task.id, msg.format)
        await self.outbox.put(OutboundMessage(OutboundType.EXPORT, artifact.to_dict()))

    async def _on_max_requests(self, msg: UiMessage) -> None:
        raw = msg.value if msg.value is not None else msg.text
        try:
            value = validate_max_requests(raw)
        except ValueError as e:
            raise InvalidMessageError(str(e))
        self.state_store.update(STATE_MAX_REQUESTS, value)
        self.session.settings.max_requests = value
        await self.post_state()

    async def _on_custom_instructions(self, msg: UiMessage) -> None:
        text = (msg.text or "").strip()
        self.state_store.update(STATE_CUSTOM_INSTRUCTIONS, text or None)
        self.session.settings.custom_instructions = text
        await self.post_state()

    async def _on_toggle(self, msg: UiMessage) -> None:
        kind = _TOGGLE_MESSAGES[msg.type]
        gate = self.session.gate
        gate.set_toggle(kind, msg.value)
        self.state_store.update(
            STATE_APPROVAL_TOGGLES, {k.value: gate.is_auto_approved(k) for k in OperationKind},
        )
        await self.post_state()

    async def _on_update_excluded(self, msg: UiMessage) -> None:
        self.session.gate.set_excluded(msg.paths)
        await self.post_state()

    async def _on_update_whitelisted(self, msg: UiMessage) -> None:
        self.session.gate.set_whitelisted(msg.paths)
        await self.post_state()

    async def _on_request_state(self, msg: UiMessage) -> None:
        await self.post_state()

    async def _on_clear_task_history(self, msg: UiMessage) -> None:
        await self.clear_task_history()
