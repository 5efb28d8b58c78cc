"""
AgentLoop: drives one task's conversation with the model.

Each turn checks the request budget, calls the model off the event loop,
records the assistant turn, runs the requested tools through ToolExecutor and
feeds their results back. Every ask/say event is appended to the task's log
and persisted before anything else observes it.
"""

import asyncio
import base64
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bedrock_service import BedrockError, GenerationConfig, GenerationResult
from config import calculate_cost
from sessions import HistoryItem, LoadedTask
from tools import TOOL_DEFINITIONS, ToolExecutor, ToolRejected

from .events import (
    ASK_RESPONSES,
    AskResponse,
    AskType,
    CancellationToken,
    EventType,
    ProtocolEvent,
    ResponseKind,
    SayType,
    TaskAborted,
)
from .prompts import NO_TOOLS_USED_NUDGE, _compose_system_prompt
from .session import TaskSession
from .transcript import ApiMetrics, get_api_metrics

logger = logging.getLogger(__name__)

EventCallback = Callable[[ProtocolEvent], Awaitable[None]]

_RESUME_ASKS = (AskType.RESUME_TASK, AskType.RESUME_COMPLETED_TASK)
_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.*)$", re.DOTALL)


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    EMITTING = "emitting"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TERMINAL_STATES = (LoopState.COMPLETED, LoopState.ABORTED)


@dataclass
class Task:
    """Identity and live metrics of the task a loop is running"""
    id: str
    ts: int
    metrics: ApiMetrics = field(default_factory=ApiMetrics)
    status: LoopState = LoopState.IDLE


def _now_ms() -> int:
    return int(time.time() * 1000)


def _image_blocks(images: List[str]) -> List[Dict[str, Any]]:
    """Convert data URLs from the UI into Anthropic image blocks."""
    blocks = []
    for image in images or []:
        match = _DATA_URL_RE.match(image)
        if match:
            media_type, data = match.group(1), match.group(2)
        else:
            media_type, data = "image/png", image
        try:
            base64.b64decode(data, validate=True)
        except ValueError:
            logger.warning("Dropping image that is not valid base64")
            continue
        blocks.append({
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        })
    return blocks


def _tool_result(tool_use_id: str, text: str, images: Optional[List[str]] = None,
                 is_error: bool = False) -> Dict[str, Any]:
    content: Any = text
    image_blocks = _image_blocks(images or [])
    if image_blocks:
        content = [{"type": "text", "text": text}] + image_blocks
    block: Dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block


def _format_elapsed(ms: int) -> str:
    minutes = max(ms, 0) // 60000
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


class AgentLoop:
    """
    One task's state machine.

    States: IDLE -> RUNNING -> {EMITTING, AWAITING_APPROVAL} -> RUNNING -> ...
    -> COMPLETED | ABORTED. Suspends only on the model call, a user response
    and subprocess I/O; the cancellation token is checked after each of them.
    """

    def __init__(
        self,
        session: TaskSession,
        service: Any,
        backend: Any,
        on_event: Optional[EventCallback] = None,
        history: Optional[LoadedTask] = None,
    ):
        self.session = session
        self.service = service
        self.backend = backend
        self.token = CancellationToken()
        self._on_event = on_event

        if history is not None:
            item = history.history_item
            self.task = Task(
                id=item.id,
                ts=item.ts,
                metrics=ApiMetrics(
                    tokens_in=item.tokens_in,
                    tokens_out=item.tokens_out,
                    cache_writes=item.cache_writes,
                    cache_reads=item.cache_reads,
                    total_cost=item.total_cost,
                ),
            )
            self.conversation: List[Dict[str, Any]] = list(history.conversation)
            self.events: List[ProtocolEvent] = list(history.events)
        else:
            self.task = Task(id=uuid.uuid4().hex, ts=_now_ms())
            self.conversation = []
            self.events = []

        self._last_ts = max([e.ts for e in self.events] + [0])
        self.request_count = 0
        self.cycle_request_count = 0
        # Text given in reply to a completion; the controller turns it into a new task
        self.completion_feedback: Optional[AskResponse] = None

        self._pending: Optional[asyncio.Future] = None
        self._pending_event: Optional[ProtocolEvent] = None
        self._ask_ready = asyncio.Event()
        self._run_task: Optional[asyncio.Task] = None

        settings = session.settings
        self.executor = ToolExecutor(
            backend,
            session.gate,
            ask=self.ask,
            say=self.say,
            token=self.token,
            command_timeout=settings.command_timeout,
            max_recursive_files=settings.max_recursive_files,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self.task.status

    def _set_state(self, state: LoopState) -> None:
        if self.task.status in _TERMINAL_STATES:
            return
        self.task.status = state

    @property
    def pending_ask(self) -> Optional[ProtocolEvent]:
        return self._pending_event

    @property
    def run_task(self) -> Optional[asyncio.Task]:
        return self._run_task

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self, task_text: Optional[str] = None, images: Optional[List[str]] = None) -> asyncio.Task:
        """Begin a fresh task in the background."""
        self._run_task = asyncio.create_task(self._start_new(task_text or "", images or []))
        return self._run_task

    def resume(self) -> asyncio.Task:
        """Continue a task loaded from history in the background."""
        self._run_task = asyncio.create_task(self._resume())
        return self._run_task

    def abort(self) -> None:
        """Flip the token, kill any command, drop the pending ask and cancel the run."""
        self.token.cancel()
        self.executor.cancel()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        self._set_state(LoopState.ABORTED)
        logger.info(f"Task aborted: {self.task.id}")

    async def _start_new(self, task_text: str, images: List[str]) -> None:
        self._set_state(LoopState.RUNNING)
        await self.say(SayType.TASK, task_text, images=images)
        content: List[Dict[str, Any]] = [{"type": "text", "text": f"<task>\n{task_text}\n</task>"}]
        content.extend(_image_blocks(images))
        await self._run(content)

    async def _resume(self) -> None:
        self._set_state(LoopState.RUNNING)
        self.events = self._trim_for_resume(self.events)
        self._save()

        last = self.events[-1] if self.events else None
        completed = last is not None and (
            last.is_(AskType.COMPLETION_RESULT) or last.is_(SayType.COMPLETION_RESULT)
        )
        ask_type = AskType.RESUME_COMPLETED_TASK if completed else AskType.RESUME_TASK
        last_ts = last.ts if last is not None else self.task.ts

        response = await self.ask(ask_type)
        text = response.text if response.kind == ResponseKind.TEXT else None
        images = response.images if response.kind == ResponseKind.TEXT else []
        if text or images:
            await self.say(SayType.USER_FEEDBACK, text or "", images=images)

        content = self._repair_conversation_for_resume()
        note = (
            f"[TASK RESUMPTION] This task was interrupted {_format_elapsed(_now_ms() - last_ts)}. "
            "It may or may not be complete, so please reassess the task context. Be aware that the "
            "project state may have changed since then. The current working directory is now "
            f"'{self.backend.working_directory}'. If the task has not been completed, retry the last "
            "step before interruption and proceed with completing the task."
        )
        if text:
            note += f"\n\nNew instructions for task continuation:\n<user_message>\n{text}\n</user_message>"
        content.append({"type": "text", "text": note})
        content.extend(_image_blocks(images))
        await self._run(content)

    @staticmethod
    def _trim_for_resume(events: List[ProtocolEvent]) -> List[ProtocolEvent]:
        """Drop resume prompts left at the end and an api request that never finished."""
        trimmed = list(events)
        while trimmed and trimmed[-1].type == EventType.ASK and trimmed[-1].subtype in _RESUME_ASKS:
            trimmed.pop()

        last_start = None
        for i in range(len(trimmed) - 1, -1, -1):
            if trimmed[i].is_(SayType.API_REQ_STARTED):
                last_start = i
                break
        if last_start is not None:
            answered = any(
                e.is_(SayType.API_REQ_FINISHED) or e.is_(SayType.API_REQ_RETRIED)
                for e in trimmed[last_start + 1:]
            )
            if not answered and "cost" not in trimmed[last_start].data:
                del trimmed[last_start]
        return trimmed

    def _repair_conversation_for_resume(self) -> List[Dict[str, Any]]:
        """
        Return the content blocks the resumed turn starts with. Unanswered
        tool_use blocks get synthetic results; a trailing user turn is reopened.
        """
        if not self.conversation:
            return []
        last = self.conversation[-1]
        content = last.get("content")
        if last.get("role") == "assistant":
            blocks = content if isinstance(content, list) else []
            return [
                _tool_result(b["id"], "Task was interrupted before this tool call could be completed.")
                for b in blocks
                if isinstance(b, dict) and b.get("type") == "tool_use"
            ]
        self.conversation.pop()
        if isinstance(content, list):
            return list(content)
        return [{"type": "text", "text": str(content or "")}]

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self, user_content: List[Dict[str, Any]]) -> None:
        next_content: Optional[List[Dict[str, Any]]] = user_content
        try:
            while next_content is not None:
                next_content = await self._step(next_content)
            self._set_state(LoopState.COMPLETED)
            logger.info(f"Task completed: {self.task.id}")
        except TaskAborted:
            self._set_state(LoopState.ABORTED)
            logger.info(f"Task stopped: {self.task.id}")
        except asyncio.CancelledError:
            self._set_state(LoopState.ABORTED)
            raise

    async def _step(self, user_content: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        """One model turn. Returns the next user content, or None when the task is done."""
        await self._check_budget()
        self.conversation.append({"role": "user", "content": user_content})
        self._save()

        result = await self._call_model()
        blocks = result.content_blocks or [{"type": "text", "text": result.content}]
        self.conversation.append({"role": "assistant", "content": blocks})
        self._save()

        if result.content:
            await self.say(SayType.TEXT, result.content)

        if not result.tool_uses:
            return [{"type": "text", "text": NO_TOOLS_USED_NUDGE}]

        tool_results: List[Dict[str, Any]] = []
        for tool_use in result.tool_uses:
            block = await self._execute_tool(tool_use.id, tool_use.name, tool_use.input or {})
            if block is None:
                return None
            tool_results.append(block)
        return tool_results

    async def _check_budget(self) -> None:
        max_requests = self.session.settings.max_requests
        if max_requests is None or self.cycle_request_count < max_requests:
            return
        logger.info(f"Request limit reached ({max_requests}) for task {self.task.id}")
        response = await self.ask(
            AskType.REQUEST_LIMIT_REACHED,
            f"Claude has made {max_requests} API requests in this cycle. "
            "Would you like to reset the count and proceed with the task?",
            data={"max_requests": max_requests, "request_count": self.request_count},
        )
        if response.kind != ResponseKind.YES:
            raise TaskAborted()
        self.cycle_request_count = 0

    async def _call_model(self) -> GenerationResult:
        settings = self.session.settings
        self.request_count += 1
        self.cycle_request_count += 1
        system_prompt = _compose_system_prompt(self.backend.working_directory, settings.custom_instructions)
        gen_config = GenerationConfig(max_tokens=settings.max_tokens, temperature=settings.temperature)

        await self.say(SayType.API_REQ_STARTED, data={
            "model_id": settings.model_id,
            "request": self.request_count,
        })
        while True:
            try:
                result = await asyncio.to_thread(
                    self.service.generate_response,
                    messages=list(self.conversation),
                    system_prompt=system_prompt,
                    model_id=settings.model_id,
                    config=gen_config,
                    tools=TOOL_DEFINITIONS,
                )
            except BedrockError as e:
                self.token.raise_if_cancelled()
                logger.error(f"Model call failed for task {self.task.id}: {e}")
                response = await self.ask(AskType.API_REQ_FAILED, str(e))
                if response.kind != ResponseKind.YES:
                    raise TaskAborted()
                await self.say(SayType.API_REQ_RETRIED, data={"error": str(e)})
                await self.say(SayType.API_REQ_STARTED, data={
                    "model_id": settings.model_id,
                    "request": self.request_count,
                })
                continue
            self.token.raise_if_cancelled()
            break

        cost = calculate_cost(
            settings.model_id,
            result.input_tokens,
            result.output_tokens,
            result.cache_write_tokens,
            result.cache_read_tokens,
        )
        metrics = ApiMetrics(
            tokens_in=result.input_tokens,
            tokens_out=result.output_tokens,
            cache_writes=result.cache_write_tokens,
            cache_reads=result.cache_read_tokens,
            total_cost=cost,
        )
        self.task.metrics = self.task.metrics + metrics
        await self.say(SayType.API_REQ_FINISHED, data={**metrics.to_data(), "stop_reason": result.stop_reason})
        return result

    async def _execute_tool(self, tool_use_id: str, name: str,
                            tool_input: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Run one tool_use block. None means the user accepted a completion."""
        if name == "ask_followup_question":
            response = await self.ask(AskType.FOLLOWUP, tool_input.get("question", ""))
            await self.say(SayType.USER_FEEDBACK, response.text or "", images=response.images)
            return _tool_result(tool_use_id, f"<answer>\n{response.text or ''}\n</answer>", response.images)

        if name == "attempt_completion":
            return await self._attempt_completion(tool_use_id, tool_input)

        if not self.executor.handles(name):
            await self.say(SayType.ERROR, f"Unknown tool requested: {name}")
            return _tool_result(tool_use_id, f"Error: Unknown tool: {name}", is_error=True)

        try:
            result = await self.executor.run(name, tool_input)
        except TaskAborted:
            raise
        except ToolRejected as rejection:
            logger.info(f"Tool {name} rejected: {rejection.message}")
            return _tool_result(tool_use_id, rejection.to_model_text(), rejection.images, is_error=True)
        except Exception as e:
            logger.exception(f"Tool {name} failed unexpectedly")
            await self.say(SayType.ERROR, f"Error executing {name}: {e}")
            return _tool_result(tool_use_id, f"Error executing {name}: {e}", is_error=True)
        return _tool_result(tool_use_id, result.to_model_text(), is_error=not result.success)

    async def _attempt_completion(self, tool_use_id: str,
                                  tool_input: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        command = (tool_input.get("command") or "").strip()
        result_text = tool_input.get("result", "")
        if command:
            # The demo output streams to the user only
            try:
                await self.executor.execute_command(command)
            except ToolRejected as rejection:
                return _tool_result(tool_use_id, rejection.to_model_text(), rejection.images, is_error=True)

        await self.say(SayType.COMPLETION_RESULT, result_text, data={"command": command} if command else None)
        response = await self.ask(AskType.COMPLETION_RESULT)
        if response.kind == ResponseKind.TEXT and (response.text or response.images):
            self.completion_feedback = response
            await self.say(SayType.USER_FEEDBACK, response.text or "", images=response.images)
        return None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _next_ts(self) -> int:
        ts = max(_now_ms(), self._last_ts + 1)
        self._last_ts = ts
        return ts

    async def say(
        self,
        subtype: SayType,
        text: str = "",
        images: Optional[List[str]] = None,
        partial: bool = False,
        data: Optional[Dict[str, Any]] = None,
    ) -> ProtocolEvent:
        """Append an informational event."""
        event = ProtocolEvent(
            ts=self._next_ts(),
            type=EventType.SAY,
            subtype=subtype,
            text=text or "",
            images=list(images or []),
            partial=partial,
            data=dict(data or {}),
        )
        if self.state == LoopState.RUNNING:
            self._set_state(LoopState.EMITTING)
        try:
            await self._emit(event)
        finally:
            if self.state == LoopState.EMITTING:
                self._set_state(LoopState.RUNNING)
        return event

    async def ask(self, subtype: AskType, text: str = "",
                  data: Optional[Dict[str, Any]] = None) -> AskResponse:
        """Append a blocking event and wait for handle_response()."""
        self.token.raise_if_cancelled()
        if self._pending is not None and not self._pending.done():
            raise RuntimeError(f"An ask is already pending: {self._pending_event.subtype.value}")

        future = asyncio.get_running_loop().create_future()
        event = ProtocolEvent(
            ts=self._next_ts(),
            type=EventType.ASK,
            subtype=subtype,
            text=text or "",
            data=dict(data or {}),
        )
        self._pending = future
        self._pending_event = event
        self._set_state(LoopState.AWAITING_APPROVAL)
        try:
            await self._emit(event)
            self._ask_ready.set()
            response = await future
        finally:
            if self._pending is future:
                self._clear_pending()
            if self.state == LoopState.AWAITING_APPROVAL:
                self._set_state(LoopState.RUNNING)
        self.token.raise_if_cancelled()
        return response

    def handle_response(self, response: AskResponse) -> None:
        """Answer the pending ask. Raises ValueError if nothing is pending or the answer doesn't fit."""
        if self._pending is None or self._pending.done() or self._pending_event is None:
            raise ValueError("No ask is waiting for a response")
        subtype = self._pending_event.subtype
        if response.kind not in ASK_RESPONSES[subtype]:
            raise ValueError(f"{subtype.value} does not accept a '{response.kind.value}' response")
        future = self._pending
        self._clear_pending()
        future.set_result(response)

    def _clear_pending(self) -> None:
        self._pending = None
        self._pending_event = None
        self._ask_ready.clear()

    async def wait_for_ask(self) -> Optional[ProtocolEvent]:
        """Wait until an ask is pending. Returns None if the run ends first."""
        if self._ask_ready.is_set():
            return self._pending_event
        waiter = asyncio.ensure_future(self._ask_ready.wait())
        watched = {waiter}
        if self._run_task is not None:
            watched.add(self._run_task)
        done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            return None
        return self._pending_event

    async def _emit(self, event: ProtocolEvent) -> None:
        self.token.raise_if_cancelled()
        self.events.append(event)
        self._save()
        if self._on_event is not None:
            await self._on_event(event)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def history_item(self) -> HistoryItem:
        metrics = get_api_metrics(self.events)
        first = self.events[0] if self.events else None
        gate = self.session.gate
        return HistoryItem(
            id=self.task.id,
            ts=self.task.ts,
            task=first.text if first is not None else "",
            tokens_in=metrics.tokens_in,
            tokens_out=metrics.tokens_out,
            cache_writes=metrics.cache_writes,
            cache_reads=metrics.cache_reads,
            total_cost=metrics.total_cost,
            excluded_files=gate.excluded_files,
            whitelisted_files=gate.whitelisted_files,
        )

    def _save(self) -> None:
        """Write both artifacts and the history entry. Skipped once aborted."""
        if self.token.cancelled:
            return
        store = self.session.store
        store.save(self.task.id, self.conversation, self.events)
        store.upsert_history(self.history_item())
