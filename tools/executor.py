"""
ToolExecutor: runs workspace tools on behalf of the agent loop.

Every operation consults the ApprovalGate first. Denials raise ToolRejected;
failures of the operation itself come back as ToolResult(success=False).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agent.approval import ApprovalGate, Decision, OperationKind, PATH_DECISION_KINDS
from agent.events import (
    AskResponse,
    AskType,
    CancellationToken,
    ProtocolEvent,
    ResponseKind,
    SayType,
)
from backend import Backend
from tools._common import CommandOutcome, ToolRejected, ToolResult
from tools.file_ops import preview_write, read_file, write_file
from tools.search_ops import (
    DEFAULT_MAX_RECURSIVE_FILES,
    list_files_recursive,
    list_files_top_level,
)

logger = logging.getLogger(__name__)

AskFn = Callable[..., Awaitable[AskResponse]]
SayFn = Callable[..., Awaitable[ProtocolEvent]]

DEFAULT_COMMAND_TIMEOUT = 600
_MAX_OUTPUT_CHARS = 20000
_STOP_WORDS = frozenset({"exit", "yes"})


def _truncate_output(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return (
            "\n".join(lines_out[:100])
            + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n"
            + "\n".join(lines_out[-50:])
        )
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


class ToolExecutor:
    """Gated workspace operations for one task."""

    def __init__(
        self,
        backend: Backend,
        gate: ApprovalGate,
        ask: AskFn,
        say: SayFn,
        token: CancellationToken,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        max_recursive_files: int = DEFAULT_MAX_RECURSIVE_FILES,
    ):
        self.backend = backend
        self.gate = gate
        self._ask = ask
        self._say = say
        self.token = token
        self.command_timeout = command_timeout
        self.max_recursive_files = max_recursive_files
        self._proc: Optional[asyncio.subprocess.Process] = None

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[ToolResult]]] = {
            "read_file": lambda i: self.read_file(i.get("path", "")),
            "list_files_top_level": lambda i: self.list_files_top_level(i.get("path", ".")),
            "list_files_recursive": lambda i: self.list_files_recursive(i.get("path", ".")),
            "write_to_file": lambda i: self.write_to_file(i.get("path", ""), i.get("content", "")),
            "execute_command": lambda i: self.execute_command(i.get("command", "")),
        }

    def handles(self, tool_name: str) -> bool:
        return tool_name in self._handlers

    async def run(self, tool_name: str, tool_input: Dict[str, Any]) -> ToolResult:
        """Dispatch a model tool_use block. May raise ToolRejected or TaskAborted."""
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolResult(success=False, output="", error=f"Unknown tool: {tool_name}")
        return await handler(tool_input or {})

    # ------------------------------------------------------------------
    # File tools
    # ------------------------------------------------------------------

    async def read_file(self, path: str) -> ToolResult:
        rel = self._workspace_path(path)
        if isinstance(rel, ToolResult):
            return rel
        await self._gate(OperationKind.READ, rel, {"tool": "read_file", "path": rel})
        result = await asyncio.to_thread(read_file, rel, self.backend)
        self.token.raise_if_cancelled()
        return result

    async def list_files_top_level(self, path: str) -> ToolResult:
        rel = self._workspace_path(path or ".")
        if isinstance(rel, ToolResult):
            return rel
        await self._gate(OperationKind.LIST_TOP_LEVEL, rel, {"tool": "list_files_top_level", "path": rel})
        result = await asyncio.to_thread(list_files_top_level, rel, self.backend)
        self.token.raise_if_cancelled()
        return result

    async def list_files_recursive(self, path: str) -> ToolResult:
        rel = self._workspace_path(path or ".")
        if isinstance(rel, ToolResult):
            return rel
        await self._gate(OperationKind.LIST_RECURSIVE, rel, {"tool": "list_files_recursive", "path": rel})
        result = await asyncio.to_thread(
            list_files_recursive, rel, self.backend, self.max_recursive_files,
        )
        self.token.raise_if_cancelled()
        return result

    async def write_to_file(self, path: str, content: str) -> ToolResult:
        rel = self._workspace_path(path)
        if isinstance(rel, ToolResult):
            return rel
        # Decide before previewing so an excluded file is never read
        decision = self.gate.decide(OperationKind.WRITE, rel)
        if decision == Decision.AUTO_DENY:
            await self._deny_excluded(rel, {"tool": "write_to_file", "path": rel})
        preview = await asyncio.to_thread(preview_write, rel, content, self.backend)
        self.token.raise_if_cancelled()
        await self._gate(
            OperationKind.WRITE, rel,
            {"tool": "write_to_file", **preview.to_data()},
            decision=decision,
        )
        result = await asyncio.to_thread(write_file, rel, content, self.backend)
        self.token.raise_if_cancelled()
        return result

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute_command(self, command: str) -> ToolResult:
        if not (command or "").strip():
            return ToolResult(success=False, output="", error="command is required")

        decision = self.gate.decide(OperationKind.EXECUTE)
        if decision == Decision.AUTO_APPROVE:
            await self._say(SayType.COMMAND, command, data={"decision": "auto_approved"})
        else:
            response = await self._ask(AskType.COMMAND, command)
            self.token.raise_if_cancelled()
            await self._handle_denial(response, "command")
        self.token.raise_if_cancelled()

        try:
            outcome = await self._run_process(command)
        except OSError as e:
            logger.exception(f"Failed to start command: {command}")
            await self._say(SayType.COMMAND_OUTPUT, "", partial=False,
                            data={"exit_code": None, "error": str(e)})
            return ToolResult(success=False, output="", error=f"Failed to start command: {e}")

        output = _truncate_output(outcome.output) or "(no output)"
        if outcome.terminated_by_user:
            return ToolResult(
                success=False, output=output,
                error="Command was terminated by the user before it finished.",
            )
        if outcome.timed_out:
            return ToolResult(
                success=False, output=output,
                error=f"Command timed out after {self.command_timeout}s",
            )
        rc = outcome.exit_code
        if rc != 0:
            output = f"[exit code: {rc}]\n{output}"
        return ToolResult(
            success=rc == 0, output=output,
            error=None if rc == 0 else f"Command exited with code {rc}",
        )

    async def _run_process(self, command: str) -> CommandOutcome:
        proc = await self.backend.spawn(command)
        self._proc = proc
        logger.info(f"Started command (pid {proc.pid}): {command}")

        outcome = CommandOutcome(exit_code=None)
        chunks: List[str] = []
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, "stdout", chunks)),
            asyncio.create_task(self._pump(proc.stderr, "stderr", chunks)),
        ]
        stdin_task = asyncio.create_task(self._stdin_loop(proc, outcome))

        async def drain_and_wait() -> int:
            await asyncio.gather(*pumps)
            return await proc.wait()

        try:
            try:
                # One deadline covers both output draining and exit
                outcome.exit_code = await asyncio.wait_for(drain_and_wait(), timeout=self.command_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Command timed out after {self.command_timeout}s: {command}")
                outcome.timed_out = True
                self.backend.kill_process(proc)
                outcome.exit_code = await proc.wait()
        finally:
            stdin_task.cancel()
            for task in pumps:
                task.cancel()
            await asyncio.gather(stdin_task, *pumps, return_exceptions=True)
            if proc.returncode is None:
                self.backend.kill_process(proc)
            self._proc = None

        self.token.raise_if_cancelled()
        outcome.output = "".join(chunks)
        await self._say(
            SayType.COMMAND_OUTPUT, "", partial=False,
            data={"exit_code": outcome.exit_code, "timed_out": outcome.timed_out,
                  "terminated_by_user": outcome.terminated_by_user},
        )
        return outcome

    async def _pump(self, stream: Optional[asyncio.StreamReader], name: str, chunks: List[str]) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace")
            chunks.append(text)
            self.token.raise_if_cancelled()
            data = {"stream": "stderr"} if name == "stderr" else {}
            await self._say(SayType.COMMAND_OUTPUT, text, partial=True, data=data)

    async def _stdin_loop(self, proc: asyncio.subprocess.Process, outcome: CommandOutcome) -> None:
        """Keep a command_output ask open; text goes to stdin, "exit"/"yes" stops the process."""
        while proc.returncode is None:
            response = await self._ask(AskType.COMMAND_OUTPUT, "")
            if self.token.cancelled or proc.returncode is not None:
                return
            text = (response.text or "").strip()
            if response.kind == ResponseKind.YES or text.lower() in _STOP_WORDS:
                logger.info(f"Command terminated by user (pid {proc.pid})")
                outcome.terminated_by_user = True
                self.backend.kill_process(proc)
                return
            if proc.stdin is not None:
                try:
                    proc.stdin.write(((response.text or "") + "\n").encode("utf-8"))
                    await proc.stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.debug(f"stdin closed for pid {proc.pid}: {e}")
                    return

    def cancel(self) -> None:
        """Kill the running command, if any."""
        if self._proc is not None:
            self.backend.kill_process(self._proc)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def _workspace_path(self, path: str):
        if not (path or "").strip():
            return ToolResult(success=False, output="", error="path is required")
        try:
            return self.backend.workspace_path(path)
        except ValueError as e:
            return ToolResult(success=False, output="", error=str(e))

    async def _gate(self, kind: OperationKind, rel: str, data: Dict[str, Any],
                    decision: Optional[Decision] = None) -> None:
        """Run the approval decision for a path operation. Returns only if it may proceed."""
        if decision is None:
            decision = self.gate.decide(kind, rel)

        if decision == Decision.AUTO_DENY:
            await self._deny_excluded(rel, data)
        if decision == Decision.AUTO_APPROVE:
            await self._say(SayType.TOOL, rel, data={**data, "decision": "auto_approved"})
            self.token.raise_if_cancelled()
            return

        response = await self._ask(AskType.TOOL, rel, data=data)
        self.token.raise_if_cancelled()
        # Only read/list answers are remembered per path
        if kind in PATH_DECISION_KINDS and response.kind != ResponseKind.TEXT:
            self.gate.record_decision(response.path or rel, response.kind == ResponseKind.YES)
        await self._handle_denial(response, "operation")

    async def _deny_excluded(self, rel: str, data: Dict[str, Any]) -> None:
        await self._say(SayType.TOOL, rel, data={**data, "decision": "auto_denied"})
        self.token.raise_if_cancelled()
        raise ToolRejected(
            f"Access to {rel} was denied: the user has excluded this path.",
            auto=True,
        )

    async def _handle_denial(self, response: AskResponse, what: str) -> None:
        if response.kind == ResponseKind.YES:
            return
        if response.kind == ResponseKind.TEXT:
            await self._say(SayType.USER_FEEDBACK, response.text or "", images=response.images)
            self.token.raise_if_cancelled()
            raise ToolRejected(
                f"The user denied this {what}.",
                feedback=response.text,
                images=response.images,
            )
        raise ToolRejected(f"The user denied this {what}.")
