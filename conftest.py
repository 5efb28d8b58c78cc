"""
Shared fixtures: temporary workspaces and storage, a scripted stand-in for
BedrockService, and factories for loops and controllers.
"""

import copy
import itertools
import threading
from typing import Any, Dict, List, Optional

import pytest

from agent.approval import ApprovalGate, ApprovalPolicy
from agent.events import AskResponse, ResponseKind
from agent.loop import AgentLoop
from agent.session import TaskSession, TaskSettings
from backend import LocalBackend
from bedrock_service import GenerationResult, ToolUseBlock
from controller import TaskController
from sessions import ConversationStore, GlobalStateStore

SONNET = "us.anthropic.claude-sonnet-4-5-20250929-v1:0"

_ids = itertools.count(1)


def tool_call(name: str, text: str = "", input_tokens: int = 100, output_tokens: int = 50,
              **tool_input: Any) -> GenerationResult:
    """A model turn that invokes one tool."""
    tool_id = f"toolu_{next(_ids)}"
    blocks: List[Dict[str, Any]] = []
    if text:
        blocks.append({"type": "text", "text": text})
    blocks.append({"type": "tool_use", "id": tool_id, "name": name, "input": dict(tool_input)})
    return GenerationResult(
        content=text,
        tool_uses=[ToolUseBlock(id=tool_id, name=name, input=dict(tool_input))],
        content_blocks=blocks,
        stop_reason="tool_use",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def text_reply(text: str, input_tokens: int = 100, output_tokens: int = 50) -> GenerationResult:
    """A model turn with no tool use."""
    return GenerationResult(
        content=text,
        content_blocks=[{"type": "text", "text": text}],
        stop_reason="end_turn",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def yes(path: Optional[str] = None) -> AskResponse:
    return AskResponse(kind=ResponseKind.YES, path=path)


def no(path: Optional[str] = None) -> AskResponse:
    return AskResponse(kind=ResponseKind.NO, path=path)


def reply(text: str) -> AskResponse:
    return AskResponse(kind=ResponseKind.TEXT, text=text)


class FakeService:
    """Returns scripted GenerationResults in order; exceptions in the script are raised."""

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    def generate_response(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "system_prompt": system_prompt,
            "model_id": model_id,
            "tools": tools,
        })
        if not self.script:
            raise AssertionError("FakeService ran out of scripted responses")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class BlockingService(FakeService):
    """Holds each call until `release` is set, to simulate an in-flight request."""

    def __init__(self, script=None):
        super().__init__(script)
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate_response(self, *args, **kwargs):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().generate_response(*args, **kwargs)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "README.md").write_text("# Demo\n")
    (ws / "secrets.env").write_text("TOKEN=abc\n")
    src = ws / "src"
    src.mkdir()
    (src / "main.py").write_text("print('hello')\n")
    return ws


@pytest.fixture
def storage_dir(tmp_path):
    return str(tmp_path / "storage")


@pytest.fixture
def store(storage_dir):
    return ConversationStore(storage_dir)


@pytest.fixture
def state_store(storage_dir):
    return GlobalStateStore(storage_dir)


@pytest.fixture
def backend(workspace):
    return LocalBackend(str(workspace))


@pytest.fixture
def make_session(store, state_store, backend):
    def _make(toggles=None, max_requests=None, custom_instructions="", excluded=(), whitelisted=()):
        gate = ApprovalGate(
            ApprovalPolicy(toggles=dict(toggles or {}), excluded_files=set(excluded),
                           whitelisted_files=set(whitelisted)),
            normalize=backend.relative_path,
        )
        settings = TaskSettings(
            model_id=SONNET,
            max_requests=max_requests,
            custom_instructions=custom_instructions,
            command_timeout=30,
        )
        return TaskSession(gate=gate, settings=settings, store=store, state_store=state_store)
    return _make


@pytest.fixture
def make_loop(make_session, backend):
    """Build an AgentLoop. Call it inside the running event loop."""
    def _make(service, history=None, **session_kwargs):
        return AgentLoop(make_session(**session_kwargs), service, backend, history=history)
    return _make


@pytest.fixture
def make_controller(store, state_store, backend):
    """Build a TaskController whose service factory hands out `services` in order."""
    def _make(*services):
        queue = list(services)

        def factory(model_id):
            if not queue:
                return FakeService()
            return queue.pop(0)

        settings = TaskSettings(model_id=SONNET, command_timeout=30)
        return TaskController(store, state_store, factory, backend, settings=settings)
    return _make


def drain(queue) -> List[Any]:
    """Everything currently on an asyncio.Queue, without waiting."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
