"""Tests for AgentLoop: turns, budgets, failures, asks, aborts and resumption."""

import asyncio
import io
import json

import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from agent.approval import OperationKind
from agent.events import AskType, EventType, SayType, TaskAborted
from agent.loop import AgentLoop, LoopState
from agent.prompts import NO_TOOLS_USED_NUDGE
from agent.transcript import get_api_metrics, reconcile
from bedrock_service import BedrockError, BedrockService
from conftest import SONNET, BlockingService, FakeService, no, reply, text_reply, tool_call, yes


def completion(result="Done."):
    return tool_call("attempt_completion", result=result)


def _stream(raw):
    return StreamingBody(io.BytesIO(raw), len(raw))


async def answer(loop, response, expect=None):
    """Wait for the loop's next ask, check its subtype and answer it."""
    event = await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
    assert event is not None, "run ended without asking"
    if expect is not None:
        assert event.subtype == expect
    loop.handle_response(response)
    return event


async def finish(loop):
    await asyncio.wait_for(asyncio.gather(loop.run_task, return_exceptions=True), timeout=5)


def subtypes(events, kind=EventType.SAY):
    return [e.subtype for e in events if e.type == kind]


def last_user_content(call):
    message = call["messages"][-1]
    assert message["role"] == "user"
    return message["content"]


class TestCompletion:
    def test_completion_command_runs_before_result_is_offered(self, make_loop):
        service = FakeService([tool_call("attempt_completion", result="Try it.", command="echo demo")])

        async def scenario():
            loop = make_loop(service, toggles={OperationKind.EXECUTE: True})
            loop.start("t")
            for _ in range(500):
                event = await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
                if event is not None and event.subtype == AskType.COMPLETION_RESULT:
                    loop.handle_response(yes())
                    break
                # The running command keeps a command_output ask open
                await asyncio.sleep(0.01)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())

        assert loop.state == LoopState.COMPLETED
        chunks = [e.text for e in loop.events if e.is_(SayType.COMMAND_OUTPUT) and e.partial]
        assert chunks == ["demo\n"]
        result = next(e for e in loop.events if e.is_(SayType.COMPLETION_RESULT))
        assert result.data["command"] == "echo demo"
        assert len(service.calls) == 1

    def test_task_runs_to_accepted_completion(self, make_loop, store):
        service = FakeService([completion("All fixed.")])

        async def scenario():
            loop = make_loop(service)
            loop.start("fix the bug")
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())

        assert loop.state == LoopState.COMPLETED
        assert subtypes(loop.events) == [
            SayType.TASK, SayType.API_REQ_STARTED, SayType.API_REQ_FINISHED, SayType.COMPLETION_RESULT,
        ]
        assert loop.events[-1].is_(AskType.COMPLETION_RESULT)
        assert loop.completion_feedback is None

        first_user = service.calls[0]["messages"][0]
        assert first_user["content"][0]["text"] == "<task>\nfix the bug\n</task>"
        assert service.calls[0]["tools"]

        loaded = store.load(loop.task.id)
        assert loaded.history_item.task == "fix the bug"
        assert loaded.history_item.tokens_in == 100
        assert [e.to_dict() for e in loaded.events] == [e.to_dict() for e in loop.events]
        assert loaded.conversation[-1]["role"] == "assistant"

    def test_events_reach_callback_in_order(self, make_session, backend):
        service = FakeService([completion()])
        received = []

        async def on_event(event):
            received.append(event)

        async def scenario():
            loop = AgentLoop(make_session(), service, backend, on_event=on_event)
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert received == loop.events

    def test_timestamps_strictly_increase(self, make_loop):
        service = FakeService([
            tool_call("read_file", path="README.md"),
            tool_call("list_files_top_level", path="."),
            completion(),
        ])

        async def scenario():
            loop = make_loop(service)
            loop.start("look around")
            await answer(loop, yes())
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        stamps = [e.ts for e in loop.events]
        assert all(b > a for a, b in zip(stamps, stamps[1:]))

    def test_text_answer_to_completion_is_kept_as_feedback(self, make_loop):
        service = FakeService([completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, reply("now add tests"), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert loop.state == LoopState.COMPLETED
        assert loop.completion_feedback.text == "now add tests"
        assert loop.events[-1].is_(SayType.USER_FEEDBACK)

    def test_metrics_accumulate_cost(self, make_loop):
        service = FakeService([tool_call("read_file", path="README.md"), completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        metrics = get_api_metrics(loop.events)
        assert metrics.tokens_in == 200
        assert metrics.tokens_out == 100
        # Sonnet: $3/M in, $15/M out
        assert metrics.total_cost == pytest.approx(2 * (100 * 3 + 50 * 15) / 1_000_000)
        assert loop.task.metrics.total_cost == pytest.approx(metrics.total_cost)


class TestRequestBudget:
    def _script(self):
        return [tool_call("read_file", path="README.md") for _ in range(3)] + [completion()]

    def test_limit_asks_and_proceeds_on_yes(self, make_loop):
        service = FakeService(self._script())

        async def scenario():
            loop = make_loop(service, max_requests=3)
            loop.start("t")
            limit = await answer(loop, yes(), expect=AskType.REQUEST_LIMIT_REACHED)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop, limit

        loop, limit = asyncio.run(scenario())
        assert limit.data["max_requests"] == 3
        assert len(service.calls) == 4
        assert loop.request_count == 4
        assert loop.cycle_request_count == 1
        assert loop.state == LoopState.COMPLETED

    def test_limit_declined_aborts(self, make_loop):
        service = FakeService(self._script())

        async def scenario():
            loop = make_loop(service, max_requests=3)
            loop.start("t")
            await answer(loop, no(), expect=AskType.REQUEST_LIMIT_REACHED)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert len(service.calls) == 3
        assert loop.state == LoopState.ABORTED

    def test_limit_rejects_text_answers(self, make_loop):
        service = FakeService(self._script())

        async def scenario():
            loop = make_loop(service, max_requests=3)
            loop.start("t")
            await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            with pytest.raises(ValueError):
                loop.handle_response(reply("keep going"))
            loop.abort()
            await finish(loop)

        asyncio.run(scenario())


class TestModelFailures:
    def test_retry_after_failure(self, make_loop):
        service = FakeService([BedrockError("Throttled"), completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            failed = await answer(loop, yes(), expect=AskType.API_REQ_FAILED)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop, failed

        loop, failed = asyncio.run(scenario())
        assert failed.text == "Throttled"
        assert SayType.API_REQ_RETRIED in subtypes(loop.events)
        assert loop.request_count == 1

        rows = [e for e in reconcile(loop.events) if e.is_(SayType.API_REQ_STARTED)]
        assert len(rows) == 1
        assert rows[0].data["attempts"] == 2
        assert not any(e.is_(AskType.API_REQ_FAILED) for e in reconcile(loop.events))

    def test_malformed_model_response_asks_to_retry(self, make_loop):
        service = BedrockService(model_id=SONNET, region="us-east-1")
        good = {
            "content": [{"type": "tool_use", "id": "toolu_1", "name": "attempt_completion",
                         "input": {"result": "Done."}}],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 10, "output_tokens": 5},
        }

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            failed = await answer(loop, yes(), expect=AskType.API_REQ_FAILED)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop, failed

        with Stubber(service.client) as stubber:
            stubber.add_response("invoke_model", {"body": _stream(b"<html>gateway error</html>"),
                                                  "contentType": "text/html"})
            stubber.add_response("invoke_model", {"body": _stream(json.dumps(good).encode("utf-8")),
                                                  "contentType": "application/json"})
            loop, failed = asyncio.run(scenario())

        assert "Malformed Bedrock response" in failed.text
        assert loop.state == LoopState.COMPLETED

    def test_declined_retry_aborts(self, make_loop):
        service = FakeService([BedrockError("Throttled")])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, no(), expect=AskType.API_REQ_FAILED)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert loop.state == LoopState.ABORTED
        assert len(service.calls) == 1


class TestToolTurns:
    def test_rejected_write_feeds_feedback_back(self, make_loop, workspace):
        service = FakeService([
            tool_call("write_to_file", path="notes.txt", content="hi\n"),
            completion(),
        ])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, reply("call it NOTES.md"), expect=AskType.TOOL)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop

        asyncio.run(scenario())

        assert not (workspace / "notes.txt").exists()
        result = last_user_content(service.calls[1])[0]
        assert result["type"] == "tool_result"
        assert result["is_error"] is True
        assert "<feedback>\ncall it NOTES.md\n</feedback>" in result["content"]

    def test_tool_result_reaches_the_model(self, make_loop):
        service = FakeService([tool_call("read_file", path="src/main.py"), completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)

        asyncio.run(scenario())
        result = last_user_content(service.calls[1])[0]
        assert result["content"] == "print('hello')\n"
        assert "is_error" not in result

    def test_turn_without_tools_is_nudged(self, make_loop):
        service = FakeService([text_reply("Let me think."), completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert any(e.is_(SayType.TEXT) and e.text == "Let me think." for e in loop.events)
        assert last_user_content(service.calls[1]) == [{"type": "text", "text": NO_TOOLS_USED_NUDGE}]

    def test_followup_answer_is_wrapped(self, make_loop):
        service = FakeService([
            tool_call("ask_followup_question", question="Which file?"),
            completion(),
        ])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            question = await answer(loop, reply("main.py"), expect=AskType.FOLLOWUP)
            await answer(loop, yes())
            await finish(loop)
            return question

        question = asyncio.run(scenario())
        assert question.text == "Which file?"
        result = last_user_content(service.calls[1])[0]
        assert result["content"] == "<answer>\nmain.py\n</answer>"

    def test_followup_rejects_yes(self, make_loop):
        service = FakeService([tool_call("ask_followup_question", question="?")])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            with pytest.raises(ValueError):
                loop.handle_response(yes())
            loop.abort()
            await finish(loop)

        asyncio.run(scenario())

    def test_unknown_tool_is_reported(self, make_loop):
        service = FakeService([tool_call("format_disk"), completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert any(e.is_(SayType.ERROR) for e in loop.events)
        assert last_user_content(service.calls[1])[0]["is_error"] is True

    def test_custom_instructions_reach_system_prompt(self, make_loop):
        service = FakeService([completion()])

        async def scenario():
            loop = make_loop(service, custom_instructions="Always answer in French.")
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)

        asyncio.run(scenario())
        prompt = service.calls[0]["system_prompt"]
        assert "<user_custom_instructions>" in prompt
        assert "Always answer in French." in prompt

    def test_handle_response_without_pending_ask(self, make_loop):
        async def scenario():
            loop = make_loop(FakeService())
            with pytest.raises(ValueError):
                loop.handle_response(yes())

        asyncio.run(scenario())


class TestAbort:
    def test_abort_while_awaiting_approval(self, make_loop, store, workspace):
        service = FakeService([tool_call("write_to_file", path="x.txt", content="x")])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            persisted = len(store.load(loop.task.id).events)
            loop.abort()
            await finish(loop)
            return loop, persisted

        loop, persisted = asyncio.run(scenario())
        assert loop.state == LoopState.ABORTED
        assert loop.pending_ask is None
        assert not (workspace / "x.txt").exists()
        assert len(store.load(loop.task.id).events) == persisted
        with pytest.raises(ValueError):
            loop.handle_response(yes())

    def test_abort_during_model_call_discards_result(self, make_loop, store):
        service = BlockingService([completion()])

        async def scenario():
            loop = make_loop(service)
            loop.start("t")
            entered = await asyncio.to_thread(service.entered.wait, 5)
            assert entered
            loop.abort()
            service.release.set()
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())
        assert loop.state == LoopState.ABORTED
        assert not any(e.is_(SayType.API_REQ_FINISHED) for e in loop.events)
        persisted = store.load(loop.task.id).events
        assert persisted[-1].is_(SayType.API_REQ_STARTED)

    def test_ask_after_abort_raises(self, make_loop):

        async def scenario():
            loop = make_loop(FakeService())
            loop.abort()
            with pytest.raises(TaskAborted):
                await loop.ask(AskType.FOLLOWUP, "?")

        asyncio.run(scenario())


class TestResume:
    def _interrupted_task(self, make_loop, store):
        """Run a task up to a pending write approval, then abort it."""
        service = FakeService([tool_call("write_to_file", path="a.txt", content="a")])

        async def scenario():
            loop = make_loop(service)
            loop.start("write a")
            await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            loop.abort()
            await finish(loop)
            return loop.task.id

        task_id = asyncio.run(scenario())
        return store.load(task_id)

    def test_resume_answers_dangling_tool_use_and_adds_note(self, make_loop, store):
        loaded = self._interrupted_task(make_loop, store)
        tool_use_id = loaded.conversation[-1]["content"][0]["id"]
        service = FakeService([completion()])

        async def scenario():
            loop = make_loop(service, history=loaded)
            loop.resume()
            await answer(loop, reply("carry on"), expect=AskType.RESUME_TASK)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop

        loop = asyncio.run(scenario())

        assert loop.task.id == loaded.history_item.id
        content = last_user_content(service.calls[0])
        assert content[0]["type"] == "tool_result"
        assert content[0]["tool_use_id"] == tool_use_id
        assert "interrupted" in content[0]["content"]
        note = content[1]["text"]
        assert note.startswith("[TASK RESUMPTION]")
        assert "<user_message>\ncarry on\n</user_message>" in note
        roles = [m["role"] for m in service.calls[0]["messages"]]
        assert roles == ["user", "assistant", "user"]

        history = store.get_history_item(loop.task.id)
        assert history.task == "write a"
        assert history.tokens_in == 200

    def test_resume_drops_unfinished_request(self, make_loop, store):
        service = BlockingService([completion()])

        async def run_first():
            loop = make_loop(service)
            loop.start("t")
            await asyncio.to_thread(service.entered.wait, 5)
            loop.abort()
            service.release.set()
            await finish(loop)
            return loop.task.id

        task_id = asyncio.run(run_first())
        loaded = store.load(task_id)
        assert loaded.events[-1].is_(SayType.API_REQ_STARTED)

        async def resume():
            loop = make_loop(FakeService([completion()]), history=loaded)
            loop.resume()
            await answer(loop, yes(), expect=AskType.RESUME_TASK)
            await answer(loop, yes(), expect=AskType.COMPLETION_RESULT)
            await finish(loop)
            return loop

        loop = asyncio.run(resume())
        starts = [e for e in loop.events if e.is_(SayType.API_REQ_STARTED)]
        assert len(starts) == 1
        # The reopened user turn still carries the original task
        assert loop.conversation[0]["content"][0]["text"] == "<task>\nt\n</task>"

    def test_completed_task_resumes_with_completed_prompt(self, make_loop, store):
        async def run_first():
            loop = make_loop(FakeService([completion()]))
            loop.start("t")
            await answer(loop, yes())
            await finish(loop)
            return loop.task.id

        loaded = store.load(asyncio.run(run_first()))

        async def resume():
            loop = make_loop(FakeService(), history=loaded)
            loop.resume()
            event = await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            loop.abort()
            await finish(loop)
            return event

        event = asyncio.run(resume())
        assert event.subtype == AskType.RESUME_COMPLETED_TASK

    def test_trailing_resume_asks_are_trimmed(self, make_loop, store):
        loaded = self._interrupted_task(make_loop, store)

        async def resume_and_abort():
            loop = make_loop(FakeService(), history=loaded)
            loop.resume()
            await asyncio.wait_for(loop.wait_for_ask(), timeout=5)
            loop.abort()
            await finish(loop)
            return loop.task.id

        task_id = asyncio.run(resume_and_abort())
        reloaded = store.load(task_id)
        assert reloaded.events[-1].is_(AskType.RESUME_TASK)

        trimmed = AgentLoop._trim_for_resume(reloaded.events)
        assert trimmed[-1].is_(AskType.TOOL)
