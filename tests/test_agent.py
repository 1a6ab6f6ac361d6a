"""Tests for the agent loop: tool rounds, iteration caps, retries, doom loops, cancellation."""

import itertools
import threading

import pytest

from kestrel import agent as agent_mod
from kestrel.agent import (
    CANCELLED_PLACEHOLDER,
    INTERRUPTED_MESSAGE,
    NOT_EXECUTED_PLACEHOLDER,
    STOP_COMPLETE,
    STOP_DOOM_LOOP,
    STOP_INTERRUPTED,
    STOP_MAX_ITERATIONS,
    Agent,
)
from kestrel.cancel import Cancelled
from kestrel.context import SUMMARY_PREFIX, Compactor
from kestrel.doomloop import STOP_MESSAGE, WARN_MESSAGE
from kestrel.messages import ROLE_ASSISTANT, ROLE_USER, Message, TextBlock, ToolCallRequest, Usage
from kestrel.permission import MODE_YOLO, PermissionPolicy
from kestrel.provider import Done, StreamError, TextDelta, ToolCallDone
from kestrel.report import ReportCollector
from kestrel.session import MemoryStore, Session
from kestrel.tools import Tool, ToolExecutor, ToolRegistry, ToolResult
from kestrel.ui import AgentIO


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

_ids = itertools.count()


def _tool_call(name="echo", **params):
    return ToolCallDone(ToolCallRequest(f"call_{next(_ids)}", name, params))


def _text(text, usage=Usage(10, 2)):
    return [TextDelta(text), Done(usage)]


class ScriptedProvider:
    """Plays back one event list per call; the last one repeats forever."""

    name = "fake"

    def __init__(self, *replies, window=100_000):
        self.replies = list(replies)
        self.window = window
        self.requests = []

    def default_model(self):
        return "fake-model"

    def context_window(self):
        return self.window

    def chat(self, request, scope=None):
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return iter(reply() if callable(reply) else reply)


class RecordingIO(AgentIO):
    def __init__(self, confirm_answer=True):
        self.confirm_answer = confirm_answer
        self.system = []
        self.errors = []
        self.deltas = []
        self.tools = []

    def text_delta(self, text):
        self.deltas.append(text)

    def tool_done(self, call_id, name, content, is_error, elapsed):
        self.tools.append((name, content, is_error))

    def confirm(self, name, params, level):
        return self.confirm_answer

    def system_message(self, msg):
        self.system.append(msg)

    def error(self, msg):
        self.errors.append(msg)


class EchoTool(Tool):
    name = "echo"
    description = "Echo text."
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    def __init__(self):
        self.calls = 0

    def execute(self, scope, params):
        self.calls += 1
        return ToolResult(params.get("text", "ok"))


class CancelTurnTool(Tool):
    """Cancels the running turn, like Ctrl-C while a tool runs."""

    name = "stop_turn"

    def __init__(self):
        self.agent = None

    def execute(self, scope, params):
        self.agent.cancel_turn()
        return ToolResult("done")


class BlockingTool(Tool):
    """Runs until its scope is cancelled."""

    name = "block"

    def __init__(self):
        self.started = threading.Event()

    def execute(self, scope, params):
        self.started.set()
        while not scope.wait(0.01):
            pass
        return ToolResult("stopped")


def _agent(provider, *tools, mode=MODE_YOLO, io=None, **kw):
    io = io or RecordingIO()
    registry = ToolRegistry(tools or [EchoTool()])
    executor = ToolExecutor(registry, PermissionPolicy(mode=mode), confirmer=io)
    return Agent(provider, executor, Session.new(), io=io, **kw)


def _assert_paired(messages):
    """Every tool_use is answered by a tool_result in the next message."""
    for i, msg in enumerate(messages):
        ids = [b.id for b in msg.tool_uses()]
        if ids:
            assert i + 1 < len(messages)
            answered = [b.tool_use_id for b in messages[i + 1].tool_results()]
            assert answered == ids


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr(agent_mod, "retry_delay", lambda attempt: 0)


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------


class TestTurns:
    def test_text_only_reply_calls_provider_once(self):
        provider = ScriptedProvider(_text("hello"))
        a = _agent(provider)
        result = a.submit("hi")
        assert result.stop_reason == STOP_COMPLETE
        assert result.iterations == 1
        assert result.text == "hello"
        assert len(provider.requests) == 1
        assert [m.role for m in a.session.messages] == [ROLE_USER, ROLE_ASSISTANT]
        assert a.session.prompt_tokens == 10
        assert a.session.tokens_used == 12

    def test_tool_round_trip(self):
        tool = EchoTool()
        provider = ScriptedProvider(
            [TextDelta("let me check"), _tool_call(text="pong"), Done()],
            _text("all done"),
        )
        a = _agent(provider, tool)
        result = a.submit("ping")
        assert result.stop_reason == STOP_COMPLETE
        assert result.iterations == 2
        assert result.tool_calls == 1
        msgs = a.session.messages
        assert msgs[1].text() == "let me check"
        assert msgs[2].tool_results()[0].content == "pong"
        assert msgs[3].text() == "all done"
        _assert_paired(msgs)
        # the second request carries the tool result
        assert provider.requests[1].messages[-1].tool_results()

    def test_tools_in_request(self):
        provider = ScriptedProvider(_text("x"))
        _agent(provider, system_prompt="be nice").submit("hi")
        request = provider.requests[0]
        assert request.system_prompt == "be nice"
        assert [t["name"] for t in request.tools] == ["echo"]

    def test_calls_run_in_order(self):
        tool = EchoTool()
        provider = ScriptedProvider(
            [_tool_call(text="one"), _tool_call(text="two"), Done()], _text("ok")
        )
        a = _agent(provider, tool)
        a.submit("go")
        assert [r.content for r in a.session.messages[2].tool_results()] == ["one", "two"]

    def test_unknown_tool_reported_to_model(self):
        provider = ScriptedProvider([_tool_call("missing"), Done()], _text("sorry"))
        a = _agent(provider)
        assert a.submit("go").stop_reason == STOP_COMPLETE
        result = a.session.messages[2].tool_results()[0]
        assert result.is_error
        assert result.content == "unknown tool: missing"

    def test_empty_reply_not_stored(self):
        provider = ScriptedProvider([Done()])
        a = _agent(provider)
        assert a.submit("hi").stop_reason == STOP_COMPLETE
        assert len(a.session.messages) == 1

    def test_session_saved(self):
        store = MemoryStore()
        a = _agent(ScriptedProvider(_text("saved")), store=store)
        a.submit("hi")
        assert len(store.load(a.session.id).messages) == 2

    def test_report_records_calls(self):
        report = ReportCollector()
        provider = ScriptedProvider([_tool_call(text="a"), Done()], _text("ok"))
        _agent(provider, report=report).submit("go")
        assert report.llm_calls == 2
        assert report.tool_stats["echo"]["succeeded"] == 1


# ---------------------------------------------------------------------------
# Iteration cap and doom loop
# ---------------------------------------------------------------------------


class TestLimits:
    def test_max_iterations(self):
        counter = itertools.count()
        provider = ScriptedProvider(lambda: [_tool_call(text=str(next(counter))), Done()])
        a = _agent(provider, max_iterations=3)
        result = a.submit("loop")
        assert result.stop_reason == STOP_MAX_ITERATIONS
        assert result.iterations == 3
        assert len(provider.requests) == 3
        warnings = [m for m in a.io.system if "max iterations" in m]
        assert len(warnings) == 1
        last = a.session.messages[-1].tool_results()[0]
        assert last.content == NOT_EXECUTED_PLACEHOLDER
        _assert_paired(a.session.messages)

    def test_doom_loop_warns_then_stops(self):
        tool = EchoTool()
        provider = ScriptedProvider(lambda: [_tool_call(text="same"), Done()])
        a = _agent(provider, tool, max_iterations=0)
        result = a.submit("loop")
        assert result.stop_reason == STOP_DOOM_LOOP
        assert result.iterations == 5
        assert tool.calls == 4
        assert STOP_MESSAGE in a.io.errors
        hints = [m for m in a.session.messages if TextBlock(WARN_MESSAGE) in m.content]
        assert len(hints) == 2
        # the hint travels with the tool results, after them
        assert hints[0].content[0].tool_use_id
        assert a.session.messages[-1].tool_results()[0].content == NOT_EXECUTED_PLACEHOLDER
        _assert_paired(a.session.messages)

    def test_doom_loop_reset_between_turns(self):
        provider = ScriptedProvider(
            [_tool_call(text="same"), Done()],
            [_tool_call(text="same"), Done()],
            _text("done"),
            [_tool_call(text="same"), Done()],
            _text("done"),
        )
        a = _agent(provider)
        a.submit("one")
        a.submit("two")
        assert a.doom.streak == 1
        assert not any(WARN_MESSAGE in m.text() for m in a.session.messages)


# ---------------------------------------------------------------------------
# Provider errors and retries
# ---------------------------------------------------------------------------


class TestRetries:
    def test_transient_error_retried(self):
        provider = ScriptedProvider(
            [StreamError(ConnectionError("connection refused"))], _text("recovered")
        )
        a = _agent(provider)
        result = a.submit("hi")
        assert result.stop_reason == STOP_COMPLETE
        assert len(provider.requests) == 2
        assert any(m.startswith("Retrying (1/3)") for m in a.io.system)

    def test_retries_exhausted(self):
        provider = ScriptedProvider([StreamError(ConnectionError("connection refused"))])
        a = _agent(provider)
        assert a.submit("hi") is None
        assert len(provider.requests) == 4
        assert any("provider error" in e for e in a.io.errors)

    def test_non_retryable_error(self):
        provider = ScriptedProvider([StreamError(RuntimeError("invalid api key"))])
        a = _agent(provider)
        assert a.submit("hi") is None
        assert len(provider.requests) == 1

    def test_mid_stream_error_not_retried(self):
        provider = ScriptedProvider(
            [TextDelta("partial"), StreamError(ConnectionError("reset"), after_content=True)]
        )
        a = _agent(provider)
        assert a.submit("hi") is None
        assert len(provider.requests) == 1
        assert a.session.messages[-1].text() == "partial"

    def test_session_survives_error(self):
        provider = ScriptedProvider(
            [StreamError(RuntimeError("invalid api key"))], _text("fine now")
        )
        a = _agent(provider)
        a.submit("first")
        assert a.submit("second").stop_reason == STOP_COMPLETE


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_during_tools_pairs_remaining_calls(self):
        stopper = CancelTurnTool()
        echo = EchoTool()
        provider = ScriptedProvider(
            [_tool_call("stop_turn"), _tool_call(text="never"), Done()], _text("unused")
        )
        a = _agent(provider, stopper, echo)
        stopper.agent = a
        result = a.submit("go")
        assert result.stop_reason == STOP_INTERRUPTED
        assert echo.calls == 0
        assert len(provider.requests) == 1
        results = a.session.messages[-1].tool_results()
        assert len(results) == 2
        assert results[1].content == CANCELLED_PLACEHOLDER
        assert INTERRUPTED_MESSAGE in a.io.system
        _assert_paired(a.session.messages)

    def test_cancel_during_stream_keeps_partial_text(self):
        provider = ScriptedProvider([TextDelta("half an ans"), StreamError(Cancelled(), True)])
        a = _agent(provider)
        result = a.submit("go")
        assert result.stop_reason == STOP_INTERRUPTED
        assert a.session.messages[-1].text() == "half an ans"

    def test_rejected_confirmation_interrupts_turn(self):
        echo = EchoTool()
        io = RecordingIO(confirm_answer=False)
        provider = ScriptedProvider(
            [_tool_call(text="a"), _tool_call(text="b"), Done()], _text("unused")
        )
        a = _agent(provider, echo, mode="interactive", io=io)
        result = a.submit("go")
        assert result.stop_reason == STOP_INTERRUPTED
        assert echo.calls == 0
        results = a.session.messages[-1].tool_results()
        assert results[0].content == "User denied this tool call."
        assert results[1].content == CANCELLED_PLACEHOLDER

    def test_cancel_tool_only_fails_that_call(self):
        blocker = BlockingTool()
        provider = ScriptedProvider([_tool_call("block"), Done()], _text("carried on"))
        a = _agent(provider, blocker)

        def cancel_when_started():
            blocker.started.wait(5)
            a.cancel_tool()

        threading.Thread(target=cancel_when_started).start()
        result = a.submit("go")
        assert result.stop_reason == STOP_COMPLETE
        assert len(provider.requests) == 2
        results = a.session.messages[-2].tool_results()
        assert results[0].is_error
        assert "cancelled by the user" in results[0].content
        assert a.session.messages[-1].text() == "carried on"

    def test_next_turn_runs_after_cancel(self):
        provider = ScriptedProvider([StreamError(Cancelled())], _text("back"))
        a = _agent(provider)
        assert a.submit("one").stop_reason == STOP_INTERRUPTED
        assert a.submit("two").stop_reason == STOP_COMPLETE


# ---------------------------------------------------------------------------
# Compaction inside the loop
# ---------------------------------------------------------------------------


def _history(turns):
    msgs = []
    for i in range(turns):
        msgs.append(Message.user(f"question {i}"))
        msgs.append(Message.assistant(f"answer {i}"))
    return msgs


class TestCompaction:
    def test_auto_summarize_before_call(self):
        provider = ScriptedProvider(_text("ok", Usage()), window=1000)
        compactor = Compactor(lambda prev, msgs, scope: "the gist", keep_turns=3)
        a = _agent(provider, compactor=compactor)
        a.session.messages = _history(12)
        a.session.prompt_tokens = 850
        a.submit("next")
        assert a.session.summary == "the gist"
        first = provider.requests[0].messages[0]
        assert first.text() == SUMMARY_PREFIX + "the gist"
        assert any("Context compacted" in m for m in a.io.system)

    def test_summarizer_failure_does_not_abort(self):
        def failing(prev, msgs, scope):
            raise RuntimeError("summarizer down")

        provider = ScriptedProvider(_text("ok"), window=1000)
        a = _agent(provider, compactor=Compactor(failing, keep_turns=3))
        a.session.messages = _history(12)
        a.session.prompt_tokens = 850
        assert a.submit("next").stop_reason == STOP_COMPLETE
        assert any(e.startswith("Compact failed") for e in a.io.errors)
        assert a.session.summary == ""

    def test_compact_now(self):
        a = _agent(ScriptedProvider(_text("x")), compactor=Compactor(lambda *a: "sum", keep_turns=2))
        a.session.messages = _history(5)
        a.compact_now()
        assert a.session.summary == "sum"
        assert len(a.session.messages) == 4

    def test_clear(self):
        a = _agent(ScriptedProvider(_text("x")))
        a.session.messages = _history(3)
        a.session.summary = "s"
        a.clear()
        assert a.session.messages == []
        assert a.session.summary == ""
