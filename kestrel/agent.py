"""The agent loop: drive one user turn through model calls and tool executions."""

import json
import logging
import time
from dataclasses import dataclass, field

from .cancel import Cancelled, CancelScope
from .context import Compactor, TokenBudget, compact_history, estimate_text_tokens
from .doomloop import STOP_MESSAGE, WARN_MESSAGE, Action, DoomLoopDetector
from .messages import ROLE_ASSISTANT, ROLE_USER, Message, TextBlock, ToolResultBlock
from .provider import ChatRequest, Done, StreamError, TextDelta, ToolCallDone
from .report import ProviderError
from .retry import MAX_RETRIES, is_retryable, retry_delay
from .ui import AgentIO

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MAX_OUTPUT_TOKENS = 8192

INTERRUPTED_MESSAGE = "Interrupted."
CANCELLED_PLACEHOLDER = (
    "[User cancelled this turn — tool was not executed. Do not retry unless the user asks.]"
)
NOT_EXECUTED_PLACEHOLDER = "[Tool was not executed: the turn was stopped before it ran.]"

STOP_COMPLETE = "complete"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_DOOM_LOOP = "doom_loop"
STOP_INTERRUPTED = "interrupted"


@dataclass
class TurnResult:
    stop_reason: str
    iterations: int
    tool_calls: int
    text: str = ""


@dataclass
class _Reply:
    text: str = ""
    calls: list = field(default_factory=list)
    cancelled: bool = False


class Agent:
    """Runs user turns against a provider, a tool executor and a session.

    Everything the user sees goes through *io*.  The session is only ever
    mutated from the thread running the turn.
    """

    def __init__(
        self,
        provider,
        executor,
        session,
        *,
        io: AgentIO | None = None,
        store=None,
        compactor: Compactor | None = None,
        system_prompt: str = "",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        context_window: int | None = None,
        model: str | None = None,
        report=None,
    ):
        self.provider = provider
        self.executor = executor
        self.session = session
        self.io = io or AgentIO()
        self.store = store
        self.compactor = compactor
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.max_output_tokens = max_output_tokens
        self.model = model
        self.report = report
        self._context_window = context_window
        self.doom = DoomLoopDetector()
        self.session_scope = CancelScope()
        self._turn_scope: CancelScope | None = None
        self._iteration = 0

    # -- Public API ----------------------------------------------------------------

    @property
    def context_window(self) -> int:
        return self._context_window or self.provider.context_window()

    def budget(self) -> TokenBudget:
        overhead = self.system_prompt + json.dumps(self.executor.registry.schemas())
        return TokenBudget(self.context_window, estimate_text_tokens(overhead))

    def submit(self, text: str) -> TurnResult | None:
        """Add a user message and run the turn; the session is saved afterwards."""
        self.io.user_message(text)
        self.session.add(Message.user(text))
        try:
            return self.run_turn()
        except ProviderError as e:
            self.io.error(str(e))
            return None
        finally:
            self.save()

    def cancel_turn(self) -> None:
        scope = self._turn_scope
        if scope is not None:
            scope.cancel()

    def cancel_tool(self) -> bool:
        return self.executor.cancel_current()

    def save(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.session)
        except Exception as e:
            logger.warning("failed to save session %s: %s", self.session.id, e)
            self.io.error(f"failed to save session: {e}")

    def clear(self) -> None:
        dropped = len(self.session.messages)
        self.session.clear()
        self.doom.reset()
        self.io.system_message(f"context cleared ({dropped} messages removed)")

    def compact_now(self) -> None:
        """Force a full compaction regardless of the current token count."""
        if self.compactor is None or self.compactor.summarizer is None:
            self.io.error("compaction is not available: no summarizer configured")
            return
        result = self.compactor.summarize(self.session, self.budget(), self.session_scope)
        self._report_compaction(result)

    # -- The loop ------------------------------------------------------------------

    def run_turn(self) -> TurnResult:
        """Run the loop for the user message that is already at the end of history."""
        scope = self.session_scope.child()
        self._turn_scope = scope
        self.doom.reset()
        iterations = 0
        executed = 0
        try:
            while True:
                if scope.cancelled:
                    return self._interrupted(iterations, executed)
                iterations += 1
                self._iteration = iterations
                logger.debug("turn iteration %d", iterations)

                self._auto_compact(scope)
                reply = self._call_provider(scope)

                if reply.cancelled:
                    if reply.text:
                        self.session.add(Message.assistant(reply.text))
                    return self._interrupted(iterations, executed)

                content = [TextBlock(reply.text)] if reply.text else []
                content.extend(c.to_block() for c in reply.calls)
                if content:
                    self.session.add(Message(ROLE_ASSISTANT, content))

                if not reply.calls:
                    return TurnResult(STOP_COMPLETE, iterations, executed, reply.text)

                if self.max_iterations and iterations >= self.max_iterations:
                    self._pair_unexecuted(reply.calls, NOT_EXECUTED_PLACEHOLDER)
                    self.io.system_message(
                        f"warning: reached max iterations ({self.max_iterations}), stopping"
                    )
                    return TurnResult(STOP_MAX_ITERATIONS, iterations, executed, reply.text)

                action = self.doom.check(reply.calls)
                if action is not Action.NONE and self.report is not None:
                    self.report.record_doom_loop(iterations, action.value, self.doom.streak)
                if action is Action.STOP:
                    self._pair_unexecuted(reply.calls, NOT_EXECUTED_PLACEHOLDER)
                    self.io.error(STOP_MESSAGE)
                    return TurnResult(STOP_DOOM_LOOP, iterations, executed, reply.text)

                results, ran, interrupted = self._execute_tools(reply.calls, scope)
                executed += ran
                if action is Action.WARN and not interrupted:
                    results.append(TextBlock(WARN_MESSAGE))
                    self.io.system_message(
                        "warning: the model is repeating the same tool calls"
                    )
                self.session.add(Message(ROLE_USER, results))

                if interrupted:
                    return self._interrupted(iterations, executed)
        finally:
            self._turn_scope = None

    def _interrupted(self, iterations: int, executed: int) -> TurnResult:
        self.io.system_message(INTERRUPTED_MESSAGE)
        return TurnResult(STOP_INTERRUPTED, iterations, executed)

    def _pair_unexecuted(self, calls, placeholder: str) -> None:
        self.session.add(
            Message(
                ROLE_USER,
                [ToolResultBlock(c.id, placeholder, is_error=True) for c in calls],
            )
        )

    def _auto_compact(self, scope: CancelScope) -> None:
        if self.compactor is None:
            return
        result = self.compactor.maybe_compact(self.session, self.budget(), scope)
        if result is not None:
            self._report_compaction(result)

    def _report_compaction(self, result) -> None:
        if result.strategy == "failed":
            self.io.error(f"Compact failed: {result.error}")
            return
        if self.report is not None:
            self.report.record_compaction(
                self._iteration, result.strategy, result.tokens_before, result.tokens_after
            )
        if result.strategy == "summarize":
            self.io.system_message(
                f"Context compacted: ~{result.tokens_before} -> ~{result.tokens_after} tokens"
            )
        else:
            self.io.system_message(
                f"Old tool output masked: ~{result.tokens_before} -> ~{result.tokens_after} tokens"
            )

    def _build_request(self) -> ChatRequest:
        return ChatRequest(
            messages=compact_history(
                self.session.messages, self.session.summary, self.budget()
            ),
            system_prompt=self.system_prompt,
            tools=self.executor.registry.schemas(),
            model=self.model,
            max_tokens=self.max_output_tokens,
        )

    def _call_provider(self, scope: CancelScope) -> _Reply:
        """One provider call, retried while nothing has been shown yet."""
        request = self._build_request()
        attempt = 0
        while True:
            self.io.thinking_start()
            started = time.monotonic()
            parts: list[str] = []
            calls = []
            usage = None
            failure: StreamError | None = None

            for event in self.provider.chat(request, scope):
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                    self.io.text_delta(event.text)
                elif isinstance(event, ToolCallDone):
                    calls.append(event.call)
                elif isinstance(event, Done):
                    usage = event.usage
                elif isinstance(event, StreamError):
                    failure = event

            text = "".join(parts)
            if text:
                self.io.text_done(text)
            elapsed = time.monotonic() - started

            if failure is None:
                if usage is not None:
                    self.session.add_usage(usage.input_tokens, usage.output_tokens)
                    self.io.token_update(
                        self.session.prompt_tokens,
                        self.session.tokens_used,
                        self.context_window,
                    )
                self._record_llm_call(elapsed, "ok", attempt)
                return _Reply(text, calls)

            if isinstance(failure.error, Cancelled) or scope.cancelled:
                return _Reply(text, cancelled=True)

            self._record_llm_call(elapsed, "error", attempt, str(failure.error))
            if (
                failure.after_content
                or attempt >= MAX_RETRIES
                or not is_retryable(failure.error)
            ):
                if text:
                    self.session.add(Message.assistant(text))
                raise ProviderError(f"provider error: {failure.error}")

            attempt += 1
            delay = retry_delay(attempt)
            logger.debug("retrying provider call after %s", failure.error)
            self.io.system_message(
                f"Retrying ({attempt}/{MAX_RETRIES}) in {delay:.1f}s... ({failure.error})"
            )
            if scope.wait(delay):
                return _Reply(cancelled=True)

    def _record_llm_call(self, elapsed, outcome, attempt, error=None) -> None:
        if self.report is not None:
            self.report.record_llm_call(
                self._iteration,
                elapsed,
                self.session.prompt_tokens,
                outcome,
                attempt=attempt,
                error=error,
            )

    def _execute_tools(self, calls, scope: CancelScope) -> tuple[list, int, bool]:
        """Run calls in order; returns (result blocks, number run, interrupted)."""
        results: list = []
        for i, call in enumerate(calls):
            if scope.cancelled:
                results.extend(
                    ToolResultBlock(c.id, CANCELLED_PLACEHOLDER, is_error=True)
                    for c in calls[i:]
                )
                return results, i, True

            self.io.tool_start(call.id, call.name, call.input)
            started = time.monotonic()
            outcome = self.executor.execute(call, scope)
            elapsed = time.monotonic() - started
            self.io.tool_done(call.id, call.name, outcome.content, outcome.is_error, elapsed)
            if self.report is not None:
                self.report.record_tool_call(
                    self._iteration,
                    call.name,
                    call.input,
                    not outcome.is_error,
                    elapsed,
                    len(outcome.content),
                    decision=outcome.decision,
                )
            results.append(ToolResultBlock(call.id, outcome.content, outcome.is_error))

            if outcome.user_cancelled:
                results.extend(
                    ToolResultBlock(c.id, CANCELLED_PLACEHOLDER, is_error=True)
                    for c in calls[i + 1 :]
                )
                return results, i + 1, True
        return results, len(calls), False
