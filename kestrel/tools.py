"""Tool contract, registry and the permission-gated executor."""

import enum
import logging
import threading
import time
from dataclasses import dataclass

from .cancel import CancelScope
from .messages import ToolCallRequest
from .permission import Decision, PermissionPolicy

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 100 * 1024
TRUNCATION_MARKER = "\n[Truncated: output too large]"
DEFAULT_TOOL_TIMEOUT = 120
MAX_TOOL_TIMEOUT = 600
_POLL_INTERVAL = 0.05


class PermissionLevel(enum.IntEnum):
    READ = 0
    WRITE = 1
    EXECUTE = 2
    DANGEROUS = 3


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolOutcome:
    """What the executor hands back to the agent loop for one call."""

    content: str
    is_error: bool = False
    user_cancelled: bool = False
    decision: str | None = None


class Tool:
    """A capability the model can invoke.

    Subclasses set the class attributes and implement execute().  execute()
    should poll ``scope.cancelled`` during long work and return an error
    ToolResult rather than raise.
    """

    name = ""
    description = ""
    parameters: dict = {"type": "object", "properties": {}}
    permission_level = PermissionLevel.READ

    def execute(self, scope: CancelScope, params: dict) -> ToolResult:
        raise NotImplementedError

    def schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolRegistry:
    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("tool has no name")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()]


def truncate_output(content: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    data = content.encode("utf-8")
    if len(data) <= limit:
        return content
    return data[:limit].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


def _cancelled(call: ToolCallRequest, scope: CancelScope) -> ToolOutcome:
    # Only a cancelled turn stops the batch; a single cancelled tool is
    # reported to the model like any other failure.
    return ToolOutcome(
        f"{call.name} was cancelled by the user",
        is_error=True,
        user_cancelled=scope.cancelled,
    )


class ToolExecutor:
    """Runs tool calls one at a time behind the permission policy.

    *confirmer* is any object with ``confirm(name, params, level) -> bool``;
    without one, calls that need confirmation are refused.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: PermissionPolicy,
        *,
        confirmer=None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ):
        self.registry = registry
        self.policy = policy
        self.confirmer = confirmer
        self.timeout = max(1, min(timeout, MAX_TOOL_TIMEOUT))
        self.max_output_bytes = max_output_bytes
        self._current: CancelScope | None = None
        self._lock = threading.Lock()

    def cancel_current(self) -> bool:
        """Cancel the tool that is running right now, if any."""
        with self._lock:
            scope = self._current
        if scope is None:
            return False
        scope.cancel()
        return True

    def execute(self, call: ToolCallRequest, scope: CancelScope) -> ToolOutcome:
        tool = self.registry.get(call.name)
        if tool is None:
            return ToolOutcome(f"unknown tool: {call.name}", is_error=True)
        if call.input_error:
            return ToolOutcome(f"error: {call.input_error}", is_error=True)

        decision, reason = self.policy.check_with_reason(call.name, call.input)
        if decision is Decision.DENY:
            logger.info("denied %s: %s", call.name, reason)
            return ToolOutcome(
                f"Blocked: tool execution denied by policy ({reason})",
                is_error=True,
                decision=decision.value,
            )
        if decision is Decision.NEED_CONFIRMATION:
            if self.confirmer is None:
                return ToolOutcome(
                    f"Blocked: {call.name} requires confirmation and no confirmer is available",
                    is_error=True,
                    decision=decision.value,
                )
            if not self.confirmer.confirm(call.name, call.input, tool.permission_level):
                return ToolOutcome(
                    "User denied this tool call.",
                    is_error=True,
                    user_cancelled=True,
                    decision="rejected",
                )
            self.policy.remember_approval(call.name, call.input)

        if scope.cancelled:
            return ToolOutcome("cancelled", is_error=True, user_cancelled=True)

        tool_scope = scope.child()
        with self._lock:
            self._current = tool_scope
        try:
            outcome = self._run(tool, call, scope, tool_scope)
        finally:
            with self._lock:
                self._current = None
        return ToolOutcome(
            truncate_output(outcome.content, self.max_output_bytes),
            outcome.is_error,
            outcome.user_cancelled,
            decision.value,
        )

    def _run(
        self, tool: Tool, call: ToolCallRequest, scope: CancelScope, tool_scope: CancelScope
    ) -> ToolOutcome:
        box: dict = {}
        finished = threading.Event()

        def target():
            try:
                box["result"] = tool.execute(tool_scope, call.input)
            except Exception as e:
                logger.debug("tool %s raised", call.name, exc_info=True)
                box["result"] = ToolResult(f"error: {e}", is_error=True)
            finally:
                finished.set()

        worker = threading.Thread(target=target, name=f"tool-{call.name}", daemon=True)
        started = time.monotonic()
        worker.start()
        deadline = started + self.timeout
        while not finished.wait(_POLL_INTERVAL):
            if tool_scope.cancelled:
                return _cancelled(call, scope)
            if time.monotonic() >= deadline:
                tool_scope.cancel()
                logger.warning("tool %s timed out after %ss", call.name, self.timeout)
                return ToolOutcome(
                    f"error: {call.name} timed out after {self.timeout:g}s",
                    is_error=True,
                )

        # A tool that noticed the cancel may return before the next poll.
        if tool_scope.cancelled:
            return _cancelled(call, scope)
        result = box.get("result") or ToolResult("(no output)")
        logger.debug("tool %s finished in %.2fs", call.name, time.monotonic() - started)
        return ToolOutcome(result.content, result.is_error)
