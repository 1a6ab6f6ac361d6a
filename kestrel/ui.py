"""The agent's event sink and confirmer.

The agent loop reports what happens through an AgentIO object and asks it
for confirmations.  It never renders anything itself.
"""

import json
import queue
import sys
import threading

from rich.prompt import Confirm

from . import fmt

MAX_ARG_LOG = 1000
MAX_PREVIEW = 200


class AgentIO:
    """No-op base; subclasses override what they care about."""

    def user_message(self, text: str) -> None:
        pass

    def thinking_start(self) -> None:
        pass

    def text_delta(self, text: str) -> None:
        pass

    def text_done(self, text: str) -> None:
        pass

    def tool_start(self, call_id: str, name: str, params: dict) -> None:
        pass

    def tool_done(self, call_id: str, name: str, content: str, is_error: bool, elapsed: float) -> None:
        pass

    def confirm(self, name: str, params: dict, level) -> bool:
        return False

    def system_message(self, msg: str) -> None:
        pass

    def error(self, msg: str) -> None:
        pass

    def token_update(self, prompt_tokens: int, total_tokens: int, context_window: int) -> None:
        pass


class _PendingConfirm:
    def __init__(self, name, params, level):
        self.args = (name, params, level)
        self.answer = False
        self.done = threading.Event()


def _preview(content: str) -> str:
    first = content.strip().splitlines()[0] if content.strip() else ""
    if len(first) > MAX_PREVIEW:
        first = first[:MAX_PREVIEW] + "..."
    return first


class ConsoleIO(AgentIO):
    """Streams assistant text to stdout and everything else to the Rich stderr console."""

    def __init__(self, *, verbose: bool = True, out=None):
        self.verbose = verbose
        self.out = out or sys.stdout
        self._status = None
        self._open_line = False
        self._pending: queue.Queue = queue.Queue()

    def _stop_spinner(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def thinking_start(self) -> None:
        if self.verbose and self._status is None:
            self._status = fmt.thinking_spinner()
            self._status.start()

    def text_delta(self, text: str) -> None:
        self._stop_spinner()
        self.out.write(text)
        self.out.flush()
        self._open_line = not text.endswith("\n")

    def text_done(self, text: str) -> None:
        self._stop_spinner()
        if self._open_line:
            self.out.write("\n")
            self.out.flush()
            self._open_line = False

    def tool_start(self, call_id, name, params) -> None:
        self._stop_spinner()
        if self.verbose:
            args = json.dumps(params, indent=2, ensure_ascii=False)
            if len(args) > MAX_ARG_LOG:
                args = args[:MAX_ARG_LOG] + "\n..."
            fmt.tool_call(name, args)

    def tool_done(self, call_id, name, content, is_error, elapsed) -> None:
        if is_error:
            fmt.tool_error(name, _preview(content))
        elif self.verbose:
            fmt.tool_result(name, elapsed, _preview(content))

    def confirm(self, name, params, level) -> bool:
        """Ask the user; from a worker thread, wait for serve_prompts() to ask.

        Only the main thread receives Ctrl-C, so prompts raised while a turn
        runs in the background are answered there.
        """
        if threading.current_thread() is threading.main_thread():
            return self._ask(name, params, level)
        request = _PendingConfirm(name, params, level)
        self._pending.put(request)
        request.done.wait()
        return request.answer

    def serve_prompts(self, timeout: float) -> None:
        """Answer one queued confirmation, waiting up to *timeout* seconds for it."""
        try:
            request = self._pending.get(timeout=timeout)
        except queue.Empty:
            return
        try:
            request.answer = self._ask(*request.args)
        finally:
            request.done.set()

    def _ask(self, name, params, level) -> bool:
        self._stop_spinner()
        level_name = getattr(level, "name", str(level)).lower()
        if name == "bash":
            detail = params.get("command", "")
        else:
            detail = json.dumps(params, indent=2, ensure_ascii=False)[:MAX_ARG_LOG]
        fmt.confirm_header(name, level_name, detail)
        try:
            return Confirm.ask("  Allow?", default=False, console=fmt.console())
        except EOFError:
            return False

    def system_message(self, msg: str) -> None:
        self._stop_spinner()
        if msg.startswith("warning:"):
            fmt.warning(msg[len("warning:"):].strip())
        elif msg.startswith("Retrying"):
            fmt.retrying(msg)
        else:
            fmt.system(msg)

    def error(self, msg: str) -> None:
        self._stop_spinner()
        fmt.error(msg)

    def token_update(self, prompt_tokens, total_tokens, context_window) -> None:
        if self.verbose:
            fmt.context_stats(prompt_tokens, total_tokens, context_window)
