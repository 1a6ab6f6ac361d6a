"""Provider contract and the background stream pump.

Every vendor adapter turns its streaming API into the same event sequence:
any number of TextDelta / ToolCallDone events followed by exactly one Done,
or a StreamError that ends the stream early.  The vendor stream is read on a
worker thread and handed to the caller through a bounded queue, so the
caller can stop at any time (cancellation, abandoning the generator) without
leaving the worker behind.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator

from .cancel import Cancelled, CancelScope
from .messages import ToolCallRequest, Usage

logger = logging.getLogger(__name__)

STREAM_QUEUE_SIZE = 16
_POLL_INTERVAL = 0.05


# -- Events ------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDone:
    call: ToolCallRequest


@dataclass(frozen=True)
class Done:
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class StreamError:
    error: BaseException
    after_content: bool = False

    def __str__(self) -> str:
        return str(self.error)


# -- Requests ----------------------------------------------------------------


@dataclass
class ChatRequest:
    messages: list
    system_prompt: str = ""
    tools: list = field(default_factory=list)  # [{"name", "description", "parameters"}]
    model: str | None = None
    max_tokens: int = 8192


class StreamDecoder:
    """Turns raw vendor stream items into events.

    Subclasses implement feed(); finish() is called once the vendor stream
    ends without error.
    """

    def __init__(self):
        self.content_forwarded = False
        self.done_emitted = False

    def feed(self, raw) -> list:
        raise NotImplementedError

    def finish(self) -> list:
        return []

    def _mark(self, events: list) -> list:
        for ev in events:
            if isinstance(ev, (TextDelta, ToolCallDone)):
                self.content_forwarded = True
            elif isinstance(ev, Done):
                self.done_emitted = True
        return events


def _get(obj, key, default=None):
    """Read *key* from a dict or an attribute object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _close_quietly(stream) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        logger.warning("failed to close provider stream: %s", e)


class _Closed:
    pass


_CLOSED = _Closed()


def pump_events(
    open_stream: Callable[[], object],
    decoder: StreamDecoder,
    scope: CancelScope | None = None,
    maxsize: int = STREAM_QUEUE_SIZE,
) -> Iterator:
    """Run *open_stream* on a worker thread and yield decoded events.

    The generator always ends: after Done, after a StreamError, or as soon as
    *scope* is cancelled (yielding a StreamError wrapping Cancelled).
    """
    q: queue.Queue = queue.Queue(maxsize=maxsize)
    stop = threading.Event()
    holder: dict = {}

    def put(item) -> bool:
        while not stop.is_set():
            try:
                q.put(item, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def worker():
        try:
            stream = open_stream()
            holder["stream"] = stream
            for raw in stream:
                if stop.is_set():
                    return
                for ev in decoder.feed(raw):
                    if not put(ev):
                        return
            for ev in decoder.finish():
                if not put(ev):
                    return
        except Exception as e:
            if not stop.is_set():
                logger.debug("provider stream failed: %s", e)
                put(StreamError(e, after_content=decoder.content_forwarded))
        finally:
            _close_quietly(holder.pop("stream", None))
            put(_CLOSED)

    thread = threading.Thread(target=worker, name="provider-stream", daemon=True)
    thread.start()
    try:
        while True:
            if scope is not None and scope.cancelled:
                yield StreamError(Cancelled(), after_content=decoder.content_forwarded)
                return
            try:
                item = q.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _CLOSED:
                return
            yield item
            if isinstance(item, (Done, StreamError)):
                return
    finally:
        stop.set()
        _close_quietly(holder.pop("stream", None))


class Provider:
    """Base class for vendor adapters."""

    name = "base"
    DEFAULT_MODEL = ""
    CONTEXT_WINDOW = 128_000

    def __init__(self, model: str | None = None, context_window: int | None = None):
        self.model = model or self.DEFAULT_MODEL
        self._context_window = context_window or self.CONTEXT_WINDOW

    def default_model(self) -> str:
        return self.model

    def context_window(self) -> int:
        return self._context_window

    def chat(self, request: ChatRequest, scope: CancelScope | None = None) -> Iterator:
        """Stream the model's reply to *request* as events."""
        return pump_events(
            lambda: self.open_stream(request), self.new_decoder(), scope
        )

    def open_stream(self, request: ChatRequest):
        """Start the vendor call and return an iterable of raw stream items."""
        raise NotImplementedError

    def new_decoder(self) -> StreamDecoder:
        raise NotImplementedError
