"""Vendor adapters: Anthropic Messages API and OpenAI-compatible chat completions."""

import json
import logging
import uuid

from .messages import (
    ROLE_ASSISTANT,
    ImageBlock,
    Message,
    TextBlock,
    ToolCallRequest,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from .provider import (
    ChatRequest,
    Done,
    Provider,
    StreamDecoder,
    TextDelta,
    ToolCallDone,
    _get,
)
from .report import ConfigError, ProviderError

logger = logging.getLogger(__name__)


# -- Tool-call reassembly ------------------------------------------------------


class _PendingCall:
    __slots__ = ("id", "name", "parts")

    def __init__(self):
        self.id = ""
        self.name = ""
        self.parts: list[str] = []

    def build(self) -> ToolCallRequest:
        text = "".join(self.parts).strip()
        call_id = self.id or f"call_{uuid.uuid4().hex[:12]}"
        if not text:
            return ToolCallRequest(call_id, self.name, {})
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            return ToolCallRequest(
                call_id, self.name, {}, input_error=f"invalid JSON in arguments: {e}"
            )
        if not isinstance(parsed, dict):
            return ToolCallRequest(
                call_id,
                self.name,
                {},
                input_error=f"arguments must be a JSON object, got {type(parsed).__name__}",
            )
        return ToolCallRequest(call_id, self.name, parsed)


class _ToolCallBuffer:
    """index -> pending call, remembering first-appearance order."""

    def __init__(self):
        self._calls: dict[int, _PendingCall] = {}

    def fragment(self, index: int, call_id=None, name=None, text=None) -> None:
        pending = self._calls.get(index)
        if pending is None:
            pending = self._calls[index] = _PendingCall()
        if call_id and not pending.id:
            pending.id = call_id
        if name and not pending.name:
            pending.name = name
        if text:
            pending.parts.append(text)

    def flush(self, index: int) -> list:
        pending = self._calls.pop(index, None)
        if pending is None:
            return []
        return [ToolCallDone(pending.build())]

    def flush_all(self) -> list:
        events = [ToolCallDone(p.build()) for p in self._calls.values()]
        self._calls.clear()
        return events


# -- Anthropic -----------------------------------------------------------------


class AnthropicDecoder(StreamDecoder):
    """Decodes Anthropic streaming events (message_start ... message_stop)."""

    def __init__(self):
        super().__init__()
        self._calls = _ToolCallBuffer()
        self._input_tokens = 0
        self._output_tokens = 0

    def feed(self, raw) -> list:
        kind = _get(raw, "type")
        events: list = []

        if kind == "message_start":
            usage = _get(_get(raw, "message"), "usage")
            self._input_tokens = _get(usage, "input_tokens", 0) or 0
        elif kind == "content_block_start":
            block = _get(raw, "content_block")
            if _get(block, "type") == "tool_use":
                self._calls.fragment(
                    _get(raw, "index", 0), _get(block, "id"), _get(block, "name")
                )
        elif kind == "content_block_delta":
            delta = _get(raw, "delta")
            delta_type = _get(delta, "type")
            if delta_type == "text_delta":
                text = _get(delta, "text", "")
                if text:
                    events.append(TextDelta(text))
            elif delta_type == "input_json_delta":
                self._calls.fragment(
                    _get(raw, "index", 0), text=_get(delta, "partial_json", "")
                )
        elif kind == "content_block_stop":
            events.extend(self._calls.flush(_get(raw, "index", 0)))
        elif kind == "message_delta":
            usage = _get(raw, "usage")
            self._output_tokens = _get(usage, "output_tokens", 0) or self._output_tokens
            input_tokens = _get(usage, "input_tokens", 0)
            if input_tokens:
                self._input_tokens = input_tokens
        elif kind == "message_stop":
            events.extend(self._finish_events())
        elif kind == "error":
            err = _get(raw, "error")
            raise ProviderError(_get(err, "message", None) or str(err))

        return self._mark(events)

    def finish(self) -> list:
        return self._mark(self._finish_events())

    def _finish_events(self) -> list:
        events = self._calls.flush_all()
        if not self.done_emitted:
            events.append(Done(Usage(self._input_tokens, self._output_tokens)))
        return events


def to_anthropic_messages(messages: list[Message]) -> list[dict]:
    out = []
    for msg in messages:
        blocks = []
        for b in msg.content:
            if isinstance(b, TextBlock):
                if b.text:
                    blocks.append({"type": "text", "text": b.text})
            elif isinstance(b, ToolUseBlock):
                blocks.append(
                    {"type": "tool_use", "id": b.id, "name": b.name, "input": b.input}
                )
            elif isinstance(b, ToolResultBlock):
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": b.tool_use_id,
                        "content": b.content,
                        "is_error": b.is_error,
                    }
                )
            elif isinstance(b, ImageBlock):
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": b.media_type,
                            "data": b.data,
                        },
                    }
                )
        if blocks:
            out.append({"role": msg.role, "content": blocks})
    return out


class AnthropicProvider(Provider):
    name = "anthropic"
    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    CONTEXT_WINDOW = 200_000

    def __init__(self, model=None, context_window=None, *, api_key=None, base_url=None):
        super().__init__(model, context_window)
        self.api_key = api_key
        self.base_url = base_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic

            # Retries are handled by the agent loop, which knows whether
            # content has already been shown.
            self._client = anthropic.Anthropic(
                api_key=self.api_key, base_url=self.base_url, max_retries=0
            )
        return self._client

    def open_stream(self, request: ChatRequest):
        kwargs = dict(
            model=request.model or self.model,
            max_tokens=request.max_tokens,
            messages=to_anthropic_messages(request.messages),
            stream=True,
        )
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": t["name"],
                    "description": t["description"],
                    "input_schema": t["parameters"],
                }
                for t in request.tools
            ]
        logger.debug(
            "anthropic request: model=%s messages=%d", kwargs["model"], len(kwargs["messages"])
        )
        return self._get_client().messages.create(**kwargs)

    def new_decoder(self) -> StreamDecoder:
        return AnthropicDecoder()


# -- OpenAI-compatible -----------------------------------------------------------


class OpenAIDecoder(StreamDecoder):
    """Decodes chat-completion chunks with incremental tool_calls deltas."""

    def __init__(self):
        super().__init__()
        self._calls = _ToolCallBuffer()
        self._usage = Usage()

    def feed(self, raw) -> list:
        events: list = []
        usage = _get(raw, "usage")
        if usage:
            self._usage = Usage(
                _get(usage, "prompt_tokens", 0) or 0,
                _get(usage, "completion_tokens", 0) or 0,
            )

        for choice in _get(raw, "choices") or []:
            delta = _get(choice, "delta")
            text = _get(delta, "content")
            if text:
                events.append(TextDelta(text))
            for tc in _get(delta, "tool_calls") or []:
                fn = _get(tc, "function")
                self._calls.fragment(
                    _get(tc, "index", 0) or 0,
                    _get(tc, "id"),
                    _get(fn, "name"),
                    _get(fn, "arguments"),
                )
            if _get(choice, "finish_reason"):
                events.extend(self._calls.flush_all())

        return self._mark(events)

    def finish(self) -> list:
        events = self._calls.flush_all()
        events.append(Done(self._usage))
        return self._mark(events)


def to_openai_messages(system_prompt: str, messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if msg.role == ROLE_ASSISTANT:
            entry: dict = {"role": "assistant", "content": msg.text() or None}
            calls = msg.tool_uses()
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.input)},
                    }
                    for c in calls
                ]
            out.append(entry)
            continue

        # Tool results become role=tool messages, which must directly follow
        # the assistant message; any user text comes after them.
        parts: list[dict] = []
        for b in msg.content:
            if isinstance(b, ToolResultBlock):
                out.append(
                    {"role": "tool", "tool_call_id": b.tool_use_id, "content": b.content}
                )
            elif isinstance(b, TextBlock) and b.text:
                parts.append({"type": "text", "text": b.text})
            elif isinstance(b, ImageBlock):
                parts.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{b.media_type};base64,{b.data}"},
                    }
                )
        if not parts:
            continue
        if all(p["type"] == "text" for p in parts):
            out.append({"role": "user", "content": "".join(p["text"] for p in parts)})
        else:
            out.append({"role": "user", "content": parts})
    return out


class OpenAIProvider(Provider):
    name = "openai"
    DEFAULT_MODEL = "gpt-4o"
    CONTEXT_WINDOW = 128_000

    def __init__(self, model=None, context_window=None, *, api_key=None, base_url=None):
        super().__init__(model, context_window)
        self.api_key = api_key
        self.base_url = base_url

    def _model_string(self, model: str) -> str:
        # A custom base_url means an OpenAI-compatible server; LiteLLM needs
        # the openai/ prefix to route there.
        if self.base_url and not model.startswith("openai/"):
            return f"openai/{model}"
        return model

    def open_stream(self, request: ChatRequest):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=self._model_string(request.model or self.model),
            messages=to_openai_messages(request.system_prompt, request.messages),
            max_tokens=request.max_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t["description"],
                        "parameters": t["parameters"],
                    },
                }
                for t in request.tools
            ]
            kwargs["tool_choice"] = "auto"
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        logger.debug(
            "litellm request: model=%s messages=%d", kwargs["model"], len(kwargs["messages"])
        )
        return litellm.completion(**kwargs)

    def new_decoder(self) -> StreamDecoder:
        return OpenAIDecoder()


PROVIDERS = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def make_provider(
    name: str,
    *,
    model: str | None = None,
    context_window: int | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> Provider:
    """Build a provider adapter by name."""
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ConfigError(
            f"unknown provider {name!r} (expected one of: {', '.join(PROVIDERS)})"
        )
    return cls(model, context_window, api_key=api_key, base_url=base_url)
