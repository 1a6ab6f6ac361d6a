"""Context-window budgeting and conversation compaction.

Two layers keep a conversation inside the model's window:

* Auto-compaction rewrites the stored session.  Stage 1 masks old tool
  output in place; stage 2 asks a summarizer for a rolling summary and
  keeps only the most recent turns.
* Send-time compaction builds the list actually sent to the provider.  It
  never touches the session.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, replace

from .messages import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from .provider import ChatRequest, StreamError, TextDelta
from .report import SummarizeError

logger = logging.getLogger(__name__)

HISTORY_MAX_RATIO = 0.65
GENTLE_RATIO = 0.70
GENTLE_MEDIUM_RATIO = 0.75
COMPACT_RATIO = 0.80

KEEP_RECENT_RESULTS = 10
KEEP_RECENT_TURNS = 10
MIN_TURNS = 5

SUMMARY_PREFIX = "[Previous conversation summary]\n\n"

IMPORTANCE_LOW = 0
IMPORTANCE_MEDIUM = 1
IMPORTANCE_HIGH = 2

_TOOL_IMPORTANCE = {
    "glob": IMPORTANCE_LOW,
    "grep": IMPORTANCE_LOW,
    "list_dir": IMPORTANCE_LOW,
    "web_search": IMPORTANCE_LOW,
    "todo_read": IMPORTANCE_LOW,
    "git_log": IMPORTANCE_LOW,
    "git_status": IMPORTANCE_MEDIUM,
    "git_diff": IMPORTANCE_MEDIUM,
    "git_branch": IMPORTANCE_MEDIUM,
}

_PLACEHOLDER_RE = re.compile(r"^\[(?:[\w.-]+ )?[Oo]utput omitted: \d+ chars\]$")


def tool_importance(name: str) -> int:
    return _TOOL_IMPORTANCE.get(name, IMPORTANCE_HIGH)


# -- Estimation ----------------------------------------------------------------


def estimate_text_tokens(text: str) -> int:
    return len(text) // 4


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token count: four characters per token."""
    chars = 0
    for msg in messages:
        for b in msg.content:
            if isinstance(b, TextBlock):
                chars += len(b.text)
            elif isinstance(b, ToolResultBlock):
                chars += len(b.content)
            elif isinstance(b, ToolUseBlock):
                chars += len(b.name) + len(json.dumps(b.input))
            elif isinstance(b, ImageBlock):
                chars += len(b.data)
    return chars // 4


@dataclass(frozen=True)
class TokenBudget:
    context_window: int
    system_prompt_tokens: int = 0

    @property
    def history_max(self) -> int:
        return int(self.context_window * HISTORY_MAX_RATIO)

    @property
    def gentle_threshold(self) -> int:
        return int(self.context_window * GENTLE_RATIO)

    @property
    def gentle_medium_threshold(self) -> int:
        return int(self.context_window * GENTLE_MEDIUM_RATIO)

    @property
    def compact_threshold(self) -> int:
        return int(self.context_window * COMPACT_RATIO)


# -- Turns ---------------------------------------------------------------------


def _starts_turn(msg: Message, prev: Message | None) -> bool:
    if prev is None:
        return True
    return (
        msg.role == ROLE_USER
        and msg.has_text()
        and prev.role == ROLE_ASSISTANT
        and not prev.tool_uses()
    )


def split_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into turns without ever separating a tool_use from its result.

    A new turn begins at a user message with text content, but only when
    the previous message is an assistant reply with no tool calls.
    """
    turns: list[list[Message]] = []
    prev = None
    for msg in messages:
        if not turns or _starts_turn(msg, prev):
            turns.append([])
        turns[-1].append(msg)
        prev = msg
    return turns


def flatten(turns: list[list[Message]]) -> list[Message]:
    return [msg for turn in turns for msg in turn]


# -- Masking -------------------------------------------------------------------


def _is_placeholder(content: str) -> bool:
    return bool(_PLACEHOLDER_RE.match(content))


def _tool_names(messages: list[Message]) -> dict[str, str]:
    return {b.id: b.name for msg in messages for b in msg.tool_uses()}


def mask_tool_results(
    messages: list[Message],
    keep_recent: int = KEEP_RECENT_RESULTS,
    max_importance: int = IMPORTANCE_HIGH,
    labelled: bool = False,
) -> tuple[list[Message], int]:
    """Replace old tool output with a size placeholder.

    The most recent *keep_recent* tool results stay verbatim.  Error results,
    results already masked, and results from tools above *max_importance*
    are never touched.  Returns a new list and the number of characters
    removed; input messages are not modified.
    """
    positions = [
        (i, j)
        for i, msg in enumerate(messages)
        for j, b in enumerate(msg.content)
        if isinstance(b, ToolResultBlock)
    ]
    if len(positions) <= keep_recent:
        return list(messages), 0

    names = _tool_names(messages) if labelled or max_importance < IMPORTANCE_HIGH else {}
    to_mask: dict[int, set[int]] = {}
    for i, j in positions[: len(positions) - keep_recent]:
        block = messages[i].content[j]
        if block.is_error or _is_placeholder(block.content):
            continue
        if tool_importance(names.get(block.tool_use_id, "")) > max_importance:
            continue
        to_mask.setdefault(i, set()).add(j)

    saved = 0
    out = []
    for i, msg in enumerate(messages):
        cols = to_mask.get(i)
        if not cols:
            out.append(msg)
            continue
        content = []
        for j, b in enumerate(msg.content):
            if j in cols:
                size = len(b.content)
                if labelled:
                    label = names.get(b.tool_use_id) or "tool"
                    text = f"[{label} output omitted: {size} chars]"
                else:
                    text = f"[Output omitted: {size} chars]"
                saved += max(size - len(text), 0)
                b = replace(b, content=text)
            content.append(b)
        out.append(Message(msg.role, content))
    return out, saved


def strip_image_data(messages: list[Message]) -> list[Message]:
    """Replace image blocks with a short text marker."""
    out = []
    for msg in messages:
        if not any(isinstance(b, ImageBlock) for b in msg.content):
            out.append(msg)
            continue
        out.append(
            Message(
                msg.role,
                [
                    TextBlock(f"[image: {b.media_type}]") if isinstance(b, ImageBlock) else b
                    for b in msg.content
                ],
            )
        )
    return out


# -- Send-time compaction --------------------------------------------------------


def compact_history(
    messages: list[Message],
    summary: str,
    budget: TokenBudget,
    keep_recent: int = KEEP_RECENT_RESULTS,
    min_turns: int = MIN_TURNS,
) -> list[Message]:
    """Build the history to send: summary first, old output masked, oldest turns dropped.

    Always returns a new list; *messages* and the messages in it are left as is.
    """
    masked, _ = mask_tool_results(messages, keep_recent)
    turns = split_turns(masked)

    head: list[list[Message]] = []
    if summary:
        head = [[Message.user(SUMMARY_PREFIX + summary)]]

    limit = budget.history_max
    while (
        len(turns) > min_turns
        and estimate_tokens(flatten(head + turns)) + budget.system_prompt_tokens > limit
    ):
        turns.pop(0)

    return flatten(head + turns)


def truncate_to_turns(messages: list[Message], keep: int = KEEP_RECENT_TURNS) -> list[Message]:
    """Keep the last *keep* turns, copied into fresh containers."""
    turns = split_turns(messages)
    return copy.deepcopy(flatten(turns[-keep:])) if keep > 0 else []


# -- Summarizer ----------------------------------------------------------------

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Produce a concise, structured summary of the conversation."
)

SUMMARIZE_INSTRUCTIONS = """Summarize the conversation so far for continuity. Include:
- The user's original task and intent
- Key decisions made and rationale
- Current progress and files being worked on
- Important code changes, function names, file paths
- Remaining steps or unresolved issues
Be concise but thorough. Max 2000 tokens."""


class LLMSummarizer:
    """Produces rolling summaries with a provider call."""

    def __init__(self, provider, model: str | None = None, max_tokens: int = 2048):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    def __call__(self, previous_summary: str, messages: list[Message], scope=None) -> str:
        prompt = SUMMARIZE_INSTRUCTIONS
        if previous_summary:
            prompt = (
                f"Previous conversation summary:\n{previous_summary}\n\n"
                "Now summarize the above context together with the recent conversation:\n\n"
                + prompt
            )

        history = list(strip_image_data(messages))
        # Providers expect alternating roles; fold the instruction into a
        # trailing user message when there is one.
        if history and history[-1].role == ROLE_USER:
            last = history[-1]
            history[-1] = Message(ROLE_USER, list(last.content) + [TextBlock(prompt)])
        else:
            history.append(Message.user(prompt))

        request = ChatRequest(
            messages=history,
            system_prompt=SUMMARIZER_SYSTEM_PROMPT,
            model=self.model,
            max_tokens=self.max_tokens,
        )
        parts = []
        for event in self.provider.chat(request, scope):
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, StreamError):
                raise SummarizeError(f"summarize stream error: {event.error}")
        summary = "".join(parts).strip()
        if not summary:
            raise SummarizeError("summarizer returned empty summary")
        return summary


# -- Auto-compaction -------------------------------------------------------------


@dataclass(frozen=True)
class CompactionResult:
    strategy: str  # "mask-low", "mask-medium", "summarize" or "failed"
    tokens_before: int
    tokens_after: int
    error: str | None = None


class Compactor:
    """Decides, once per loop iteration, whether to rewrite the session."""

    def __init__(
        self,
        summarizer=None,
        keep_recent: int = KEEP_RECENT_RESULTS,
        keep_turns: int = KEEP_RECENT_TURNS,
    ):
        self.summarizer = summarizer
        self.keep_recent = keep_recent
        self.keep_turns = keep_turns

    def current_tokens(self, session, budget: TokenBudget) -> int:
        if session.prompt_tokens > 0:
            return session.prompt_tokens
        return estimate_tokens(session.messages) + budget.system_prompt_tokens

    def maybe_compact(self, session, budget: TokenBudget, scope=None) -> CompactionResult | None:
        tokens = self.current_tokens(session, budget)
        if tokens < budget.gentle_threshold:
            return None

        can_summarize = (
            self.summarizer is not None
            and len(split_turns(session.messages)) > self.keep_turns
        )
        if tokens >= budget.compact_threshold and can_summarize:
            return self.summarize(session, budget, scope)

        if session.gentle_phase < 1:
            return self._mask(session, budget, tokens, 1, IMPORTANCE_LOW, "mask-low")
        if session.gentle_phase < 2 and tokens >= budget.gentle_medium_threshold:
            return self._mask(session, budget, tokens, 2, IMPORTANCE_MEDIUM, "mask-medium")
        return None

    def _mask(self, session, budget, tokens, phase, importance, strategy) -> CompactionResult:
        session.messages, saved = mask_tool_results(
            session.messages, self.keep_recent, importance, labelled=True
        )
        session.gentle_phase = phase
        after = max(tokens - saved // 4, 0)
        logger.debug("%s: %d -> %d tokens", strategy, tokens, after)
        return CompactionResult(strategy, tokens, after)

    def summarize(self, session, budget: TokenBudget, scope=None) -> CompactionResult:
        """Stage 2: fold history into the rolling summary and keep recent turns."""
        before = self.current_tokens(session, budget)
        if self.summarizer is None:
            return CompactionResult("failed", before, before, "no summarizer configured")
        try:
            summary = self.summarizer(session.summary, session.messages, scope)
        except Exception as e:
            logger.warning("compaction skipped: %s", e)
            return CompactionResult("failed", before, before, str(e))

        session.summary = summary
        session.messages = truncate_to_turns(session.messages, self.keep_turns)
        session.gentle_phase = 0
        # The provider's count describes the old history; estimate until the next call.
        session.prompt_tokens = 0
        after = (
            estimate_tokens(session.messages)
            + estimate_text_tokens(summary)
            + budget.system_prompt_tokens
        )
        logger.debug("summarize: %d -> %d tokens", before, after)
        return CompactionResult("summarize", before, after)
