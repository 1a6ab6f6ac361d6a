"""Detection of a model repeating the same tool calls without progress."""

import enum
import hashlib
import json

WARN_STREAK = 3
STOP_STREAK = 5

WARN_MESSAGE = (
    "[SYSTEM] You have been issuing the same tool calls repeatedly with identical "
    "arguments. The results will not change. Step back, reconsider your approach, "
    "and try something different or explain what is blocking you."
)
STOP_MESSAGE = (
    f"error: doom loop detected — same tool calls repeated {STOP_STREAK} times, stopping"
)


class Action(enum.Enum):
    NONE = "none"
    WARN = "warn"
    STOP = "stop"


def signature(calls) -> str:
    """Order-insensitive fingerprint of a tool-call set (name + exact input)."""
    parts = sorted(
        f"{c.name}:{json.dumps(c.input, sort_keys=True, separators=(',', ':'))}"
        for c in calls
    )
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


class DoomLoopDetector:
    def __init__(self, warn_at: int = WARN_STREAK, stop_at: int = STOP_STREAK):
        self.warn_at = warn_at
        self.stop_at = stop_at
        self.last_signature: str | None = None
        self.streak = 0

    def check(self, calls) -> Action:
        sig = signature(calls)
        if sig == self.last_signature:
            self.streak += 1
        else:
            self.last_signature = sig
            self.streak = 1

        if self.streak >= self.stop_at:
            return Action.STOP
        if self.streak >= self.warn_at:
            return Action.WARN
        return Action.NONE

    def reset(self) -> None:
        self.last_signature = None
        self.streak = 0
