"""Retry policy for provider calls that fail before producing content."""

import random

from .cancel import Cancelled

MAX_RETRIES = 3
BASE_DELAY = 2.0
MAX_DELAY = 30.0
JITTER = 0.3

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504, 529}
_RETRYABLE_TEXT = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "overloaded",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "connection",
    "timed out",
    "timeout",
    "reset by peer",
    "broken pipe",
    "eof",
    "temporarily unavailable",
)


def _status_code(err: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        code = getattr(err, attr, None)
        if isinstance(code, int):
            return code
    response = getattr(err, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(err: BaseException) -> bool:
    """Transient transport failures: rate limits, overload, 5xx, network errors."""
    if isinstance(err, Cancelled):
        return False
    code = _status_code(err)
    if code is not None:
        return code in _RETRYABLE_STATUS
    if isinstance(err, (ConnectionError, TimeoutError)):
        return True
    text = str(err).lower()
    if any(str(c) in text for c in _RETRYABLE_STATUS):
        return True
    return any(t in text for t in _RETRYABLE_TEXT)


def retry_delay(attempt: int) -> float:
    """Backoff before retry *attempt* (1-based): doubling, capped, with ±30% jitter."""
    delay = min(BASE_DELAY * (2 ** (attempt - 1)), MAX_DELAY)
    return delay * (1 + random.uniform(-JITTER, JITTER))
