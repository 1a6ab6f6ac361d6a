"""Nested cancellation scopes: session -> turn -> tool."""

import threading
import time

_POLL_INTERVAL = 0.05


class Cancelled(Exception):
    """Raised or reported when work stops because its scope was cancelled."""

    def __init__(self, msg: str = "cancelled"):
        super().__init__(msg)


class CancelScope:
    """A cancellation flag that is also set whenever any ancestor is cancelled.

    Cancelling a scope never affects its parent, so a tool scope can be
    cancelled without ending the turn, and a turn without ending the session.
    """

    def __init__(self, parent: "CancelScope | None" = None):
        self._event = threading.Event()
        self._parent = parent

    def child(self) -> "CancelScope":
        return CancelScope(self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        scope = self
        while scope is not None:
            if scope._event.is_set():
                return True
            scope = scope._parent
        return False

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return True early if cancelled."""
        deadline = time.monotonic() + timeout
        while True:
            if self.cancelled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, _POLL_INTERVAL))
