"""Cooperative cancellation primitives.

A :class:`CancelToken` is handed to every sandbox run; the run polls it
and tears down its process when it fires. Job tokens are children of
their worker's token, so cancelling a worker also cancels whatever job it
is running, while a job timeout cancels only that job.

A :class:`ShutdownController` belongs to one scheduler invocation. It
owns the stop flag and signals each live worker at most once.
"""

from __future__ import annotations

import threading
import time

from pkgeval.logging import get_logger

log = get_logger("cancel")

TIMEOUT = "timeout"
SHUTDOWN = "shutdown"


class CancelToken:
    """A one-shot cancellation flag with an optional parent."""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str = SHUTDOWN) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled()

    @property
    def cancelled_directly(self) -> bool:
        """True if this token itself was cancelled, not only its parent."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Why the token fired: its own reason first, then the parent's."""
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def wait(self, timeout: float | None = None, *, poll: float = 0.05) -> bool:
        """Block until cancelled or *timeout* elapses. Returns the cancelled state."""
        if self._parent is None:
            return self._event.wait(timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_cancelled():
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._event.wait(min(poll, remaining))
            else:
                self._event.wait(poll)
        return True


class ShutdownController:
    """Stop flag shared by the workers and the progress reporter of one run.

    :meth:`request_stop` may be called any number of times from any thread.
    Only the first call has an effect: it sets the flag and cancels the
    token of every worker that is still running and is not the caller.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._signaled = False
        self._workers: list[tuple[threading.Thread, CancelToken]] = []
        self.signals_sent = 0

    def register(self, thread: threading.Thread, token: CancelToken) -> None:
        """Track a worker thread so a stop request can reach it."""
        with self._lock:
            self._workers.append((thread, token))

    def is_stop_requested(self) -> bool:
        return self._stop.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep until a stop is requested or *timeout* elapses."""
        return self._stop.wait(timeout)

    def request_stop(self) -> bool:
        """Ask every task to stop. Returns True only for the call that did it.

        Does not wait for the workers to exit.
        """
        current = threading.current_thread()
        with self._lock:
            if self._stop.is_set():
                return False
            self._stop.set()
            if not self._signaled:
                for thread, token in self._workers:
                    if thread is current or not thread.is_alive():
                        continue
                    if token.cancel(SHUTDOWN):
                        self.signals_sent += 1
                self._signaled = True
        log.debug("Stop requested by %s (%d worker(s) signaled)", current.name, self.signals_sent)
        return True
