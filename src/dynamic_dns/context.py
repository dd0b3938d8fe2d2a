"""Cancellable, deadline-bound execution contexts.

A Context is handed to every resolve/reconcile call. Canceling a context
cancels every context derived from it; a context created with a timeout
cancels itself with DeadlineExceededError once its deadline passes.

    with Context.background().with_timeout(30) as ctx:
        addresses = resolver.resolve(ctx)

Leaving the ``with`` block cancels the context, releasing anything still
waiting on it.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

from dynamic_dns.errors import CanceledError, DeadlineExceededError


class Context:
    def __init__(self, parent: Optional[Context] = None, deadline: Optional[float] = None):
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._error: Optional[CanceledError] = None
        self._timer: Optional[threading.Timer] = None
        self._detach: Optional[Callable[[], None]] = None

        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

        if parent is not None:
            self._detach = parent.on_cancel(lambda: self.cancel(parent.error()))

        if self.deadline is not None and not self._event.is_set():
            delay = max(0.0, self.deadline - time.monotonic())
            self._timer = threading.Timer(
                delay, self.cancel, args=(DeadlineExceededError("context deadline exceeded"),)
            )
            self._timer.daemon = True
            self._timer.start()

    @classmethod
    def background(cls) -> Context:
        """Return a root context that is never canceled on its own."""
        return cls()

    def with_cancel(self) -> Context:
        return Context(self)

    def with_timeout(self, seconds: float) -> Context:
        return Context(self, time.monotonic() + seconds)

    def cancel(self, error: Optional[CanceledError] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._error = error if error is not None else CanceledError("context canceled")
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            timer, self._timer = self._timer, None
            detach, self._detach = self._detach, None

        if timer is not None:
            timer.cancel()
        if detach is not None:
            detach()
        for callback in callbacks:
            callback()

    def done(self) -> bool:
        return self._event.is_set()

    def error(self) -> Optional[CanceledError]:
        """Return why the context ended, or None while it is still live."""
        return self._error

    def raise_if_done(self) -> None:
        if self._event.is_set():
            raise self._error or CanceledError("context canceled")

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def time_left(self, ceiling: Optional[float] = None) -> Optional[float]:
        """Timeout for a blocking call made under this context.

        Capped at ceiling. Raises the context's error once it is done, and
        DeadlineExceededError when no time is left even if the deadline timer
        has not fired yet.
        """
        self.raise_if_done()
        remaining = self.remaining()
        if remaining is None:
            return ceiling
        if remaining <= 0:
            raise DeadlineExceededError("context deadline exceeded")
        return remaining if ceiling is None else min(ceiling, remaining)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context is done or timeout elapses.

        Returns True if the context is done.
        """
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback once when the context is canceled.

        If the context is already done the callback runs immediately. Returns
        a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                key = self._next_id
                self._next_id += 1
                self._callbacks[key] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(key, None)

                return unregister

        callback()
        return lambda: None

    def __enter__(self) -> Context:
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()

    def __repr__(self) -> str:
        state = "done" if self.done() else "live"
        return f"<Context {state} deadline={self.deadline}>"
