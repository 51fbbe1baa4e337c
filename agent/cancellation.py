"""Cancellation token shared by everything that runs on behalf of one turn.

``Agent.prompt()`` creates a fresh token per turn and threads it through the
provider stream, tool executions and MCP round trips. ``Agent.abort()``
cancels it; each of those checks the token at its next checkpoint.
"""

import asyncio
import threading
from typing import Callable, List


class AgentCancelledError(Exception):
    """Raised at a checkpoint after the turn's token has been cancelled."""

    def __init__(self, message: str = "Agent turn was aborted"):
        super().__init__(message)


class CancellationToken:
    """Thread-safe one-shot cancellation flag.

    Works from both the event loop thread and executor threads (sync tools,
    MCP clients), which is why it wraps a ``threading.Event`` rather than an
    ``asyncio.Event``.
    """

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* when cancelled (immediately if already cancelled).

        Returns a function that unregisters the callback; calling it after
        the callback has fired is a no-op.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AgentCancelledError()

    def wait(self, timeout: float = None) -> bool:
        return self._event.wait(timeout)

    async def race(self, awaitable):
        """Await *awaitable*, raising AgentCancelledError if cancelled first."""
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)
        cancelled = loop.create_future()

        def _wake():
            loop.call_soon_threadsafe(
                lambda: cancelled.done() or cancelled.set_result(None)
            )

        unsubscribe = self.on_cancel(_wake)
        try:
            done, _ = await asyncio.wait(
                {task, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            unsubscribe()
            if not cancelled.done():
                cancelled.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise AgentCancelledError()
