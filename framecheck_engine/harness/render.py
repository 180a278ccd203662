"""Wait for the application to report a finished render.

Handlers arm the latch before mutating application state and wait after, so a
render that completes before the wait starts is still observed:

    signal.prepare_for_render()
    document.load(path)
    signal.await_prepared_render(timeout=10)

The view layer calls `signal_render_complete()` once its render pass is done.
"""

from __future__ import annotations

import threading

from .errors import HarnessError, RenderTimeout


DEFAULT_RENDER_TIMEOUT_S = 10.0


class RenderCompletionSignal:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._generation = 0
        self._armed = False
        self._completed = False
        self._waiters = 0

    @property
    def is_armed(self) -> bool:
        with self._cond:
            return self._armed

    def prepare_for_render(self) -> None:
        """Arm the latch; any wait left over from an earlier render is cancelled."""
        with self._cond:
            self._generation += 1
            self._armed = True
            self._completed = False
            self._cond.notify_all()

    def await_prepared_render(self, timeout: float = DEFAULT_RENDER_TIMEOUT_S) -> None:
        """Block until the render signal arrives.

        Returns at once when the signal already fired after `prepare_for_render()`.
        Raises `RenderTimeout` on expiry and `HarnessError` when the wait is
        cancelled by `cancel_prepare()` or a newer `prepare_for_render()`.
        """
        with self._cond:
            generation = self._generation
            self._armed = True
            self._waiters += 1
            try:
                self._cond.wait_for(
                    lambda: self._completed or self._generation != generation,
                    timeout=max(0.0, float(timeout)),
                )
            finally:
                self._waiters -= 1
            if self._generation != generation:
                raise HarnessError("render wait was cancelled")
            completed = self._completed
            self._armed = False
            self._completed = False
        if not completed:
            raise RenderTimeout(f"render did not complete within {timeout}s")

    def cancel_prepare(self) -> None:
        """Disarm without waiting, e.g. when the mutation turned out to be a no-op."""
        with self._cond:
            self._generation += 1
            self._armed = False
            self._completed = False
            self._cond.notify_all()

    def signal_render_complete(self) -> None:
        """Report a finished render; dropped when nobody armed the latch."""
        with self._cond:
            if not self._armed and not self._waiters:
                return
            self._completed = True
            self._cond.notify_all()
