"""Hand work from harness threads to the application's primary thread.

The server's connection thread submits a callable and blocks on a
`concurrent.futures.Future`; the application drains the queue from its own
loop with `run_pending()`. A future resolves exactly once, so the waiting
thread resumes exactly once whether the work succeeded or raised.
"""

from __future__ import annotations

import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, TypeVar

from .errors import HarnessTimeout

T = TypeVar("T")


class MainThreadHandoff:
    def __init__(self) -> None:
        self._jobs: queue.Queue[object] = queue.Queue()

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        future: Future[T] = Future()
        self._jobs.put((future, fn, args, kwargs))
        return future

    def call(self, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        """Run `fn` on the draining thread and block the caller until it finishes."""
        future = self.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except TimeoutError as exc:
            future.cancel()
            raise HarnessTimeout(f"main-thread handoff did not complete within {timeout}s") from exc

    def run_pending(self, *, max_items: int | None = None, wait_s: float = 0.0) -> int:
        """Execute queued jobs on the calling thread; returns how many ran."""
        ran = 0
        block = wait_s > 0
        while max_items is None or ran < max_items:
            try:
                job = self._jobs.get(timeout=wait_s) if block else self._jobs.get_nowait()
            except queue.Empty:
                break
            block = False
            future, fn, args, kwargs = job  # type: ignore[misc]
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)
            ran += 1
        return ran

    def serve_until(self, stop: threading.Event, *, poll_s: float = 0.05) -> None:
        """Block the calling thread draining jobs until `stop` is set."""
        while not stop.is_set():
            self.run_pending(wait_s=poll_s)
        self.run_pending()
