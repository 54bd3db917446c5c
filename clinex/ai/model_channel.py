"""Single-consumer FIFO channel in front of the local model."""

from __future__ import annotations

import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable

from clinex.logging_config import get_logger

logger = get_logger(__name__)


class ModelChannel:
    """Serialises model work onto one worker thread, strictly in submission order.

    Local inference is CPU- or single-GPU-bound, so concurrent requests would
    only queue inside the runtime anyway; keeping one request in flight makes
    ordering and cancellation explicit.
    """

    def __init__(self, name: str = "model-slot", join_timeout: float = 10.0):
        self.name = name
        self.join_timeout = join_timeout
        self._tasks: "queue.Queue" = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self.completed = 0
        self._worker = threading.Thread(target=self._run, name=name, daemon=True)
        self._worker.start()

    @property
    def pending(self) -> int:
        return self._tasks.qsize()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} is shut down")
            self._tasks.put((future, fn, args, kwargs))
        return future

    def _run(self) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                break
            future, fn, args, kwargs = task
            if not future.set_running_or_notify_cancel():
                continue
            # count before resolving so waiters never observe a stale total
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                logger.warning("Model task failed in %s: %s", self.name, exc)
                self.completed += 1
                future.set_exception(exc)
                continue
            self.completed += 1
            future.set_result(result)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if cancel_pending:
                self._cancel_queued()
            self._tasks.put(None)
        if wait:
            self._worker.join(timeout=self.join_timeout)

    def _cancel_queued(self) -> None:
        while True:
            try:
                task = self._tasks.get_nowait()
            except queue.Empty:
                return
            if task is not None:
                task[0].cancel()


__all__ = ["ModelChannel"]
