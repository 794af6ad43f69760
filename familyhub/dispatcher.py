from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


def _describe(value: Any) -> str:
    if isinstance(value, dict):
        return f"{len(value)} events"
    if isinstance(value, list):
        return f"{len(value)} results"
    outcomes = getattr(value, "outcomes", None)
    if outcomes is not None:
        failed = sum(1 for item in outcomes if not item.success)
        return f"{len(outcomes)} accounts, {failed} failed"
    return "done"


class SyncDispatcher:
    """Runs sync work after the triggering request has already been answered.

    Results are only logged; the durable record of what happened is the
    mapping table. ``max_workers=0`` runs work inline, which tests rely on.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max(0, int(max_workers))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="familyhub-sync",
                )
            return self._executor

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if self.max_workers == 0:
            future: Future = Future()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)
        else:
            future = self._ensure_executor().submit(fn, *args, **kwargs)
        future.add_done_callback(lambda done: self._report(name, done))
        return future

    @staticmethod
    def _report(name: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background sync %s failed", name, exc_info=exc)
            return
        logger.info("Background sync %s finished: %s", name, _describe(future.result()))

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
