"""
auth/background.py -- Best-effort side effects that must never block or fail a caller.

BestEffortDispatcher submits a callable to a small thread pool and returns
immediately. The outcome is observed only by a done-callback that logs
failures and discards them. Used for the API key last-used bump, which is
allowed to be lost under races or store errors.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger("clientportal.auth.background")


class BestEffortDispatcher:
    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="auth-best-effort")

    def dispatch(self, label: str, fn: Callable[..., object], *args) -> Future | None:
        """Run fn(*args) in the background. Never raises, never waits.

        Returns the Future (useful in tests), or None if the pool is shut down.
        """
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            logger.warning("Best-effort task %r dropped: dispatcher is shut down", label)
            return None
        future.add_done_callback(lambda f: _log_failure(label, f))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_failure(label: str, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Best-effort task %r failed: %s", label, exc)
