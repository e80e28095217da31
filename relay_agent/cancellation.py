"""Cooperative cancellation for the session loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .errors import SessionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Two-level stop signal.

    ``request_shutdown`` lets the running step finish but blocks new ones;
    ``cancel`` aborts the in-flight step or retry sleep immediately.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._shutdown = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set() or self._cancelled.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled.is_set():
            logger.info("cancellation requested: %s", reason)
            self.reason = reason
        self._shutdown.set()
        self._cancelled.set()

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        if not self._shutdown.is_set():
            logger.info("graceful shutdown requested: %s", reason)
            self.reason = self.reason or reason
        self._shutdown.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SessionCancelled(self.reason or "cancelled")

    def raise_if_shutdown(self) -> None:
        if self.shutdown_requested:
            raise SessionCancelled(self.reason or "shutdown requested")

    async def run(self, awaitable: Awaitable[T], *, include_shutdown: bool = False) -> T:
        """Await ``awaitable`` unless cancellation fires first, then abort it.

        With ``include_shutdown`` a graceful shutdown request aborts it too;
        use that for waits (retry backoff) rather than for in-flight steps.
        """
        stop = self._shutdown if include_shutdown else self._cancelled
        if stop.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SessionCancelled(self.reason or "cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # the aborted work's own failure is moot once cancelled
            logger.debug("cancelled task raised during teardown", exc_info=True)
        raise SessionCancelled(self.reason or "cancelled")
