"""Per-turn cancellation handle.

A ``TurnHandle`` is shared between the caller that may cancel a turn and
the transport driving it. Transports either register a cancel callback
(process supervisors signal their child) or run their I/O under
``guard()`` (HTTP streams get their reading task cancelled).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnCancelled(Exception):
    """Raised inside a transport when its turn was cancelled.

    Never escapes ``Backend.prompt``; callers observe cancellation as a
    ``turn_complete`` with ``stop_reason=cancelled``.
    """


class TurnHandle:
    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._settled = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def cancel(self) -> None:
        """Request cancellation. Repeated calls are no-ops."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Turn cancel callback failed")

    def add_cancel_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* on cancel, or right away if already cancelled."""
        if self._cancelled.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_cancel_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def mark_settled(self) -> None:
        self._settled.set()

    async def wait_settled(self, timeout: float | None = None) -> bool:
        """Wait for the owning turn to finish. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the turn is cancelled first.

        On cancellation the inner task is cancelled and awaited (so
        ``async with`` blocks inside it close their resources), then
        ``TurnCancelled`` is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task.done():
            waiter.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Guarded task raised after cancel", exc_info=True)
        raise TurnCancelled()
