"""Cooperative cancellation signals with parent linking and timeouts."""

from __future__ import annotations

import asyncio
import contextlib
from typing import List, Optional

CANCELED = "canceled"
TIMED_OUT = "timeout"


class CancellationSignal:
    """
    Cancellation flag that can be awaited.

    A signal created with :meth:`linked` is canceled whenever its parent is,
    and may additionally cancel itself after a timeout. The first reason
    wins, so a child that timed out keeps reporting ``timeout`` even if the
    parent is canceled afterwards.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: List[CancellationSignal] = []
        self._parent: Optional[CancellationSignal] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def timed_out(self) -> bool:
        return self._reason == TIMED_OUT

    def cancel(self, reason: str = CANCELED) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for ``delay`` seconds unless canceled first.

        Returns:
            True if the full delay elapsed, False if the signal fired
        """
        if self.is_canceled:
            return False
        if delay <= 0:
            return True
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        return not self.is_canceled

    def linked(self, timeout: Optional[float] = None) -> "CancellationSignal":
        """
        Create a child signal canceled by this one or by its own timeout.

        Must be called from a running event loop when ``timeout`` is set.
        Call :meth:`dispose` on the child when it is no longer needed.
        """
        child = CancellationSignal()
        child._parent = self
        if self.is_canceled:
            child.cancel(self._reason or CANCELED)
            return child
        self._children.append(child)
        if timeout is not None:
            loop = asyncio.get_running_loop()
            child._timer = loop.call_later(timeout, child.cancel, TIMED_OUT)
        return child

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            with contextlib.suppress(ValueError):
                self._parent._children.remove(self)
            self._parent = None
