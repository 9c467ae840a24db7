"""Cancellation token passed into every suspending call of a run."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from .models import InterruptReason

T = TypeVar("T")

logger = logging.getLogger("gba")


class RunCancelled(Exception):
    """Raised by `CancellationToken.race` when the token fires first."""

    def __init__(self, reason: InterruptReason):
        self.reason = reason
        super().__init__(f"Run cancelled ({reason.value})")


class CancellationToken:
    """One-shot cancellation signal. The first reason given wins."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: InterruptReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> InterruptReason | None:
        return self._reason

    def cancel(self, reason: InterruptReason = InterruptReason.USER_CANCELLED) -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    async def wait(self) -> InterruptReason:
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first.

        If the token wins, the awaitable is cancelled (best effort) and
        RunCancelled is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelled(self._reason)  # type: ignore[arg-type]

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned work finished with {type(e).__name__}: {e}")
        raise RunCancelled(self._reason)  # type: ignore[arg-type]
