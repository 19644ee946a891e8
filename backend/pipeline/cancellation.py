"""Cooperative cancellation for a pipeline run."""

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from pipeline.errors import PipelineCancelledError

T = TypeVar("T")


class CancellationToken:
    """One shared cancellation signal per run.

    In-flight calls are raced against the token with ``guard``; whichever
    finishes first wins, and a fired token aborts the call and raises
    PipelineCancelledError.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelledError()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        work = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await work
            raise PipelineCancelledError()
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        raise PipelineCancelledError()

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early with PipelineCancelledError when cancelled."""
        await self.guard(asyncio.sleep(seconds))
