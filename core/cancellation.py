# core/cancellation.py
"""Cooperative cancellation shared by the transport, retry engine and workflows."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RequestCancelled(Exception):
    """Raised when a caller cancels an AI request.

    Cancellation is a terminal, neutral outcome and not a failure, so this
    does not derive from ``ClassifiedError``. ``partial_content`` holds any
    streamed text received before the cancel.
    """

    def __init__(self, partial_content: str = "") -> None:
        super().__init__("Request cancelled")
        self.partial_content = partial_content


class CancelToken:
    """A one-shot cancellation flag that can also interrupt awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug("Cancel token triggered", reason=reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancel the underlying task is cancelled and awaited so no work is
        left running, then ``RequestCancelled`` is raised.
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise RequestCancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise RequestCancelled()

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early with ``RequestCancelled`` on cancel."""
        await self.race(asyncio.sleep(seconds))


async def sleep_or_cancel(seconds: float, token: CancelToken | None) -> None:
    if token is None:
        await asyncio.sleep(seconds)
    else:
        await token.sleep(seconds)
