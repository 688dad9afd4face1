"""
Cooperative cancellation for workflow runs.

One CancelToken is allocated per run and passed by reference to every node.
Nodes call `raise_if_cancelled()` at their entry point, and every provider call
is awaited through `run()` so an in-flight request is abandoned as soon as the
token fires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from mediaflow.services.errors import AbortError, AbortReason

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: AbortReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> AbortReason | None:
        return self._reason

    def cancel(self, reason: AbortReason = AbortReason.USER_CANCELLED) -> None:
        """Fire the token. Only the first reason is kept."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancel token fired (%s)", reason.value)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        On cancellation the underlying task is cancelled and AbortError is
        raised. A call that finishes in the same tick as the cancellation
        still returns its result; callers guard stale writes separately.
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            raise AbortError(self._reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Abandoned call raised after cancellation: %s", e)
        raise AbortError(self._reason)
