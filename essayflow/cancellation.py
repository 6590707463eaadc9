"""
Cooperative cancellation for in-flight essay work.

A CancellationToken is shared by every network call and backoff wait of one
essay. The CancellationRegistry maps essay ids to their live token so an
essay can be cancelled by id from outside the running coroutine.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Awaitable, Dict, Iterator, Optional, TypeVar

from essayflow.errors import ProcessingCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ProcessingCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, abandoning it as soon as the token is cancelled.

        The abandoned task is cancelled and reaped before ProcessingCancelled
        is raised, so no request is left running in the background.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
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
        await asyncio.gather(task, return_exceptions=True)
        raise ProcessingCancelled()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early with ProcessingCancelled on cancel."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        raise ProcessingCancelled()


async def cancellable_sleep(seconds: float, token: Optional[CancellationToken] = None) -> None:
    if token is None:
        await asyncio.sleep(seconds)
    else:
        await token.sleep(seconds)


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken] = None) -> T:
    if token is None:
        return await awaitable
    return await token.run(awaitable)


class CancellationRegistry:
    """Live tokens keyed by essay id."""

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}

    @contextmanager
    def acquire(self, essay_id: str) -> Iterator[CancellationToken]:
        """Register a fresh token for the duration of the block; always released."""
        token = CancellationToken()
        if essay_id in self._tokens:
            logger.warning(f"Replacing active cancellation token for essay {essay_id}")
        self._tokens[essay_id] = token
        try:
            yield token
        finally:
            if self._tokens.get(essay_id) is token:
                del self._tokens[essay_id]

    def get(self, essay_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(essay_id)

    def is_active(self, essay_id: str) -> bool:
        return essay_id in self._tokens

    def cancel(self, essay_id: str) -> bool:
        """Cancel the essay's in-flight work. Returns False when nothing is running."""
        token = self._tokens.get(essay_id)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> int:
        for token in self._tokens.values():
            token.cancel()
        return len(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)
