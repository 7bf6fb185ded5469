"""Cooperative scheduling helpers.

Everything runs on one asyncio event loop. Long loops call ``checkpoint``
so they give the loop back every few items, and ``QueryScheduler`` makes
sure only the newest query of a chat turn can deliver a result.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Dict, TypeVar

from .errors import QuerySuperseded
from .metrics import get_metrics

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def checkpoint(index: int, every: int) -> None:
    """Yield to the event loop once every ``every`` iterations."""

    if every > 0 and index > 0 and index % every == 0:
        await asyncio.sleep(0)


class QueryScheduler:
    """Runs one query task per chat turn; a newer submit cancels the older one.

    Each submit takes a sequence number and becomes the turn's latest. A
    result is delivered only while its submit is still the latest, so a
    query that finished just before a newer submit is dropped as well.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task[Any]] = {}
        self._latest: Dict[str, int] = {}
        self._seq = itertools.count(1)

    def submit(self, turn_id: str, coro: Awaitable[T]) -> "asyncio.Task[T]":
        previous = self._tasks.get(turn_id)
        if previous is not None and not previous.done():
            previous.cancel()

        task: asyncio.Task[T] = asyncio.ensure_future(coro)
        self._tasks[turn_id] = task
        self._latest[turn_id] = next(self._seq)

        def _forget(t: "asyncio.Task[Any]") -> None:
            if self._tasks.get(turn_id) is t:
                del self._tasks[turn_id]

        task.add_done_callback(_forget)
        return task

    async def run(self, turn_id: str, coro: Awaitable[T]) -> T:
        """Submit and await. Raises ``QuerySuperseded`` if a newer submit won."""

        task = self.submit(turn_id, coro)
        seq = self._latest[turn_id]
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            self._release(turn_id, seq)
            raise
        if self._latest.get(turn_id) != seq:
            get_metrics().queries_cancelled_total.inc()
            logger.info("query_superseded", extra={"fields": {"turn_id": turn_id}})
            raise QuerySuperseded(f"Query for turn {turn_id!r} was superseded")
        self._release(turn_id, seq)
        return task.result()

    def _release(self, turn_id: str, seq: int) -> None:
        if self._latest.get(turn_id) == seq:
            del self._latest[turn_id]

    def cancel(self, turn_id: str) -> bool:
        task = self._tasks.get(turn_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def in_flight(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())
