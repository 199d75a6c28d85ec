"""
Result emitter: delivers change records as an async iterator.

Backpressure: the next page is only requested once every record of the
current page has been handed out, so at most one page is held in memory.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from changefeed.contracts.changes import ChangeRecord
    from changefeed.follower.controller import ChangesFollower
    from changefeed.follower.fetcher import Batch


class ChangesStream:
    """
    Ordered, cancellable stream of ChangeRecord for one follower run.

    Usage:
        async with follower.start() as stream:
            async for change in stream:
                handle(change)

    Raises ChangesFollowerError from iteration if the run errors. Leaving the
    ``async with`` block (or calling ``aclose()``) stops the run; a partially
    delivered page is not acknowledged.
    """

    def __init__(self, follower: ChangesFollower) -> None:
        self._follower = follower
        self._batch: Batch | None = None
        self._buffer: deque[ChangeRecord] = deque()

    @property
    def buffered(self) -> int:
        """Records of the current page not yet handed out."""
        return len(self._buffer)

    def __aiter__(self) -> ChangesStream:
        return self

    async def __anext__(self) -> ChangeRecord:
        while True:
            if not self._follower.running:
                self._buffer.clear()
                self._batch = None
                raise StopAsyncIteration

            if self._buffer:
                record = self._buffer.popleft()
                if not self._buffer and self._batch is not None:
                    batch, self._batch = self._batch, None
                    self._follower.acknowledge(batch)
                return record

            batch = await self._follower.next_batch()
            if batch is None:
                raise StopAsyncIteration
            if not batch.records:
                self._follower.acknowledge(batch)
                continue
            self._batch = batch
            self._buffer.extend(batch.records)

    async def aclose(self) -> None:
        """Stop the run and drop any undelivered records."""
        self._buffer.clear()
        self._batch = None
        if self._follower.running:
            self._follower.stop()

    async def __aenter__(self) -> ChangesStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
