"""
Sequence tracking for a follower run.

The checkpoint only moves when a whole batch has been accepted by the
caller, so restarting from ``current().since`` never skips a change
(at-least-once delivery).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from changefeed.follower.fetcher import Batch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedPosition:
    """
    Read-only snapshot of a run's position.

    Attributes:
        since: Last confirmed checkpoint.
        pending: Server estimate of unseen changes (None before the first batch).
        emitted: Records delivered to the caller in this run.
    """

    since: str
    pending: int | None = None
    emitted: int = 0


class SequenceTracker:
    """Holds the checkpoint of one run."""

    def __init__(self, since: str) -> None:
        self._position = FeedPosition(since=since)

    def current(self) -> FeedPosition:
        return self._position

    def advance(self, batch: Batch) -> FeedPosition:
        """
        Move the checkpoint past a fully emitted batch.

        Args:
            batch: Batch whose every record was handed to the caller.

        Returns:
            The new position.
        """
        self._position = FeedPosition(
            since=batch.end_token,
            pending=batch.pending,
            emitted=self._position.emitted + len(batch.records),
        )
        logger.debug(
            "Checkpoint advanced",
            extra={
                "since": self._position.since,
                "pending": self._position.pending,
                "emitted": self._position.emitted,
            },
        )
        return self._position
