"""
Batch fetching for the follower.

A fetcher issues exactly one request per ``fetch`` call and never retries
or classifies errors; that is the controller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from changefeed.connectors.couchdb.types import (
    BATCH_SIZE,
    CHANGE_OVERHEAD_BYTES,
    MIN_CLIENT_TIMEOUT_MS,
    TARGET_BATCH_BYTES,
)
from changefeed.follower.params import build_request

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from changefeed.contracts.changes import ChangeRecord, ChangesResult, DatabaseInformation
    from changefeed.follower.params import FollowerConfig
    from changefeed.follower.position import FeedPosition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """
    One page of changes.

    Attributes:
        records: Changes in non-decreasing sequence order.
        end_token: Token to resume from after this batch.
        pending: Server estimate of changes still unread.
    """

    records: tuple[ChangeRecord, ...]
    end_token: str
    pending: int

    @classmethod
    def from_result(cls, result: ChangesResult) -> Batch:
        return cls(records=tuple(result.results), end_token=result.last_seq, pending=result.pending)

    @property
    def caught_up(self) -> bool:
        """Empty page with nothing pending."""
        return not self.records and self.pending == 0

    def truncated(self, size: int, *, since: str | None = None) -> Batch:
        """
        Keep only the first ``size`` records.

        The end token becomes the sequence of the last kept record that has
        one, so resuming from it re-reads the dropped records rather than
        skipping them. When no kept record carries a sequence (seq_interval)
        the end token is ``since``, the checkpoint the page was read from.

        Raises:
            ValueError: If size < 1, or no kept record has a sequence and
                ``since`` is not given.
        """
        if size < 1:
            raise ValueError(f"size must be >= 1, got {size}")
        if size >= len(self.records):
            return self
        kept = self.records[:size]
        end_token = next((r.seq for r in reversed(kept) if r.seq is not None), since)
        if end_token is None:
            raise ValueError("no kept record has a sequence and no since was given")
        # Dropped records are still unread
        return Batch(
            records=kept,
            end_token=end_token,
            pending=self.pending + len(self.records) - size,
        )


class BatchFetcher(Protocol):
    """Source of pages for a follower."""

    async def fetch(
        self,
        position: FeedPosition,
        config: FollowerConfig,
        *,
        limit: int | None = None,
    ) -> Batch:
        """
        Fetch the page following ``position``.

        Args:
            position: Current checkpoint.
            config: Follower configuration (filters passed through).
            limit: Records still allowed by the run's limit, if any.

        Returns:
            The next Batch.
        """
        ...


class ChangesClient(Protocol):
    """The API client surface a ClientBatchFetcher needs."""

    async def post_changes(
        self,
        db: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> ChangesResult: ...

    async def get_database_information(self, db: str) -> DatabaseInformation: ...


def include_docs_batch_size(info: DatabaseInformation) -> int:
    """Page size keeping an include_docs batch around 5 MiB."""
    if info.doc_count > 0 and info.sizes.external > 0:
        average_doc = info.sizes.external / info.doc_count
        return max(int(TARGET_BATCH_BYTES / (average_doc + CHANGE_OVERHEAD_BYTES)), 1)
    return BATCH_SIZE


class ClientBatchFetcher:
    """
    Fetches pages from the changes API client.

    The first fetch sizes pages: include_docs pages are sized from the
    database's average document size, everything else uses BATCH_SIZE.
    """

    def __init__(self, client: ChangesClient) -> None:
        """
        Initialize the fetcher.

        Args:
            client: Changes API client.

        Raises:
            ValueError: If the client's request timeout is too short for longpoll.
        """
        timeout_ms = getattr(client, "timeout_ms", 0)
        if isinstance(timeout_ms, int) and 0 < timeout_ms < MIN_CLIENT_TIMEOUT_MS:
            raise ValueError(
                f"To use ChangesFollower the client read timeout must be at least "
                f"{MIN_CLIENT_TIMEOUT_MS} ms. The client read timeout is {timeout_ms} ms."
            )
        self._client = client
        self._batch_size: int | None = None

    @property
    def batch_size(self) -> int | None:
        """Page size, once configured."""
        return self._batch_size

    async def configure(self, config: FollowerConfig) -> int:
        """Determine the page size (once per fetcher)."""
        if self._batch_size is None:
            if config.include_docs:
                info = await self._client.get_database_information(config.db)
                self._batch_size = include_docs_batch_size(info)
            else:
                self._batch_size = BATCH_SIZE
            logger.debug("Batch size configured", extra={"batch_size": self._batch_size})
        return self._batch_size

    async def fetch(
        self,
        position: FeedPosition,
        config: FollowerConfig,
        *,
        limit: int | None = None,
    ) -> Batch:
        batch_size = await self.configure(config)
        page = min(batch_size, limit) if limit is not None else batch_size
        params, body = build_request(config, position.since, page)
        result = await self._client.post_changes(config.db, params, body)
        return Batch.from_result(result)


class ScriptedBatchFetcher:
    """
    Fetcher replaying a fixed script of batches and errors.

    Each step is a Batch to return or an exception to raise. Once the
    script is exhausted ``default`` is returned forever (or, without a
    default, the last step is repeated). Every position passed to ``fetch``
    is recorded in ``positions``.
    """

    def __init__(self, steps: Sequence[Batch | BaseException], default: Batch | None = None) -> None:
        if not steps and default is None:
            raise ValueError("ScriptedBatchFetcher needs steps or a default")
        self._steps = list(steps)
        self._default = default
        self._index = 0
        self.positions: list[FeedPosition] = []
        self.limits: list[int | None] = []

    @property
    def calls(self) -> int:
        return len(self.positions)

    async def fetch(
        self,
        position: FeedPosition,
        config: FollowerConfig,
        *,
        limit: int | None = None,
    ) -> Batch:
        self.positions.append(position)
        self.limits.append(limit)
        if self._index < len(self._steps):
            step = self._steps[self._index]
            self._index += 1
        elif self._default is not None:
            step = self._default
        else:
            step = self._steps[-1]
        if isinstance(step, BaseException):
            raise step
        return step
