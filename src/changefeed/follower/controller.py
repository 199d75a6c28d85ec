"""
Changes follower: the feed controller state machine.

States: IDLE -> RUNNING -> STOPPED(reason) | ERRORED(error)

Per cycle while RUNNING:
1. Fetch the page after the current checkpoint.
2. On success hand the records to the stream; the checkpoint advances once
   the last record of the page has been handed out. Stop when the limit is
   reached, or in FINITE mode when the server reports nothing pending.
3. On failure classify the error. Terminal errors end the run; transient
   errors are retried after a backoff at the *same* checkpoint until the
   retry budget runs out.

The fetch and the backoff wait are the only suspension points and both are
raced against ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from changefeed.connectors.backoff import BackoffConfig, RetryScheduler
from changefeed.connectors.couchdb.types import LONGPOLL_TIMEOUT_MS
from changefeed.connectors.errors import (
    ChangesFollowerError,
    ErrorClass,
    GiveUpKind,
    RetryBudgetExhaustedError,
    TerminalProtocolError,
    classify_error,
)
from changefeed.follower.emitter import ChangesStream
from changefeed.follower.fetcher import ClientBatchFetcher
from changefeed.follower.params import FollowerConfig, FollowerMode
from changefeed.follower.position import FeedPosition, SequenceTracker

if TYPE_CHECKING:
    import random
    from collections.abc import Awaitable, Callable, Mapping

    from changefeed.follower.fetcher import Batch, BatchFetcher, ChangesClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FollowerState(str, Enum):
    """Lifecycle state of a follower."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERRORED = "ERRORED"


class StopReason(str, Enum):
    """Why a run reached STOPPED."""

    CALLER_CANCELLED = "caller-cancelled"
    CAUGHT_UP = "caught-up"
    LIMIT_REACHED = "limit-reached"


@dataclass(frozen=True)
class FollowerOutcome:
    """Terminal result of a run: a stop reason or an error, never both."""

    state: FollowerState
    position: FeedPosition
    stop_reason: StopReason | None = None
    error: ChangesFollowerError | None = None


@dataclass
class FollowerMetrics:
    """
    Counters for one follower.

    Attributes:
        batches_fetched: Successful fetches.
        changes_emitted: Records handed to the caller and acknowledged.
        transient_errors: Failed fetches classified as transient.
        retries: Backoff waits scheduled.
        terminal_errors: Runs ended in ERRORED.
        pending: Last server-reported pending count.
        state: Current state.
        last_error: Last error message if any.
    """

    batches_fetched: int = 0
    changes_emitted: int = 0
    transient_errors: int = 0
    retries: int = 0
    terminal_errors: int = 0
    pending: int = 0
    state: FollowerState = FollowerState.IDLE
    last_error: str | None = None


class _Stopped(Exception):
    """stop() won the race against a suspension point."""


def _log_abandoned(task: asyncio.Future[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned request failed", extra={"error": repr(task.exception())})


class ChangesFollower:
    """
    Follows a database changes feed.

    Two modes:
    - LISTEN: read from ``since`` (default "now") and keep listening forever.
    - FINITE: read from ``since`` (default "0") until nothing is pending.

    Transient errors are suppressed and retried with backoff; terminal errors
    (bad request, unauthorized, missing database, ...) end the run at once.
    The same change may be delivered more than once.

    A follower runs once: ``start()`` (or ``start_one_off()``) may only be
    called a single time.
    """

    def __init__(
        self,
        fetcher: BatchFetcher,
        config: FollowerConfig,
        *,
        backoff_config: BackoffConfig | None = None,
        error_tolerance_ms: int | None = None,
        rng: random.Random | None = None,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the follower.

        Args:
            fetcher: Source of pages (one request per fetch).
            config: Follower configuration.
            backoff_config: Backoff and retry budget (default: unlimited retries).
            error_tolerance_ms: Give up on transient errors persisting this long
                after the last success (overrides backoff_config).
            rng: Seeded Random for deterministic backoff jitter.
            time_fn: Time provider in ms for deterministic testing.
        """
        self._fetcher = fetcher
        self._config = config
        backoff = backoff_config or BackoffConfig(max_delay_ms=LONGPOLL_TIMEOUT_MS)
        if error_tolerance_ms is not None:
            backoff = replace(backoff, error_tolerance_ms=error_tolerance_ms)
        self._backoff_config = backoff
        self._rng = rng
        self._time_fn = time_fn

        self._state = FollowerState.IDLE
        self._stop_reason: StopReason | None = None
        self._error: ChangesFollowerError | None = None
        self._metrics = FollowerMetrics()

        self._run_config = config
        self._tracker = SequenceTracker(config.initial_since)
        self._scheduler: RetryScheduler | None = None
        self._stop_event = asyncio.Event()
        self._done = asyncio.Event()

    @classmethod
    def from_client(
        cls,
        client: ChangesClient,
        params: Mapping[str, Any],
        *,
        backoff_config: BackoffConfig | None = None,
        error_tolerance_ms: int | None = None,
    ) -> ChangesFollower:
        """
        Build a follower around a changes API client.

        Args:
            client: API client (request timeout must be >= 1 minute).
            params: Raw changes params; follower-managed options are rejected.
            backoff_config: Backoff and retry budget.
            error_tolerance_ms: Error tolerance window in milliseconds.

        Raises:
            ValueError: On invalid params or a too short client timeout.
        """
        config = FollowerConfig.from_params(params)
        return cls(
            ClientBatchFetcher(client),
            config,
            backoff_config=backoff_config,
            error_tolerance_ms=error_tolerance_ms,
        )

    @property
    def config(self) -> FollowerConfig:
        return self._config

    @property
    def state(self) -> FollowerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == FollowerState.RUNNING

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def error(self) -> ChangesFollowerError | None:
        return self._error

    @property
    def position(self) -> FeedPosition:
        """Last confirmed checkpoint; restart from ``position.since``."""
        return self._tracker.current()

    @property
    def metrics(self) -> FollowerMetrics:
        return self._metrics

    @property
    def outcome(self) -> FollowerOutcome:
        return FollowerOutcome(
            state=self._state,
            position=self.position,
            stop_reason=self._stop_reason,
            error=self._error,
        )

    def health(self) -> dict[str, Any]:
        """Health info for /healthz: not ok once the run has errored."""
        position = self.position
        return {
            "ok": self._state != FollowerState.ERRORED,
            "state": self._state.value,
            "stop_reason": self._stop_reason.value if self._stop_reason else None,
            "pending": position.pending,
            "emitted": position.emitted,
        }

    def start(self) -> ChangesStream:
        """
        Start a run in the configured mode.

        Returns:
            Async iterator of ChangeRecord.

        Raises:
            RuntimeError: If the follower was already started.
        """
        return self._run(self._config.mode)

    def start_one_off(self) -> ChangesStream:
        """Start a FINITE run: read until nothing is pending, then stop."""
        return self._run(FollowerMode.FINITE)

    def stop(self) -> None:
        """
        Stop the run. Safe to call any number of times.

        Abandons an in-flight request or backoff wait; the checkpoint stays
        at the last fully emitted batch.

        Raises:
            RuntimeError: If the follower was never started.
        """
        if self._state == FollowerState.IDLE:
            raise RuntimeError("Cannot stop a feed that is not running.")
        if self._state == FollowerState.RUNNING:
            self._finish(StopReason.CALLER_CANCELLED)
        self._stop_event.set()

    async def wait(self) -> FollowerOutcome:
        """Wait until the run is STOPPED or ERRORED."""
        await self._done.wait()
        return self.outcome

    def _run(self, mode: FollowerMode) -> ChangesStream:
        if self._state != FollowerState.IDLE:
            raise RuntimeError("Cannot start a feed that has already started.")

        self._run_config = self._config if mode == self._config.mode else self._config.with_mode(mode)
        self._tracker = SequenceTracker(self._run_config.initial_since)
        self._scheduler = RetryScheduler(self._backoff_config, rng=self._rng, time_fn=self._time_fn)
        self._set_state(FollowerState.RUNNING)

        if self._run_config.limit is not None:
            logger.debug("Applying changes limit", extra={"limit": self._run_config.limit})
        logger.info(
            "Starting changes follower",
            extra={
                "db": self._run_config.db,
                "mode": mode.value,
                "since": self._run_config.initial_since,
            },
        )
        return ChangesStream(self)

    def _set_state(self, state: FollowerState) -> None:
        self._state = state
        self._metrics.state = state

    def _remaining(self) -> int | None:
        if self._run_config.limit is None:
            return None
        return self._run_config.limit - self._tracker.current().emitted

    def _finish(self, reason: StopReason) -> None:
        self._set_state(FollowerState.STOPPED)
        self._stop_reason = reason
        self._stop_event.set()
        self._done.set()
        position = self._tracker.current()
        logger.info(
            "Changes follower stopped",
            extra={"reason": reason.value, "since": position.since, "emitted": position.emitted},
        )

    def _fail(self, error: ChangesFollowerError) -> None:
        self._set_state(FollowerState.ERRORED)
        self._error = error
        self._metrics.terminal_errors += 1
        self._metrics.last_error = str(error.cause)
        self._stop_event.set()
        self._done.set()
        logger.error(
            "Changes follower errored",
            extra={
                "kind": error.kind.value,
                "error": repr(error.cause),
                "since": self._tracker.current().since,
            },
        )

    async def _until_stopped(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless stop() comes first."""
        if self._stop_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Stopped

        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
                task.add_done_callback(_log_abandoned)

        if self._stop_event.is_set():
            if task.done():
                _log_abandoned(task)
            raise _Stopped
        return task.result()

    def _give_up(self, cause: Exception, error_class: ErrorClass, kind: GiveUpKind) -> ChangesFollowerError:
        error_type = TerminalProtocolError if kind == GiveUpKind.PROTOCOL else RetryBudgetExhaustedError
        error = error_type(cause, error_class)
        self._fail(error)
        return error

    async def next_batch(self) -> Batch | None:
        """
        Run cycles until a page is fetched or the run ends.

        Returns:
            The next page (truncated to the remaining limit), or None once
            the run is STOPPED.

        Raises:
            ChangesFollowerError: When the run ends in ERRORED.
        """
        assert self._scheduler is not None  # Type narrowing

        while self._state == FollowerState.RUNNING:
            remaining = self._remaining()
            try:
                batch = await self._until_stopped(
                    self._fetcher.fetch(self._tracker.current(), self._run_config, limit=remaining)
                )
            except _Stopped:
                return None
            except Exception as e:
                error_class = classify_error(e)
                retry_after_ms = getattr(e, "retry_after_ms", None)
                decision = self._scheduler.should_retry(
                    error_class,
                    retry_after_ms=retry_after_ms if isinstance(retry_after_ms, int) else None,
                )
                if error_class == ErrorClass.TRANSIENT:
                    self._metrics.transient_errors += 1
                if decision.give_up is not None:
                    raise self._give_up(e, error_class, decision.give_up) from e

                self._metrics.retries += 1
                self._metrics.last_error = repr(e)
                logger.warning(
                    "Suppressing transient error",
                    extra={
                        "error": repr(e),
                        "attempt": self._scheduler.state.consecutive_errors,
                        "delay_ms": decision.delay_ms,
                    },
                )
                try:
                    await self._until_stopped(self._scheduler.wait(decision))
                except _Stopped:
                    return None
                continue

            self._scheduler.record_success()
            self._metrics.batches_fetched += 1
            self._metrics.pending = batch.pending
            if remaining is not None and len(batch.records) > remaining:
                logger.debug("Truncating batch to limit", extra={"remaining": remaining})
                batch = batch.truncated(remaining, since=self._tracker.current().since)
            return batch

        return None

    def acknowledge(self, batch: Batch) -> None:
        """
        Advance past a batch whose every record was handed to the caller.

        Ignored once the run has ended, so a stopped run never moves its
        checkpoint.
        """
        if self._state != FollowerState.RUNNING:
            return

        position = self._tracker.advance(batch)
        self._metrics.changes_emitted += len(batch.records)

        if self._run_config.limit is not None and position.emitted >= self._run_config.limit:
            logger.debug("Limit reached")
            self._finish(StopReason.LIMIT_REACHED)
        elif self._run_config.mode == FollowerMode.FINITE and batch.caught_up:
            logger.debug("No more changes pending")
            self._finish(StopReason.CAUGHT_UP)
