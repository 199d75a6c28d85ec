"""
Backoff and retry budget for changes feed requests.

- Exponential backoff with jitter, capped at the longpoll timeout
- Retry-After from the server raises the delay, never lowers it
- Budget on *consecutive* transient failures; a success resets it
- Optional error tolerance window measured from the last success
- Terminal errors are never retried
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from changefeed.connectors.errors import ErrorClass, GiveUpKind

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff and the retry budget.

    Attributes:
        base_delay_ms: Delay before the first retry (before jitter).
        max_delay_ms: Cap applied after jitter.
        multiplier: Growth factor per consecutive failure.
        jitter_factor: 0.5 = ±50% jitter.
        max_retries: Consecutive transient failures that are retried.
            None retries forever; 0 never retries.
        error_tolerance_ms: Give up on a transient failure occurring more than
            this long after the last success. None disables the window.
    """

    base_delay_ms: int = 100
    max_delay_ms: int = 57_000  # longpoll timeout
    multiplier: float = 2.0
    jitter_factor: float = 0.5
    max_retries: int | None = None
    error_tolerance_ms: int | None = None

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= base_delay_ms, got {self.max_delay_ms} < {self.base_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1], got {self.jitter_factor}")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.error_tolerance_ms is not None and self.error_tolerance_ms < 0:
            raise ValueError("Error tolerance duration must not be negative.")


@dataclass
class BackoffState:
    """Mutable retry state for one follower run."""

    attempt: int = 0
    consecutive_errors: int = 0
    last_error_time_ms: int = 0

    def reset(self) -> None:
        """Reset after a successful fetch."""
        self.attempt = 0
        self.consecutive_errors = 0

    def record_error(self, now_ms: int | None = None) -> None:
        """Record a transient failure."""
        self.attempt += 1
        self.consecutive_errors += 1
        self.last_error_time_ms = now_ms if now_ms is not None else int(time.time() * 1000)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of asking whether to retry.

    ``give_up`` is None for a retry after ``delay_ms``.
    """

    delay_ms: int = 0
    give_up: GiveUpKind | None = None

    @property
    def retry(self) -> bool:
        return self.give_up is None


def _max_exponent(config: BackoffConfig) -> int:
    """Smallest exponent at which the un-jittered delay reaches max_delay_ms."""
    if config.base_delay_ms <= 0 or config.multiplier <= 1.0 or config.max_delay_ms <= config.base_delay_ms:
        return 0
    return math.ceil(math.log(config.max_delay_ms / config.base_delay_ms, config.multiplier))


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before the next attempt.

    Args:
        config: Backoff configuration.
        state: Current backoff state (attempt already recorded).
        retry_after_ms: Server-provided delay (Retry-After header).
        rng: Optional seeded Random for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if state.attempt == 0:
        return 0

    # Growth stops at the cap so long outages never overflow
    exponent = min(state.attempt - 1, _max_exponent(config))
    delay = config.base_delay_ms * (config.multiplier**exponent)

    jitter_min = 1.0 - config.jitter_factor
    jitter_max = 1.0 + config.jitter_factor
    source = rng if rng is not None else random
    delay = min(delay * source.uniform(jitter_min, jitter_max), config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


def should_retry(
    config: BackoffConfig,
    state: BackoffState,
    error_class: ErrorClass,
    *,
    retry_after_ms: int | None = None,
    last_success_ms: int | None = None,
    now_ms: int | None = None,
    rng: random.Random | None = None,
) -> RetryDecision:
    """
    Decide whether to retry after a failed fetch.

    Records the failure in ``state`` when it is transient.

    Args:
        config: Backoff configuration and budget.
        state: Retry state of the current run.
        error_class: Classification of the failure.
        retry_after_ms: Server-provided delay, if any.
        last_success_ms: Time of the last successful fetch (or run start).
        now_ms: Current time in milliseconds.
        rng: Optional seeded Random for deterministic jitter.

    Returns:
        RetryDecision with a delay, or with the reason for giving up.
    """
    if error_class == ErrorClass.TERMINAL:
        return RetryDecision(give_up=GiveUpKind.PROTOCOL)

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    state.record_error(now_ms)

    if config.max_retries is not None and state.consecutive_errors > config.max_retries:
        return RetryDecision(give_up=GiveUpKind.BUDGET)

    if (
        config.error_tolerance_ms is not None
        and last_success_ms is not None
        and now_ms - last_success_ms >= config.error_tolerance_ms
    ):
        return RetryDecision(give_up=GiveUpKind.BUDGET)

    delay_ms = compute_backoff_delay(config, state, retry_after_ms, rng=rng)
    return RetryDecision(delay_ms=delay_ms)


class RetryScheduler:
    """
    Owns the retry state and backoff timer of one follower run.

    The wait is a plain ``asyncio.sleep`` so that cancelling the awaiting
    task abandons it immediately.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        rng: random.Random | None = None,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._config = config or BackoffConfig()
        self._rng = rng
        self._time_fn = time_fn
        self._state = BackoffState()
        self._last_success_ms = self._now_ms()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def config(self) -> BackoffConfig:
        return self._config

    @property
    def state(self) -> BackoffState:
        return self._state

    def should_retry(
        self,
        error_class: ErrorClass,
        *,
        retry_after_ms: int | None = None,
    ) -> RetryDecision:
        """Decide on a failure and record it."""
        return should_retry(
            self._config,
            self._state,
            error_class,
            retry_after_ms=retry_after_ms,
            last_success_ms=self._last_success_ms,
            now_ms=self._now_ms(),
            rng=self._rng,
        )

    def record_success(self) -> None:
        """Reset the consecutive failure count and the tolerance window."""
        self._state.reset()
        self._last_success_ms = self._now_ms()

    async def wait(self, decision: RetryDecision) -> None:
        """Suspend for the decided delay."""
        if decision.delay_ms > 0:
            await asyncio.sleep(decision.delay_ms / 1000)
