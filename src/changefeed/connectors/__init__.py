"""Connectors for the database changes API."""

from changefeed.connectors.backoff import (
    BackoffConfig,
    BackoffState,
    RetryDecision,
    RetryScheduler,
    compute_backoff_delay,
    should_retry,
)
from changefeed.connectors.errors import (
    ChangesApiError,
    ChangesFollowerError,
    ErrorClass,
    GiveUpKind,
    ResponseParseError,
    RetryBudgetExhaustedError,
    TerminalProtocolError,
    classify_error,
)

__all__ = [
    "BackoffConfig",
    "BackoffState",
    "ChangesApiError",
    "ChangesFollowerError",
    "ErrorClass",
    "GiveUpKind",
    "ResponseParseError",
    "RetryBudgetExhaustedError",
    "RetryDecision",
    "RetryScheduler",
    "TerminalProtocolError",
    "classify_error",
    "compute_backoff_delay",
    "should_retry",
]
