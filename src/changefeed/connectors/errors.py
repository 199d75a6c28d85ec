"""
Error types and classification for the changes feed.

Classification decides whether retrying the identical request can be
expected to succeed:
- TRANSIENT: network faults, timeouts, DNS failures, 429 and 5xx responses,
  and anything the transport tags as ``retryable``.
- TERMINAL: other 4xx responses, malformed responses and unrecognized errors.
"""

from __future__ import annotations

import asyncio
import socket
from enum import Enum

import aiohttp

# 429 is the only retryable client error
RATE_LIMITED_STATUS = 429


class ErrorClass(str, Enum):
    """Whether a failed fetch is worth retrying."""

    TRANSIENT = "TRANSIENT"
    TERMINAL = "TERMINAL"


class GiveUpKind(str, Enum):
    """Why a run stopped retrying."""

    PROTOCOL = "PROTOCOL"  # Terminal error, retrying cannot help
    BUDGET = "BUDGET"  # Transient errors exhausted the retry budget


class ChangesApiError(Exception):
    """Raised by the API client for a non-2xx response."""

    def __init__(
        self,
        status_code: int,
        error: str = "",
        reason: str = "",
        retry_after_ms: int | None = None,
    ) -> None:
        message = f"HTTP {status_code}"
        if error:
            message = f"{message} {error}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.reason = reason
        self.retry_after_ms = retry_after_ms

    @property
    def retryable(self) -> bool:
        """Check if the status is rate limiting or a server error."""
        return is_retryable_status(self.status_code)


class ResponseParseError(Exception):
    """Raised when a 2xx response body is not a valid changes result."""

    def __init__(self, message: str, body: str = "") -> None:
        super().__init__(message)
        self.body = body[:500]


class ChangesFollowerError(Exception):
    """
    Raised to the caller when a follower run ends in the ERRORED state.

    The original failure is kept verbatim on ``cause`` (and ``__cause__``).
    """

    kind: GiveUpKind = GiveUpKind.PROTOCOL
    summary: str = "Changes feed terminated"

    def __init__(self, cause: BaseException, error_class: ErrorClass) -> None:
        super().__init__(f"{self.summary}: {cause!r}")
        self.cause = cause
        self.error_class = error_class


class TerminalProtocolError(ChangesFollowerError):
    """A terminal error (bad request, unauthorized, not found, ...)."""

    kind = GiveUpKind.PROTOCOL
    summary = "Terminal error from changes feed"


class RetryBudgetExhaustedError(ChangesFollowerError):
    """Transient errors continued beyond the retry budget."""

    kind = GiveUpKind.BUDGET
    summary = "Retry budget exhausted for changes feed"


def is_retryable_status(status: int) -> bool:
    """Check if an HTTP status is worth retrying (429 or 5xx)."""
    return status == RATE_LIMITED_STATUS or status >= 500


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, ChangesApiError):
        return error.status_code
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    return None


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify an error raised while fetching a batch.

    Pure function: no logging, no state.

    Args:
        error: Exception raised by the batch fetcher.

    Returns:
        ErrorClass.TRANSIENT if retrying the same request may succeed,
        ErrorClass.TERMINAL otherwise.
    """
    status = _status_of(error)
    if status is not None:
        return ErrorClass.TRANSIENT if is_retryable_status(status) else ErrorClass.TERMINAL

    if isinstance(error, ResponseParseError):
        return ErrorClass.TERMINAL

    if getattr(error, "retryable", False) is True:
        return ErrorClass.TRANSIENT

    # ServerTimeoutError is both a ClientConnectionError and a TimeoutError
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorClass.TRANSIENT

    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return ErrorClass.TRANSIENT

    if isinstance(error, (ConnectionError, socket.gaierror)):
        return ErrorClass.TRANSIENT

    return ErrorClass.TERMINAL
