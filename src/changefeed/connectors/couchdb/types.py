"""
Types and constants for the CouchDB / Cloudant changes API.

Timeouts:
- Clients must allow at least 1 minute per request
- Longpoll requests ask the server to answer 3 seconds before that
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Server-side page size cap for one _changes request
BATCH_SIZE = 10_000

# Minimum client read timeout for following the feed
MIN_CLIENT_TIMEOUT_MS = 60_000

# Longpoll timeout: answer before the client gives up
LONGPOLL_TIMEOUT_MS = MIN_CLIENT_TIMEOUT_MS - 3_000

# Target size of one include_docs batch
TARGET_BATCH_BYTES = 5 * 1024 * 1024

# Typical per-change overhead on top of the document body
CHANGE_OVERHEAD_BYTES = 500


class FeedType(str, Enum):
    """Values of the _changes ``feed`` parameter used by the follower."""

    NORMAL = "normal"
    LONGPOLL = "longpoll"


class ChangesStyle(str, Enum):
    """Values of the _changes ``style`` parameter."""

    MAIN_ONLY = "main_only"
    ALL_DOCS = "all_docs"


@dataclass
class ClientConfig:
    """
    Configuration for the changes API client.

    Attributes:
        base_url: Server URL, e.g. "http://localhost:5984".
        request_timeout_ms: Total per-request timeout (0 = no timeout).
        headers: Extra headers sent with every request. Opaque to the client.
    """

    base_url: str = "http://localhost:5984"
    request_timeout_ms: int = 120_000
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("base_url is required")
        self.base_url = self.base_url.rstrip("/")
        if self.request_timeout_ms < 0:
            raise ValueError(f"request_timeout_ms must be >= 0, got {self.request_timeout_ms}")
