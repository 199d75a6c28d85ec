"""
Follower configuration and per-request changes parameters.

Some _changes options are managed by the follower itself and are rejected
when supplied by the caller:
- descending, feed, heartbeat, last_event_id, timeout
- filter other than "_selector" (JS filters are not supported)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from changefeed.connectors.couchdb.types import LONGPOLL_TIMEOUT_MS, ChangesStyle, FeedType

if TYPE_CHECKING:
    from collections.abc import Mapping

# Options the follower sets on every request
FOLLOWER_MANAGED_PARAMS: tuple[str, ...] = (
    "descending",
    "feed",
    "heartbeat",
    "last_event_id",
    "timeout",
)

SELECTOR_FILTER = "_selector"


class FollowerMode(str, Enum):
    """How a run terminates on its own."""

    FINITE = "FINITE"  # Stop once caught up
    LISTEN = "LISTEN"  # Keep polling for new changes


def validate_params(params: Mapping[str, Any] | None) -> None:
    """
    Validate caller-supplied changes params.

    Raises:
        ValueError: If params are missing, db is missing, or any
            follower-managed option or non-selector filter is present.
    """
    if params is None:
        raise ValueError("Changes params configuration is required.")
    if not params.get("db"):
        raise ValueError("The param db is required for changes params.")

    invalid = [f"'{name}'" for name in FOLLOWER_MANAGED_PARAMS if name in params]
    if "filter" in params and params["filter"] != SELECTOR_FILTER:
        invalid.append(f"'filter={params['filter']}'")

    if len(invalid) == 1:
        raise ValueError(f"The param {invalid[0]} is invalid when using ChangesFollower.")
    if invalid:
        raise ValueError(f"The params {', '.join(invalid)} are invalid when using ChangesFollower.")


class FollowerConfig(BaseModel):
    """
    Immutable configuration of a follower.

    Attributes:
        db: Target database name.
        since: Starting token; None means "now" (LISTEN) or "0" (FINITE).
        limit: Maximum number of records to emit before stopping.
        mode: LISTEN or FINITE.
        selector, doc_ids, filter, fields, include_docs, conflicts,
        attachments, att_encoding_info, seq_interval, style, view:
            Passed through to the server unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db: str = Field(..., min_length=1)
    since: str | None = Field(default=None)
    limit: int | None = Field(default=None, gt=0)
    mode: FollowerMode = Field(default=FollowerMode.LISTEN)

    selector: dict[str, Any] | None = None
    doc_ids: list[str] | None = None
    filter: str | None = None
    fields: list[str] | None = None
    include_docs: bool | None = None
    conflicts: bool | None = None
    attachments: bool | None = None
    att_encoding_info: bool | None = None
    seq_interval: int | None = Field(default=None, gt=0)
    style: ChangesStyle | None = None
    view: str | None = None

    @model_validator(mode="after")
    def check_filter(self) -> FollowerConfig:
        if self.filter is not None and self.filter != SELECTOR_FILTER:
            raise ValueError(f"The param 'filter={self.filter}' is invalid when using ChangesFollower.")
        return self

    @classmethod
    def from_params(cls, params: Mapping[str, Any], **overrides: Any) -> FollowerConfig:
        """Validate raw changes params and build a config from them."""
        validate_params(params)
        return cls.model_validate({**params, **overrides})

    def with_mode(self, mode: FollowerMode) -> FollowerConfig:
        """Copy of this config running in another mode."""
        return self.model_copy(update={"mode": mode})

    @property
    def initial_since(self) -> str:
        """Token the first request starts from."""
        if self.since is not None:
            return self.since
        return "now" if self.mode == FollowerMode.LISTEN else "0"


def build_request(
    config: FollowerConfig,
    since: str,
    limit: int,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Build the query params and JSON body of one _changes request.

    Args:
        config: Follower configuration.
        since: Position to read from.
        limit: Page size for this request.

    Returns:
        (query params, body)
    """
    params: dict[str, Any] = {
        "since": since,
        "limit": limit,
        "att_encoding_info": config.att_encoding_info,
        "attachments": config.attachments,
        "conflicts": config.conflicts,
        "filter": config.filter,
        "include_docs": config.include_docs,
        "seq_interval": config.seq_interval,
        "style": config.style.value if config.style is not None else None,
        "view": config.view,
    }
    if config.mode == FollowerMode.FINITE:
        params["feed"] = FeedType.NORMAL.value
    else:
        params["feed"] = FeedType.LONGPOLL.value
        params["timeout"] = LONGPOLL_TIMEOUT_MS

    body: dict[str, Any] = {}
    if config.doc_ids is not None:
        body["doc_ids"] = config.doc_ids
    if config.fields is not None:
        body["fields"] = config.fields
    if config.selector is not None:
        body["selector"] = config.selector

    return {k: v for k, v in params.items() if v is not None}, body
