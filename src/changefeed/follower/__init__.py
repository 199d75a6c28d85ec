"""
Changes follower.

Turns the paginated changes API into a resumable async stream:
- FINITE runs stop once caught up, LISTEN runs poll forever
- Transient errors are retried with backoff at an unchanged checkpoint
- Terminal errors and an exhausted retry budget end the run
"""

from changefeed.follower.controller import (
    ChangesFollower,
    FollowerMetrics,
    FollowerOutcome,
    FollowerState,
    StopReason,
)
from changefeed.follower.emitter import ChangesStream
from changefeed.follower.fetcher import (
    Batch,
    BatchFetcher,
    ClientBatchFetcher,
    ScriptedBatchFetcher,
)
from changefeed.follower.params import FollowerConfig, FollowerMode, validate_params
from changefeed.follower.position import FeedPosition, SequenceTracker

__all__ = [
    "Batch",
    "BatchFetcher",
    "ChangesFollower",
    "ChangesStream",
    "ClientBatchFetcher",
    "FeedPosition",
    "FollowerConfig",
    "FollowerMetrics",
    "FollowerMode",
    "FollowerOutcome",
    "FollowerState",
    "ScriptedBatchFetcher",
    "SequenceTracker",
    "StopReason",
    "validate_params",
]
