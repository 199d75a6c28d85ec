"""Data contracts for the changes feed."""

from changefeed.contracts.changes import (
    ChangeRecord,
    ChangeRevision,
    ChangesResult,
    DatabaseInformation,
    DatabaseSizes,
)

__all__ = [
    "ChangeRecord",
    "ChangeRevision",
    "ChangesResult",
    "DatabaseInformation",
    "DatabaseSizes",
]
