"""
Wire contracts for the database changes feed.

Mirrors the JSON returned by ``POST /{db}/_changes`` and ``GET /{db}``.
Models are frozen: a record returned from a fetch is never mutated.
"""

from __future__ import annotations

from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_token(value: Any) -> Any:
    """Keep sequence tokens opaque strings.

    CouchDB 1.x sends integer sequences and BigCouch sends ``[n, "hash"]``.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return orjson.dumps(value).decode()
    return value


class ChangeRevision(BaseModel):
    """A leaf revision listed for a changed document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    rev: str = Field(..., min_length=1, description="Revision identifier")


class ChangeRecord(BaseModel):
    """
    A single change from the feed.

    Attributes:
        seq: Opaque sequence token of this change. None on the rows a
            seq_interval request leaves unsequenced.
        id: Document id.
        changes: Leaf revisions of the document (first is the winner).
        deleted: Whether the change is a deletion.
        doc: Document body, present only with include_docs.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    seq: str | None = Field(default=None, description="Sequence token")
    id: str = Field(..., description="Document id")
    changes: list[ChangeRevision] = Field(default_factory=list)
    deleted: bool = Field(default=False)
    doc: dict[str, Any] | None = Field(default=None)

    @field_validator("seq", mode="before")
    @classmethod
    def coerce_seq(cls, v: Any) -> Any:
        return _as_token(v)

    @property
    def sequence_token(self) -> str | None:
        return self.seq

    @property
    def document_id(self) -> str:
        return self.id

    @property
    def revision(self) -> str | None:
        """Winning revision, if the server listed any."""
        return self.changes[0].rev if self.changes else None

    @property
    def document(self) -> dict[str, Any] | None:
        return self.doc

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json", exclude_none=True))

    @classmethod
    def from_json(cls, data: bytes | str) -> ChangeRecord:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class ChangesResult(BaseModel):
    """One page of the changes feed."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    results: list[ChangeRecord] = Field(..., description="Changes in sequence order")
    last_seq: str = Field(..., description="Token to resume from")
    pending: int = Field(..., ge=0, description="Estimated changes still to read")

    @field_validator("last_seq", mode="before")
    @classmethod
    def coerce_last_seq(cls, v: Any) -> Any:
        return _as_token(v)

    @classmethod
    def from_json(cls, data: bytes | str) -> ChangesResult:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class DatabaseSizes(BaseModel):
    """Size figures reported for a database."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    active: int = Field(default=0, ge=0)
    external: int = Field(default=0, ge=0)
    file: int = Field(default=0, ge=0)


class DatabaseInformation(BaseModel):
    """Subset of ``GET /{db}`` used to size include_docs batches."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    db_name: str = Field(..., min_length=1)
    doc_count: int = Field(default=0, ge=0)
    doc_del_count: int = Field(default=0, ge=0)
    sizes: DatabaseSizes = Field(default_factory=DatabaseSizes)
