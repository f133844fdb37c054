"""SQLModel table backing the durable queue store."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class StoredRecord(SQLModel, table=True):
    """One JSON record of a named collection.

    The autoincrement ``id`` is kept across upserts, so ordering by it
    yields records in the order they were first saved.
    """

    __table_args__ = (UniqueConstraint("collection", "record_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    collection: str = Field(index=True)
    record_id: str = Field(index=True)
    payload: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["StoredRecord"]
