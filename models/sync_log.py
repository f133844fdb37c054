"""SQLModel table for the sync audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncLogEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True)
    status: str = Field(index=True)  # started / completed / failed
    operation_count: Optional[int] = None
    succeeded: Optional[int] = None
    failed: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["SyncLogEntry"]
