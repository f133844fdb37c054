"""Persistence helpers for the sync audit trail."""

from __future__ import annotations

from typing import Callable, List, Optional

from sqlmodel import Session, select

from models.sync_log import SyncLogEntry
from storage.db import get_session


class SyncLogStore:
    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    def add(
        self,
        action: str,
        status: str,
        *,
        operation_count: Optional[int] = None,
        succeeded: Optional[int] = None,
        failed: Optional[int] = None,
        error: Optional[str] = None,
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            action=action,
            status=status,
            operation_count=operation_count,
            succeeded=succeeded,
            failed=failed,
            error=error[:1000] if error else None,
        )
        with self._session_factory() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def recent(self, limit: int = 20) -> List[SyncLogEntry]:
        with self._session_factory() as session:
            stmt = (
                select(SyncLogEntry)
                .order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc())
                .limit(limit)
            )
            return list(session.exec(stmt))


__all__ = ["SyncLogStore"]
