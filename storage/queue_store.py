"""Durable key-value store mirroring the offline operation queue."""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Protocol

from sqlmodel import Session, select

from datetime_utils import utc_now
from models.stored_record import StoredRecord
from storage.db import get_session


class QueueStore(Protocol):
    """Collection-keyed record store used by :class:`SyncManager`."""

    def save_to_store(self, collection: str, record: Mapping[str, Any]) -> None: ...

    def delete_from_store(self, collection: str, record_id: str) -> None: ...

    def read_from_store(self, collection: str) -> List[Dict[str, Any]]: ...

    def clear_store(self, collection: str) -> None: ...


def _serialise_record(record: Mapping[str, Any]) -> str:
    return json.dumps(dict(record), ensure_ascii=False, sort_keys=True)


def _deserialise_record(payload: str | None) -> Dict[str, Any] | None:
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class SQLQueueStore:
    """SQLite implementation of :class:`QueueStore`.

    Records are upserted by their ``id`` key, so saving the same record twice
    leaves a single row in its original position.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    def _find(self, session: Session, collection: str, record_id: str) -> StoredRecord | None:
        stmt = select(StoredRecord).where(
            StoredRecord.collection == collection,
            StoredRecord.record_id == record_id,
        )
        return session.exec(stmt).first()

    def save_to_store(self, collection: str, record: Mapping[str, Any]) -> None:
        record_id = record.get("id")
        if not record_id:
            raise ValueError("record must carry an 'id'")
        payload = _serialise_record(record)
        with self._session_factory() as session:
            row = self._find(session, collection, str(record_id))
            if row is None:
                row = StoredRecord(collection=collection, record_id=str(record_id), payload=payload)
            else:
                row.payload = payload
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def delete_from_store(self, collection: str, record_id: str) -> None:
        with self._session_factory() as session:
            row = self._find(session, collection, str(record_id))
            if row is not None:
                session.delete(row)
                session.commit()

    def read_from_store(self, collection: str) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            stmt = (
                select(StoredRecord)
                .where(StoredRecord.collection == collection)
                .order_by(StoredRecord.id.asc())
            )
            rows = list(session.exec(stmt))

        records: List[Dict[str, Any]] = []
        for row in rows:
            data = _deserialise_record(row.payload)
            if data is not None:
                records.append(data)
        return records

    def clear_store(self, collection: str) -> None:
        with self._session_factory() as session:
            rows = session.exec(select(StoredRecord).where(StoredRecord.collection == collection)).all()
            for row in rows:
                session.delete(row)
            session.commit()


__all__ = ["QueueStore", "SQLQueueStore"]
