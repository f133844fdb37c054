"""Queued operation record and per-pass sync result."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from datetime_utils import from_epoch_ms, to_epoch_ms, utc_now


class OperationType(str, Enum):
    MESSAGE = "message"
    CARD_ADD = "card_add"
    CARD_UPDATE = "card_update"
    CARD_DELETE = "card_delete"


CARD_OPERATION_TYPES = frozenset(
    {OperationType.CARD_ADD, OperationType.CARD_UPDATE, OperationType.CARD_DELETE}
)


class OperationStatus(str, Enum):
    QUEUED = "queued"
    SYNCING = "syncing"
    SYNCED = "synced"
    # retry budget spent or error not retryable; waits for manual action
    FAILED = "failed"


def new_operation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class QueuedOperation:
    type: OperationType
    data: Dict[str, Any]
    id: str = field(default_factory=new_operation_id)
    timestamp: datetime = field(default_factory=utc_now)
    attempts: int = 0
    status: OperationStatus = OperationStatus.QUEUED
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    @property
    def created_at(self) -> datetime:
        return self.timestamp

    @property
    def is_card_operation(self) -> bool:
        return self.type in CARD_OPERATION_TYPES

    def copy(self) -> "QueuedOperation":
        return replace(self, data=dict(self.data))

    def to_record(self) -> Dict[str, Any]:
        stamp = to_epoch_ms(self.timestamp)
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": stamp,
            "createdAt": stamp,
            "attempts": self.attempts,
            "status": self.status.value,
            "lastError": self.last_error,
            "lastAttemptAt": to_epoch_ms(self.last_attempt_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QueuedOperation":
        """Rebuild an operation read back from the durable store.

        Raises ``ValueError`` (or ``KeyError``) on records that cannot be
        interpreted.
        """
        data = record.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("record data must be an object")
        timestamp = from_epoch_ms(record.get("timestamp", record.get("createdAt"))) or utc_now()
        return cls(
            id=str(record["id"]),
            type=OperationType(record["type"]),
            data=dict(data),
            timestamp=timestamp,
            attempts=int(record.get("attempts") or 0),
            status=OperationStatus(record.get("status") or OperationStatus.QUEUED.value),
            last_error=record.get("lastError"),
            last_attempt_at=from_epoch_ms(record.get("lastAttemptAt")),
        )


@dataclass
class SyncResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    syncing: bool = False

    @property
    def success(self) -> bool:
        return not self.syncing and self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        if self.syncing:
            return {"syncing": True}
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


__all__ = [
    "CARD_OPERATION_TYPES",
    "OperationStatus",
    "OperationType",
    "QueuedOperation",
    "SyncResult",
    "new_operation_id",
]
