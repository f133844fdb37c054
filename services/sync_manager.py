from __future__ import annotations
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from core.settings import SYNC, SYNC_LOG_PATH
from datetime_utils import utc_now
from services.dispatcher import DispatchResult, OperationDispatcher
from services.events import EventBus, SyncEvent
from services.queued_operation import (
    OperationStatus,
    OperationType,
    QueuedOperation,
    SyncResult,
)
from services.retry_policy import RetryPolicy
from storage.queue_store import QueueStore


EXHAUSTED_POLICIES = {"retain", "purge"}


class SyncStatus:
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("vitta.sync")
    if not logger.handlers:
        Path(SYNC_LOG_PATH).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


class SyncManager:
    def __init__(
        self,
        store: QueueStore,
        dispatcher: OperationDispatcher,
        *,
        policy: Optional[RetryPolicy] = None,
        collection: str = SYNC.queue_collection,
        exhausted_policy: str = SYNC.exhausted_policy,
        events: Optional[EventBus] = None,
    ) -> None:
        if exhausted_policy not in EXHAUSTED_POLICIES:
            raise ValueError(f"Unknown exhausted policy: {exhausted_policy}")
        self.store = store
        self.dispatcher = dispatcher
        self.policy = policy or RetryPolicy.from_settings()
        self.collection = collection
        self.exhausted_policy = exhausted_policy
        self.events = events or EventBus()
        self.logger = _ensure_logger()

        self._queue: List[QueuedOperation] = []
        self._is_syncing = False
        self._status = SyncStatus.IDLE
        self.last_sync_time = None

    # ------------------------------------------------------------------
    # Queue mutation
    def add_to_queue(self, operation: Mapping[str, Any]) -> str:
        """Queue ``{"type": ..., "data": ...}`` and return the new operation id."""

        raw_type = operation.get("type")
        try:
            op_type = OperationType(raw_type)
        except ValueError:
            raise ValueError(f"Unsupported operation type: {raw_type}") from None

        queued = QueuedOperation(type=op_type, data=dict(operation.get("data") or {}))
        self._queue.append(queued)
        self._persist(queued)

        self.logger.info(
            "Added %s to queue (ID: %s), queue size: %d",
            op_type.value,
            queued.id,
            len(self._queue),
        )
        self.events.emit(SyncEvent.OPERATION_QUEUED, queued)
        return queued.id

    def retry_operation(self, operation_id: str) -> QueuedOperation:
        """Give one operation a fresh retry budget."""

        operation = self._require(operation_id)
        operation.attempts = 0
        operation.status = OperationStatus.QUEUED
        operation.last_error = None
        self._persist(operation)
        self.logger.info("Operation %s reset for retry", operation_id)
        return operation.copy()

    def remove_operation(self, operation_id: str) -> QueuedOperation:
        operation = self._require(operation_id)
        self._discard(operation)
        self.logger.info("Operation %s removed from queue", operation_id)
        return operation

    def clear_queue(self) -> int:
        cleared = len(self._queue)
        self._queue = []
        try:
            self.store.clear_store(self.collection)
        except Exception as exc:
            self.logger.error("Failed to clear %s store: %s", self.collection, exc)
        self.logger.warning("Cleared %d items from queue", cleared)
        return cleared

    def restore_from_store(self) -> int:
        """Reload persisted operations after a restart, oldest first."""

        try:
            records = self.store.read_from_store(self.collection)
        except Exception as exc:
            self.logger.error("Failed to read %s store: %s", self.collection, exc)
            return 0

        known = {op.id for op in self._queue}
        restored = 0
        for record in records:
            try:
                operation = QueuedOperation.from_record(record)
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning("Skipping unreadable queue record %r: %s", record.get("id"), exc)
                continue
            if operation.id in known:
                continue
            if operation.status is OperationStatus.FAILED and self.exhausted_policy == "purge":
                self._delete_record(operation.id)
                self.logger.warning("Purged exhausted operation %s on restore", operation.id)
                continue
            if operation.status is OperationStatus.SYNCING:
                operation.status = OperationStatus.QUEUED
            self._queue.append(operation)
            known.add(operation.id)
            restored += 1

        if restored:
            self.logger.info("Restored %d queued operations", restored)
        return restored

    # ------------------------------------------------------------------
    # Sync
    async def process_queue(self, *, include_exhausted: bool = False) -> SyncResult:
        if self._is_syncing:
            self.logger.info("Sync already in progress, skipping")
            return SyncResult(syncing=True)

        self._is_syncing = True
        self._status = SyncStatus.SYNCING
        result = SyncResult()
        try:
            snapshot = list(self._queue)
            pending = []
            for operation in snapshot:
                if operation.status is OperationStatus.FAILED and not include_exhausted:
                    result.skipped += 1
                else:
                    pending.append(operation)

            self.events.emit(SyncEvent.SYNC_START, {"queueSize": len(pending)})

            for operation in pending:
                if not self._contains(operation):
                    continue
                result.processed += 1
                outcome = await self._dispatch(operation)
                if outcome.ok:
                    self._on_success(operation)
                    result.succeeded += 1
                else:
                    self._on_failure(operation, outcome)
                    result.failed += 1
                    result.errors.append(
                        {"id": operation.id, "type": operation.type.value, "error": outcome.error}
                    )

            self._status = SyncStatus.IDLE if result.failed == 0 else SyncStatus.ERROR
            self.last_sync_time = utc_now()
            self.logger.info(
                "Sync complete: %d succeeded, %d failed, %d skipped",
                result.succeeded,
                result.failed,
                result.skipped,
            )
            self.events.emit(SyncEvent.SYNC_COMPLETE, result)
        finally:
            if self._status == SyncStatus.SYNCING:
                self._status = SyncStatus.ERROR
            self._is_syncing = False
        return result

    async def _dispatch(self, operation: QueuedOperation) -> DispatchResult:
        operation.status = OperationStatus.SYNCING
        try:
            return await self.dispatcher.dispatch(operation)
        except Exception as exc:  # pragma: no cover - dispatcher reports failures as data
            self.logger.error("Dispatch of %s crashed: %s", operation.id, exc)
            return DispatchResult(ok=False, error=str(exc), exception=exc)

    def _on_success(self, operation: QueuedOperation) -> None:
        operation.status = OperationStatus.SYNCED
        self._discard(operation)
        self.logger.info("%s synced (ID: %s)", operation.type.value, operation.id)
        self.events.emit(SyncEvent.OPERATION_SYNCED, operation)

    def _on_failure(self, operation: QueuedOperation, outcome: DispatchResult) -> None:
        operation.attempts += 1
        operation.last_error = (outcome.error or "unknown error")[:1000]
        operation.last_attempt_at = utc_now()

        if self.policy.should_retry(operation.attempts, outcome.status, outcome.exception):
            operation.status = OperationStatus.QUEUED
            self.logger.warning(
                "Operation %s failed (%s): %s",
                operation.id,
                self.policy.describe(operation.attempts),
                operation.last_error,
            )
        else:
            operation.status = OperationStatus.FAILED
            self.logger.error(
                "Operation %s stopped retrying after %d attempts: %s",
                operation.id,
                operation.attempts,
                operation.last_error,
            )

        if operation.status is OperationStatus.FAILED and self.exhausted_policy == "purge":
            self._discard(operation)
            self.logger.warning("Purged exhausted operation %s", operation.id)
        elif self._contains(operation):
            self._persist(operation)

        self.events.emit(SyncEvent.OPERATION_FAILED, operation, operation.last_error)

    # ------------------------------------------------------------------
    # Queries
    def get_queue_length(self) -> int:
        return len(self._queue)

    def get_queue_items(self) -> List[QueuedOperation]:
        return [op.copy() for op in self._queue]

    def get_operation(self, operation_id: str) -> Optional[QueuedOperation]:
        for operation in self._queue:
            if operation.id == operation_id:
                return operation.copy()
        return None

    def get_sync_status(self) -> str:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def status(self) -> dict:
        items = self._queue
        return {
            "status": self._status,
            "queueSize": len(items),
            "failed": sum(1 for op in items if op.status is OperationStatus.FAILED),
            "lastSyncAt": self.last_sync_time,
        }

    # ------------------------------------------------------------------
    # Events
    def on(self, event: SyncEvent | str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(event, handler)

    def off(self, event: SyncEvent | str, handler: Callable[..., Any]) -> None:
        self.events.off(event, handler)

    # ------------------------------------------------------------------
    # Internals
    def _require(self, operation_id: str) -> QueuedOperation:
        for operation in self._queue:
            if operation.id == operation_id:
                return operation
        raise ValueError(f"Unknown operation: {operation_id}")

    def _contains(self, operation: QueuedOperation) -> bool:
        return any(op is operation for op in self._queue)

    def _discard(self, operation: QueuedOperation) -> None:
        self._queue = [op for op in self._queue if op is not operation]
        self._delete_record(operation.id)

    def _delete_record(self, operation_id: str) -> None:
        try:
            self.store.delete_from_store(self.collection, operation_id)
        except Exception as exc:
            self.logger.error("Failed to delete %s from store: %s", operation_id, exc)

    def _persist(self, operation: QueuedOperation) -> None:
        try:
            self.store.save_to_store(self.collection, operation.to_record())
        except Exception as exc:
            self.logger.error("Failed to persist %s: %s", operation.id, exc)


_instance: Optional[SyncManager] = None


def _default_factory() -> SyncManager:
    from services.transport import HttpxTransport
    from storage.db import init_db
    from storage.queue_store import SQLQueueStore

    init_db()
    manager = SyncManager(SQLQueueStore(), OperationDispatcher(HttpxTransport()))
    manager.restore_from_store()
    return manager


def get_sync_manager(factory: Optional[Callable[[], SyncManager]] = None) -> SyncManager:
    global _instance
    if _instance is None:
        _instance = (factory or _default_factory)()
    return _instance


def reset_sync_manager() -> None:
    """Forget the process-wide manager; the next lookup builds a fresh one.

    The manager's transport is left open; use :func:`close_sync_manager`
    when the process is shutting down.
    """

    global _instance
    _instance = None


async def close_sync_manager() -> None:
    """Close the process-wide manager's transport and forget the manager."""

    global _instance
    manager, _instance = _instance, None
    if manager is None:
        return
    aclose = getattr(manager.dispatcher.transport, "aclose", None)
    if aclose is not None:
        await aclose()


__all__ = [
    "OperationStatus",
    "OperationType",
    "QueuedOperation",
    "SyncManager",
    "SyncResult",
    "SyncStatus",
    "close_sync_manager",
    "get_sync_manager",
    "reset_sync_manager",
]
