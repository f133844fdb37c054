"""User actions that fall back to the offline queue when the network is down."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping

from datetime_utils import to_epoch_ms, to_rfc3339_utc, utc_now
from services.connectivity import ConnectivityMonitor
from services.dispatcher import OperationDispatcher
from services.events import SyncEvent
from services.queued_operation import OperationType, QueuedOperation
from services.sync_manager import SyncManager


logger = logging.getLogger("vitta.sync.actions")

CARD_EVENTS = {SyncEvent.OPERATION_QUEUED, SyncEvent.OPERATION_SYNCED, SyncEvent.OPERATION_FAILED}


class OfflineActionError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class OfflineActions:
    def __init__(
        self,
        manager: SyncManager,
        connectivity: ConnectivityMonitor,
        dispatcher: OperationDispatcher,
    ) -> None:
        self.manager = manager
        self.connectivity = connectivity
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    async def send_message(self, text: str) -> Dict[str, Any]:
        data = {"message": text}
        if not self.connectivity.is_online:
            operation_id = self._queue(OperationType.MESSAGE, data)
            return {
                "queued": True,
                "operationId": operation_id,
                "pendingSync": True,
                "message": "Message queued. It will be sent when you're back online.",
            }
        body = await self._send_now(OperationType.MESSAGE, data)
        return {"queued": False, "pendingSync": False, "response": body}

    async def add_card(self, card_data: Mapping[str, Any]) -> Dict[str, Any]:
        logger.info("Adding card: %s", card_data.get("nickname"))
        if not self.connectivity.is_online:
            operation_id = self._queue(OperationType.CARD_ADD, dict(card_data))
            now = to_rfc3339_utc(utc_now())
            return {
                "id": f"pending-{operation_id}",
                **card_data,
                "queued": True,
                "operationId": operation_id,
                "pendingSync": True,
                "created_at": now,
                "updated_at": now,
                "message": "Card queued. It will be added when you're back online.",
            }
        body = await self._send_now(OperationType.CARD_ADD, dict(card_data))
        card = body.get("card", body) if isinstance(body, dict) else {}
        return {**card_data, **card, "queued": False, "pendingSync": False}

    async def update_card(self, card_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        logger.info("Updating card: %s", card_id)
        data = {"cardId": card_id, "updates": dict(updates)}
        if not self.connectivity.is_online:
            operation_id = self._queue(OperationType.CARD_UPDATE, data)
            return {
                "id": card_id,
                **updates,
                "queued": True,
                "operationId": operation_id,
                "pendingSync": True,
                "updated_at": to_rfc3339_utc(utc_now()),
                "message": "Changes queued. They will be saved when you're back online.",
            }
        body = await self._send_now(OperationType.CARD_UPDATE, data)
        card = body.get("card", body) if isinstance(body, dict) else {}
        return {"id": card_id, **updates, **card, "queued": False, "pendingSync": False}

    async def delete_card(self, card_id: str) -> Dict[str, Any]:
        logger.info("Deleting card: %s", card_id)
        data = {"cardId": card_id}
        if not self.connectivity.is_online:
            operation_id = self._queue(OperationType.CARD_DELETE, data)
            return {
                "success": True,
                "queued": True,
                "operationId": operation_id,
                "pendingSync": True,
                "cardId": card_id,
                "message": "Deletion queued. The card will be deleted when you're back online.",
            }
        await self._send_now(OperationType.CARD_DELETE, data)
        return {"success": True, "queued": False, "pendingSync": False, "cardId": card_id}

    # ------------------------------------------------------------------
    def pending_card_operations(self) -> List[QueuedOperation]:
        return [op for op in self.manager.get_queue_items() if op.is_card_operation]

    def on_card_event(self, event: SyncEvent | str, callback: Callable[..., Any]) -> Callable[[], None]:
        key = SyncEvent(event)
        if key not in CARD_EVENTS:
            raise ValueError(f"Not an operation event: {key.value}")

        def wrapped(operation: QueuedOperation, *rest: Any) -> None:
            if operation.is_card_operation:
                callback(operation, *rest)

        return self.manager.on(key, wrapped)

    # ------------------------------------------------------------------
    def _queue(self, op_type: OperationType, data: Dict[str, Any]) -> str:
        logger.info("Offline, queuing %s", op_type.value)
        return self.manager.add_to_queue(
            {"type": op_type.value, "data": {**data, "timestamp": to_epoch_ms(utc_now())}}
        )

    async def _send_now(self, op_type: OperationType, data: Dict[str, Any]) -> Any:
        result = await self.dispatcher.send(op_type, data)
        if not result.ok:
            raise OfflineActionError(result.error or "request failed", status=result.status)
        return result.body


__all__ = ["OfflineActionError", "OfflineActions"]
