"""Maps queued operations onto backend requests."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from services.queued_operation import OperationType, QueuedOperation
from services.transport import Transport


logger = logging.getLogger("vitta.sync.dispatcher")


@dataclass(frozen=True)
class DispatchRequest:
    method: str
    path: str
    body: Optional[Dict[str, Any]] = None


@dataclass
class DispatchResult:
    ok: bool
    status: Optional[int] = None
    error: Optional[str] = None
    body: Any = None
    exception: Optional[BaseException] = None


def _card_id(data: Mapping[str, Any]) -> str:
    card_id = data.get("cardId")
    if card_id in (None, ""):
        raise ValueError("card operation requires 'cardId'")
    return str(card_id)


def build_request(op_type: OperationType | str, data: Mapping[str, Any], operation_id: Optional[str] = None) -> DispatchRequest:
    """Return the request for one operation; ``ValueError`` if it has none."""

    kind = OperationType(op_type)
    marker = {"isFromQueue": operation_id is not None}

    if kind is OperationType.MESSAGE:
        body = {"messages": [{"role": "user", "content": data.get("message")}], **marker}
        if operation_id is not None:
            body["queuedMessageId"] = operation_id
        return DispatchRequest("POST", "/api/chat/completions", body)

    if operation_id is not None:
        marker["queuedCardId"] = operation_id

    if kind is OperationType.CARD_ADD:
        return DispatchRequest("POST", "/api/cards/add", {"card": dict(data), **marker})

    if kind is OperationType.CARD_UPDATE:
        body = {"cardId": _card_id(data), "updates": data.get("updates") or {}, **marker}
        return DispatchRequest("POST", "/api/cards/update", body)

    if kind is OperationType.CARD_DELETE:
        path = f"/api/cards/{quote(_card_id(data), safe='')}"
        return DispatchRequest("DELETE", path, marker)

    raise ValueError(f"Unsupported operation type: {op_type}")


def _error_text(status: Optional[int], body: Any) -> str:
    detail = body.get("error") if isinstance(body, dict) else None
    if detail:
        return f"API error: {status} - {detail}"
    return f"API error: {status}"


class OperationDispatcher:
    """One network attempt per call; never retries and never raises."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    async def dispatch(self, operation: QueuedOperation) -> DispatchResult:
        logger.info("Syncing %s (ID: %s)", operation.type.value, operation.id)
        return await self._send(operation.type, operation.data, operation.id)

    async def send(
        self,
        op_type: OperationType | str,
        data: Mapping[str, Any],
        operation_id: Optional[str] = None,
    ) -> DispatchResult:
        return await self._send(op_type, data, operation_id)

    async def _send(self, op_type, data, operation_id) -> DispatchResult:
        try:
            request = build_request(op_type, data, operation_id)
        except ValueError as exc:
            logger.warning("Cannot dispatch %s (ID: %s): %s", op_type, operation_id, exc)
            return DispatchResult(ok=False, error=str(exc), exception=exc)

        try:
            response = await self.transport.request(request.method, request.path, json=request.body)
        except Exception as exc:
            logger.error("Request %s %s failed: %s", request.method, request.path, exc)
            return DispatchResult(ok=False, error=str(exc) or exc.__class__.__name__, exception=exc)

        status = getattr(response, "status", None)
        try:
            body = response.json()
        except Exception:
            body = None

        if response.ok:
            return DispatchResult(ok=True, status=status, body=body)

        error = _error_text(status, body)
        logger.warning("Request %s %s rejected: %s", request.method, request.path, error)
        return DispatchResult(ok=False, status=status, error=error, body=body)


__all__ = ["DispatchRequest", "DispatchResult", "OperationDispatcher", "build_request"]
