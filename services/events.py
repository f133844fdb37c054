"""Typed publish/subscribe bus for sync lifecycle events."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List


logger = logging.getLogger("vitta.sync.events")


class SyncEvent(str, Enum):
    OPERATION_QUEUED = "operationQueued"
    OPERATION_SYNCED = "operationSynced"
    OPERATION_FAILED = "operationFailed"
    SYNC_START = "syncStart"
    SYNC_COMPLETE = "syncComplete"


Handler = Callable[..., Any]


class EventBus:
    """Handlers run synchronously, in subscription order.

    A failing handler is logged and does not stop the remaining ones.
    """

    def __init__(self) -> None:
        self._handlers: Dict[SyncEvent, List[Handler]] = {event: [] for event in SyncEvent}

    def on(self, event: SyncEvent | str, handler: Handler) -> Callable[[], None]:
        key = SyncEvent(event)
        self._handlers[key].append(handler)

        def unsubscribe() -> None:
            self.off(key, handler)

        return unsubscribe

    def off(self, event: SyncEvent | str, handler: Handler) -> None:
        key = SyncEvent(event)
        self._handlers[key] = [cb for cb in self._handlers[key] if cb is not handler]

    def emit(self, event: SyncEvent | str, *args: Any) -> None:
        key = SyncEvent(event)
        for handler in list(self._handlers[key]):
            try:
                handler(*args)
            except Exception as exc:
                logger.error("Error in event listener for %s: %s", key.value, exc)


__all__ = ["EventBus", "SyncEvent"]
