"""Network reachability tracking and connectivity-driven sync."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.settings import SYNC
from services.queued_operation import OperationStatus, SyncResult
from services.retry_policy import RetryPolicy
from services.sync_manager import SyncManager
from services.transport import Transport
from storage.sync_log import SyncLogStore


logger = logging.getLogger("vitta.sync.connectivity")

CONNECTIVITY_EVENTS = {"online", "offline", "sync:start", "sync:end", "sync:error"}


class ConnectivityMonitor:
    """Tracks whether the backend is reachable and drains the queue when it is.

    After a pass that leaves retryable failures behind, a single background
    retry is scheduled with the retry policy's backoff; going offline cancels
    it.
    """

    def __init__(
        self,
        manager: SyncManager,
        transport: Optional[Transport] = None,
        *,
        online: bool = True,
        policy: Optional[RetryPolicy] = None,
        sync_log: Optional[SyncLogStore] = None,
        probe_path: str = SYNC.connectivity_probe_path,
        check_interval: float = SYNC.connectivity_check_interval_sec,
        auto_retry: bool = SYNC.auto_retry,
    ) -> None:
        self.manager = manager
        self.transport = transport
        self.policy = policy or manager.policy
        self.sync_log = sync_log
        self.probe_path = probe_path
        self.check_interval = check_interval
        self.auto_retry = auto_retry

        self._online = online
        self._sync_in_progress = False
        self._listeners: List[Tuple[str, Callable[[Dict[str, Any]], Any]]] = []
        self._retry_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    # ------------------------------------------------------------------
    # Transitions
    async def handle_online(self) -> None:
        logger.info("Coming online")
        self._online = True
        self._notify("online")
        await self.trigger_sync()

    def handle_offline(self) -> None:
        logger.info("Going offline")
        self._online = False
        self._cancel_retry()
        self._notify("offline")

    async def check_connectivity(self) -> bool:
        """Probe the backend and fire a transition if reachability changed."""

        if self.transport is None:
            return self._online
        try:
            await self.transport.request("HEAD", self.probe_path)
        except Exception as exc:
            if self._online:
                logger.info("Detected offline via probe: %s", exc)
                self.handle_offline()
            return False

        if not self._online:
            logger.info("Detected online via probe")
            await self.handle_online()
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.check_connectivity()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Sync
    async def trigger_sync(self):
        if self._sync_in_progress:
            logger.info("Sync already in progress")
            return None
        if self.manager.is_syncing:
            logger.info("Queue is already being processed, skipping")
            return SyncResult(syncing=True)

        self._sync_in_progress = True
        self._notify("sync:start")
        try:
            queued = self.manager.get_queue_length()
            logger.info("Triggering sync for %d queued operations", queued)
            self._log("started", operation_count=queued)

            result = await self.manager.process_queue()
            self._log("completed", succeeded=result.succeeded, failed=result.failed)
            self._notify("sync:end", {"success": result.failed == 0, "result": result})
            if result.failed and self.auto_retry:
                self._schedule_retry()
            return result
        except Exception as exc:
            logger.error("Sync failed: %s", exc)
            self._log("failed", error=str(exc))
            self._notify("sync:error", {"error": exc})
            return None
        finally:
            self._sync_in_progress = False

    def _schedule_retry(self) -> None:
        if not self._online or self.retry_scheduled:
            return
        attempts = [
            op.attempts
            for op in self.manager.get_queue_items()
            if op.status is OperationStatus.QUEUED and op.attempts > 0
        ]
        if not attempts:
            return
        delay = self.policy.next_delay_seconds(min(attempts))
        logger.info("Scheduling retry in %.1fs", delay)
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # let trigger_sync schedule the next round
        self._retry_task = None
        if self._online:
            logger.info("Retrying queued operations")
            await self.trigger_sync()

    def _cancel_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def _log(self, status: str, **fields) -> None:
        if self.sync_log is None:
            return
        try:
            self.sync_log.add("auto_sync", status, **fields)
        except Exception as exc:
            logger.error("Failed to write sync log: %s", exc)

    # ------------------------------------------------------------------
    # Listeners
    def on(self, event: str, callback: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        if event not in CONNECTIVITY_EVENTS:
            raise ValueError(f"Unknown connectivity event: {event}")
        entry = (event, callback)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            self._listeners = [item for item in self._listeners if item is not entry]

        return unsubscribe

    def _notify(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        payload = data or {}
        for name, callback in list(self._listeners):
            if name != event:
                continue
            try:
                callback(payload)
            except Exception as exc:
                logger.error("Listener error for %s: %s", event, exc)

    def get_status(self) -> Dict[str, bool]:
        return {
            "isOnline": self._online,
            "syncInProgress": self._sync_in_progress,
            "retryScheduled": self.retry_scheduled,
        }

    async def close(self) -> None:
        task = self._retry_task
        self._cancel_retry()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners = []


__all__ = ["ConnectivityMonitor", "CONNECTIVITY_EVENTS"]
