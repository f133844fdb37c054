import asyncio

import httpx
import pytest

from services.dispatcher import OperationDispatcher
from services.events import SyncEvent
from services.queued_operation import OperationStatus
from services.retry_policy import RetryPolicy
from services.sync_manager import (
    SyncManager,
    SyncStatus,
    close_sync_manager,
    get_sync_manager,
    reset_sync_manager,
)
from storage.queue_store import SQLQueueStore

from fakes import RecordingStore, ScriptedTransport, fail, ok


def _queue_messages(manager, *texts):
    return [manager.add_to_queue({"type": "message", "data": {"message": t}}) for t in texts]


def test_add_to_queue_assigns_id_and_persists(manager, store):
    op_id = manager.add_to_queue({"type": "message", "data": {"message": "test message"}})

    assert op_id
    assert manager.get_queue_length() == 1
    assert store.ids() == [op_id]
    record = store.collections["offlineQueue"][op_id]
    assert record["type"] == "message"
    assert record["attempts"] == 0
    assert record["timestamp"] == record["createdAt"]


def test_operation_ids_are_unique(manager):
    ids = _queue_messages(manager, "a", "b", "c")
    assert len(set(ids)) == 3


def test_unknown_operation_type_is_rejected(manager, store):
    with pytest.raises(ValueError):
        manager.add_to_queue({"type": "wire_transfer", "data": {}})
    assert manager.get_queue_length() == 0
    assert store.calls == []


def test_operation_queued_fires_after_persist(manager, store):
    seen = []

    def on_queued(operation):
        seen.append((operation.type.value, operation.data["message"], operation.id in store.ids()))

    manager.on("operationQueued", on_queued)
    _queue_messages(manager, "test")

    assert seen == [("message", "test", True)]


def test_queue_items_keep_enqueue_order(manager):
    manager.add_to_queue({"type": "message", "data": {"message": "test"}})
    manager.add_to_queue({"type": "card_add", "data": {"nickname": "Amex"}})

    items = manager.get_queue_items()
    assert [op.type.value for op in items] == ["message", "card_add"]


def test_queue_items_are_copies(manager):
    _queue_messages(manager, "original")
    item = manager.get_queue_items()[0]
    item.data["message"] = "changed"
    item.attempts = 99

    fresh = manager.get_queue_items()[0]
    assert fresh.data["message"] == "original"
    assert fresh.attempts == 0


@pytest.mark.asyncio
async def test_dispatch_order_matches_enqueue_order(manager, transport):
    synced = []
    manager.on(SyncEvent.OPERATION_SYNCED, lambda op: synced.append(op.data["message"]))
    _queue_messages(manager, "First", "Second", "Third")

    result = await manager.process_queue()

    assert transport.messages == ["First", "Second", "Third"]
    assert synced == ["First", "Second", "Third"]
    assert (result.processed, result.succeeded, result.failed) == (3, 3, 0)
    assert manager.get_queue_length() == 0


@pytest.mark.asyncio
async def test_partial_failure_keeps_failed_operations_in_place(store, policy):
    transport = ScriptedTransport(ok(), fail(503), ok(), fail(400))
    manager = SyncManager(store, OperationDispatcher(transport), policy=policy)
    _queue_messages(manager, "First", "Second", "Third", "Fourth")

    result = await manager.process_queue()

    assert (result.processed, result.succeeded, result.failed) == (4, 2, 2)
    remaining = manager.get_queue_items()
    assert [op.data["message"] for op in remaining] == ["Second", "Fourth"]
    assert all(op.attempts == 1 for op in remaining)
    assert all(op.status is OperationStatus.QUEUED for op in remaining)
    assert store.ids() == [op.id for op in remaining]
    assert store.collections["offlineQueue"][remaining[0].id]["attempts"] == 1
    assert [e["id"] for e in result.errors] == [op.id for op in remaining]
    assert manager.get_sync_status() == SyncStatus.ERROR


@pytest.mark.asyncio
async def test_second_call_during_sync_is_rejected(manager, transport):
    transport.gate = asyncio.Event()
    _queue_messages(manager, "slow")

    first = asyncio.create_task(manager.process_queue())
    await asyncio.sleep(0)
    assert manager.is_syncing
    assert manager.get_sync_status() == SyncStatus.SYNCING

    second = await manager.process_queue()
    assert second.syncing is True
    assert second.to_dict() == {"syncing": True}

    transport.gate.set()
    result = await first
    assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
    assert len(transport.calls) == 1
    assert not manager.is_syncing


@pytest.mark.asyncio
async def test_operation_stays_queued_through_retry_budget(store, policy):
    transport = ScriptedTransport(default=fail(503))
    manager = SyncManager(store, OperationDispatcher(transport), policy=policy)
    (op_id,) = _queue_messages(manager, "never delivered")

    for attempt in range(1, 6):
        result = await manager.process_queue()
        assert result.failed == 1
        assert manager.get_queue_length() == 1
        assert manager.get_operation(op_id).attempts == attempt

    assert manager.get_operation(op_id).status is OperationStatus.FAILED

    sixth = await manager.process_queue()
    assert sixth.processed == 0
    assert sixth.skipped == 1
    assert len(transport.calls) == 5
    assert manager.get_queue_length() == 1

    manual = await manager.process_queue(include_exhausted=True)
    assert manual.failed == 1
    assert len(transport.calls) == 6
    assert manager.get_operation(op_id).attempts == 6
    assert store.ids() == [op_id]


@pytest.mark.asyncio
async def test_synced_operation_is_not_dispatched_again(manager, transport):
    synced = []
    manager.on("operationSynced", synced.append)
    _queue_messages(manager, "once")

    await manager.process_queue()
    again = await manager.process_queue()

    assert again.processed == 0
    assert len(transport.calls) == 1
    assert len(synced) == 1
    assert manager.get_queue_length() == 0


@pytest.mark.asyncio
async def test_event_order_for_successful_sync(manager):
    events = []
    manager.on("operationQueued", lambda op: events.append(("queued", op.data["message"])))
    manager.on("syncStart", lambda info: events.append(("start", info["queueSize"])))
    manager.on("operationSynced", lambda op: events.append(("synced", op.data["message"])))
    manager.on("syncComplete", lambda result: events.append(("complete", result.succeeded)))

    _queue_messages(manager, "a", "b")
    await manager.process_queue()

    assert events == [
        ("queued", "a"),
        ("queued", "b"),
        ("start", 2),
        ("synced", "a"),
        ("synced", "b"),
        ("complete", 2),
    ]


@pytest.mark.asyncio
async def test_empty_queue_still_reports_a_pass(manager, transport):
    events = []
    manager.on("syncStart", lambda info: events.append("start"))
    manager.on("syncComplete", lambda result: events.append("complete"))

    result = await manager.process_queue()

    assert (result.processed, result.succeeded, result.failed) == (0, 0, 0)
    assert result.success
    assert events == ["start", "complete"]
    assert transport.calls == []
    assert manager.get_sync_status() == SyncStatus.IDLE


@pytest.mark.asyncio
async def test_network_error_is_reported_as_failure(store, policy):
    transport = ScriptedTransport(httpx.ConnectError("connection refused"))
    manager = SyncManager(store, OperationDispatcher(transport), policy=policy)
    failures = []
    manager.on("operationFailed", lambda op, error: failures.append(error))
    (op_id,) = _queue_messages(manager, "hello")

    result = await manager.process_queue()

    assert result.failed == 1
    assert failures == ["connection refused"]
    operation = manager.get_operation(op_id)
    assert operation.last_error == "connection refused"
    assert operation.last_attempt_at is not None


@pytest.mark.asyncio
async def test_store_failures_do_not_block_the_queue(manager, store, transport):
    store.broken = True

    op_id = manager.add_to_queue({"type": "card_add", "data": {"nickname": "Sapphire"}})
    assert manager.get_operation(op_id) is not None

    result = await manager.process_queue()
    assert result.succeeded == 1
    assert manager.get_queue_length() == 0
    assert transport.calls[0]["path"] == "/api/cards/add"


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_sync(manager):
    calls = []

    def broken(op):
        raise RuntimeError("listener bug")

    manager.on("operationSynced", broken)
    manager.on("operationSynced", lambda op: calls.append(op.id))
    (op_id,) = _queue_messages(manager, "x")

    result = await manager.process_queue()
    assert result.succeeded == 1
    assert calls == [op_id]


@pytest.mark.asyncio
async def test_purge_policy_drops_exhausted_operations(store):
    transport = ScriptedTransport(default=fail(500))
    manager = SyncManager(
        store,
        OperationDispatcher(transport),
        policy=RetryPolicy(max_attempts=2, jitter_ratio=0),
        exhausted_policy="purge",
    )
    failed = []
    manager.on("operationFailed", lambda op, error: failed.append(op.status))
    _queue_messages(manager, "doomed")

    await manager.process_queue()
    assert manager.get_queue_length() == 1
    await manager.process_queue()

    assert manager.get_queue_length() == 0
    assert store.ids() == []
    assert failed == [OperationStatus.QUEUED, OperationStatus.FAILED]


def test_unknown_exhausted_policy_is_rejected(store, transport):
    with pytest.raises(ValueError):
        SyncManager(store, OperationDispatcher(transport), exhausted_policy="forget")


@pytest.mark.asyncio
async def test_client_errors_fail_fast_when_configured(store):
    transport = ScriptedTransport(fail(400, "invalid card"))
    manager = SyncManager(
        store,
        OperationDispatcher(transport),
        policy=RetryPolicy(jitter_ratio=0, retry_client_errors=False),
    )
    op_id = manager.add_to_queue({"type": "card_add", "data": {"nickname": ""}})

    await manager.process_queue()

    operation = manager.get_operation(op_id)
    assert operation.attempts == 1
    assert operation.status is OperationStatus.FAILED
    assert operation.last_error == "API error: 400 - invalid card"

    later = await manager.process_queue()
    assert later.skipped == 1
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_retry_operation_restores_budget(store, policy):
    transport = ScriptedTransport(default=fail(503))
    manager = SyncManager(store, OperationDispatcher(transport), policy=policy)
    (op_id,) = _queue_messages(manager, "retry me")
    for _ in range(5):
        await manager.process_queue()

    reset = manager.retry_operation(op_id)
    assert reset.attempts == 0
    assert reset.status is OperationStatus.QUEUED
    assert store.collections["offlineQueue"][op_id]["attempts"] == 0

    transport.default = ok()
    result = await manager.process_queue()
    assert result.succeeded == 1
    assert manager.get_queue_length() == 0


def test_remove_and_clear(manager, store):
    first, second, third = _queue_messages(manager, "a", "b", "c")

    manager.remove_operation(second)
    assert [op.id for op in manager.get_queue_items()] == [first, third]
    assert store.ids() == [first, third]

    with pytest.raises(ValueError):
        manager.remove_operation("missing")

    assert manager.clear_queue() == 2
    assert manager.get_queue_length() == 0
    assert ("clear", "offlineQueue") in store.calls


@pytest.mark.asyncio
async def test_operation_removed_mid_pass_is_skipped(manager, transport):
    first, second = _queue_messages(manager, "keep", "drop")
    manager.on("operationSynced", lambda op: manager.remove_operation(second) if op.id == first else None)

    result = await manager.process_queue()

    assert result.processed == 1
    assert transport.messages == ["keep"]
    assert manager.get_queue_length() == 0


@pytest.mark.asyncio
async def test_operations_added_mid_pass_wait_for_next_pass(manager, transport):
    _queue_messages(manager, "first")
    manager.on(
        "operationSynced",
        lambda op: manager.add_to_queue({"type": "message", "data": {"message": "late"}})
        if op.data["message"] == "first"
        else None,
    )

    result = await manager.process_queue()
    assert result.processed == 1
    assert [op.data["message"] for op in manager.get_queue_items()] == ["late"]

    await manager.process_queue()
    assert transport.messages == ["first", "late"]


@pytest.mark.asyncio
async def test_restore_from_store_rebuilds_fifo_queue(session_factory, policy):
    store = SQLQueueStore(session_factory)
    transport = ScriptedTransport(default=fail(503))
    first = SyncManager(store, OperationDispatcher(transport), policy=policy)
    ids = _queue_messages(first, "one", "two", "three")
    await first.process_queue()
    ids += _queue_messages(first, "four")

    second = SyncManager(store, OperationDispatcher(ScriptedTransport()), policy=policy)
    assert second.restore_from_store() == 4
    restored = second.get_queue_items()
    assert [op.id for op in restored] == ids
    assert [op.attempts for op in restored] == [1, 1, 1, 0]
    assert restored[0].last_error == "API error: 503"

    assert second.restore_from_store() == 0
    assert second.get_queue_length() == 4


def test_restore_skips_unreadable_records(policy, transport):
    store = RecordingStore()
    store.collections["offlineQueue"] = {
        "bad": {"id": "bad", "type": "teleport", "data": {}},
        "good": {"id": "good", "type": "card_delete", "data": {"cardId": "c1"}, "status": "syncing"},
    }
    manager = SyncManager(store, OperationDispatcher(transport), policy=policy)

    assert manager.restore_from_store() == 1
    operation = manager.get_operation("good")
    assert operation.status is OperationStatus.QUEUED


def test_singleton_accessors(store, transport):
    reset_sync_manager()
    built = []

    def factory():
        built.append(SyncManager(store, OperationDispatcher(transport)))
        return built[-1]

    first = get_sync_manager(factory)
    assert get_sync_manager(factory) is first
    first.add_to_queue({"type": "message", "data": {}})

    reset_sync_manager()
    fresh = get_sync_manager(factory)
    assert fresh is not first
    assert fresh.get_queue_length() == 0
    assert len(built) == 2
    reset_sync_manager()


def test_restore_purges_exhausted_records_under_purge_policy(policy, transport):
    store = RecordingStore()
    store.collections["offlineQueue"] = {
        "spent": {"id": "spent", "type": "message", "data": {"message": "x"}, "attempts": 5, "status": "failed"},
        "fresh": {"id": "fresh", "type": "message", "data": {"message": "y"}, "status": "queued"},
    }
    manager = SyncManager(
        store,
        OperationDispatcher(transport),
        policy=policy,
        exhausted_policy="purge",
    )

    assert manager.restore_from_store() == 1
    assert [op.id for op in manager.get_queue_items()] == ["fresh"]
    assert store.ids() == ["fresh"]


def test_restore_keeps_exhausted_records_under_retain_policy(manager, store):
    store.collections["offlineQueue"] = {
        "spent": {"id": "spent", "type": "message", "data": {"message": "x"}, "attempts": 5, "status": "failed"},
    }

    assert manager.restore_from_store() == 1
    assert manager.get_operation("spent").status is OperationStatus.FAILED
    assert store.ids() == ["spent"]


@pytest.mark.asyncio
async def test_close_sync_manager_closes_transport(store, transport):
    reset_sync_manager()
    first = get_sync_manager(lambda: SyncManager(store, OperationDispatcher(transport)))

    await close_sync_manager()

    assert transport.closed
    second = get_sync_manager(lambda: SyncManager(store, OperationDispatcher(ScriptedTransport())))
    assert second is not first
    await close_sync_manager()
    # nothing left to close
    await close_sync_manager()
