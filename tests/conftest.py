import pytest
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401
from services.dispatcher import OperationDispatcher
from services.retry_policy import RetryPolicy
from services.sync_manager import SyncManager, reset_sync_manager

from fakes import RecordingStore, ScriptedTransport


@pytest.fixture()
def session_factory():
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    def factory():
        return Session(engine)

    return factory


@pytest.fixture()
def store():
    return RecordingStore()


@pytest.fixture()
def transport():
    return ScriptedTransport()


@pytest.fixture()
def policy():
    return RetryPolicy(jitter_ratio=0)


@pytest.fixture()
def manager(store, transport, policy):
    reset_sync_manager()
    yield SyncManager(store, OperationDispatcher(transport), policy=policy)
    reset_sync_manager()
