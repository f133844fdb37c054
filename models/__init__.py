"""ORM models exposed by the Vitta offline store."""
from .stored_record import StoredRecord
from .sync_log import SyncLogEntry

__all__ = ["StoredRecord", "SyncLogEntry"]
