"""Job store adapters: protocols plus in-memory and SQLite implementations."""

from streamkeeper.store.memory import InMemoryJobStore
from streamkeeper.store.protocol import HistorySink, JobStore
from streamkeeper.store.sqlite import SQLiteJobStore

__all__ = ["HistorySink", "InMemoryJobStore", "JobStore", "SQLiteJobStore"]
