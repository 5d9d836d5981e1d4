"""
streamkeeper: lifecycle manager for scheduled, long-running stream jobs.

Starts an encoder process when a job's scheduled window opens, keeps it
alive through bounded crash retry, stops it at its end time and reconciles
the persisted job status with the processes actually running.

Quick start::

    from streamkeeper import StreamManager, SQLiteJobStore

    store = SQLiteJobStore.open("data/streams.db")
    manager = StreamManager(store)
    await manager.run_forever()
"""

from streamkeeper.core.errors import ErrorCategory, StreamKeeperError
from streamkeeper.core.models import ActiveInfo, HistoryRecord, Job, JobStatus, TerminationInfo
from streamkeeper.core.result import OperationResult
from streamkeeper.core.settings import ManagerSettings, get_settings
from streamkeeper.manager import ManagerHealth, StreamManager
from streamkeeper.store.memory import InMemoryJobStore
from streamkeeper.store.sqlite import SQLiteJobStore

__version__ = "0.1.0"

__all__ = [
    "ActiveInfo",
    "ErrorCategory",
    "HistoryRecord",
    "InMemoryJobStore",
    "Job",
    "JobStatus",
    "ManagerHealth",
    "ManagerSettings",
    "OperationResult",
    "SQLiteJobStore",
    "StreamKeeperError",
    "StreamManager",
    "TerminationInfo",
    "get_settings",
    "__version__",
]
