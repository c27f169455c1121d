"""Local storage for the replica.

Provides:
- The durable state record describing sync progress
- The append-only replica log of snapshot and event records
"""

from .replica_log import EntitySnapshotRecord, EventRecord, LogRecord, ReplicaLog
from .state_store import Phase, ReplicaState, StateStore

__all__ = [
    "EntitySnapshotRecord",
    "EventRecord",
    "LogRecord",
    "ReplicaLog",
    "Phase",
    "ReplicaState",
    "StateStore",
]
