"""Sync infrastructure for the Arke mirror.

Provides the client for the remote snapshot and event endpoints, the engine
that bootstraps, catches up and compacts the replica, and the scheduler that
polls it with adaptive backoff.
"""

from .api_client import ArkeClient, SnapshotHandle
from .engine import CatchupResult, CompactionResult, MirrorEngine, replica_stats
from .models import RemoteEvent, RemoteEventPage, RemoteSnapshot, SnapshotEntry
from .scheduler import Backoff, CycleResult, MirrorScheduler

__all__ = [
    "ArkeClient",
    "SnapshotHandle",
    "CatchupResult",
    "CompactionResult",
    "MirrorEngine",
    "replica_stats",
    "RemoteEvent",
    "RemoteEventPage",
    "RemoteSnapshot",
    "SnapshotEntry",
    "Backoff",
    "CycleResult",
    "MirrorScheduler",
]
