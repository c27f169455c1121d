"""Synchronization engine for the local replica.

Implements the three state transitions of the mirror:

- bootstrap: initialize an empty replica from the latest snapshot
- catch_up: walk the remote event history backwards from its head until
  the cursor is found, then integrate everything newer in order
- check_snapshot: re-anchor the replica on a newer snapshot, discarding
  the events it subsumes

Each operation takes the current ReplicaState and returns the new one after
it has been persisted.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..errors import DecodeError, PersistenceError, ReplicaDivergedError
from ..store import Phase, ReplicaLog, ReplicaState, StateStore
from .api_client import ArkeClient
from .models import RemoteEvent, RemoteSnapshot

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CatchupResult:
    """Result of a catchup walk."""

    state: ReplicaState
    integrated: int = 0
    created: int = 0
    pages: int = 0
    cursor_found: bool = False


@dataclass
class CompactionResult:
    """Result of a snapshot check."""

    state: ReplicaState
    compacted: bool = False
    remote_sequence: int | None = None
    records_written: int = 0


class MirrorEngine:
    """Drives the replica state through bootstrap, catchup and compaction.

    The engine owns no state of its own beyond its collaborators; callers
    pass the current ReplicaState in and keep the one returned.
    """

    def __init__(
        self,
        client: ArkeClient,
        state_store: StateStore,
        replica_log: ReplicaLog,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the engine.

        Args:
            client: Client for the remote snapshot and event endpoints.
            state_store: Durable store for the replica state.
            replica_log: Append-only log of integrated records.
            clock: Returns the current time as an aware datetime.
        """
        self.client = client
        self.state_store = state_store
        self.log = replica_log
        self.clock = clock

    def _persist(self, state: ReplicaState, log_changed: bool) -> ReplicaState:
        """Save the state, escalating if the log already moved ahead of it."""
        try:
            self.state_store.save(state)
        except PersistenceError as e:
            if log_changed:
                raise ReplicaDivergedError(e) from e
            raise
        return state

    @staticmethod
    def _is_newer(sequence: int, last_sequence: int | None) -> bool:
        return last_sequence is None or sequence > last_sequence

    @staticmethod
    def _check_entity_count(snapshot: RemoteSnapshot) -> None:
        if snapshot.total_entity_count != len(snapshot.entries):
            logger.warning(
                f"Snapshot {snapshot.sequence} reports "
                f"{snapshot.total_entity_count} entities but carries "
                f"{len(snapshot.entries)} entries"
            )

    async def bootstrap(self, state: ReplicaState) -> ReplicaState:
        """Initialize the replica from the latest remote snapshot.

        The log is rewritten rather than appended to, so a bootstrap that
        failed after writing the log can simply be repeated.

        Raises:
            TransportError: If the snapshot request fails.
            DecodeError: If the snapshot body is malformed.
            PersistenceError: If the log or state could not be written.
        """
        if state.phase is Phase.STEADY_STATE:
            logger.debug("Replica already initialized, skipping bootstrap")
            return state

        logger.info("=== Bootstrap: downloading snapshot ===")
        snapshot = await self.client.fetch_snapshot()
        now = self.clock()

        if snapshot is None:
            logger.info("No snapshot exists yet - remote system is new")
            self.log.rewrite([])
            new_state = state.evolve(
                phase=Phase.STEADY_STATE,
                cursor=None,
                connected=True,
                entity_count=0,
                last_snapshot_check_time=now,
            )
            return self._persist(new_state, log_changed=False)

        logger.info(
            f"Snapshot {snapshot.sequence} as of {snapshot.as_of_timestamp}: "
            f"{snapshot.total_entity_count} entities, "
            f"anchor={snapshot.anchor_event_id}"
        )
        self._check_entity_count(snapshot)

        records = []
        for entry in snapshot.entries:
            records.append(entry.to_record())
            logger.debug(f"  Loaded: {entry.entity_id} (v{entry.version})")
        self.log.rewrite(records)

        new_state = state.evolve(
            phase=Phase.STEADY_STATE,
            cursor=snapshot.anchor_event_id,
            connected=True,
            entity_count=snapshot.total_entity_count,
            last_snapshot_seq=snapshot.sequence,
            last_snapshot_check_time=now,
        )
        self._persist(new_state, log_changed=False)

        logger.info(f"Bootstrap complete: {len(records)} entities loaded")
        return new_state

    async def _walk(self, cursor: str | None) -> tuple[list[RemoteEvent], int, bool]:
        """Collect events newer than ``cursor``, newest first.

        Returns:
            Tuple of (pending events, pages fetched, cursor found).
        """
        pending: list[RemoteEvent] = []
        seen: set[str] = set()
        page_token: str | None = None
        pages = 0

        while True:
            page = await self.client.fetch_events(page_token)
            pages += 1
            logger.debug(f"  Page {pages}: {len(page.items)} events")

            for item in page.items:
                if cursor is not None and item.event_id == cursor:
                    return pending, pages, True
                # History shifting under the walk can repeat an item
                if item.event_id in seen:
                    continue
                seen.add(item.event_id)
                pending.append(item)

            if not page.has_more:
                return pending, pages, False

            page_token = page.next_page_token

    async def catch_up(self, state: ReplicaState) -> CatchupResult:
        """Integrate every remote event newer than the state's cursor.

        Nothing is written until the walk has reached the cursor or the
        start of the history, so a failed walk leaves log and state as they
        were.

        Raises:
            TransportError: If an event page request fails.
            DecodeError: If an event page is malformed.
            PersistenceError: If the log append or an empty-walk save fails.
            ReplicaDivergedError: If events were appended but the state
                could not be saved.
        """
        pending, pages, cursor_found = await self._walk(state.cursor)
        now = self.clock()

        if not cursor_found and state.cursor is not None:
            logger.warning(
                f"Cursor {state.cursor} not found in remote history; "
                f"integrating {len(pending)} events from genesis"
            )

        if not pending:
            new_state = self._persist(
                state.evolve(last_poll_time=now), log_changed=False
            )
            return CatchupResult(
                state=new_state, pages=pages, cursor_found=cursor_found
            )

        # Walked newest to oldest
        pending.reverse()
        self.log.append(event.to_record() for event in pending)
        for event in pending:
            logger.debug(
                f"  {event.kind.upper()}: {event.entity_id} (v{event.version})"
            )

        created = sum(1 for event in pending if event.kind == "create")
        new_state = state.evolve(
            cursor=pending[-1].event_id,
            entity_count=state.entity_count + created,
            last_poll_time=now,
        )
        self._persist(new_state, log_changed=True)

        logger.info(
            f"Integrated {len(pending)} events ({created} new entities), "
            f"cursor={new_state.cursor}"
        )
        return CatchupResult(
            state=new_state,
            integrated=len(pending),
            created=created,
            pages=pages,
            cursor_found=cursor_found,
        )

    def snapshot_check_due(self, state: ReplicaState, refresh_seconds: float) -> bool:
        """Whether the refresh interval has elapsed since the last check."""
        if state.last_snapshot_check_time is None:
            return True

        elapsed = (self.clock() - state.last_snapshot_check_time).total_seconds()
        if elapsed < 0:
            logger.warning(
                f"Last snapshot check is {-elapsed:.0f}s in the future; "
                "clock moved backwards, checking now"
            )
            return True
        return elapsed >= refresh_seconds

    async def check_snapshot(self, state: ReplicaState) -> CompactionResult:
        """Re-anchor the replica on a newer remote snapshot, if there is one.

        Only the sequence header is inspected first; when the snapshot is not
        newer than the last integrated one the response is closed before its
        body is downloaded.

        Raises:
            TransportError: If the snapshot request fails.
            DecodeError: If the snapshot headers or body are malformed.
            PersistenceError: If the check time could not be saved.
            ReplicaDivergedError: If the log was rewritten but the state
                could not be saved.
        """
        snapshot: RemoteSnapshot | None = None
        remote_sequence: int | None = None

        async with self.client.open_snapshot() as handle:
            if handle is None:
                logger.debug("No remote snapshot to compact against")
            else:
                remote_sequence = handle.sequence
                if remote_sequence is not None and not self._is_newer(
                    remote_sequence, state.last_snapshot_seq
                ):
                    logger.debug(
                        f"Snapshot {remote_sequence} is not newer than "
                        f"{state.last_snapshot_seq}, skipping download"
                    )
                    await handle.abort()
                else:
                    if remote_sequence is None:
                        logger.debug("Snapshot sequence header missing, reading body")
                    snapshot = await handle.read()

        now = self.clock()

        if snapshot is not None and remote_sequence is not None:
            if snapshot.sequence != remote_sequence:
                raise DecodeError(
                    f"Snapshot header sequence {remote_sequence} does not match "
                    f"body sequence {snapshot.sequence}"
                )

        if snapshot is None or not self._is_newer(
            snapshot.sequence, state.last_snapshot_seq
        ):
            new_state = self._persist(
                state.evolve(last_snapshot_check_time=now), log_changed=False
            )
            return CompactionResult(
                state=new_state,
                remote_sequence=snapshot.sequence if snapshot else remote_sequence,
            )

        logger.info(
            f"=== Compaction: snapshot {snapshot.sequence} supersedes "
            f"{state.last_snapshot_seq} ==="
        )
        self._check_entity_count(snapshot)

        written = self.log.rewrite(entry.to_record() for entry in snapshot.entries)
        new_state = state.evolve(
            cursor=snapshot.anchor_event_id,
            last_snapshot_seq=snapshot.sequence,
            entity_count=snapshot.total_entity_count,
            last_snapshot_check_time=now,
        )
        self._persist(new_state, log_changed=True)

        logger.info(
            f"Compaction complete: {written} entity records, "
            f"cursor={new_state.cursor}"
        )
        return CompactionResult(
            state=new_state,
            compacted=True,
            remote_sequence=snapshot.sequence,
            records_written=written,
        )

    def reconcile_entity_count(self, state: ReplicaState) -> ReplicaState:
        """Replace the cached entity count with one recomputed from the log."""
        try:
            counted = self.log.count_entities()
        except (DecodeError, PersistenceError) as e:
            logger.warning(f"Cannot recount entities from log, keeping cached value: {e}")
            return state

        if counted == state.entity_count:
            return state

        logger.warning(
            f"Entity count drifted: state says {state.entity_count}, "
            f"log holds {counted}; using the log"
        )
        return state.evolve(entity_count=counted)

    def get_stats(self, state: ReplicaState) -> dict[str, Any]:
        """Get current replica statistics."""
        return replica_stats(state, self.log)


def replica_stats(state: ReplicaState, replica_log: ReplicaLog) -> dict[str, Any]:
    """Summarize a replica state and its log.

    Returns:
        Dictionary with state fields and log record counts.
    """
    stats: dict[str, Any] = {
        "phase": state.phase.value,
        "entity_count": state.entity_count,
        "connected": state.connected,
        "backoff_interval": state.backoff_interval,
        "last_poll_time": (
            state.last_poll_time.isoformat() if state.last_poll_time else None
        ),
        "cursor": state.cursor,
        "last_snapshot_seq": state.last_snapshot_seq,
        "last_snapshot_check_time": (
            state.last_snapshot_check_time.isoformat()
            if state.last_snapshot_check_time
            else None
        ),
    }
    try:
        stats.update(replica_log.get_stats())
    except (DecodeError, PersistenceError) as e:
        stats["log_error"] = str(e)
    return stats
