"""Shared fixtures: an in-memory remote store and a controllable clock."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from arke_mirror.errors import TransportError
from arke_mirror.store import ReplicaLog, StateStore
from arke_mirror.sync import MirrorEngine
from arke_mirror.sync.models import (
    RemoteEvent,
    RemoteEventPage,
    RemoteSnapshot,
    SnapshotEntry,
)


def event_id(n: int) -> str:
    return f"evt-{n:04d}"


def make_event(n: int, kind: str = "create", entity: str | None = None) -> RemoteEvent:
    return RemoteEvent(
        event_id=event_id(n),
        kind=kind,
        entity_id=entity or f"ent-{n:04d}",
        version=1 if kind == "create" else 2,
        content_reference=f"cid-{n:04d}",
        timestamp=f"2026-01-01T00:00:{n % 60:02d}Z",
    )


def make_snapshot(sequence: int, count: int, anchor: str | None) -> RemoteSnapshot:
    entries = [
        SnapshotEntry(entity_id=f"ent-{i:04d}", version=1, content_reference=f"cid-{i:04d}")
        for i in range(1, count + 1)
    ]
    return RemoteSnapshot(
        sequence=sequence,
        as_of_timestamp="2026-01-01T00:00:00Z",
        anchor_event_id=anchor,
        total_entity_count=count,
        entries=entries,
    )


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSnapshotHandle:
    def __init__(self, remote: "FakeRemote", snapshot: RemoteSnapshot):
        self._remote = remote
        self._snapshot = snapshot

    @property
    def sequence(self) -> int | None:
        return self._snapshot.sequence if self._remote.send_sequence_header else None

    @property
    def entity_count(self) -> int | None:
        return self._snapshot.total_entity_count

    async def read(self) -> RemoteSnapshot:
        self._remote.snapshot_downloads += 1
        return self._snapshot

    async def abort(self) -> None:
        self._remote.snapshot_aborts += 1


class FakeRemote:
    """In-memory stand-in for ArkeClient.

    ``events`` is kept oldest first; pages are served newest first with the
    continuation token being the index just below the last item served.
    """

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.events: list[RemoteEvent] = []
        self.snapshot: RemoteSnapshot | None = None
        self.send_sequence_header = True
        self.snapshot_downloads = 0
        self.snapshot_aborts = 0
        self.snapshot_requests = 0
        self.event_requests = 0
        self.fail_event_requests: set[int] = set()
        self.fail_snapshot = False

    def add_events(self, start: int, end: int, kind: str = "create") -> None:
        for n in range(start, end + 1):
            self.events.append(make_event(n, kind))

    @asynccontextmanager
    async def open_snapshot(self):
        self.snapshot_requests += 1
        if self.fail_snapshot:
            raise TransportError("HTTP 503 from /snapshot/latest", status_code=503)
        if self.snapshot is None:
            yield None
        else:
            yield FakeSnapshotHandle(self, self.snapshot)

    async def fetch_snapshot(self) -> RemoteSnapshot | None:
        async with self.open_snapshot() as handle:
            if handle is None:
                return None
            return await handle.read()

    async def fetch_events(self, page_token: str | None = None) -> RemoteEventPage:
        self.event_requests += 1
        if self.event_requests in self.fail_event_requests:
            raise TransportError("HTTP 502 from /events", status_code=502)

        top = len(self.events) if page_token is None else int(page_token)
        bottom = max(top - self.page_size, 0)
        items = list(reversed(self.events[bottom:top]))
        has_more = bottom > 0
        return RemoteEventPage(
            items=items,
            has_more=has_more,
            next_page_token=str(bottom) if has_more else None,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def state_store(tmp_path):
    return StateStore(tmp_path / "state.json", min_backoff=30)


@pytest.fixture
def replica_log(tmp_path):
    return ReplicaLog(tmp_path / "log.jsonl")


@pytest.fixture
def engine(remote, state_store, replica_log, clock):
    return MirrorEngine(remote, state_store, replica_log, clock=clock)
