"""Tests for bootstrap, catchup walks and compaction."""

import pytest
from unittest.mock import patch

from arke_mirror.errors import PersistenceError, ReplicaDivergedError, TransportError
from arke_mirror.store import EntitySnapshotRecord, EventRecord, Phase, ReplicaState

from conftest import event_id, make_event, make_snapshot


def steady(cursor=None, **changes) -> ReplicaState:
    return ReplicaState(
        phase=Phase.STEADY_STATE, cursor=cursor, connected=True, **changes
    )


def logged_event_ids(replica_log) -> list[str]:
    return [r.event_id for r in replica_log.read() if isinstance(r, EventRecord)]


class TestBootstrap:
    """Tests for the one-shot bootstrap from a snapshot."""

    @pytest.mark.asyncio
    async def test_no_snapshot_goes_straight_to_steady_state(
        self, engine, state_store, replica_log
    ):
        """Test a 404 snapshot leaves an empty, connected replica."""
        state = await engine.bootstrap(state_store.initial_state())

        assert state.phase == Phase.STEADY_STATE
        assert state.cursor is None
        assert state.connected is True
        assert state.entity_count == 0
        assert list(replica_log.read()) == []
        assert state_store.load() == state

    @pytest.mark.asyncio
    async def test_snapshot_loads_entities(self, engine, remote, state_store, replica_log):
        """Test bootstrap writes one snapshot record per entry."""
        remote.snapshot = make_snapshot(sequence=7, count=3, anchor=event_id(3))

        state = await engine.bootstrap(state_store.initial_state())

        records = list(replica_log.read())
        assert len(records) == 3
        assert all(isinstance(r, EntitySnapshotRecord) for r in records)
        assert state.cursor == event_id(3)
        assert state.entity_count == 3
        assert state.last_snapshot_seq == 7
        assert state.phase == Phase.STEADY_STATE
        assert state.connected is True
        assert state_store.load().cursor == event_id(3)

    @pytest.mark.asyncio
    async def test_transport_error_keeps_phase(self, engine, remote, state_store):
        """Test a failed snapshot request does not advance the phase."""
        remote.fail_snapshot = True

        with pytest.raises(TransportError):
            await engine.bootstrap(state_store.initial_state())

        assert not state_store.exists()

    @pytest.mark.asyncio
    async def test_repeated_bootstrap_does_not_duplicate_records(
        self, engine, remote, state_store, replica_log
    ):
        """Test a bootstrap retried after a failed save rewrites the log."""
        remote.snapshot = make_snapshot(sequence=1, count=4, anchor=event_id(4))

        with patch.object(
            state_store, "save", side_effect=PersistenceError("disk full")
        ):
            with pytest.raises(PersistenceError):
                await engine.bootstrap(state_store.initial_state())

        state = await engine.bootstrap(state_store.initial_state())

        assert len(list(replica_log.read())) == 4
        assert state.entity_count == 4

    @pytest.mark.asyncio
    async def test_skips_when_already_initialized(self, engine, remote):
        """Test bootstrap is a no-op for a steady-state replica."""
        state = steady(cursor=event_id(1))

        assert await engine.bootstrap(state) is state
        assert remote.snapshot_requests == 0


class TestCatchup:
    """Tests for the backwards-paginated catchup walk."""

    @pytest.mark.asyncio
    async def test_integrates_events_newer_than_cursor(self, engine, remote, replica_log):
        """Test cursor #1000 with head #1050 integrates exactly 50 events."""
        remote.add_events(951, 1050)  # one page of 100, cursor at position 51

        result = await engine.catch_up(steady(cursor=event_id(1000)))

        assert result.integrated == 50
        assert result.cursor_found is True
        assert result.pages == 1
        assert result.state.cursor == event_id(1050)
        assert logged_event_ids(replica_log) == [event_id(n) for n in range(1001, 1051)]

    @pytest.mark.asyncio
    async def test_unknown_cursor_replays_from_genesis(self, engine, remote, replica_log):
        """Test a cursor absent from history integrates everything."""
        remote.page_size = 10
        remote.add_events(1, 25)

        result = await engine.catch_up(steady(cursor="evt-purged"))

        assert result.cursor_found is False
        assert result.integrated == 25
        assert result.pages == 3
        assert logged_event_ids(replica_log) == [event_id(n) for n in range(1, 26)]
        assert result.state.cursor == event_id(25)

    @pytest.mark.asyncio
    async def test_null_cursor_replays_from_genesis(self, engine, remote):
        """Test the first walk after an empty bootstrap takes all history."""
        remote.add_events(1, 5)

        result = await engine.catch_up(steady(cursor=None))

        assert result.integrated == 5
        assert result.state.cursor == event_id(5)

    @pytest.mark.asyncio
    async def test_empty_history_only_records_poll(self, engine, state_store, clock):
        """Test an empty remote changes nothing but last_poll_time."""
        state = steady(cursor=None)

        result = await engine.catch_up(state)

        assert result.integrated == 0
        assert result.state.cursor is None
        assert result.state.last_poll_time == clock.now
        assert state_store.load().last_poll_time == clock.now

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, engine, remote, replica_log):
        """Test a second walk with unchanged history integrates nothing."""
        remote.add_events(1, 30)

        first = await engine.catch_up(steady())
        second = await engine.catch_up(first.state)

        assert second.integrated == 0
        assert second.state.cursor == first.state.cursor
        assert len(logged_event_ids(replica_log)) == 30

    @pytest.mark.asyncio
    async def test_cursor_found_on_later_page(self, engine, remote, replica_log):
        """Test the walk stops at the cursor even several pages back."""
        remote.page_size = 10
        remote.add_events(1, 45)

        result = await engine.catch_up(steady(cursor=event_id(12)))

        assert result.pages == 4
        assert result.integrated == 33
        assert logged_event_ids(replica_log)[0] == event_id(13)

    @pytest.mark.asyncio
    async def test_entity_count_counts_creates_only(self, engine, remote):
        """Test updates do not increase the entity count."""
        remote.add_events(1, 3, kind="create")
        remote.add_events(4, 6, kind="update")

        result = await engine.catch_up(steady(entity_count=10))

        assert result.created == 3
        assert result.state.entity_count == 13

    @pytest.mark.asyncio
    async def test_failed_page_leaves_everything_unchanged(
        self, engine, remote, state_store, replica_log
    ):
        """Test a transport error mid-walk integrates nothing."""
        remote.page_size = 10
        remote.add_events(1, 30)
        remote.fail_event_requests = {2}
        state = steady(cursor=event_id(5))
        state_store.save(state)

        with pytest.raises(TransportError):
            await engine.catch_up(state)

        assert list(replica_log.read()) == []
        assert state_store.load().cursor == event_id(5)

    @pytest.mark.asyncio
    async def test_no_gaps_across_interrupted_walks(self, engine, remote, replica_log):
        """Test growth, failures and resumption end with every event once, in order."""
        remote.page_size = 7
        state = steady()
        next_event = 1

        for batch, fail_at in [(10, None), (15, 2), (0, None), (22, 1), (3, None)]:
            remote.add_events(next_event, next_event + batch - 1)
            next_event += batch
            if fail_at is not None:
                remote.fail_event_requests = {remote.event_requests + fail_at}
                with pytest.raises(TransportError):
                    await engine.catch_up(state)
                remote.fail_event_requests = set()
            state = (await engine.catch_up(state)).state

        assert logged_event_ids(replica_log) == [
            event_id(n) for n in range(1, next_event)
        ]
        assert state.cursor == event_id(next_event - 1)

    @pytest.mark.asyncio
    async def test_repeated_item_in_walk_is_integrated_once(self, engine, remote, replica_log):
        """Test an item served on two pages is appended once."""
        remote.page_size = 5
        remote.add_events(1, 10)
        original = remote.fetch_events

        async def shifted(page_token=None):
            page = await original(page_token)
            if page_token is not None:
                # History grew by one between requests
                page.items.insert(0, make_event(6))
            return page

        remote.fetch_events = shifted

        await engine.catch_up(steady())

        assert logged_event_ids(replica_log) == [event_id(n) for n in range(1, 11)]

    @pytest.mark.asyncio
    async def test_failed_save_after_append_is_fatal(self, engine, remote, state_store):
        """Test a save failure after integration raises ReplicaDivergedError."""
        remote.add_events(1, 3)

        with patch.object(
            state_store, "save", side_effect=PersistenceError("read-only fs")
        ):
            with pytest.raises(ReplicaDivergedError):
                await engine.catch_up(steady())

    @pytest.mark.asyncio
    async def test_failed_save_without_integration_is_not_fatal(self, engine, state_store):
        """Test a save failure on an empty walk is an ordinary PersistenceError."""
        with patch.object(
            state_store, "save", side_effect=PersistenceError("read-only fs")
        ):
            with pytest.raises(PersistenceError) as exc_info:
                await engine.catch_up(steady())

        assert not isinstance(exc_info.value, ReplicaDivergedError)


class TestCompaction:
    """Tests for snapshot checks and log compaction."""

    @pytest.mark.asyncio
    async def test_newer_snapshot_rewrites_log(self, engine, remote, replica_log, clock):
        """Test a newer snapshot replaces accumulated events."""
        remote.add_events(1, 8)
        walked = await engine.catch_up(steady(last_snapshot_seq=1))
        remote.snapshot = make_snapshot(sequence=2, count=5, anchor=event_id(6))

        result = await engine.check_snapshot(walked.state)

        records = list(replica_log.read())
        assert result.compacted is True
        assert len(records) == 5
        assert all(isinstance(r, EntitySnapshotRecord) for r in records)
        assert result.state.cursor == event_id(6)
        assert result.state.last_snapshot_seq == 2
        assert result.state.entity_count == 5
        assert result.state.last_snapshot_check_time == clock.now

    @pytest.mark.asyncio
    async def test_walk_after_compaction_resumes_from_anchor(
        self, engine, remote, replica_log
    ):
        """Test events after the snapshot anchor are integrated again."""
        remote.add_events(1, 8)
        remote.snapshot = make_snapshot(sequence=2, count=6, anchor=event_id(6))

        compacted = await engine.check_snapshot(steady(last_snapshot_seq=1))
        walked = await engine.catch_up(compacted.state)

        assert walked.integrated == 2
        assert logged_event_ids(replica_log) == [event_id(7), event_id(8)]

    @pytest.mark.asyncio
    async def test_same_sequence_skips_download(self, engine, remote, replica_log):
        """Test a second check seeing the same sequence leaves the log alone."""
        remote.snapshot = make_snapshot(sequence=3, count=2, anchor=event_id(2))
        first = await engine.check_snapshot(steady(last_snapshot_seq=2))
        remote.add_events(3, 4)
        walked = await engine.catch_up(first.state)
        before = list(replica_log.read())

        second = await engine.check_snapshot(walked.state)

        assert first.compacted is True
        assert second.compacted is False
        assert remote.snapshot_downloads == 1
        assert remote.snapshot_aborts == 1
        assert list(replica_log.read()) == before
        assert second.state.cursor == walked.state.cursor

    @pytest.mark.asyncio
    async def test_older_sequence_never_truncates(self, engine, remote, replica_log):
        """Test a snapshot older than the last one is ignored."""
        remote.add_events(1, 4)
        walked = await engine.catch_up(steady(last_snapshot_seq=9))
        remote.snapshot = make_snapshot(sequence=5, count=1, anchor=event_id(1))

        result = await engine.check_snapshot(walked.state)

        assert result.compacted is False
        assert result.state.last_snapshot_seq == 9
        assert len(logged_event_ids(replica_log)) == 4

    @pytest.mark.asyncio
    async def test_missing_sequence_header_reads_body(self, engine, remote):
        """Test the body is decoded when the sequence header is absent."""
        remote.send_sequence_header = False
        remote.snapshot = make_snapshot(sequence=4, count=1, anchor=event_id(1))

        result = await engine.check_snapshot(steady(last_snapshot_seq=4))

        assert result.compacted is False
        assert remote.snapshot_downloads == 1

    @pytest.mark.asyncio
    async def test_no_snapshot_updates_check_time_only(self, engine, clock):
        """Test a 404 during a check only records the check time."""
        state = steady(cursor=event_id(3), entity_count=3)

        result = await engine.check_snapshot(state)

        assert result.compacted is False
        assert result.state.cursor == event_id(3)
        assert result.state.last_snapshot_check_time == clock.now

    @pytest.mark.asyncio
    async def test_failed_save_after_rewrite_is_fatal(self, engine, remote, state_store):
        """Test a save failure after compaction raises ReplicaDivergedError."""
        remote.snapshot = make_snapshot(sequence=2, count=1, anchor=event_id(1))

        with patch.object(
            state_store, "save", side_effect=PersistenceError("read-only fs")
        ):
            with pytest.raises(ReplicaDivergedError):
                await engine.check_snapshot(steady(last_snapshot_seq=1))


class TestSnapshotCheckDue:
    """Tests for the compaction cadence."""

    def test_due_when_never_checked(self, engine):
        """Test a state without a check time is due."""
        assert engine.snapshot_check_due(steady(), 3600) is True

    def test_due_after_interval(self, engine, clock):
        """Test the check becomes due once the interval has elapsed."""
        state = steady(last_snapshot_check_time=clock.now)

        clock.advance(3599)
        assert engine.snapshot_check_due(state, 3600) is False
        clock.advance(1)
        assert engine.snapshot_check_due(state, 3600) is True

    def test_due_when_clock_moved_backwards(self, engine, clock):
        """Test a check time in the future triggers a check."""
        clock.advance(600)
        state = steady(last_snapshot_check_time=clock.now)
        clock.advance(-1200)

        assert engine.snapshot_check_due(state, 3600) is True


class TestEntityCount:
    """Tests for recomputing the cached entity count."""

    @pytest.mark.asyncio
    async def test_reconcile_uses_log(self, engine, remote):
        """Test a drifted count is replaced by the count from the log."""
        remote.snapshot = make_snapshot(sequence=1, count=3, anchor=None)
        state = await engine.bootstrap(ReplicaState())
        remote.add_events(1, 2, kind="create")
        state = (await engine.catch_up(state)).state

        drifted = state.evolve(entity_count=99)

        assert engine.reconcile_entity_count(drifted).entity_count == 5
        assert engine.reconcile_entity_count(state) is state

    def test_reconcile_keeps_count_when_log_undecodable(self, engine, replica_log):
        """Test an undecodable log leaves the cached count in place."""
        replica_log.path.write_bytes(b'{"event_id": "\xff"}\n')
        state = steady(cursor=event_id(1), entity_count=7)

        assert engine.reconcile_entity_count(state) is state

    def test_stats_include_log_counts(self, engine, replica_log):
        """Test stats merge state fields with log statistics."""
        replica_log.append([make_event(1).to_record()])

        stats = engine.get_stats(steady(cursor=event_id(1), entity_count=1))

        assert stats["phase"] == "steady_state"
        assert stats["cursor"] == event_id(1)
        assert stats["event_records"] == 1
        assert stats["snapshot_records"] == 0
