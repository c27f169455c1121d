"""Polling loop that drives the sync engine with adaptive backoff."""

import asyncio
import logging
from dataclasses import dataclass

from ..errors import MirrorError, ReplicaDivergedError
from ..store import Phase, ReplicaState
from .engine import MirrorEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Polling interval policy bounded to [minimum, maximum] seconds."""

    minimum: float
    maximum: float

    def clamp(self, interval: float) -> float:
        return min(max(interval, self.minimum), self.maximum)

    def next(self, current: float, integrated: int) -> float:
        """Reset on activity, otherwise double up to the maximum."""
        if integrated > 0:
            return self.minimum
        return self.clamp(current * 2)


@dataclass
class CycleResult:
    """Outcome of one scheduler cycle."""

    state: ReplicaState
    integrated: int = 0
    compacted: bool = False
    wait_seconds: float = 0.0
    error: str | None = None


class MirrorScheduler:
    """Runs bootstrap, compaction checks and catchup walks one cycle at a time.

    A cycle never overlaps the next one; the wait between cycles is the
    only place a stop request takes effect.
    """

    def __init__(
        self,
        engine: MirrorEngine,
        min_backoff: float = 30,
        max_backoff: float = 600,
        snapshot_refresh_seconds: float = 3600,
    ):
        """Initialize the scheduler.

        Args:
            engine: Sync engine to drive.
            min_backoff: Shortest wait between polls, in seconds.
            max_backoff: Longest wait between polls, in seconds.
            snapshot_refresh_seconds: Minimum time between snapshot checks.
        """
        self.engine = engine
        self.backoff = Backoff(min_backoff, max_backoff)
        self.snapshot_refresh_seconds = snapshot_refresh_seconds
        self.state: ReplicaState | None = None
        self.cycles = 0

    def load_state(self) -> ReplicaState:
        """Load persisted state and bring its derived fields back in line.

        Raises:
            PersistenceError: If the state file exists but is unreadable.
        """
        state = self.engine.state_store.load()
        clamped = self.backoff.clamp(state.backoff_interval)
        if clamped != state.backoff_interval:
            state = state.evolve(backoff_interval=clamped)

        if state.phase is Phase.STEADY_STATE:
            state = self.engine.reconcile_entity_count(state)
            logger.info("=== Mirror Already Initialized ===")
            logger.info(f"  - Total entities: {state.entity_count}")
            logger.info(
                f"  - Last poll: "
                f"{state.last_poll_time.isoformat() if state.last_poll_time else 'never'}"
            )
            logger.info(f"  - Current backoff: {state.backoff_interval:g}s")

        self.state = state
        return state

    async def run_cycle(self, state: ReplicaState) -> CycleResult:
        """Run one cycle and compute how long to wait before the next.

        Recoverable errors end the cycle early with a minimum-backoff wait
        and leave the persisted backoff untouched.

        Raises:
            ReplicaDivergedError: If the state could not be saved after the
                log was changed.
        """
        if state.phase is not Phase.STEADY_STATE:
            try:
                state = await self.engine.bootstrap(state)
            except ReplicaDivergedError:
                raise
            except MirrorError as e:
                logger.error(f"Bootstrap failed: {e}")
                return CycleResult(
                    state=state, wait_seconds=self.backoff.minimum, error=str(e)
                )

        compacted = False
        try:
            if self.engine.snapshot_check_due(state, self.snapshot_refresh_seconds):
                compaction = await self.engine.check_snapshot(state)
                state = compaction.state
                compacted = compaction.compacted

            walk = await self.engine.catch_up(state)
            state = walk.state
        except ReplicaDivergedError:
            raise
        except MirrorError as e:
            logger.error(f"Sync cycle failed: {e}")
            return CycleResult(
                state=state,
                compacted=compacted,
                wait_seconds=self.backoff.minimum,
                error=str(e),
            )

        interval = self.backoff.next(state.backoff_interval, walk.integrated)
        if walk.integrated > 0:
            logger.info(f"  Found {walk.integrated} events, resetting backoff")
        else:
            logger.info(f"  No updates, backing off to {interval:g}s")

        if interval != state.backoff_interval:
            updated = state.evolve(backoff_interval=interval)
            try:
                self.engine.state_store.save(updated)
            except MirrorError as e:
                logger.error(f"Could not save backoff interval: {e}")
                return CycleResult(
                    state=state,
                    integrated=walk.integrated,
                    compacted=compacted,
                    wait_seconds=self.backoff.minimum,
                    error=str(e),
                )
            state = updated

        return CycleResult(
            state=state,
            integrated=walk.integrated,
            compacted=compacted,
            wait_seconds=interval,
        )

    async def _wait(self, seconds: float, stop_event: asyncio.Event | None) -> bool:
        """Sleep for ``seconds``; return True if a stop was requested."""
        if stop_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        max_cycles: int | None = None,
    ) -> ReplicaState:
        """Run cycles until stopped.

        Args:
            stop_event: Event to signal the loop should stop.
            max_cycles: Stop after this many cycles (None runs forever).

        Returns:
            The last persisted-or-attempted state.

        Raises:
            ReplicaDivergedError: On the one condition that needs a restart.
            PersistenceError: If the initial state cannot be loaded.
        """
        state = self.load_state()
        logger.info("Starting continuous polling with exponential backoff")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.run_cycle(state)
            except ReplicaDivergedError:
                logger.critical("Replica state diverged from log; stopping")
                raise
            except Exception as e:
                logger.error(f"Unexpected error in sync cycle: {e}", exc_info=True)
                result = CycleResult(
                    state=state, wait_seconds=self.backoff.minimum, error=str(e)
                )

            state = result.state
            self.state = state
            self.cycles += 1

            if max_cycles is not None and self.cycles >= max_cycles:
                break

            logger.info(f"  Next poll in {result.wait_seconds:g}s")
            if await self._wait(result.wait_seconds, stop_event):
                break

        logger.info("Polling loop stopped")
        return state
