"""Durable record of the replica's sync progress.

The state is a single JSON object that is rewritten wholesale after every
cycle. Writes go to a temporary file that is fsynced and renamed over the
previous record, so a reader never sees a half-written state.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import PersistenceError

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Lifecycle stage of the replica."""

    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    STEADY_STATE = "steady_state"


# Phase names written by the first version of the mirror
LEGACY_PHASES = {
    "not_started": Phase.UNINITIALIZED,
    "bulk_sync": Phase.UNINITIALIZED,
    "chain_connection": Phase.STEADY_STATE,
    "incremental_polling": Phase.STEADY_STATE,
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Older state files may carry naive timestamps; they were written in UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ReplicaState:
    """Snapshot of how far the replica has caught up with the remote store.

    Instances are immutable; each cycle returns a new state via
    ``dataclasses.replace`` which is then persisted.
    """

    phase: Phase = Phase.UNINITIALIZED
    cursor: str | None = None
    connected: bool = False
    backoff_interval: float = 30.0
    last_poll_time: datetime | None = None
    entity_count: int = 0
    last_snapshot_seq: int | None = None
    last_snapshot_check_time: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def evolve(self, **changes: Any) -> "ReplicaState":
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = dict(self.extra)
        data.update(
            {
                "phase": self.phase.value,
                "cursor": self.cursor,
                "connected": self.connected,
                "backoff_interval": self.backoff_interval,
                "last_poll_time": _format_time(self.last_poll_time),
                "entity_count": self.entity_count,
                "last_snapshot_seq": self.last_snapshot_seq,
                "last_snapshot_check_time": _format_time(
                    self.last_snapshot_check_time
                ),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaState":
        """Create from dictionary.

        Accepts the field names of the first mirror release
        (``backoff_seconds``, ``total_entities``, older phase names).
        Unknown keys are carried along untouched.

        Raises:
            ValueError: If a field has an unusable value.
        """
        raw_phase = data.get("phase", Phase.UNINITIALIZED.value)
        if raw_phase in LEGACY_PHASES:
            phase = LEGACY_PHASES[raw_phase]
        else:
            phase = Phase(raw_phase)

        cursor = data.get("cursor")
        if cursor is not None and not isinstance(cursor, str):
            raise ValueError(f"cursor must be a string, got {cursor!r}")
        last_snapshot_seq = data.get("last_snapshot_seq")
        if last_snapshot_seq is not None and (
            isinstance(last_snapshot_seq, bool) or not isinstance(last_snapshot_seq, int)
        ):
            raise ValueError(
                f"last_snapshot_seq must be an integer, got {last_snapshot_seq!r}"
            )

        known = {
            "phase",
            "cursor",
            "connected",
            "backoff_interval",
            "backoff_seconds",
            "last_poll_time",
            "entity_count",
            "total_entities",
            "last_snapshot_seq",
            "last_snapshot_check_time",
            "pis",
        }

        return cls(
            phase=phase,
            cursor=cursor,
            connected=bool(data.get("connected", False)),
            backoff_interval=float(
                data.get("backoff_interval", data.get("backoff_seconds", 30.0))
            ),
            last_poll_time=_parse_time(data.get("last_poll_time")),
            entity_count=int(data.get("entity_count", data.get("total_entities", 0))),
            last_snapshot_seq=last_snapshot_seq,
            last_snapshot_check_time=_parse_time(
                data.get("last_snapshot_check_time")
            ),
            extra={k: v for k, v in data.items() if k not in known},
        )


class StateStore:
    """Loads and atomically rewrites the replica state file."""

    def __init__(self, path: str | Path, min_backoff: float = 30.0):
        """Initialize the state store.

        Args:
            path: Location of the JSON state file.
            min_backoff: Backoff interval given to a freshly created state.
        """
        self.path = Path(path).expanduser()
        self.min_backoff = min_backoff

    def initial_state(self) -> ReplicaState:
        """State used when no durable record exists."""
        return ReplicaState(backoff_interval=self.min_backoff)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ReplicaState:
        """Load the persisted state, or a fresh one if there is none.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed.
        """
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting fresh")
            return self.initial_state()

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read state file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"State file {self.path} is not a JSON object")

        try:
            state = ReplicaState.from_dict(data)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Invalid state file {self.path}: {e}") from e

        logger.debug(f"Loaded state from {self.path}: phase={state.phase.value}")
        return state

    def save(self, state: ReplicaState) -> None:
        """Atomically replace the persisted state.

        Raises:
            PersistenceError: If the state could not be written.
        """
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write state file {self.path}: {e}") from e

    def reset(self) -> bool:
        """Delete the state file.

        Returns:
            True if a file was removed.
        """
        removed = False
        for path in (self.path, self.path.with_name(self.path.name + ".tmp")):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Cannot delete {path}: {e}") from e
        if removed:
            logger.info(f"Removed state file {self.path}")
        return removed
