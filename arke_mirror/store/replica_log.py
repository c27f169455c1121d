"""Append-only JSON Lines log of integrated snapshot and event records.

Two record shapes share the file. Entity snapshot records describe the
state of one entity as of a snapshot; event records describe one state
transition discovered by a catchup walk. Between compactions the log keeps
every event, so one entity may appear many times.
"""

import json
import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from ..errors import DecodeError, PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitySnapshotRecord:
    """Current known state of one entity as of a snapshot."""

    entity_id: str
    version: int
    content_reference: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "version": self.version,
            "content_reference": self.content_reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntitySnapshotRecord":
        return cls(
            entity_id=data["entity_id"],
            version=data["version"],
            content_reference=data["content_reference"],
        )


@dataclass(frozen=True)
class EventRecord:
    """One state transition of an entity."""

    event_id: str
    kind: str  # "create" or "update"
    entity_id: str
    version: int
    content_reference: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind,
            "entity_id": self.entity_id,
            "version": self.version,
            "content_reference": self.content_reference,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventRecord":
        return cls(
            event_id=data["event_id"],
            kind=data["kind"],
            entity_id=data["entity_id"],
            version=data["version"],
            content_reference=data["content_reference"],
            timestamp=data["timestamp"],
        )


LogRecord = Union[EntitySnapshotRecord, EventRecord]


def record_from_dict(data: dict[str, Any]) -> LogRecord:
    """Decode one log line; event records are the ones carrying an event_id.

    Raises:
        DecodeError: If the object matches neither record shape.
    """
    try:
        if "event_id" in data:
            return EventRecord.from_dict(data)
        return EntitySnapshotRecord.from_dict(data)
    except (KeyError, TypeError) as e:
        raise DecodeError(f"Malformed log record {data!r}: missing {e}") from e


class ReplicaLog:
    """File-backed replica log.

    Only two mutations exist: ``append`` adds records at the end and
    ``rewrite`` replaces the whole content in one atomic rename.
    """

    def __init__(self, path: str | Path):
        """Initialize the replica log.

        Args:
            path: Location of the JSON Lines file.
        """
        self.path = Path(path).expanduser()

    def _temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    @staticmethod
    def _encode(records: Iterable[LogRecord]) -> str:
        return "".join(json.dumps(r.to_dict()) + "\n" for r in records)

    def _repair_tail(self) -> None:
        """Make sure the file ends at a line boundary before appending.

        An unterminated last line that decodes is closed with a newline; one
        that does not is a torn append and is truncated away.
        """
        if not self.path.exists():
            return

        with open(self.path, "rb+") as f:
            size = f.seek(0, os.SEEK_END)
            if size == 0:
                return
            f.seek(size - 1)
            if f.read(1) == b"\n":
                return

            # Find the start of the unterminated line
            keep = 0
            pos = size
            while pos > 0:
                step = min(4096, pos)
                pos -= step
                f.seek(pos)
                newline = f.read(step).rfind(b"\n")
                if newline != -1:
                    keep = pos + newline + 1
                    break

            f.seek(keep)
            fragment = f.read()
            try:
                complete = isinstance(json.loads(fragment.decode("utf-8")), dict)
            except (UnicodeDecodeError, json.JSONDecodeError):
                complete = False

            if complete:
                f.seek(size)
                f.write(b"\n")
            else:
                logger.warning(
                    f"Discarding {len(fragment)} bytes of torn record at end of {self.path}"
                )
                f.truncate(keep)
            f.flush()
            os.fsync(f.fileno())

    def append(self, records: Iterable[LogRecord]) -> int:
        """Append records in the given order.

        Returns:
            Number of records written.

        Raises:
            PersistenceError: If the file could not be written.
        """
        records = list(records)
        if not records:
            return 0

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._repair_tail()
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(self._encode(records))
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceError(f"Cannot append to log {self.path}: {e}") from e

        logger.debug(f"Appended {len(records)} records to {self.path}")
        return len(records)

    def rewrite(self, records: Iterable[LogRecord]) -> int:
        """Replace the entire log content with the given records.

        The new content is written next to the log and renamed over it, so
        readers see either the old log or the new one, never a truncated file.

        Returns:
            Number of records written.

        Raises:
            PersistenceError: If the file could not be written.
        """
        records = list(records)
        temp_path = self._temp_path()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(self._encode(records))
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot rewrite log {self.path}: {e}") from e

        logger.info(f"Rewrote log {self.path} with {len(records)} records")
        return len(records)

    def read(self) -> Iterator[LogRecord]:
        """Iterate over all records, oldest first.

        A final line without a newline that fails to decode is the remains of
        an interrupted append and is skipped.

        Raises:
            DecodeError: If any other line is malformed.
            PersistenceError: If the file cannot be opened.
        """
        if not self.path.exists():
            return

        try:
            f = open(self.path, "rb")
        except OSError as e:
            raise PersistenceError(f"Cannot read log {self.path}: {e}") from e

        with f:
            for line_no, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    data = json.loads(raw.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    if not raw.endswith(b"\n"):
                        logger.warning(
                            f"Ignoring torn record at end of {self.path} (line {line_no})"
                        )
                        return
                    raise DecodeError(
                        f"Malformed record in {self.path} line {line_no}: {e}"
                    ) from e
                if not isinstance(data, dict):
                    raise DecodeError(
                        f"Expected an object in {self.path} line {line_no}"
                    )
                yield record_from_dict(data)

    def tail(self, limit: int = 50, kind: str | None = None) -> list[LogRecord]:
        """Return the last ``limit`` records, optionally only one shape.

        Args:
            limit: Maximum records to return.
            kind: "snapshot" or "event" to filter by record shape.
        """
        records = []
        for record in self.read():
            if kind == "snapshot" and not isinstance(record, EntitySnapshotRecord):
                continue
            if kind == "event" and not isinstance(record, EventRecord):
                continue
            records.append(record)
        return records[-limit:] if limit > 0 else []

    def count_entities(self) -> int:
        """Recompute the entity count from the log contents.

        Snapshot records each stand for one entity; after them every create
        event introduces one more.
        """
        count = 0
        for record in self.read():
            if isinstance(record, EntitySnapshotRecord):
                count += 1
            elif record.kind == "create":
                count += 1
        return count

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with record counts and file size.
        """
        snapshots = 0
        events = 0
        for record in self.read():
            if isinstance(record, EventRecord):
                events += 1
            else:
                snapshots += 1

        stats = {
            "log_path": str(self.path),
            "total_records": snapshots + events,
            "snapshot_records": snapshots,
            "event_records": events,
        }

        if self.path.exists():
            stats["log_size_kb"] = round(self.path.stat().st_size / 1024, 2)

        return stats

    def reset(self) -> bool:
        """Delete the log file.

        Returns:
            True if a file was removed.
        """
        removed = False
        for path in (self.path, self._temp_path()):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Cannot delete {path}: {e}") from e
        if removed:
            logger.info(f"Removed replica log {self.path}")
        return removed
