"""Decoded shapes of the remote snapshot and event history responses."""

from dataclasses import dataclass, field
from typing import Any

from ..errors import DecodeError
from ..store import EntitySnapshotRecord, EventRecord

EVENT_KINDS = ("create", "update")


def _require(data: Any, key: str, expected: type, what: str) -> Any:
    if not isinstance(data, dict):
        raise DecodeError(f"{what}: expected an object, got {type(data).__name__}")
    if key not in data:
        raise DecodeError(f"{what}: missing field '{key}'")
    value = data[key]
    # bool is an int subclass
    if not isinstance(value, expected) or (
        isinstance(value, bool) and expected is not bool
    ):
        raise DecodeError(
            f"{what}: field '{key}' has wrong type {type(value).__name__}"
        )
    return value


@dataclass(frozen=True)
class SnapshotEntry:
    """Current state of one entity inside a snapshot."""

    entity_id: str
    version: int
    content_reference: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotEntry":
        what = "snapshot entry"
        return cls(
            entity_id=_require(data, "entity_id", str, what),
            version=_require(data, "version", int, what),
            content_reference=_require(data, "content_reference", str, what),
        )

    def to_record(self) -> EntitySnapshotRecord:
        return EntitySnapshotRecord(
            entity_id=self.entity_id,
            version=self.version,
            content_reference=self.content_reference,
        )


@dataclass(frozen=True)
class RemoteSnapshot:
    """Complete state of the remote store as of ``anchor_event_id``."""

    sequence: int
    as_of_timestamp: str
    anchor_event_id: str | None
    total_entity_count: int
    entries: list[SnapshotEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteSnapshot":
        """Decode a ``GET /snapshot/latest`` body.

        Raises:
            DecodeError: If a required field is missing or has the wrong type.
        """
        what = "snapshot"
        entries = _require(data, "entries", list, what)
        anchor = data.get("anchor_event_id")
        if anchor is not None and not isinstance(anchor, str):
            raise DecodeError("snapshot: field 'anchor_event_id' must be a string")
        return cls(
            sequence=_require(data, "sequence", int, what),
            as_of_timestamp=_require(data, "as_of_timestamp", str, what),
            anchor_event_id=anchor,
            total_entity_count=_require(data, "total_entity_count", int, what),
            entries=[SnapshotEntry.from_dict(e) for e in entries],
        )


@dataclass(frozen=True)
class RemoteEvent:
    """One item of the remote event history."""

    event_id: str
    kind: str
    entity_id: str
    version: int
    content_reference: str
    timestamp: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteEvent":
        what = "event"
        kind = _require(data, "kind", str, what)
        if kind not in EVENT_KINDS:
            raise DecodeError(f"event: unknown kind '{kind}'")
        return cls(
            event_id=_require(data, "event_id", str, what),
            kind=kind,
            entity_id=_require(data, "entity_id", str, what),
            version=_require(data, "version", int, what),
            content_reference=_require(data, "content_reference", str, what),
            timestamp=_require(data, "timestamp", str, what),
        )

    def to_record(self) -> EventRecord:
        return EventRecord(
            event_id=self.event_id,
            kind=self.kind,
            entity_id=self.entity_id,
            version=self.version,
            content_reference=self.content_reference,
            timestamp=self.timestamp,
        )


@dataclass(frozen=True)
class RemoteEventPage:
    """One page of the event history, newest item first."""

    items: list[RemoteEvent]
    has_more: bool
    next_page_token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteEventPage":
        """Decode a ``GET /events`` body.

        Raises:
            DecodeError: If the page is malformed, including a page that
                claims more history but carries no continuation token.
        """
        what = "event page"
        items = _require(data, "items", list, what)
        has_more = _require(data, "has_more", bool, what)
        token = data.get("next_cursor")
        if token is not None and not isinstance(token, str):
            raise DecodeError("event page: field 'next_cursor' must be a string")
        if has_more and not token:
            raise DecodeError("event page: has_more is set but next_cursor is missing")
        return cls(
            items=[RemoteEvent.from_dict(item) for item in items],
            has_more=has_more,
            next_page_token=token,
        )
