"""Value types flowing through the change capture pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from rdflib.term import Node

from .errors import ContractError

Statement = Tuple[Node, Node, Node]

DEFAULT_SAFETY_MARGIN = timedelta(seconds=10)

_CONTINUE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return (
        ensure_utc(value).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def parse_timestamp(value: str) -> datetime:
    """Parse the feed's ``2015-01-01T00:00:00Z`` timestamps into aware datetimes."""
    return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


@dataclass(frozen=True)
class Change:
    """One observed mutation to one entity."""

    entity_title: str
    revision_id: int
    timestamp: datetime
    sequence_id: int
    namespace: int = 0

    @property
    def position(self) -> Tuple[datetime, int]:
        return (self.timestamp, self.sequence_id)

    @property
    def entity_id(self) -> str:
        """Entity id for the title, dropping any namespace prefix (``Property:P1``)."""
        _, _, local = self.entity_title.rpartition(":")
        return local


@dataclass(frozen=True, order=True)
class Cursor:
    """Resumable position in the change feed, ordered by ``(timestamp, sequence_id)``."""

    timestamp: datetime
    sequence_id: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @classmethod
    def since(cls, timestamp: datetime) -> "Cursor":
        return cls(timestamp=ensure_utc(timestamp), sequence_id=0)

    @classmethod
    def since_now(cls, clock: Callable[[], float] = time.time) -> "Cursor":
        return cls.since(datetime.fromtimestamp(clock(), tz=timezone.utc))

    def advance(self, change: Change) -> "Cursor":
        """Move to ``change`` when it is at or beyond this cursor; never regress."""
        candidate = Cursor(ensure_utc(change.timestamp), change.sequence_id)
        if candidate >= self:
            return candidate
        return self

    def window_start(
        self, safety_margin: timedelta = DEFAULT_SAFETY_MARGIN
    ) -> datetime:
        """Lower bound for the next feed query, widened backward by ``safety_margin``."""
        return self.timestamp - safety_margin

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "sequence_id": self.sequence_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Cursor":
        raw_timestamp = data.get("timestamp")
        raw_sequence = data.get("sequence_id")
        if not isinstance(raw_timestamp, str) or not isinstance(raw_sequence, int):
            raise ValueError("cursor requires 'timestamp' and integer 'sequence_id'")
        return cls(timestamp=parse_timestamp(raw_timestamp), sequence_id=raw_sequence)


def cursor_from_continuation(token: str) -> Cursor:
    """Decode a MediaWiki ``rccontinue`` token (``20150101000000|1234``) into a cursor."""
    timestamp_part, sep, sequence_part = token.partition("|")
    if not sep:
        raise ContractError(f"continuation token has no sequence part: {token!r}")
    try:
        timestamp = datetime.strptime(timestamp_part, _CONTINUE_TIMESTAMP_FORMAT)
        sequence_id = int(sequence_part)
    except ValueError as exc:
        raise ContractError(f"unparseable continuation token: {token!r}") from exc
    return Cursor(timestamp=ensure_utc(timestamp), sequence_id=sequence_id)


@dataclass(frozen=True)
class EntitySnapshot:
    """Full, namespace normalised statement set of one entity at fetch time."""

    entity_id: str
    statements: FrozenSet[Statement] = field(default_factory=frozenset)
    missing: bool = False
    fetched_at: Optional[datetime] = field(default=None, compare=False)

    @classmethod
    def tombstone(
        cls, entity_id: str, *, fetched_at: Optional[datetime] = None
    ) -> "EntitySnapshot":
        return cls(entity_id=entity_id, missing=True, fetched_at=fetched_at)

    def __len__(self) -> int:
        return len(self.statements)
