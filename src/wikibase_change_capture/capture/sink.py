"""Sink interface for captured batches and a JSONL reference implementation."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .model import Change, Cursor, EntitySnapshot, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

Batch = Sequence[Tuple[Change, EntitySnapshot]]


class Sink(Protocol):
    """Downstream store that durably applies captured batches.

    ``deliver`` returning normally is the durable acknowledgement; raising
    means nothing in the batch may be considered committed.
    """

    def deliver(self, batch: Batch) -> None: ...

    def last_committed_cursor(self) -> Optional[Cursor]: ...


def statement_to_ntriples(statement) -> str:
    subject, predicate, obj = statement
    return f"{subject.n3()} {predicate.n3()} {obj.n3()} ."


def encode_record(change: Change, snapshot: EntitySnapshot) -> Dict[str, object]:
    return {
        "entity_title": change.entity_title,
        "entity_id": snapshot.entity_id,
        "revision_id": change.revision_id,
        "sequence_id": change.sequence_id,
        "timestamp": format_timestamp(change.timestamp),
        "missing": snapshot.missing,
        "statements": sorted(statement_to_ntriples(s) for s in snapshot.statements),
    }


class JsonlSink:
    """Appends one JSON line per delivered entity to a file."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def deliver(self, batch: Batch) -> None:
        if not batch:
            return
        lines = [
            json.dumps(encode_record(change, snapshot), ensure_ascii=False)
            for change, snapshot in batch
        ]
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")
                handle.flush()
                if self._fsync:
                    os.fsync(handle.fileno())
        logger.debug("appended %d entities to %s", len(lines), self._path)

    def last_committed_cursor(self) -> Optional[Cursor]:
        if not self._path.exists():
            return None
        best: Optional[Cursor] = None
        with self._lock, self._path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    cursor = Cursor(
                        timestamp=parse_timestamp(record["timestamp"]),
                        sequence_id=int(record["sequence_id"]),
                    )
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning(
                        "ignoring unreadable line %d in %s: %s",
                        line_number,
                        self._path,
                        exc,
                    )
                    continue
                if best is None or cursor > best:
                    best = cursor
        return best

    def read_records(self) -> List[Dict[str, object]]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]


__all__ = ["Batch", "JsonlSink", "Sink", "encode_record", "statement_to_ntriples"]
