"""Checkpoint store implementations for committed capture cursors."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

from .model import Cursor

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend for the committed cursor of each capture stream."""

    def load(self, stream: str) -> Optional[Cursor]: ...

    def save(self, stream: str, cursor: Cursor) -> None: ...

    def reset(
        self,
        stream: str,
        *,
        expected: Optional[Cursor] = None,
        new: Optional[Cursor] = None,
        force: bool = False,
    ) -> None: ...


def _check_reset(
    current: Optional[Cursor],
    expected: Optional[Cursor],
    new: Optional[Cursor],
    force: bool,
) -> None:
    if force:
        return
    if current is None:
        if expected is not None:
            raise ValueError("cursor missing for stream; supply force=True to reset")
        return
    if expected is None or expected != current:
        raise ValueError("unexpected cursor value")
    if new is not None and new > current:
        raise ValueError("new cursor must not exceed current value")


class InMemoryCheckpointStore:
    """Volatile checkpoint store keeping cursors in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, Cursor] = {}

    def load(self, stream: str) -> Optional[Cursor]:
        with self._lock:
            return self._positions.get(stream)

    def save(self, stream: str, cursor: Cursor) -> None:
        with self._lock:
            current = self._positions.get(stream)
            if current is None or cursor > current:
                self._positions[stream] = cursor

    def reset(
        self,
        stream: str,
        *,
        expected: Optional[Cursor] = None,
        new: Optional[Cursor] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(stream)
            _check_reset(current, expected, new, force)
            if new is None:
                self._positions.pop(stream, None)
            else:
                self._positions[stream] = new


class PersistentCheckpointStore:
    """Cursor store backed by one JSON document mapping stream -> cursor.

    Every save rewrites the whole document through a sibling temp file and
    ``os.replace`` so a crash leaves either the old or the new cursor map.
    """

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._positions: Dict[str, Cursor] = _read_cursor_map(self._path)

    def load(self, stream: str) -> Optional[Cursor]:
        with self._lock:
            return self._positions.get(stream)

    def save(self, stream: str, cursor: Cursor) -> None:
        with self._lock:
            current = self._positions.get(stream)
            if current is not None and cursor <= current:
                return
            self._positions[stream] = cursor
            self._flush()

    def reset(
        self,
        stream: str,
        *,
        expected: Optional[Cursor] = None,
        new: Optional[Cursor] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(stream)
            _check_reset(current, expected, new, force)
            if new is None and current is None:
                return
            if new is None:
                del self._positions[stream]
            else:
                self._positions[stream] = new
            self._flush()

    def _flush(self) -> None:
        document = {
            stream: cursor.to_dict() for stream, cursor in self._positions.items()
        }
        try:
            _replace_json(self._path, document, fsync=self._fsync)
        except OSError as exc:
            logger.error("could not persist capture cursors to %s: %s", self._path, exc)
            raise


def _read_cursor_map(path: Path) -> Dict[str, Cursor]:
    """Parse the cursor document; unreadable files and entries are skipped."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("cannot read checkpoint file %s: %s", path, exc)
        return {}
    if not text.strip():
        return {}
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("checkpoint file %s is not valid JSON: %s", path, exc)
        return {}
    if not isinstance(document, dict):
        logger.warning("checkpoint file %s is not a stream map; ignoring", path)
        return {}

    cursors: Dict[str, Cursor] = {}
    for stream, raw in document.items():
        if not isinstance(raw, dict):
            logger.warning("ignoring invalid cursor for stream %s", stream)
            continue
        try:
            cursors[stream] = Cursor.from_dict(raw)
        except ValueError:
            logger.warning("ignoring invalid cursor for stream %s", stream)
    return cursors


def _replace_json(path: Path, document: Dict[str, object], *, fsync: bool) -> None:
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    staged = Path(handle.name)
    try:
        with handle:
            json.dump(document, handle, sort_keys=True)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())
        os.replace(staged, path)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    if fsync:
        _sync_directory(path.parent)


def _sync_directory(directory: Path) -> None:
    # POSIX only; opening a directory fails on Windows
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def build_checkpoint_store(
    backend: str, path: Path | str, *, fsync: bool = False
) -> CheckpointStore:
    if backend == "memory":
        return InMemoryCheckpointStore()
    return PersistentCheckpointStore(path, fsync=fsync)


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "PersistentCheckpointStore",
    "build_checkpoint_store",
]
