"""Collapse repeated changes to the same entity into the latest one."""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterable, List, Optional

from .model import Change


class ChangeDeduplicator:
    """Keep the highest-sequence change per title, in first-seen title order.

    Several edits to one entity inside a polling window only need the latest
    snapshot applied. Keeping each title at the slot where it first appeared
    keeps batch ordering stable between cycles. Revision ids are not compared:
    a revert may legitimately reuse an older revision id.
    """

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, Change]" = OrderedDict()
        self._duplicates = 0

    @property
    def duplicates(self) -> int:
        return self._duplicates

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, change: Change) -> bool:
        """Record ``change``; return ``True`` when it is now the best for its title."""
        current = self._entries.get(change.entity_title)
        if current is None:
            self._entries[change.entity_title] = change
            return True
        self._duplicates += 1
        if change.sequence_id > current.sequence_id:
            self._entries[change.entity_title] = change
            return True
        return False

    def extend(self, changes: Iterable[Change]) -> int:
        accepted = 0
        for change in changes:
            if self.add(change):
                accepted += 1
        return accepted

    def get(self, entity_title: str) -> Optional[Change]:
        return self._entries.get(entity_title)

    def changes(self) -> List[Change]:
        return list(self._entries.values())

    def drain(self) -> List[Change]:
        drained = list(self._entries.values())
        self._entries.clear()
        self._duplicates = 0
        return drained

    @classmethod
    def dedupe(cls, changes: Iterable[Change]) -> List[Change]:
        deduplicator = cls()
        deduplicator.extend(changes)
        return deduplicator.changes()


def dedupe(changes: Iterable[Change]) -> List[Change]:
    return ChangeDeduplicator.dedupe(changes)


__all__ = ["ChangeDeduplicator", "dedupe"]
