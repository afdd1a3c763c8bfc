"""Prometheus counters and gauges describing capture progress."""

from __future__ import annotations

from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class CaptureMetrics:
    """Wraps Prometheus counters for the capture loop.

    Each instance registers into its own :class:`CollectorRegistry` unless one
    is supplied, so several loops (or tests) can coexist in one process.
    """

    _COUNTERS = {
        "cycles": "Capture cycles completed",
        "pages": "Feed pages fetched",
        "changes": "Changes parsed from feed pages",
        "duplicates": "Changes collapsed by deduplication",
        "overlap_dropped": "Changes already committed in the overlap window",
        "malformed": "Feed entries skipped because they were malformed",
        "filtered": "Feed entries outside the content namespaces",
        "snapshots": "Entity snapshots fetched",
        "skipped": "Entities skipped after fatal fetch failures or tombstones",
        "delivered": "Entities delivered to the sink",
        "retries": "Retried requests",
        "errors": "Capture errors",
    }

    def __init__(
        self,
        namespace: str = "wikibase_change_capture",
        *,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._namespace = namespace
        self._registry = registry if registry is not None else CollectorRegistry()
        self._counters: Dict[str, Counter] = {
            name: Counter(f"{namespace}_{name}", documentation, registry=self._registry)
            for name, documentation in self._COUNTERS.items()
        }
        self._cursor_sequence = Gauge(
            f"{namespace}_cursor_sequence_id",
            "Sequence id of the last committed cursor",
            registry=self._registry,
        )
        self._cursor_timestamp = Gauge(
            f"{namespace}_cursor_timestamp_seconds",
            "Timestamp of the last committed cursor",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def inc(self, name: str, amount: float = 1) -> None:
        if amount <= 0:
            return
        self._counters[name].inc(amount)

    def inc_retries(self, _error: Optional[BaseException] = None) -> None:
        self.inc("retries")

    def set_cursor(self, sequence_id: int, timestamp: float) -> None:
        self._cursor_sequence.set(sequence_id)
        self._cursor_timestamp.set(timestamp)

    def value(self, name: str) -> float:
        sample = self._registry.get_sample_value(f"{self._namespace}_{name}_total")
        return sample or 0.0

    def snapshot(self) -> Dict[str, float]:
        values = {f"{name}_total": self.value(name) for name in self._COUNTERS}
        values["cursor_sequence_id"] = (
            self._registry.get_sample_value(f"{self._namespace}_cursor_sequence_id")
            or 0.0
        )
        return values


__all__ = ["CaptureMetrics"]
