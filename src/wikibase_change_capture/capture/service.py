"""Change capture loop coordinating paging, deduplication, snapshots and commits."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Event
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from ..config import Settings
from ..uris import WikibaseUris
from .checkpoint import CheckpointStore, InMemoryCheckpointStore, build_checkpoint_store
from .client import WikibaseClientSettings
from .dedupe import ChangeDeduplicator
from .errors import (
    ContractError,
    LoopAbortedError,
    RetryBudgetExhausted,
)
from .feed import ChangeFeedPager
from .metrics import CaptureMetrics
from .model import Change, Cursor, EntitySnapshot, cursor_from_continuation
from .retry import RetryBudget, RetryPolicy, call_with_retry
from .sink import JsonlSink, Sink
from .snapshot import EntitySnapshotFetcher

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    PAGING = "paging"
    DEDUPE = "dedupe"
    FETCHING = "fetching"
    COMMITTING = "committing"
    ABORTED = "aborted"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SkippedEntity:
    change: Change
    reason: str


@dataclass
class CycleResult:
    """Outcome of one pass through Paging, Dedupe, Fetching and Committing."""

    start_cursor: Cursor
    cursor: Cursor
    pages: int = 0
    changes: int = 0
    batch: List[Tuple[Change, EntitySnapshot]] = field(default_factory=list)
    skipped: List[SkippedEntity] = field(default_factory=list)
    caught_up: bool = False
    stopped: bool = False
    committed: bool = False

    @property
    def delivered(self) -> int:
        return len(self.batch)


class ChangeCaptureLoop:
    """Owns the cursor of one capture stream and drives it forward.

    Exactly one loop may own a stream's checkpoint at a time; the cursor is
    only ever replaced during the commit phase (or an explicit operator reset).
    """

    def __init__(
        self,
        *,
        stream_name: str,
        pager: ChangeFeedPager,
        fetcher: EntitySnapshotFetcher,
        sink: Sink,
        checkpoint_store: Optional[CheckpointStore] = None,
        metrics: Optional[CaptureMetrics] = None,
        budget: Optional[RetryBudget] = None,
        sink_retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 100,
        max_pages_per_cycle: int = 50,
        poll_interval_seconds: float = 10.0,
        safety_margin: timedelta = timedelta(seconds=10),
        fetch_workers: int = 8,
        deliver_tombstones: bool = False,
        start_timestamp: Optional[datetime] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_pages_per_cycle <= 0:
            raise ValueError("max_pages_per_cycle must be positive")
        if fetch_workers <= 0:
            raise ValueError("fetch_workers must be positive")
        self._stream_name = stream_name
        self._pager = pager
        self._fetcher = fetcher
        self._sink = sink
        self._checkpoint_store = checkpoint_store or InMemoryCheckpointStore()
        self._metrics = metrics or CaptureMetrics()
        self._budget = budget or RetryBudget()
        self._sink_policy = sink_retry_policy or RetryPolicy(
            attempts=3, base_delay=0.5, max_delay=5.0
        )
        self._batch_size = batch_size
        self._max_pages = max_pages_per_cycle
        self._poll_interval = poll_interval_seconds
        self._safety_margin = safety_margin
        self._fetch_workers = fetch_workers
        self._deliver_tombstones = deliver_tombstones
        self._start_timestamp = start_timestamp
        self._clock = clock
        self._stop_event = Event()
        # idle polling wakes early on stop(); retry backoff must not
        self._idle_sleep = sleep or self._stop_event.wait
        self._retry_sleep = sleep or time.sleep
        self._state = LoopState.IDLE
        self._abort_error: Optional[BaseException] = None
        self._pending_continuation: Optional[str] = None
        self._recently_committed: Dict[int, datetime] = {}
        self._cursor = self._initial_cursor()
        logger.info("capture stream %s starting at %s", stream_name, self._cursor)

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def cursor(self) -> Cursor:
        return self._cursor

    @property
    def metrics(self) -> CaptureMetrics:
        return self._metrics

    @property
    def abort_error(self) -> Optional[BaseException]:
        return self._abort_error

    def stop(self) -> None:
        """Ask the loop to exit at the next phase boundary."""
        self._stop_event.set()

    def close(self) -> None:
        self._pager.close()
        self._fetcher.close()

    def reset_cursor(
        self,
        *,
        expected: Optional[Cursor],
        new: Optional[Cursor] = None,
        force: bool = False,
    ) -> None:
        """Manually move the committed cursor with guardrails; never call mid-cycle."""
        self._checkpoint_store.reset(
            self._stream_name, expected=expected, new=new, force=force
        )
        self._pending_continuation = None
        self._recently_committed.clear()
        self._cursor = new if new is not None else self._initial_cursor()
        logger.warning(
            "capture stream %s cursor reset by operator to %s",
            self._stream_name,
            self._cursor,
        )

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            result = self.run_cycle()
            if result.stopped:
                break
            if result.caught_up and not self._stop_event.is_set():
                self._idle_sleep(self._poll_interval)
        self._state = LoopState.STOPPED
        logger.info("capture stream %s stopped at %s", self._stream_name, self._cursor)

    def run_cycle(self) -> CycleResult:
        if self._state is LoopState.ABORTED:
            raise LoopAbortedError(
                f"capture stream {self._stream_name} aborted: {self._abort_error}"
            )
        result = CycleResult(start_cursor=self._cursor, cursor=self._cursor)
        try:
            if not self._enter(LoopState.PAGING):
                return self._stopped(result)
            collected = self._page(result)

            if not self._enter(LoopState.DEDUPE):
                return self._stopped(result)
            changes = self._dedupe(collected)

            if not self._enter(LoopState.FETCHING):
                return self._stopped(result)
            self._fetch(changes, result)

            if not self._enter(LoopState.COMMITTING):
                return self._stopped(result)
            self._commit(collected, result)
        except Exception as exc:
            self._abort(exc)
            raise
        self._state = LoopState.IDLE
        self._metrics.inc("cycles")
        return result

    # ------------------------------------------------------------------ Phases
    def _page(self, result: CycleResult) -> List[Change]:
        window_start = self._cursor.window_start(self._safety_margin)
        continuation = self._pending_continuation
        collected: List[Change] = []
        dropped = 0
        while True:
            page = self._pager.fetch_page(window_start, continuation, self._batch_size)
            result.pages += 1
            for change in page.changes:
                if change.sequence_id in self._recently_committed:
                    dropped += 1
                    continue
                collected.append(change)
            if not page.has_more:
                self._pending_continuation = None
                result.caught_up = True
                break
            continuation = page.continuation
            if result.pages >= self._max_pages:
                self._pending_continuation = continuation
                logger.info(
                    "page limit %d reached; resuming next cycle at %s",
                    self._max_pages,
                    _describe_continuation(continuation),
                )
                break
            if self._stop_event.is_set():
                self._pending_continuation = continuation
                break
        result.changes = len(collected)
        self._metrics.inc("overlap_dropped", dropped)
        return collected

    def _dedupe(self, collected: List[Change]) -> List[Change]:
        deduplicator = ChangeDeduplicator()
        deduplicator.extend(collected)
        self._metrics.inc("duplicates", deduplicator.duplicates)
        return deduplicator.changes()

    def _fetch(self, changes: List[Change], result: CycleResult) -> None:
        if not changes:
            return
        workers = min(self._fetch_workers, len(changes))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="snapshot-fetch"
        ) as pool:
            futures: List[Tuple[Change, Future]] = [
                (change, pool.submit(self._fetcher.fetch, change.entity_id))
                for change in changes
            ]
            for change, future in futures:
                try:
                    snapshot = future.result()
                except RetryBudgetExhausted:
                    for _, pending in futures:
                        pending.cancel()
                    raise
                except Exception as exc:  # noqa: BLE001 - per-entity isolation
                    logger.warning(
                        "skipping %s (sequence %d): %s",
                        change.entity_title,
                        change.sequence_id,
                        exc,
                    )
                    self._skip(result, change, str(exc))
                    continue
                if snapshot.missing and not self._deliver_tombstones:
                    self._skip(result, change, "entity missing")
                    continue
                result.batch.append((change, snapshot))

    def _commit(self, collected: List[Change], result: CycleResult) -> None:
        if result.batch:
            batch = list(result.batch)
            call_with_retry(
                lambda: self._sink.deliver(batch),
                policy=self._sink_policy,
                description="sink delivery",
                sleep=self._retry_sleep,
                budget=self._budget,
                on_retry=self._metrics.inc_retries,
            )
            self._metrics.inc("delivered", len(batch))

        cursor = self._cursor
        for change in collected:
            cursor = cursor.advance(change)
            self._recently_committed[change.sequence_id] = change.timestamp
        if cursor != self._cursor:
            self._checkpoint_store.save(self._stream_name, cursor)
            self._cursor = cursor
            self._metrics.set_cursor(cursor.sequence_id, cursor.timestamp.timestamp())
        self._prune_recently_committed()
        self._budget.reset()
        result.cursor = self._cursor
        result.committed = True
        logger.info(
            "committed %d entities (%d skipped) from %d pages; cursor now %s",
            result.delivered,
            len(result.skipped),
            result.pages,
            self._cursor,
        )

    # ------------------------------------------------------------------ Helpers
    def _enter(self, state: LoopState) -> bool:
        if self._stop_event.is_set():
            self._state = LoopState.STOPPED
            return False
        self._state = state
        return True

    def _stopped(self, result: CycleResult) -> CycleResult:
        result.stopped = True
        logger.info(
            "capture stream %s stop requested; cursor left at %s",
            self._stream_name,
            self._cursor,
        )
        return result

    def _abort(self, error: BaseException) -> None:
        phase = self._state
        self._state = LoopState.ABORTED
        self._abort_error = error
        self._metrics.inc("errors")
        logger.error(
            "capture stream %s aborted during %s: %s",
            self._stream_name,
            phase.value,
            error,
        )

    def _skip(self, result: CycleResult, change: Change, reason: str) -> None:
        result.skipped.append(SkippedEntity(change=change, reason=reason))
        self._metrics.inc("skipped")

    def _prune_recently_committed(self) -> None:
        horizon = self._cursor.window_start(self._safety_margin)
        for sequence_id, timestamp in list(self._recently_committed.items()):
            if timestamp < horizon:
                del self._recently_committed[sequence_id]

    def _initial_cursor(self) -> Cursor:
        candidates = [
            cursor
            for cursor in (
                self._checkpoint_store.load(self._stream_name),
                self._sink.last_committed_cursor(),
            )
            if cursor is not None
        ]
        if candidates:
            return max(candidates)
        if self._start_timestamp is not None:
            return Cursor.since(self._start_timestamp)
        return Cursor.since_now(self._clock)


def _describe_continuation(token: str) -> str:
    try:
        return str(cursor_from_continuation(token))
    except ContractError:
        return token


# ---------------------------------------------------------------------------
# Factory helpers


def build_capture_loop(
    settings: Settings,
    *,
    sink: Optional[Sink] = None,
    http_client: Optional[httpx.Client] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    metrics: Optional[CaptureMetrics] = None,
) -> ChangeCaptureLoop:
    """Construct a capture loop using application settings."""

    if not settings.wikibase_host:
        raise ValueError("WIKIBASE_HOST must be configured")

    client_settings = WikibaseClientSettings.from_settings(settings)
    uris = WikibaseUris(settings.wikibase_host)
    metrics = metrics or CaptureMetrics()
    budget = RetryBudget(settings.retry_budget)

    pager = ChangeFeedPager(
        client_settings, http_client=http_client, budget=budget, metrics=metrics
    )
    fetcher = EntitySnapshotFetcher(
        client_settings, uris, http_client=http_client, budget=budget, metrics=metrics
    )
    store = checkpoint_store or build_checkpoint_store(
        settings.checkpoint_backend,
        settings.checkpoint_path,
        fsync=settings.checkpoint_fsync,
    )
    return ChangeCaptureLoop(
        stream_name=settings.stream_name,
        pager=pager,
        fetcher=fetcher,
        sink=sink or JsonlSink(settings.sink_jsonl_path, fsync=settings.sink_fsync),
        checkpoint_store=store,
        metrics=metrics,
        budget=budget,
        sink_retry_policy=client_settings.retry_policy(),
        batch_size=settings.feed_batch_size,
        max_pages_per_cycle=settings.max_pages_per_cycle,
        poll_interval_seconds=settings.poll_interval_seconds,
        safety_margin=timedelta(seconds=settings.safety_margin_seconds),
        fetch_workers=settings.fetch_workers,
        deliver_tombstones=settings.deliver_tombstones,
        start_timestamp=settings.start_timestamp,
    )


__all__ = [
    "ChangeCaptureLoop",
    "CycleResult",
    "LoopState",
    "SkippedEntity",
    "build_capture_loop",
]
