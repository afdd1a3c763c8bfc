"""Change capture pipeline: feed paging, deduplication, snapshots and commits."""

from .checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
    build_checkpoint_store,
)
from .client import WikibaseClientSettings
from .dedupe import ChangeDeduplicator, dedupe
from .errors import (
    CaptureError,
    ContractError,
    EntityMissingError,
    ErrorKind,
    LoopAbortedError,
    RetryBudgetExhausted,
    classify_error,
)
from .feed import ChangeFeedPager, Page
from .metrics import CaptureMetrics
from .model import Change, Cursor, EntitySnapshot, cursor_from_continuation
from .retry import RetryBudget, RetryPolicy, call_with_retry
from .service import (
    ChangeCaptureLoop,
    CycleResult,
    LoopState,
    SkippedEntity,
    build_capture_loop,
)
from .sink import JsonlSink, Sink
from .snapshot import EntitySnapshotFetcher

__all__ = [
    "CaptureError",
    "CaptureMetrics",
    "Change",
    "ChangeCaptureLoop",
    "ChangeDeduplicator",
    "ChangeFeedPager",
    "CheckpointStore",
    "ContractError",
    "Cursor",
    "CycleResult",
    "EntityMissingError",
    "EntitySnapshot",
    "EntitySnapshotFetcher",
    "ErrorKind",
    "InMemoryCheckpointStore",
    "JsonlSink",
    "LoopAbortedError",
    "LoopState",
    "Page",
    "PersistentCheckpointStore",
    "RetryBudget",
    "RetryBudgetExhausted",
    "RetryPolicy",
    "Sink",
    "SkippedEntity",
    "WikibaseClientSettings",
    "build_capture_loop",
    "build_checkpoint_store",
    "call_with_retry",
    "classify_error",
    "cursor_from_continuation",
    "dedupe",
]
