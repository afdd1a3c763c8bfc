"""Runtime configuration helpers for the Wikibase change capture service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    wikibase_host: str
    wikibase_scheme: str
    wikibase_port: Optional[int]
    user_agent: str
    stream_name: str
    feed_batch_size: int
    feed_namespaces: Tuple[int, ...]
    feed_maxlag: Optional[int]
    poll_interval_seconds: float
    max_pages_per_cycle: int
    safety_margin_seconds: float
    fetch_workers: int
    request_timeout_seconds: float
    retry_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    retry_budget: Optional[int]
    deliver_tombstones: bool
    start_timestamp: Optional[datetime]
    checkpoint_backend: str
    checkpoint_path: Path
    checkpoint_fsync: bool
    sink_jsonl_path: Path
    sink_fsync: bool = False

    def base_url(self) -> str:
        """Return ``scheme://host[:port]`` for the configured Wikibase."""
        host = self.wikibase_host.strip().rstrip("/")
        if self.wikibase_port:
            host = f"{host}:{self.wikibase_port}"
        return f"{self.wikibase_scheme}://{host}"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_scheme(value: Optional[str]) -> str:
    if value is None:
        return "https"
    normalized = value.strip().lower()
    if normalized in {"http", "https"}:
        return normalized
    return "https"


def _coerce_checkpoint_backend(value: Optional[str]) -> str:
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "file"


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def _split_namespaces(value: Optional[str]) -> Tuple[int, ...]:
    if not value:
        return (0, 120)
    namespaces = tuple(
        int(entry.strip()) for entry in value.split(",") if entry.strip()
    )
    return namespaces or (0, 120)


def _parse_start_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Accept ISO-8601 (``2015-01-01T00:00:00Z``) or MediaWiki ``YYYYmmddHHMMSS``."""
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.isdigit() and len(text) == 14:
        parsed = datetime.strptime(text, "%Y%m%d%H%M%S")
    else:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    wikibase_host = os.getenv("WIKIBASE_HOST", "www.wikidata.org").strip()
    wikibase_scheme = _coerce_scheme(os.getenv("WIKIBASE_SCHEME"))
    wikibase_port = _optional_int(os.getenv("WIKIBASE_PORT"))
    user_agent = os.getenv(
        "CAPTURE_USER_AGENT", "wikibase-change-capture/0.1 (change capture client)"
    )
    stream_name = os.getenv("CAPTURE_STREAM_NAME", wikibase_host or "wikibase")

    feed_batch_size = int(os.getenv("FEED_BATCH_SIZE", "100"))
    if feed_batch_size <= 0:
        feed_batch_size = 100
    feed_namespaces = _split_namespaces(os.getenv("FEED_NAMESPACES"))
    feed_maxlag = _optional_int(os.getenv("FEED_MAXLAG"))

    poll_interval_seconds = float(os.getenv("CAPTURE_POLL_INTERVAL_SECONDS", "10"))
    max_pages_per_cycle = int(os.getenv("CAPTURE_MAX_PAGES_PER_CYCLE", "50"))
    safety_margin_seconds = float(os.getenv("CAPTURE_SAFETY_MARGIN_SECONDS", "10"))
    fetch_workers = int(os.getenv("CAPTURE_FETCH_WORKERS", "8"))
    request_timeout_seconds = float(
        os.getenv("CAPTURE_REQUEST_TIMEOUT_SECONDS", "30.0")
    )
    retry_attempts = int(os.getenv("CAPTURE_RETRY_ATTEMPTS", "5"))
    retry_base_delay_seconds = float(
        os.getenv("CAPTURE_RETRY_BASE_DELAY_SECONDS", "0.5")
    )
    retry_max_delay_seconds = float(
        os.getenv("CAPTURE_RETRY_MAX_DELAY_SECONDS", "30.0")
    )
    retry_budget = _optional_int(os.getenv("CAPTURE_RETRY_BUDGET", "100"))
    deliver_tombstones = _as_bool(os.getenv("CAPTURE_DELIVER_TOMBSTONES"), False)
    start_timestamp = _parse_start_timestamp(os.getenv("CAPTURE_START_TIMESTAMP"))

    checkpoint_backend = _coerce_checkpoint_backend(os.getenv("CHECKPOINT_BACKEND"))
    checkpoint_path = Path(os.getenv("CHECKPOINT_PATH", "capture_checkpoint.json"))
    checkpoint_fsync = _as_bool(os.getenv("CHECKPOINT_FSYNC"), False)
    sink_jsonl_path = Path(os.getenv("SINK_JSONL_PATH", "captured_entities.jsonl"))
    sink_fsync = _as_bool(os.getenv("SINK_FSYNC"), False)

    return Settings(
        wikibase_host=wikibase_host,
        wikibase_scheme=wikibase_scheme,
        wikibase_port=wikibase_port,
        user_agent=user_agent,
        stream_name=stream_name,
        feed_batch_size=feed_batch_size,
        feed_namespaces=feed_namespaces,
        feed_maxlag=feed_maxlag,
        poll_interval_seconds=max(0.0, poll_interval_seconds),
        max_pages_per_cycle=max(1, max_pages_per_cycle),
        safety_margin_seconds=max(0.0, safety_margin_seconds),
        fetch_workers=max(1, fetch_workers),
        request_timeout_seconds=request_timeout_seconds,
        retry_attempts=max(0, retry_attempts),
        retry_base_delay_seconds=retry_base_delay_seconds,
        retry_max_delay_seconds=retry_max_delay_seconds,
        retry_budget=retry_budget,
        deliver_tombstones=deliver_tombstones,
        start_timestamp=start_timestamp,
        checkpoint_backend=checkpoint_backend,
        checkpoint_path=checkpoint_path,
        checkpoint_fsync=checkpoint_fsync,
        sink_jsonl_path=sink_jsonl_path,
        sink_fsync=sink_fsync,
    )
