"""Paged access to the MediaWiki recent changes feed."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Tuple

import httpx

from .client import WikibaseClientSettings
from .errors import CaptureError, ContractError, classify_api_error
from .metrics import CaptureMetrics
from .model import Change, Cursor, cursor_from_continuation, ensure_utc, parse_timestamp
from .retry import RetryBudget, call_with_retry

logger = logging.getLogger(__name__)

_RCSTART_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class Page:
    """One feed response: ordered changes plus the token for the next page."""

    changes: Tuple[Change, ...]
    continuation: Optional[str] = None
    malformed: int = 0
    filtered: int = 0

    @property
    def has_more(self) -> bool:
        return self.continuation is not None

    def continuation_cursor(self) -> Optional[Cursor]:
        """Feed position encoded by the continuation token, if any."""
        if self.continuation is None:
            return None
        return cursor_from_continuation(self.continuation)


class ChangeFeedPager:
    """Fetches single pages of recent changes, retrying transient failures."""

    def __init__(
        self,
        settings: WikibaseClientSettings,
        *,
        http_client: Optional[httpx.Client] = None,
        budget: Optional[RetryBudget] = None,
        metrics: Optional[CaptureMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._endpoint = settings.api_endpoint()
        self._namespaces = frozenset(settings.namespaces)
        self._policy = settings.retry_policy()
        self._budget = budget
        self._metrics = metrics
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or settings.build_http_client()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch_page(
        self,
        window_start: datetime,
        continuation: Optional[str] = None,
        batch_size: int = 100,
    ) -> Page:
        """Fetch the page at ``continuation`` or, without one, from ``window_start``."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        params = self._build_params(window_start, continuation, batch_size)
        page = call_with_retry(
            lambda: self._parse_page(self._request(params)),
            policy=self._policy,
            description="recent changes request",
            sleep=self._sleep,
            budget=self._budget,
            on_retry=self._metrics.inc_retries if self._metrics else None,
        )
        logger.debug(
            "fetched %d changes (continuation=%s)", len(page.changes), page.continuation
        )
        return page

    def _build_params(
        self,
        window_start: datetime,
        continuation: Optional[str],
        batch_size: int,
    ) -> Dict[str, str]:
        params = {
            "format": "json",
            "action": "query",
            "list": "recentchanges",
            "rcdir": "newer",
            "rcprop": "title|ids|timestamp",
            "rcnamespace": "|".join(str(ns) for ns in sorted(self._namespaces)),
            "rclimit": str(batch_size),
        }
        if self._settings.maxlag is not None:
            params["maxlag"] = str(self._settings.maxlag)
        if continuation is None:
            params["continue"] = ""
            params["rcstart"] = ensure_utc(window_start).strftime(_RCSTART_FORMAT)
        else:
            params["continue"] = "-||"
            params["rccontinue"] = continuation
        return params

    def _request(self, params: Mapping[str, str]) -> object:
        response = self._client.get(self._endpoint, params=params)
        response.raise_for_status()
        return response.json()

    def _parse_page(self, payload: object) -> Page:
        if not isinstance(payload, dict):
            raise ContractError("recent changes response is not a JSON object")
        error = payload.get("error")
        if error is not None:
            code = ""
            info = ""
            if isinstance(error, dict):
                code = str(error.get("code") or "")
                info = str(error.get("info") or "")
            raise CaptureError(
                f"recent changes API error {code or '<unknown>'}: {info}",
                kind=classify_api_error(code),
            )
        query = payload.get("query")
        entries = query.get("recentchanges") if isinstance(query, dict) else None
        if not isinstance(entries, list):
            raise ContractError("recent changes response lacks query.recentchanges")

        continuation: Optional[str] = None
        raw_continue = payload.get("continue")
        if raw_continue is not None:
            if not isinstance(raw_continue, dict):
                raise ContractError("recent changes 'continue' is not an object")
            token = raw_continue.get("rccontinue")
            if token is not None:
                if not isinstance(token, str) or not token:
                    raise ContractError("recent changes 'rccontinue' is not a string")
                continuation = token

        changes = []
        malformed = 0
        filtered = 0
        for entry in entries:
            try:
                change = self._parse_entry(entry)
            except (KeyError, TypeError, ValueError) as exc:
                malformed += 1
                logger.warning("skipping malformed recent change %r: %s", entry, exc)
                continue
            if change is None:
                filtered += 1
                continue
            changes.append(change)

        if self._metrics is not None:
            self._metrics.inc("pages")
            self._metrics.inc("changes", len(changes))
            self._metrics.inc("malformed", malformed)
            self._metrics.inc("filtered", filtered)
        return Page(
            changes=tuple(changes),
            continuation=continuation,
            malformed=malformed,
            filtered=filtered,
        )

    def _parse_entry(self, entry: object) -> Optional[Change]:
        if not isinstance(entry, dict):
            raise TypeError("entry is not an object")
        namespace = _require_int(entry, "ns")
        if namespace not in self._namespaces:
            return None
        title = entry["title"]
        if not isinstance(title, str) or not title.strip():
            raise ValueError("title must be a non-empty string")
        raw_timestamp = entry["timestamp"]
        if not isinstance(raw_timestamp, str):
            raise TypeError("timestamp must be a string")
        revision_id = _require_int(entry, "revid")
        sequence_id = _require_int(entry, "rcid")
        if revision_id < 0 or sequence_id <= 0:
            raise ValueError("revid/rcid out of range")
        return Change(
            entity_title=title,
            revision_id=revision_id,
            timestamp=parse_timestamp(raw_timestamp),
            sequence_id=sequence_id,
            namespace=namespace,
        )


def _require_int(entry: Mapping[str, object], key: str) -> int:
    value = entry[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key} must be an integer")
    return value


__all__ = ["ChangeFeedPager", "Page"]
