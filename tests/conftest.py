"""Shared fakes for the capture tests.

``FakeWikibase`` answers the two endpoints the capture client talks to
(``/w/api.php`` recent changes and ``Special:EntityData``) through
``httpx.MockTransport`` so no test touches the network.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import httpx
import pytest

HOST = "test.wikidata.org"
BASE_URL = f"https://{HOST}"


def rc(
    title: str,
    rcid: int,
    *,
    revid: Optional[int] = None,
    timestamp: str = "2024-01-01T00:01:00Z",
    ns: int = 0,
) -> Dict[str, object]:
    """Build one ``list=recentchanges`` entry."""
    return {
        "type": "edit",
        "ns": ns,
        "title": title,
        "pageid": rcid * 10,
        "revid": revid if revid is not None else rcid * 100,
        "old_revid": 0,
        "rcid": rcid,
        "timestamp": timestamp,
    }


def entity_ttl(entity_id: str, *, ontology: str = "http://www.wikidata.org/ontology-beta#") -> str:
    return f"""
@prefix wd: <http://{HOST}/entity/> .
@prefix wikibase: <{ontology}> .
@prefix schema: <http://schema.org/> .
@prefix xsd: <http://www.w3.org/2001/XMLSchema#> .

wd:{entity_id} a wikibase:Item ;
    schema:version "42"^^xsd:integer ;
    schema:name "Entity {entity_id}"@en ;
    wikibase:sitelinks "3"^^xsd:integer ;
    wikibase:statements "1"^^xsd:integer .
"""


Failure = Union[int, Exception]


class FakeWikibase:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.pages: List[Dict[str, object]] = []
        self.feed_failures: List[Failure] = []
        self.entities: Dict[str, Union[str, int]] = {}
        self.entity_failures: Dict[str, List[Failure]] = {}
        self.feed_requests: List[httpx.Request] = []
        self.entity_requests: List[str] = []

    def add_page(self, entries, continuation: Optional[str] = None) -> None:
        body: Dict[str, object] = {
            "batchcomplete": "",
            "query": {"recentchanges": list(entries)},
        }
        if continuation is not None:
            body["continue"] = {"rccontinue": continuation, "continue": "-||"}
        self.pages.append(body)

    def add_entity(self, entity_id: str, body: Union[str, int, None] = None) -> None:
        self.entities[entity_id] = entity_ttl(entity_id) if body is None else body

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/w/api.php":
            return self._feed(request)
        prefix = "/wiki/Special:EntityData/"
        if path.startswith(prefix) and path.endswith(".ttl"):
            return self._entity(request, path[len(prefix) : -len(".ttl")])
        return httpx.Response(400, text=f"unexpected path {path}")

    def _feed(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.feed_requests.append(request)
            failure = self.feed_failures.pop(0) if self.feed_failures else None
            body = None
            if failure is None:
                body = self.pages.pop(0) if self.pages else None
        if failure is not None:
            return _fail(failure, request)
        if body is None:
            body = {"batchcomplete": "", "query": {"recentchanges": []}}
        return httpx.Response(200, json=body)

    def _entity(self, request: httpx.Request, entity_id: str) -> httpx.Response:
        with self._lock:
            self.entity_requests.append(entity_id)
            queue = self.entity_failures.get(entity_id)
            failure = queue.pop(0) if queue else None
            body = self.entities.get(entity_id, 404)
        if failure is not None:
            return _fail(failure, request)
        if isinstance(body, int):
            return httpx.Response(body, text="no such entity")
        return httpx.Response(
            200, text=body, headers={"Content-Type": "text/turtle; charset=utf-8"}
        )


def _fail(failure: Failure, request: httpx.Request) -> httpx.Response:
    if isinstance(failure, Exception):
        raise failure
    return httpx.Response(failure, text="failure")


class RecordingSink:
    def __init__(self, last_cursor=None) -> None:
        self.batches: list = []
        self.failures: List[Exception] = []
        self._last_cursor = last_cursor

    def deliver(self, batch) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.batches.append(list(batch))

    def last_committed_cursor(self):
        return self._last_cursor

    def delivered_titles(self) -> List[str]:
        return [change.entity_title for batch in self.batches for change, _ in batch]


@pytest.fixture
def fake_wikibase() -> FakeWikibase:
    return FakeWikibase()


@pytest.fixture
def start_time() -> datetime:
    return datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)


def make_settings(tmp_path, **overrides):
    from wikibase_change_capture.config import Settings

    base = {
        "wikibase_host": HOST,
        "wikibase_scheme": "https",
        "wikibase_port": None,
        "user_agent": "capture-tests/0.1",
        "stream_name": HOST,
        "feed_batch_size": 50,
        "feed_namespaces": (0, 120),
        "feed_maxlag": None,
        "poll_interval_seconds": 0.0,
        "max_pages_per_cycle": 10,
        "safety_margin_seconds": 10.0,
        "fetch_workers": 2,
        "request_timeout_seconds": 5.0,
        "retry_attempts": 2,
        "retry_base_delay_seconds": 0.001,
        "retry_max_delay_seconds": 0.002,
        "retry_budget": 10,
        "deliver_tombstones": False,
        "start_timestamp": datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc),
        "checkpoint_backend": "file",
        "checkpoint_path": tmp_path / "capture_checkpoint.json",
        "checkpoint_fsync": False,
        "sink_jsonl_path": tmp_path / "captured_entities.jsonl",
    }
    base.update(overrides)
    return Settings(**base)
