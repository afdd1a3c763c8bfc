"""Retrieve and normalise the RDF statement set of a single entity."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Iterable, Optional
from urllib.parse import quote

import httpx
from rdflib import Graph
from rdflib.compare import to_canonical_graph

from ..uris import WikibaseUris
from .client import WikibaseClientSettings
from .errors import EntityMissingError
from .metrics import CaptureMetrics
from .model import EntitySnapshot, Statement
from .retry import RetryBudget, call_with_retry

logger = logging.getLogger(__name__)

_MISSING_STATUS = frozenset({404, 410})


class EntitySnapshotFetcher:
    """Fetches ``Special:EntityData`` Turtle dumps and normalises namespaces.

    Safe to call from several worker threads at once: the only shared state is
    the ``httpx.Client`` (thread-safe) and the retry budget (locked).
    """

    def __init__(
        self,
        settings: WikibaseClientSettings,
        uris: WikibaseUris,
        *,
        http_client: Optional[httpx.Client] = None,
        budget: Optional[RetryBudget] = None,
        metrics: Optional[CaptureMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._uris = uris
        self._policy = settings.retry_policy()
        self._budget = budget
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._owns_client = http_client is None
        self._client = http_client or settings.build_http_client()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch(self, entity_id: str) -> EntitySnapshot:
        """Return the current snapshot, or a tombstone when the entity is gone."""
        entity_id = entity_id.strip()
        if not entity_id:
            raise ValueError("entity_id must not be empty")
        try:
            statements = call_with_retry(
                lambda: self._fetch_statements(entity_id),
                policy=self._policy,
                description=f"entity {entity_id} fetch",
                sleep=self._sleep,
                budget=self._budget,
                on_retry=self._metrics.inc_retries if self._metrics else None,
            )
        except EntityMissingError as exc:
            logger.info(
                "entity %s is gone (status %s); emitting tombstone",
                entity_id,
                exc.status,
            )
            return EntitySnapshot.tombstone(entity_id, fetched_at=self._now())
        if self._metrics is not None:
            self._metrics.inc("snapshots")
        return EntitySnapshot(
            entity_id=entity_id, statements=statements, fetched_at=self._now()
        )

    def normalize(self, statements: Iterable[Statement]) -> FrozenSet[Statement]:
        normalize = self._uris.normalize_term
        return frozenset(
            (normalize(subject), normalize(predicate), normalize(obj))
            for subject, predicate, obj in statements
        )

    def _fetch_statements(self, entity_id: str) -> FrozenSet[Statement]:
        url = self._settings.resolve(
            f"{self._settings.entity_data_path}/{quote(entity_id)}.ttl"
        )
        # nocache busts the squid cache in front of Special:EntityData
        params = {"flavor": "dump", "nocache": str(int(self._clock() * 1000))}
        response = self._client.get(
            url, params=params, headers={"Accept": "text/turtle"}
        )
        if response.status_code in _MISSING_STATUS:
            raise EntityMissingError(entity_id, response.status_code)
        response.raise_for_status()
        graph = Graph()
        graph.parse(data=response.text, format="turtle", publicID=self._uris.root)
        # blank nodes get fresh labels on every parse; relabel them from content
        canonical = to_canonical_graph(graph)
        return self.normalize(canonical.triples((None, None, None)))

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)


__all__ = ["EntitySnapshotFetcher"]
