"""Shared HTTP settings for talking to a Wikibase instance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import httpx

from ..config import Settings
from .retry import RetryPolicy


@dataclass(frozen=True)
class WikibaseClientSettings:
    """Settings that control requests against the Wikibase API."""

    base_url: str
    api_path: str = "/w/api.php"
    entity_data_path: str = "/wiki/Special:EntityData"
    namespaces: Tuple[int, ...] = (0, 120)
    maxlag: Optional[int] = None
    request_timeout_seconds: float = 30.0
    user_agent: str = "wikibase-change-capture/0.1"
    retry_attempts: int = 5
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 30.0
    jitter: Optional[Callable[[float], float]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "WikibaseClientSettings":
        return cls(
            base_url=settings.base_url(),
            namespaces=settings.feed_namespaces,
            maxlag=settings.feed_maxlag,
            request_timeout_seconds=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
            retry_attempts=settings.retry_attempts,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            retry_max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def resolve(self, path: str) -> str:
        base = self.base_url.rstrip("/")
        path = path.strip()
        if not path:
            return base
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{base}{path}"

    def api_endpoint(self) -> str:
        return self.resolve(self.api_path)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            jitter=self.jitter,
        )

    def build_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.request_timeout_seconds,
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            follow_redirects=True,
        )


__all__ = ["WikibaseClientSettings"]
