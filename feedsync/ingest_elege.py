"""Synchronous Elege.AI ingestion adapter.

Three endpoints are used:
 1. /people?q=…                          (person lookup)
 2. /analytics/mentions/latest            (mention listing, by person_id or channel_id)
 3. /posts/{id}                           (full post detail)

Uses httpx synchronously; detail fan-out is parallelised by the caller
with a thread pool.  Every failure surfaces as ``ProviderError`` with a
TRANSIENT or NOT_FOUND kind so the pipeline can classify it.
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Protocol

import httpx

from ._http import request_with_retry, sanitize_url
from .common_types import Item, RawRecord, SyncTarget
from .errors import ConfigError, FailureKind, ProviderError
from .normalize import extract_list, normalize_mention, normalize_post

logger = logging.getLogger(__name__)

DEFAULT_BASE = "http://app.elege.ai:3001/api"


class ProviderClient(Protocol):
    """What the sync pipeline needs from a provider."""

    name: str

    def search_entity(self, name: str) -> Optional[str]: ...

    def list_items(self, target: SyncTarget, since: str, limit: int) -> List[RawRecord]: ...

    def fetch_item_detail(self, item_id: str) -> Optional[Item]: ...


def _safe_json(r: httpx.Response, endpoint: str) -> Any:
    """Parse JSON response; raise ProviderError with sanitized URL on failure."""
    ct = r.headers.get("content-type", "")
    try:
        return r.json()
    except (json.JSONDecodeError, ValueError):
        raise ProviderError(
            f"Elege returned non-JSON (content-type={ct!r}, "
            f"status={r.status_code}, url={sanitize_url(str(r.url))})",
            kind=FailureKind.TRANSIENT,
            status_code=r.status_code,
            endpoint=endpoint,
        ) from None


class ElegeAdapter:
    """Synchronous adapter for the Elege.AI REST API."""

    name = "elegeai"

    def __init__(
        self,
        api_token: str,
        base_url: str = DEFAULT_BASE,
        list_timeout_s: float = 30.0,
        detail_timeout_s: float = 15.0,
        transport: httpx.BaseTransport | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        if not api_token:
            raise ConfigError("ELEGEAI_API_TOKEN missing")
        self.base_url = base_url.rstrip("/")
        self.list_timeout_s = list_timeout_s
        self.detail_timeout_s = detail_timeout_s
        self.backoff_base = backoff_base
        self.client = httpx.Client(
            timeout=list_timeout_s,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
                "User-Agent": "feedsync/1.0",
            },
            transport=transport,
        )

    def _get(self, path: str, params: dict[str, Any] | None, timeout: float, endpoint: str) -> Any:
        r = request_with_retry(
            self.client,
            f"{self.base_url}{path}",
            params,
            timeout=timeout,
            endpoint=endpoint,
            backoff_base=self.backoff_base,
        )
        return _safe_json(r, endpoint)

    # ── Endpoint helpers ────────────────────────────────────────

    def search_entity(self, name: str) -> Optional[str]:
        """GET /people?q=… → id of the first match, or None."""
        try:
            data = self._get("/people", {"q": name}, self.list_timeout_s, "people")
        except ProviderError as exc:
            if exc.kind is FailureKind.NOT_FOUND:
                return None
            raise
        people = extract_list(data, "people")
        if not people:
            return None
        pid = people[0].get("id")
        return None if pid is None else str(pid)

    def list_items(self, target: SyncTarget, since: str, limit: int) -> List[RawRecord]:
        """GET /analytics/mentions/latest for one person or channel, from *since* on."""
        params: dict[str, Any] = {"limit": limit, "start_date": since}
        if target.is_channel:
            params["channel_id"] = target.source_key
        else:
            params["person_id"] = target.source_key
        data = self._get(
            "/analytics/mentions/latest", params, self.list_timeout_s,
            f"mentions:{'channel' if target.is_channel else 'person'}:{target.source_key}",
        )
        return [normalize_mention(it) for it in extract_list(data, "mentions")]

    def fetch_item_detail(self, item_id: str) -> Optional[Item]:
        """GET /posts/{id}; None when the post no longer exists."""
        try:
            data = self._get(f"/posts/{item_id}", None, self.detail_timeout_s, "posts")
        except ProviderError as exc:
            if exc.kind is FailureKind.NOT_FOUND:
                return None
            raise
        if not isinstance(data, dict):
            return None
        return normalize_post(data)

    def close(self) -> None:
        self.client.close()
