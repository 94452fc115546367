# zkgate/profiles.py
"""
Presentation-only profile enrichment.

ProfileCache sits in front of the upstream profile service. It never takes
part in a trust decision. Concurrent misses for the same key share a single
upstream call; a failed call is not cached.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from zkgate.errors import UpstreamFetchError, UpstreamTimeout

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0


@dataclass
class ProfileCacheEntry:
    subject_key: str
    profile_document: Dict[str, Any]
    fetched_at: float


class HttpProfileFetcher:
    """GET {base_url}/streamlined/{subject}; upstream answers {success, profile}."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch(self, subject_key: str) -> Dict[str, Any]:
        url = f"{self.base_url}/streamlined/{quote(subject_key, safe='')}"
        try:
            response = await self._client.get(url, headers={"Content-Type": "application/json"})
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"profile upstream timed out for {subject_key}") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"profile upstream unreachable: {e}") from e

        if response.status_code >= 400:
            raise UpstreamFetchError(
                f"profile upstream returned HTTP {response.status_code}",
                {"status": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamFetchError("profile upstream returned invalid JSON") from e
        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("profile"), dict):
            raise UpstreamFetchError("profile upstream returned success: false")
        return data["profile"]

    async def aclose(self):
        await self._client.aclose()


class ProfileCache:

    def __init__(self, fetcher, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.fetcher = fetcher
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, ProfileCacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    def _fresh(self, entry: Optional[ProfileCacheEntry], ttl: float) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < ttl

    async def get(self, subject_key: str, ttl: Optional[float] = None) -> Dict[str, Any]:
        document, _ = await self.lookup(subject_key, ttl)
        return document

    async def lookup(self, subject_key: str, ttl: Optional[float] = None):
        """Like get(), but also reports whether the value came from cache."""
        ttl = self.ttl if ttl is None else ttl
        async with self._lock:
            entry = self._entries.get(subject_key)
            if self._fresh(entry, ttl):
                logger.debug("profile cache hit %s", subject_key)
                return entry.profile_document, True
            if entry is not None:
                # lazy eviction of a stale entry
                del self._entries[subject_key]
            future = self._inflight.get(subject_key)
            if future is None:
                logger.debug("profile cache miss %s", subject_key)
                future = asyncio.ensure_future(self._fill(subject_key))
                self._inflight[subject_key] = future
        # a caller going away must not cancel the shared fetch
        return await asyncio.shield(future), False

    async def _fill(self, subject_key: str) -> Dict[str, Any]:
        try:
            document = await self.fetcher.fetch(subject_key)
        except Exception:
            logger.warning("profile fetch failed for %s", subject_key)
            raise
        else:
            async with self._lock:
                self._entries[subject_key] = ProfileCacheEntry(subject_key, document, self._clock())
            return document
        finally:
            self._inflight.pop(subject_key, None)

    def clear(self, subject_key: Optional[str] = None) -> None:
        if subject_key is None:
            self._entries.clear()
        else:
            self._entries.pop(subject_key, None)

    def __len__(self):
        return len(self._entries)
