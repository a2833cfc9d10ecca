"""File server API client for sync operations."""

import asyncio
import json
import logging
import random
from importlib.metadata import metadata
from typing import Any
from urllib.parse import quote

import httpx

from ..config import ServerConfig
from ..errors import RemoteFetchError
from ..models import MediaType, SyncMode

logger = logging.getLogger(__name__)

# Connection pool limits
DEFAULT_LIMITS = httpx.Limits(max_connections=40, max_keepalive_connections=20)
DEFAULT_PROBE_TIMEOUT = 2.0
DEFAULT_BULK_TIMEOUT = 60.0

RETRYABLE_STATUS = {408, 429}
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0

# Get package metadata for client identification
_PKG_NAME = "flat-catalog-sync"
_pkg_meta = metadata(_PKG_NAME)
USER_AGENT = f"{_pkg_meta['Name']}/{_pkg_meta['Version']}"


def backoff_delay(attempt: int) -> float:
    """Exponential backoff with +/-25% jitter, never below 100ms."""
    delay = min(BACKOFF_BASE_SECONDS * 2**attempt, BACKOFF_MAX_SECONDS)
    jitter = delay * 0.25 * random.uniform(-1, 1)
    return max(delay + jitter, 0.1)


def is_retryable(error: RemoteFetchError) -> bool:
    """Timeouts, transport failures, 5xx, 408 and 429 are worth retrying."""
    if error.status_code is None:
        return True
    return error.status_code >= 500 or error.status_code in RETRYABLE_STATUS


class FileServerClient:
    """Async client for one file server."""

    def __init__(
        self,
        server: ServerConfig,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        bulk_timeout: float = DEFAULT_BULK_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server = server
        self.base_url = server.url
        self.probe_timeout = probe_timeout
        self.bulk_timeout = bulk_timeout
        self.headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if server.webhook_id:
            self.headers["x-webhook-id"] = server.webhook_id
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        # Resolved references for the current pass, keyed by (kind, url)
        self._resolved: dict[tuple[str, str], Any] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.server.timeout, connect=min(self.server.timeout, 10.0)),
                limits=DEFAULT_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def clear_cache(self) -> None:
        """Forget resolved references (call between passes)."""
        self._resolved.clear()

    def create_full_url(self, path: str) -> str:
        """Absolute URL for a path from the server's tree."""
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a request, converting every failure into RemoteFetchError."""
        url = self.create_full_url(path)
        client = await self._get_client()
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await client.request(method, url, headers=self.headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteFetchError(
                self.server.id, path, f"HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.TimeoutException as e:
            raise RemoteFetchError(self.server.id, path, "timed out") from e
        except httpx.HTTPError as e:
            raise RemoteFetchError(self.server.id, path, str(e) or type(e).__name__) from e
        return response

    # ========== Capability ==========

    async def probe(self, path: str) -> bool:
        """HEAD request with the short probe timeout. Any failure means unavailable."""
        try:
            await self._request("HEAD", path, timeout=self.probe_timeout)
        except RemoteFetchError as e:
            logger.debug("[%s] Probe %s failed: %s", self.server.id, path, e)
            return False
        return True

    async def detect_sync_mode(self) -> SyncMode:
        """Pick the strongest strategy the server supports.

        optimized: hash listing plus blurhash change feed (bulk hashes, blurhashes by change)
        basic: hash listing only (per-title hash fetches)
        traditional: no hash support, or detection failed
        """
        if self.server.force_sync_mode:
            mode = SyncMode(self.server.force_sync_mode)
            logger.info("[%s] Sync mode forced to %s", self.server.id, mode.value)
            return mode

        if not await self.probe("/api/metadata-hashes/movies"):
            logger.info("[%s] Hash endpoint unavailable, using traditional sync", self.server.id)
            return SyncMode.TRADITIONAL

        if await self.probe("/api/blurhash-changes?since=0"):
            mode = SyncMode.OPTIMIZED
        else:
            mode = SyncMode.BASIC
        logger.info("[%s] Detected sync mode: %s", self.server.id, mode.value)
        return mode

    # ========== Data ==========

    async def fetch_json(self, path: str, timeout: float | None = None, **kwargs: Any) -> Any:
        """GET a JSON document."""
        response = await self._request("GET", path, timeout=timeout, **kwargs)
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RemoteFetchError(self.server.id, path, f"malformed JSON: {e}") from e

    async def fetch_server_tree(self, expected_version: str | None = None) -> dict[str, Any]:
        """Fetch the movies and tv trees, retrying transient failures with backoff."""
        last_error: RemoteFetchError | None = None

        for attempt in range(self.server.max_fetch_retries + 1):
            if attempt > 0:
                delay = backoff_delay(attempt - 1)
                logger.info(
                    "[%s] Retrying tree fetch (attempt %d/%d) in %.1fs",
                    self.server.id,
                    attempt + 1,
                    self.server.max_fetch_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)
            try:
                movies, tv = await asyncio.gather(
                    self.fetch_json(self.server.movies_path),
                    self.fetch_json(self.server.tv_path),
                )
                break
            except RemoteFetchError as e:
                last_error = e
                if not is_retryable(e):
                    logger.error("[%s] Tree fetch failed, not retrying: %s", self.server.id, e)
                    raise
                logger.warning("[%s] Tree fetch failed (attempt %d): %s", self.server.id, attempt + 1, e)
        else:
            assert last_error is not None
            raise last_error

        tree = {MediaType.MOVIES.value: movies or {}, MediaType.TV.value: tv or {}}
        for media_type, data in tree.items():
            if not isinstance(data, dict):
                raise RemoteFetchError(self.server.id, media_type, "tree is not an object")
            version = data.pop("version", None)
            if expected_version is not None and version != expected_version:
                logger.error(
                    "[%s] %s tree version mismatch: %s != %s",
                    self.server.id,
                    media_type,
                    version or "no version",
                    expected_version,
                )
        return tree

    async def fetch_hash_data(
        self,
        media_type: MediaType,
        title: str | None = None,
        season_number: int | None = None,
    ) -> dict[str, Any]:
        """Server-declared content hashes for a media type, title or season."""
        path = f"/api/metadata-hashes/{media_type.value}"
        if title is not None:
            path += f"/{quote(title, safe='')}"
            if season_number is not None:
                path += f"/{season_number}"
        timeout = self.bulk_timeout if title is None else None
        data = await self.fetch_json(path, timeout=timeout)
        if not isinstance(data, dict):
            raise RemoteFetchError(self.server.id, path, "hash data is not an object")
        return data

    async def fetch_blurhash_changes(self, since: str) -> dict[str, Any]:
        """Blurhash changes the server recorded after `since` (an ISO timestamp).

        Returns `{"timestamp": ..., "changes": [...]}`; each change names a
        mediaType and title, plus seasonNumber/episodeKey/imageType where
        they apply.
        """
        path = "/api/blurhash-changes"
        data = await self.fetch_json(path, timeout=self.bulk_timeout, params={"since": since})
        if not isinstance(data, dict) or not isinstance(data.get("changes", []), list):
            raise RemoteFetchError(self.server.id, path, "blurhash changes are not an object with a change list")
        return data

    async def resolve_reference(
        self,
        reference: str,
        kind: str,
        media_type: MediaType,
        title: str,
    ) -> Any:
        """Fetch the payload a tree reference points at.

        kind "metadata" returns parsed JSON, kind "blurhash" the trimmed text.
        Cached per pass by (kind, url); a new reference is always fetched.
        """
        url = self.create_full_url(reference)
        key = (kind, url)
        if key in self._resolved:
            return self._resolved[key]

        logger.debug("[%s] Resolving %s for %s %s", self.server.id, kind, media_type.value, title)
        if kind == "metadata":
            value = await self.fetch_json(url)
        elif kind == "blurhash":
            response = await self._request("GET", url)
            value = response.text.strip()
        else:
            raise ValueError(f"Unknown reference kind: {kind}")

        self._resolved[key] = value
        return value
