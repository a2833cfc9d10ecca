"""Sync engine for reconciling file servers into the flat catalog."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from ..config import Config, ServerConfig, get_config
from ..database import Database, get_db
from ..errors import ServerConfigError
from ..fileserver import FileServerClient
from ..invalidation import CacheInvalidator, NullCacheInvalidator
from ..models import ReapResult, SyncMode, SyncPassResult, SyncRunReport
from ..notifications import NotificationSink
from .availability import FieldAvailabilityIndex
from .catalog_cache import CatalogCache
from .context import PassContext, Repositories
from .episodes import sync_episodes
from .hash_store import HashStore
from .hashing import BLURHASH_CHECKPOINT, flush_stamps, load_blurhash_changes
from .movies import sync_movies
from .reaper import AvailabilityReaper
from .seasons import sync_seasons
from .tv_shows import sync_tv_shows

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)


class SyncEngine:
    """Engine for syncing file servers into the flat catalog.

    Architecture:
    1. run() -> fetch every enabled server's tree -> field availability
    2. sync_all() per server, highest priority first, sharing one catalog cache
    3. reap_unavailable() once, over every server's data
    4. Notification sinks receive the per-server results
    """

    def __init__(
        self,
        config: Config | None = None,
        db: Database | None = None,
        invalidator: CacheInvalidator | None = None,
        notifiers: list[NotificationSink] | None = None,
    ):
        self.config = config or get_config()
        self._db = db
        self.invalidator = invalidator or NullCacheInvalidator()
        self.notifiers = list(notifiers or [])
        self._clients: dict[str, FileServerClient] = {}
        self._run_lock = asyncio.Lock()
        self._running = False
        self._worker_task: asyncio.Task[None] | None = None
        self._manual_task: asyncio.Task[Any] | None = None
        self.last_report: SyncRunReport | None = None

    async def _get_db(self) -> Database:
        if self._db is None:
            self._db = await get_db()
        return self._db

    def _get_client(self, server: ServerConfig) -> FileServerClient:
        """Get or create a client for a server."""
        if server.id not in self._clients:
            self._clients[server.id] = FileServerClient(
                server,
                probe_timeout=self.config.sync.probe_timeout,
                bulk_timeout=self.config.sync.bulk_timeout,
            )
        return self._clients[server.id]

    def _availability(
        self, field_availability: FieldAvailabilityIndex | Mapping[str, Any] | None
    ) -> FieldAvailabilityIndex:
        if isinstance(field_availability, FieldAvailabilityIndex):
            return field_availability
        return FieldAvailabilityIndex(
            field_availability or {},
            priorities={s.id: s.priority for s in self.config.servers},
        )

    @staticmethod
    def _validate_server(server_config: ServerConfig | Mapping[str, Any]) -> ServerConfig:
        if isinstance(server_config, ServerConfig):
            return server_config
        try:
            return ServerConfig.model_validate(server_config)
        except ValidationError as e:
            raise ServerConfigError(f"Invalid server config: {e.errors()[0]['msg']}") from e

    @property
    def is_running(self) -> bool:
        """True while a run holds the lock or a triggered run is pending."""
        return self._run_lock.locked() or (self._manual_task is not None and not self._manual_task.done())

    # ========== One server ==========

    async def sync_all(
        self,
        remote_server_data: Mapping[str, Any],
        server_config: ServerConfig | Mapping[str, Any],
        field_availability: FieldAvailabilityIndex | Mapping[str, Any] | None,
        cache: CatalogCache | None = None,
    ) -> SyncPassResult:
        """Run one server's pass: movies and shows, then seasons, then episodes.

        Per-entity failures are recorded in the result. An invalid server
        config or an unexpected failure ends only this server's pass.
        """
        if isinstance(server_config, ServerConfig):
            server_id = server_config.id
        else:
            server_id = str(server_config.get("id") or "unknown")
        result = SyncPassResult(server_id=server_id)

        try:
            server = self._validate_server(server_config)
        except ServerConfigError as e:
            logger.error("[%s] %s", server_id, e)
            result.error = str(e)
            return result

        started = time.perf_counter()
        try:
            db = await self._get_db()
            if cache is None:
                cache = await CatalogCache.build(db)
            client = self._get_client(server)
            client.clear_cache()

            try:
                mode = await client.detect_sync_mode()
            except Exception as e:
                logger.warning("[%s] Sync mode detection failed, using traditional: %s", server.id, e)
                mode = SyncMode.TRADITIONAL
            result.strategy = mode

            ctx = PassContext(
                server=server,
                sync_config=self.config.sync,
                client=client,
                availability=self._availability(field_availability),
                cache=cache,
                repos=Repositories(db),
                hash_store=HashStore(db),
                mode=mode,
                tree=dict(remote_server_data or {}),
            )
            logger.info("[%s] Starting %s sync", server.id, mode.value)
            checkpoint = await load_blurhash_changes(ctx)

            result.movies, result.tv_shows = await asyncio.gather(
                self._timed("movies", sync_movies, ctx, result),
                self._timed("tv_shows", sync_tv_shows, ctx, result),
            )
            result.seasons = await self._timed("seasons", sync_seasons, ctx, result)
            result.episodes = await self._timed("episodes", sync_episodes, ctx, result)
            await flush_stamps(ctx)
            # A failed pass re-reads the same changes next time
            if checkpoint is not None and result.error_count == 0:
                await ctx.hash_store.set_checkpoint(server.id, BLURHASH_CHECKPOINT, checkpoint)
        except Exception as e:
            logger.exception("[%s] Sync pass failed", server_id)
            result.error = str(e) or type(e).__name__
        finally:
            result.performance["total"] = _elapsed_ms(started)

        logger.info(
            "[%s] Sync finished in %.0fms with %d errors",
            server_id,
            result.performance["total"],
            result.error_count,
        )
        return result

    @staticmethod
    async def _timed(
        name: str,
        phase: Callable[[PassContext], Awaitable[T]],
        ctx: PassContext,
        result: SyncPassResult,
    ) -> T:
        start = time.perf_counter()
        try:
            return await phase(ctx)
        finally:
            result.performance[name] = _elapsed_ms(start)

    # ========== All servers ==========

    async def reap_unavailable(
        self,
        all_servers_data: Mapping[str, Mapping[str, Any]],
        field_availability: FieldAvailabilityIndex | Mapping[str, Any] | None,
        cache: CatalogCache | None = None,
    ) -> ReapResult:
        """Remove entities that no server in `all_servers_data` serves."""
        db = await self._get_db()
        if cache is None:
            cache = await CatalogCache.build(db)
        reaper = AvailabilityReaper(cache, Repositories(db), HashStore(db), self.invalidator)
        return await reaper.reap(all_servers_data, self._availability(field_availability))

    async def fetch_all(self, servers: list[ServerConfig]) -> tuple[dict[str, dict[str, Any]], dict[str, str]]:
        """Fetch every server's tree. Returns (data by server id, errors by server id)."""

        async def fetch_one(server: ServerConfig) -> tuple[str, dict[str, Any] | None, str | None]:
            client = self._get_client(server)
            try:
                tree = await client.fetch_server_tree(self.config.sync.expected_tree_version)
            except Exception as e:
                logger.error("[%s] Failed to fetch server data: %s", server.id, e)
                return server.id, None, str(e) or type(e).__name__
            return server.id, tree, None

        data: dict[str, dict[str, Any]] = {}
        errors: dict[str, str] = {}
        for server_id, tree, error in await asyncio.gather(*(fetch_one(s) for s in servers)):
            if tree is not None:
                data[server_id] = tree
            else:
                errors[server_id] = error or "unknown error"
        return data, errors

    async def run(self, servers_data: Mapping[str, Mapping[str, Any]] | None = None) -> SyncRunReport:
        """Full invocation: every enabled server, then the reaper, then notifications.

        `servers_data` (server id -> tree) skips fetching. The reaper only
        runs when every enabled server reported data.
        """
        async with self._run_lock:
            report = SyncRunReport()
            started = time.perf_counter()
            servers = self.config.enabled_servers()

            if servers_data is None:
                fetch_started = time.perf_counter()
                data, report.fetch_errors = await self.fetch_all(servers)
                report.performance["fetch"] = _elapsed_ms(fetch_started)
            else:
                data = {k: dict(v) for k, v in servers_data.items()}
                for server in servers:
                    if server.id not in data:
                        report.fetch_errors[server.id] = "no data supplied"

            known = {s.id for s in servers}
            for server_id in sorted(set(data) - known):
                logger.warning("Ignoring data for unknown or disabled server %s", server_id)
                del data[server_id]

            availability = FieldAvailabilityIndex.from_servers(data, self.config.servers)
            db = await self._get_db()
            cache = await CatalogCache.build(db)

            for server in servers:
                if server.id not in data:
                    continue
                report.servers[server.id] = await self.sync_all(data[server.id], server, availability, cache)

            if report.fetch_errors:
                logger.warning(
                    "Skipping availability check, missing data from: %s", ", ".join(sorted(report.fetch_errors))
                )
            else:
                reap_started = time.perf_counter()
                report.reaper = await self.reap_unavailable(data, availability, cache)
                report.performance["reaper"] = _elapsed_ms(reap_started)

            report.notifications = await self._notify(report.servers)
            report.finished_at = datetime.now(UTC)
            report.performance["total"] = _elapsed_ms(started)
            self.last_report = report

            logger.info(
                "Sync run finished in %.0fms: %d servers, %d fetch errors",
                report.performance["total"],
                len(report.servers),
                len(report.fetch_errors),
            )
            return report

    async def _notify(self, results: dict[str, SyncPassResult]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for sink in self.notifiers:
            try:
                delivered = await sink.process_sync_results(results)
            except Exception as e:
                logger.warning("Notification sink %s failed: %s", type(sink).__name__, e)
                continue
            for key, value in (delivered or {}).items():
                counts[key] = counts.get(key, 0) + value
        return counts

    def trigger_run(self) -> bool:
        """Start a run in the background. Returns False if one is already running."""
        if self.is_running:
            return False
        self._manual_task = asyncio.create_task(self._run_logged())
        return True

    async def _run_logged(self) -> SyncRunReport | None:
        try:
            return await self.run()
        except Exception as e:
            logger.exception("Sync run failed: %s", e)
            return None

    # ========== Scheduled worker ==========

    async def start_worker(self, interval_seconds: float | None = None) -> None:
        """Start the background worker that runs a sync every interval."""
        if self._running:
            return

        interval = self.config.sync.interval_seconds if interval_seconds is None else interval_seconds
        if interval <= 0:
            logger.info("Scheduled sync disabled")
            return

        self._running = True
        self._worker_task = asyncio.create_task(self._worker_loop(interval))
        logger.info("Sync worker started (every %.0fs)", interval)

    async def stop_worker(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None
        logger.info("Sync worker stopped")

    async def _worker_loop(self, interval_seconds: float) -> None:
        """Main worker loop. A failed run is logged and the next one still happens."""
        if not self.config.sync.run_on_startup:
            await asyncio.sleep(interval_seconds)

        while self._running:
            try:
                await self.run()
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)

            await asyncio.sleep(interval_seconds)

    # ========== Utilities ==========

    async def health_check_all(self) -> dict[str, bool]:
        """Probe every enabled server's movies endpoint."""

        async def check_server(server: ServerConfig) -> tuple[str, bool]:
            client = self._get_client(server)
            return server.id, await client.probe(server.movies_path)

        tasks = [check_server(s) for s in self.config.enabled_servers()]
        return dict(await asyncio.gather(*tasks))

    def get_status(self) -> dict[str, Any]:
        """Current worker state, configured servers and the last run."""
        return {
            "worker_running": self._running,
            "sync_running": self.is_running,
            "servers": [
                {"id": s.id, "base_url": s.url, "priority": s.priority, "enabled": s.enabled}
                for s in self.config.servers
            ],
            "last_run": self.last_report.model_dump(mode="json") if self.last_report else None,
        }

    async def close(self) -> None:
        """Close server clients and the cache invalidator."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        try:
            await self.invalidator.close()
        except Exception as e:
            logger.warning("Failed to close cache invalidator: %s", e)
