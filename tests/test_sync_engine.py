"""Tests for SyncEngine."""

import copy
import tempfile
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from flat_catalog_sync.config import Config, ServerConfig, SyncConfig
from flat_catalog_sync.database import Database
from flat_catalog_sync.fileserver import FileServerClient
from flat_catalog_sync.models import MediaType, SyncMode
from flat_catalog_sync.notifications import LoggingNotificationSink
from flat_catalog_sync.sync.availability import FieldAvailabilityIndex
from flat_catalog_sync.sync.catalog_cache import CatalogCache
from flat_catalog_sync.sync.engine import SyncEngine
from flat_catalog_sync.sync.hash_store import HashStore
from flat_catalog_sync.sync.hashing import BLURHASH_CHECKPOINT
from flat_catalog_sync.sync.repository import EpisodeRepository, MovieRepository, SeasonRepository, TVShowRepository

SHOW_X = "Show X"
FEED_TIMESTAMP = "2026-01-02T00:00:00Z"


def show_metadata(server_id: str, seasons: list[int]) -> dict[str, Any]:
    return {
        "name": SHOW_X,
        "overview": f"from {server_id}",
        "last_updated": "2024-01-01T00:00:00Z",
        "seasons": [
            {
                "season_number": n,
                "name": f"Season {n}",
                "episodes": [{"episode_number": 1, "name": f"Episode {n}x1 ({server_id})"}],
            }
            for n in seasons
        ],
    }


SERVER1_TREE = {
    "movies": {
        "Alpha": {"urls": {"mp4": "/movies/Alpha.mp4", "poster": "/p/alpha.jpg", "metadata": "/meta/alpha.json"}},
    },
    "tv": {
        SHOW_X: {
            "metadata": "/meta/showx.json",
            "poster": "/p/showx.jpg",
            "seasons": {
                "Season 1": {
                    "season_poster": "/p/showx-s1.jpg",
                    "episodes": {
                        "S01E01 - Pilot.mp4": {"videoURL": "/tv/showx/s1e1.mp4", "thumbnailBlurhash": "/bh/s1e1-a"},
                    },
                },
            },
        },
    },
}

SERVER2_TREE = {
    "movies": {
        "Alpha": {"urls": {"mp4": "/movies/Alpha.mp4", "poster": "/p/alpha.jpg", "metadata": "/meta/alpha.json"}},
    },
    "tv": {
        SHOW_X: {
            "metadata": "/meta/showx.json",
            "poster": "/p/showx.jpg",
            "seasons": {
                "Season 1": {
                    "season_poster": "/p/showx-s1.jpg",
                    "episodes": {
                        "S01E01 - Pilot.mp4": {"videoURL": "/tv/showx/s1e1.mp4", "thumbnailBlurhash": "/bh/s1e1-b"},
                    },
                },
                "Season 2": {
                    "season_poster": "/p/showx-s2.jpg",
                    "episodes": {"S02E01.mp4": {"videoURL": "/tv/showx/s2e1.mp4"}},
                },
            },
        },
    },
}


class FakeFileServer:
    """Serves a tree, metadata, blurhashes and (optionally) content hashes and a blurhash change feed."""

    def __init__(
        self,
        server_id: str,
        tree: dict[str, Any],
        hashes: dict[str, Any] | None = None,
        blurhash_changes: list[dict[str, Any]] | None = None,
    ):
        self.server_id = server_id
        self.tree = copy.deepcopy(tree)
        self.hashes = hashes
        self.blurhash_changes = blurhash_changes
        self.since: list[str] = []
        self.seasons = sorted(int(k.split()[-1]) for k in tree["tv"][SHOW_X]["seasons"])
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if request.method == "HEAD":
            hashed = self.hashes is not None and path.startswith("/api/metadata-hashes/")
            feed = self.blurhash_changes is not None and path == "/api/blurhash-changes"
            return httpx.Response(200 if hashed or feed or path in ("/api/movies", "/api/tv") else 404)
        if path == "/api/movies":
            return httpx.Response(200, json=self.tree["movies"])
        if path == "/api/tv":
            return httpx.Response(200, json=self.tree["tv"])
        if path.startswith("/api/metadata-hashes/") and self.hashes is not None:
            key = path.removeprefix("/api/metadata-hashes/")
            return httpx.Response(200, json=self.hashes.get(key, {}))
        if path == "/api/blurhash-changes" and self.blurhash_changes is not None:
            self.since.append(request.url.params["since"])
            return httpx.Response(200, json={"timestamp": FEED_TIMESTAMP, "changes": self.blurhash_changes})
        if path == "/meta/alpha.json":
            return httpx.Response(200, json={"title": "Alpha", "overview": f"from {self.server_id}"})
        if path == "/meta/showx.json":
            return httpx.Response(200, json=show_metadata(self.server_id, self.seasons))
        if path.startswith("/meta/ep-"):
            name = path.rsplit("/", 1)[-1].removesuffix(".json")
            return httpx.Response(200, json={"name": f"{name} ({self.server_id})"})
        if path.startswith("/bh/"):
            return httpx.Response(200, text=f"{self.server_id}:{path.rsplit('/', 1)[-1]}")
        return httpx.Response(404)

    def count(self, path: str) -> int:
        return self.requests.count(path)


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(db_path)
    await database.connect()
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


@pytest.fixture
def test_config():
    """Create test configuration."""
    return Config(
        servers=[
            ServerConfig(id="server1", base_url="http://files1", priority=1),
            ServerConfig(id="server2", base_url="http://files2", priority=2),
        ],
        sync=SyncConfig(batch_delay_seconds=0, interval_seconds=0),
    )


def make_engine(config: Config, db: Database, *servers: FakeFileServer, **kwargs: Any) -> SyncEngine:
    """Engine whose clients talk to in-process fake servers."""
    engine = SyncEngine(config, db=db, **kwargs)
    for fake in servers:
        server = config.get_server(fake.server_id)
        engine._clients[server.id] = FileServerClient(server, transport=httpx.MockTransport(fake.handler))
    return engine


@pytest.fixture
def server1():
    return FakeFileServer("server1", SERVER1_TREE)


@pytest.fixture
def server2():
    return FakeFileServer("server2", SERVER2_TREE)


async def sync_in_order(engine: SyncEngine, order: list[str]) -> None:
    data = {"server1": copy.deepcopy(SERVER1_TREE), "server2": copy.deepcopy(SERVER2_TREE)}
    availability = FieldAvailabilityIndex.from_servers(data, engine.config.servers)
    cache = await CatalogCache.build(await engine._get_db())
    for server_id in order:
        result = await engine.sync_all(data[server_id], engine.config.get_server(server_id), availability, cache)
        assert result.error is None
        assert result.error_count == 0


class TestFullRun:
    """End-to-end runs over both servers."""

    @pytest.mark.asyncio
    async def test_run_builds_catalog(self, test_config, db, server1, server2):
        engine = make_engine(test_config, db, server1, server2, notifiers=[LoggingNotificationSink()])

        report = await engine.run()

        assert report.fetch_errors == {}
        assert list(report.servers) == ["server1", "server2"]
        assert report.servers["server1"].strategy is SyncMode.TRADITIONAL
        assert report.servers["server1"].movies.created == ["Alpha"]
        assert report.reaper is not None
        assert report.reaper.removed_titles == []
        assert report.notifications == {"movies": 1, "episodes": 2}
        assert engine.last_report is report

        movie = await MovieRepository(db).get_by_natural_key("Alpha")
        assert movie.video_url == "http://files1/movies/Alpha.mp4"
        assert movie.video_source == "server1"
        assert movie.initial_discovery_server == "server1"

        episode = await EpisodeRepository(db).get_by_natural_key(SHOW_X, 1, 1)
        assert episode.title == "Episode 1x1 (server1)"
        assert episode.metadata_source == "server1"

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, test_config, db, server1, server2):
        """Unchanged remote data produces no storage writes on the next run."""
        engine = make_engine(test_config, db, server1, server2)

        await engine.run()
        writes = db.writes
        assert writes > 0

        report = await engine.run()

        assert db.writes == writes
        for result in report.servers.values():
            assert result.movies.updated == []
            assert result.episodes.updated == []
            assert result.seasons.created == []

    @pytest.mark.asyncio
    async def test_fetch_error_skips_reaper(self, test_config, db, server1):
        """A server without data could be the only one serving an entity."""
        await MovieRepository(db).create("Ghost")
        engine = make_engine(test_config, db, server1)

        report = await engine.run({"server1": copy.deepcopy(SERVER1_TREE)})

        assert report.fetch_errors == {"server2": "no data supplied"}
        assert report.reaper is None
        assert await MovieRepository(db).get_by_natural_key("Ghost") is not None

    @pytest.mark.asyncio
    async def test_reaper_removes_unserved_movie(self, test_config, db, server1, server2):
        await MovieRepository(db).create("Ghost")
        engine = make_engine(test_config, db, server1, server2)

        report = await engine.run()

        assert report.reaper.removed.movies == 1
        assert report.reaper.removed_titles == ["Ghost"]
        assert await MovieRepository(db).get_by_natural_key("Ghost") is None

    @pytest.mark.asyncio
    async def test_unknown_server_data_is_ignored(self, test_config, db, server1, server2):
        engine = make_engine(test_config, db, server1, server2)
        data = {
            "server1": copy.deepcopy(SERVER1_TREE),
            "server2": copy.deepcopy(SERVER2_TREE),
            "rogue": {"movies": {"Rogue": {"urls": {"mp4": "/r.mp4"}}}, "tv": {}},
        }

        report = await engine.run(data)

        assert "rogue" not in report.servers
        assert await MovieRepository(db).get_by_natural_key("Rogue") is None

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_fail_run(self, test_config, db, server1, server2):
        broken = MagicMock()
        broken.process_sync_results = AsyncMock(side_effect=RuntimeError("smtp down"))
        working = MagicMock()
        working.process_sync_results = AsyncMock(return_value={"movies": 3})
        engine = make_engine(test_config, db, server1, server2, notifiers=[broken, working])

        report = await engine.run()

        assert report.notifications == {"movies": 3}
        working.process_sync_results.assert_awaited_once()


class TestPriorityArbitration:
    """Higher ranked servers win regardless of pass order."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [["server1", "server2"], ["server2", "server1"]])
    async def test_show_metadata_from_highest_priority(self, test_config, db, server1, server2, order):
        engine = make_engine(test_config, db, server1, server2)

        await sync_in_order(engine, order)

        show = await TVShowRepository(db).get_by_natural_key(SHOW_X)
        assert show.metadata_source == "server1"
        assert show.overview == "from server1"
        assert show.poster_url == "http://files1/p/showx.jpg"

        movie = await MovieRepository(db).get_by_natural_key("Alpha")
        assert movie.metadata["overview"] == "from server1"
        assert movie.poster_source == "server1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [["server1", "server2"], ["server2", "server1"]])
    async def test_thumbnail_blurhash_from_highest_priority(self, test_config, db, server1, server2, order):
        engine = make_engine(test_config, db, server1, server2)

        await sync_in_order(engine, order)

        episode = await EpisodeRepository(db).get_by_natural_key(SHOW_X, 1, 1)
        assert episode.thumbnail_blurhash == "server1:s1e1-a"
        assert episode.thumbnail_blurhash_source == "server1"
        assert episode.blurhash_refs["thumbnail_blurhash"] == "/bh/s1e1-a"
        assert episode.video_source == "server1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [["server1", "server2"], ["server2", "server1"]])
    async def test_season_only_on_lower_priority_is_created(self, test_config, db, server1, server2, order):
        engine = make_engine(test_config, db, server1, server2)

        await sync_in_order(engine, order)

        show = await TVShowRepository(db).get_by_natural_key(SHOW_X)
        seasons = {s.season_number: s for s in await SeasonRepository(db).get_for_show(show.id)}
        assert sorted(seasons) == [1, 2]
        assert seasons[1].poster_source == "server1"
        assert seasons[2].poster_url == "http://files2/p/showx-s2.jpg"
        assert seasons[2].poster_source == "server2"

        episode = await EpisodeRepository(db).get_by_natural_key(SHOW_X, 2, 1)
        assert episode.video_url == "http://files2/tv/showx/s2e1.mp4"
        assert episode.video_source == "server2"

    @pytest.mark.asyncio
    async def test_locked_poster_survives_sync(self, test_config, db, server1):
        movies = MovieRepository(db)
        movie = (await movies.create("Alpha")).entity
        await movies.update(movie.id, {"poster_url": "http://pinned/alpha.jpg", "locked_fields": {"poster_url": True}})
        engine = make_engine(test_config, db, server1)

        result = await engine.sync_all(copy.deepcopy(SERVER1_TREE), test_config.get_server("server1"), {})

        assert result.error_count == 0
        stored = await movies.get_by_natural_key("Alpha")
        assert stored.poster_url == "http://pinned/alpha.jpg"
        assert stored.video_url == "http://files1/movies/Alpha.mp4"
        assert stored.metadata["title"] == "Alpha"


class TestSingleServerPass:
    """sync_all and reap_unavailable called directly."""

    @pytest.mark.asyncio
    async def test_movie_only_on_second_server_is_retained(self, test_config, db):
        server2 = FakeFileServer("server2", SERVER2_TREE)
        engine = make_engine(test_config, db, server2)
        tree = {"movies": {"Alpha": {"urls": {"mp4": "/a.mp4"}}}, "tv": {}}

        result = await engine.sync_all(tree, test_config.get_server("server2"), {})

        assert result.movies.created == ["Alpha"]
        movie = await MovieRepository(db).get_by_natural_key("Alpha")
        assert movie.video_source == "server2"
        assert movie.video_url == "http://files2/a.mp4"

        reap = await engine.reap_unavailable({"server2": tree}, {})

        assert reap.removed.movies == 0
        assert reap.retained_without_authority == []
        assert await MovieRepository(db).get_by_natural_key("Alpha") is not None

    @pytest.mark.asyncio
    async def test_invalid_server_config(self, test_config, db):
        engine = make_engine(test_config, db)

        result = await engine.sync_all({"movies": {}, "tv": {}}, {"id": "broken", "base_url": ""}, {})

        assert result.server_id == "broken"
        assert "Invalid server config" in result.error
        assert result.strategy is None

    @pytest.mark.asyncio
    async def test_mode_detection_failure_falls_back_to_traditional(self, test_config, db, server1):
        engine = make_engine(test_config, db, server1)
        client = engine._clients["server1"]
        client.detect_sync_mode = AsyncMock(side_effect=RuntimeError("boom"))

        result = await engine.sync_all(copy.deepcopy(SERVER1_TREE), test_config.get_server("server1"), {})

        assert result.strategy is SyncMode.TRADITIONAL
        assert result.error is None
        assert result.movies.created == ["Alpha"]

    @pytest.mark.asyncio
    async def test_metadata_failure_does_not_block_other_fields(self, test_config, db):
        broken = FakeFileServer("server1", SERVER1_TREE)
        original = broken.handler

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/meta/alpha.json":
                return httpx.Response(500)
            return original(request)

        broken.handler = handler
        engine = make_engine(test_config, db, broken)

        result = await engine.sync_all(copy.deepcopy(SERVER1_TREE), test_config.get_server("server1"), {})

        assert [(e.title, e.field) for e in result.movies.errors] == [("Alpha", "metadata")]
        movie = await MovieRepository(db).get_by_natural_key("Alpha")
        assert movie.video_url == "http://files1/movies/Alpha.mp4"
        assert movie.metadata is None

    @pytest.mark.asyncio
    async def test_performance_recorded(self, test_config, db, server1):
        engine = make_engine(test_config, db, server1)

        result = await engine.sync_all(copy.deepcopy(SERVER1_TREE), test_config.get_server("server1"), {})

        assert set(result.performance) == {"movies", "tv_shows", "seasons", "episodes", "total"}


class TestHashSkip:
    """Metadata fetches are skipped only when hashes match and the catalog is complete."""

    @pytest.fixture
    def hashed_config(self):
        return Config(
            servers=[ServerConfig(id="server1", base_url="http://files1", priority=1, force_sync_mode="basic")],
            sync=SyncConfig(batch_delay_seconds=0, interval_seconds=0),
        )

    @pytest.fixture
    def hashed_server(self):
        hashes = {
            "movies/Alpha": {"hash": "movie-h1"},
            "tv/Show X": {"hash": "show-h1", "seasons": {"1": {"hash": "season-h1"}}},
        }
        return FakeFileServer("server1", SERVER1_TREE, hashes=hashes)

    @pytest.mark.asyncio
    async def test_matching_hashes_skip_metadata(self, hashed_config, db, hashed_server):
        engine = make_engine(hashed_config, db, hashed_server)

        first = await engine.run()
        assert first.servers["server1"].strategy is SyncMode.BASIC
        assert hashed_server.count("/meta/alpha.json") == 1
        assert hashed_server.count("/meta/showx.json") == 1
        assert await db.get_content_hash(MediaType.MOVIES, "server1", "Alpha") is not None
        assert (await db.get_content_hash(MediaType.TV, "server1", SHOW_X, 1)).hash == "season-h1"

        second = await engine.run()

        result = second.servers["server1"]
        assert result.movies.skipped_by_hash == 1
        assert result.tv_shows.skipped_by_hash == 1
        assert result.seasons.skipped_by_hash == 1
        assert hashed_server.count("/meta/alpha.json") == 1
        assert hashed_server.count("/meta/showx.json") == 1

    @pytest.mark.asyncio
    async def test_incomplete_catalog_fetches_despite_hash_match(self, hashed_config, db, hashed_server):
        engine = make_engine(hashed_config, db, hashed_server)
        await engine.run()

        movies = MovieRepository(db)
        movie = await movies.get_by_natural_key("Alpha")
        await movies.update(movie.id, {"metadata": None})
        episodes = EpisodeRepository(db)
        episode = await episodes.get_by_natural_key(SHOW_X, 1, 1)
        await episodes.update(episode.id, {"metadata": None})

        second = await engine.run()

        result = second.servers["server1"]
        assert result.movies.skipped_by_hash == 0
        assert result.seasons.skipped_by_hash == 0
        assert hashed_server.count("/meta/alpha.json") == 2
        assert hashed_server.count("/meta/showx.json") == 2
        assert (await episodes.get_by_natural_key(SHOW_X, 1, 1)).metadata is not None

    @pytest.mark.asyncio
    async def test_changed_hash_is_restamped(self, hashed_config, db, hashed_server):
        engine = make_engine(hashed_config, db, hashed_server)
        await engine.run()

        hashed_server.hashes["movies/Alpha"] = {"hash": "movie-h2"}
        await engine.run()

        assert hashed_server.count("/meta/alpha.json") == 2
        assert (await db.get_content_hash(MediaType.MOVIES, "server1", "Alpha")).hash == "movie-h2"

    @pytest.mark.asyncio
    async def test_show_hash_alone_covers_seasons_and_episodes(self, hashed_config, db):
        """Without season hashes a matching show hash still skips every metadata fetch below it."""
        hashes = {"movies/Alpha": {"hash": "movie-h1"}, "tv/Show X": {"hash": "show-h1"}}
        server = FakeFileServer("server1", SERVER1_TREE, hashes=hashes)
        engine = make_engine(hashed_config, db, server)

        await engine.run()
        second = await engine.run()

        result = second.servers["server1"]
        assert result.error_count == 0
        assert result.tv_shows.skipped_by_hash == 1
        assert result.seasons.skipped_by_hash == 1
        assert server.count("/meta/showx.json") == 1
        assert server.count("/meta/alpha.json") == 1

    @pytest.mark.asyncio
    async def test_episode_without_video_does_not_block_skip(self, hashed_config, db):
        tree = copy.deepcopy(SERVER1_TREE)
        tree["tv"][SHOW_X]["seasons"]["Season 1"]["episodes"]["S01E02.mp4"] = {"thumbnail": "/t/s1e2.jpg"}
        hashes = {"tv/Show X": {"hash": "show-h1", "seasons": {"1": {"hash": "season-h1"}}}}
        server = FakeFileServer("server1", tree, hashes=hashes)
        engine = make_engine(hashed_config, db, server)

        await engine.run()
        second = await engine.run()

        assert second.servers["server1"].seasons.skipped_by_hash == 1
        assert server.count("/meta/showx.json") == 1
        assert await EpisodeRepository(db).get_by_natural_key(SHOW_X, 1, 2) is None

    @pytest.mark.asyncio
    async def test_unchanged_episodes_skip_metadata_in_changed_season(self, hashed_config, db):
        tree = copy.deepcopy(SERVER1_TREE)
        season = tree["tv"][SHOW_X]["seasons"]["Season 1"]
        season["episodes"]["S01E01 - Pilot.mp4"]["metadata"] = "/meta/ep-s1e1.json"
        hashes = {
            "movies/Alpha": {"hash": "movie-h1"},
            "tv/Show X": {"hash": "show-h1", "seasons": {"1": {"hash": "season-h1"}}},
            "tv/Show X/1": {"hash": "season-h1", "episodes": {"S01E01": {"hash": "ep-h1"}}},
        }
        server = FakeFileServer("server1", tree, hashes=hashes)
        engine = make_engine(hashed_config, db, server)

        await engine.run()
        assert (await db.get_content_hash(MediaType.TV, "server1", SHOW_X, 1, 1)).hash == "ep-h1"

        server.tree["tv"][SHOW_X]["seasons"]["Season 1"]["episodes"]["S01E02.mp4"] = {
            "videoURL": "/tv/showx/s1e2.mp4",
            "metadata": "/meta/ep-s1e2.json",
        }
        server.hashes["tv/Show X"] = {"hash": "show-h2", "seasons": {"1": {"hash": "season-h2"}}}
        server.hashes["tv/Show X/1"] = {
            "hash": "season-h2",
            "episodes": {"S01E01": {"hash": "ep-h1"}, "S01E02": {"hash": "ep-h2"}},
        }
        second = await engine.run()

        result = second.servers["server1"]
        assert result.error_count == 0
        assert result.episodes.skipped_by_hash == 1
        assert result.episodes.created == [f"{SHOW_X} S01E02"]
        assert server.count("/meta/ep-s1e1.json") == 1
        assert server.count("/meta/ep-s1e2.json") == 1
        episode = await EpisodeRepository(db).get_by_natural_key(SHOW_X, 1, 2)
        assert episode.title == "ep-s1e2 (server1)"
        assert (await db.get_content_hash(MediaType.TV, "server1", SHOW_X, 1, 2)).hash == "ep-h2"
        assert (await db.get_content_hash(MediaType.TV, "server1", SHOW_X, 1)).hash == "season-h2"


class TestBlurhashChangeFeed:
    """Optimized servers refetch only the blurhashes their change feed names."""

    @pytest.fixture
    def optimized_config(self):
        return Config(
            servers=[ServerConfig(id="server1", base_url="http://files1", priority=1, force_sync_mode="optimized")],
            sync=SyncConfig(batch_delay_seconds=0, interval_seconds=0),
        )

    @pytest.mark.asyncio
    async def test_only_changed_titles_refetch(self, optimized_config, db):
        server = FakeFileServer("server1", SERVER1_TREE, hashes={}, blurhash_changes=[])
        engine = make_engine(optimized_config, db, server)
        store = HashStore(db)

        first = await engine.run()
        assert first.servers["server1"].strategy is SyncMode.OPTIMIZED
        assert server.since == []
        assert server.count("/bh/s1e1-a") == 1
        checkpoint = await store.get_checkpoint("server1", BLURHASH_CHECKPOINT)
        assert checkpoint is not None

        await engine.run()
        assert server.since == [checkpoint]
        assert server.count("/bh/s1e1-a") == 1
        assert await store.get_checkpoint("server1", BLURHASH_CHECKPOINT) == FEED_TIMESTAMP

        server.blurhash_changes = [
            {"mediaType": "tv", "title": SHOW_X, "seasonNumber": 1, "episodeKey": "S01E01", "imageType": "thumbnail"}
        ]
        await engine.run()
        assert server.since[-1] == FEED_TIMESTAMP
        assert server.count("/bh/s1e1-a") == 2

    @pytest.mark.asyncio
    async def test_new_reference_is_fetched_without_feed_entry(self, optimized_config, db):
        server = FakeFileServer("server1", SERVER1_TREE, hashes={}, blurhash_changes=[])
        engine = make_engine(optimized_config, db, server)
        await engine.run()

        episodes = server.tree["tv"][SHOW_X]["seasons"]["Season 1"]["episodes"]
        episodes["S01E01 - Pilot.mp4"]["thumbnailBlurhash"] = "/bh/s1e1-new"
        await engine.run()

        episode = await EpisodeRepository(db).get_by_natural_key(SHOW_X, 1, 1)
        assert episode.thumbnail_blurhash == "server1:s1e1-new"
        assert episode.blurhash_refs["thumbnail_blurhash"] == "/bh/s1e1-new"

    @pytest.mark.asyncio
    async def test_feed_failure_checks_every_blurhash(self, optimized_config, db):
        store = HashStore(db)
        await store.set_checkpoint("server1", BLURHASH_CHECKPOINT, "2026-01-01T00:00:00Z")
        server = FakeFileServer("server1", SERVER1_TREE, hashes={})
        engine = make_engine(optimized_config, db, server)

        await engine.run()
        await engine.run()

        assert server.count("/api/blurhash-changes") == 2
        assert server.count("/bh/s1e1-a") == 2
        assert await store.get_checkpoint("server1", BLURHASH_CHECKPOINT) == "2026-01-01T00:00:00Z"


class TestWorker:
    """Manual triggers and the scheduled worker."""

    @pytest.mark.asyncio
    async def test_trigger_run_rejects_overlap(self, test_config, db, server1, server2):
        engine = make_engine(test_config, db, server1, server2)

        assert engine.trigger_run() is True
        assert engine.is_running
        assert engine.trigger_run() is False

        report = await engine._manual_task
        assert report is not None
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_worker_disabled_with_zero_interval(self, test_config, db):
        engine = make_engine(test_config, db)

        await engine.start_worker()

        assert engine.get_status()["worker_running"] is False
        await engine.stop_worker()

    @pytest.mark.asyncio
    async def test_status(self, test_config, db, server1, server2):
        engine = make_engine(test_config, db, server1, server2)
        assert engine.get_status()["last_run"] is None

        await engine.run()
        status = engine.get_status()

        assert status["servers"][0] == {"id": "server1", "base_url": "http://files1", "priority": 1, "enabled": True}
        assert status["last_run"]["servers"]["server1"]["movies"]["created"] == ["Alpha"]
        assert status["sync_running"] is False

    @pytest.mark.asyncio
    async def test_health_check_all(self, test_config, db, server1, server2):
        engine = make_engine(test_config, db, server1, server2)
        assert await engine.health_check_all() == {"server1": True, "server2": True}

        await engine.close()
        assert engine._clients == {}
