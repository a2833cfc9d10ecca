"""Tests for database operations."""

import tempfile
from pathlib import Path

import pytest

from flat_catalog_sync.database import Database, set_path
from flat_catalog_sync.errors import DuplicateKeyError
from flat_catalog_sync.models import ContentHash, MediaType
from flat_catalog_sync.sync.hash_store import HashStore


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


def test_set_path():
    doc = {"a": {"b": 1}}
    set_path(doc, "a.c.d", 2)
    set_path(doc, "e", 3)
    assert doc == {"a": {"b": 1, "c": {"d": 2}}, "e": 3}


@pytest.mark.asyncio
async def test_database_connection(db: Database):
    """Test database connects and creates tables."""
    assert db.connected
    assert await db.count("movies") == 0


@pytest.mark.asyncio
async def test_insert_and_find(db: Database):
    await db.insert("movies", {"id": "m1", "title": "Alpha", "original_title": "Alpha", "video_url": None})

    doc = await db.find_one("movies", original_title="Alpha")
    assert doc is not None
    assert doc["id"] == "m1"
    assert await db.find_one("movies", original_title="Beta") is None
    assert len(await db.find_many("movies")) == 1
    assert db.writes == 1


@pytest.mark.asyncio
async def test_insert_duplicate_natural_key(db: Database):
    """A second document with the same natural key is rejected."""
    await db.insert("tv_shows", {"id": "s1", "title": "Show", "original_title": "Show"})

    with pytest.raises(DuplicateKeyError) as exc_info:
        await db.insert("tv_shows", {"id": "s2", "title": "Show", "original_title": "Show"})

    assert exc_info.value.table == "tv_shows"
    assert await db.count("tv_shows") == 1


@pytest.mark.asyncio
async def test_season_unique_on_title_and_number(db: Database):
    """Seasons are unique on (show_title, season_number) even with a different show_id."""
    await db.insert("seasons", {"id": "a", "show_id": "s1", "show_title": "Show", "season_number": 1})

    with pytest.raises(DuplicateKeyError):
        await db.insert("seasons", {"id": "b", "show_id": "s2", "show_title": "Show", "season_number": 1})


@pytest.mark.asyncio
async def test_update_dotted_paths(db: Database):
    await db.insert("movies", {"id": "m1", "title": "Alpha", "original_title": "Alpha", "blurhash_refs": {}})

    doc = await db.update("movies", "m1", {"poster_url": "http://p", "blurhash_refs.poster_blurhash": "/ref"})
    assert doc["poster_url"] == "http://p"
    assert doc["blurhash_refs"] == {"poster_blurhash": "/ref"}

    doc = await db.update("movies", "m1", {"poster_url": None})
    assert doc["poster_url"] is None

    assert await db.update("movies", "missing", {"title": "x"}) is None


@pytest.mark.asyncio
async def test_update_key_column_collision(db: Database):
    """Changing a key column onto an existing key raises DuplicateKeyError."""
    await db.insert("movies", {"id": "m1", "title": "Alpha", "original_title": "Alpha"})
    await db.insert("movies", {"id": "m2", "title": "Beta", "original_title": "Beta"})

    with pytest.raises(DuplicateKeyError):
        await db.update("movies", "m2", {"original_title": "Alpha"})


@pytest.mark.asyncio
async def test_delete_many(db: Database):
    for n in (1, 2):
        await db.insert("seasons", {"id": f"a{n}", "show_id": "s1", "show_title": "Show", "season_number": n})
    await db.insert("seasons", {"id": "b1", "show_id": "s2", "show_title": "Other", "season_number": 1})

    assert await db.delete_many("seasons", show_id="s1") == 2
    assert await db.count("seasons") == 1
    with pytest.raises(ValueError):
        await db.delete_many("seasons")


@pytest.mark.asyncio
async def test_unknown_query_column(db: Database):
    with pytest.raises(ValueError):
        await db.find_one("movies", video_url="x")


@pytest.mark.asyncio
async def test_content_hash_levels(db: Database):
    """Title and season hashes are separate rows, and each server is tracked independently."""
    await db.upsert_content_hash(ContentHash(media_type=MediaType.TV, title="Show", server_id="s1", hash="h1"))
    await db.upsert_content_hash(
        ContentHash(media_type=MediaType.TV, title="Show", season_number=1, server_id="s1", hash="h2")
    )
    await db.upsert_content_hash(ContentHash(media_type=MediaType.TV, title="Show", server_id="s2", hash="other"))

    show = await db.get_content_hash(MediaType.TV, "s1", "Show")
    season = await db.get_content_hash(MediaType.TV, "s1", "Show", 1)
    assert show.hash == "h1"
    assert show.season_number is None
    assert season.hash == "h2"
    assert (await db.get_content_hash(MediaType.TV, "s2", "Show")).hash == "other"
    assert await db.get_content_hash(MediaType.TV, "s1", "Show", 2) is None

    await db.upsert_content_hash(ContentHash(media_type=MediaType.TV, title="Show", server_id="s1", hash="h3"))
    assert (await db.get_content_hash(MediaType.TV, "s1", "Show")).hash == "h3"
    assert len(await db.get_content_hashes(MediaType.TV, "s1", "Show")) == 2

    assert await db.delete_content_hashes(MediaType.TV, "Show") == 3
    assert await db.get_content_hash(MediaType.TV, "s1", "Show") is None


@pytest.mark.asyncio
async def test_hash_store_skips_unchanged(db: Database):
    store = HashStore(db)

    assert await store.get(MediaType.MOVIES, "s1", "Alpha") is None
    assert await store.store(MediaType.MOVIES, "s1", "h1", title="Alpha") is True
    writes = db.writes
    assert await store.store(MediaType.MOVIES, "s1", "h1", title="Alpha") is False
    assert db.writes == writes
    assert await store.get(MediaType.MOVIES, "s1", "Alpha") == "h1"


@pytest.mark.asyncio
async def test_hash_store_episode_levels(db: Database):
    store = HashStore(db)
    await store.store(MediaType.TV, "s1", "show", title="Show")
    await store.store(MediaType.TV, "s1", "season", title="Show", season_number=1)
    await store.store(MediaType.TV, "s1", "e4", title="Show", season_number=1, episode_number=4)
    await store.store(MediaType.TV, "s1", "e5", title="Show", season_number=1, episode_number=5)
    await store.store(MediaType.TV, "s1", "s2e1", title="Show", season_number=2, episode_number=1)
    await store.store(MediaType.TV, "s2", "other", title="Show", season_number=1, episode_number=4)

    assert await store.get_episode_hashes(MediaType.TV, "s1", "Show", 1) == {4: "e4", 5: "e5"}
    assert await store.get_episode_hashes(MediaType.TV, "s1", "Show", 3) == {}
    assert await store.get(MediaType.TV, "s1", "Show", 1) == "season"
    assert await store.forget_title(MediaType.TV, "Show") == 6


@pytest.mark.asyncio
async def test_sync_checkpoints(db: Database):
    store = HashStore(db)

    assert await store.get_checkpoint("s1", "blurhash_changes") is None
    await store.set_checkpoint("s1", "blurhash_changes", "2026-01-01T00:00:00Z")
    await store.set_checkpoint("s1", "blurhash_changes", "2026-01-02T00:00:00Z")

    assert await store.get_checkpoint("s1", "blurhash_changes") == "2026-01-02T00:00:00Z"
    assert await store.get_checkpoint("s2", "blurhash_changes") is None
