"""SQLite document store for the flat catalog and content hashes."""

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from .config import get_config
from .errors import DuplicateKeyError
from .models import ContentHash, MediaType

logger = logging.getLogger(__name__)

# Indexed columns per collection; everything else lives in the JSON document
COLLECTIONS: dict[str, tuple[str, ...]] = {
    "movies": ("title", "original_title"),
    "tv_shows": ("title", "original_title"),
    "seasons": ("show_id", "show_title", "season_number"),
    "episodes": ("show_id", "season_id", "show_title", "season_number", "episode_number"),
}

# content_hashes stores NULL key parts as sentinels so the composite UNIQUE holds
_NO_TITLE = ""
_NO_NUMBER = -1


def set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path inside a nested dict, creating parents."""
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


class Database:
    """Async SQLite store with one table per catalog collection."""

    def __init__(self, db_path: str | Path | None = None, journal_mode: str | None = None):
        self._config_db_path = db_path
        self._config_journal_mode = journal_mode
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self.writes = 0  # Successful mutating statements since connect

    @property
    def db_path(self) -> str:
        """Get database path from config or override."""
        if self._config_db_path:
            return str(self._config_db_path)
        return get_config().database.path

    @property
    def journal_mode(self) -> str:
        """Get journal mode from config or override."""
        if self._config_journal_mode:
            return self._config_journal_mode.upper()
        try:
            return get_config().database.journal_mode.upper()
        except RuntimeError:
            return "WAL"  # Default if config not loaded (tests)

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        """Connect to the database and create tables."""
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s (journal_mode=%s)", db_path, self.journal_mode)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        # WAL is default, use DELETE for NFS compatibility
        if self.journal_mode in ("WAL", "DELETE", "TRUNCATE", "MEMORY", "OFF"):
            await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")

        await self._create_tables()
        self.writes = 0
        logger.info("Database connected successfully")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            logger.info("Closing database connection")
            await self._db.close()
            self._db = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        assert self._db is not None

        for table in ("movies", "tv_shows"):
            await self._db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    original_title TEXT NOT NULL UNIQUE,
                    doc TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS seasons (
                id TEXT PRIMARY KEY,
                show_id TEXT NOT NULL,
                show_title TEXT NOT NULL,
                season_number INTEGER NOT NULL,
                doc TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(show_id, season_number),
                UNIQUE(show_title, season_number)
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS episodes (
                id TEXT PRIMARY KEY,
                show_id TEXT NOT NULL,
                season_id TEXT NOT NULL,
                show_title TEXT NOT NULL,
                season_number INTEGER NOT NULL,
                episode_number INTEGER NOT NULL,
                doc TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(show_id, season_id, episode_number),
                UNIQUE(show_title, season_number, episode_number)
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_episodes_season
            ON episodes(season_id)
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS content_hashes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                media_type TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                season_number INTEGER NOT NULL DEFAULT -1,
                episode_number INTEGER NOT NULL DEFAULT -1,
                server_id TEXT NOT NULL,
                hash TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(media_type, title, season_number, episode_number, server_id)
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_checkpoints (
                server_id TEXT NOT NULL,
                name TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (server_id, name)
            )
        """
        )

        await self._db.commit()

    # ========== Documents ==========

    @staticmethod
    def _check_columns(table: str, columns: Any) -> None:
        if table not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {table}")
        allowed = {"id", *COLLECTIONS[table]}
        unknown = set(columns) - allowed
        if unknown:
            raise ValueError(f"Cannot query {table} by {sorted(unknown)}")

    @staticmethod
    def _where(where: dict[str, Any]) -> tuple[str, tuple[Any, ...]]:
        if not where:
            return "", ()
        clause = " AND ".join(f"{column} = ?" for column in where)
        return f" WHERE {clause}", tuple(where.values())

    async def find_one(self, table: str, **where: Any) -> dict[str, Any] | None:
        """Return the first document matching all key columns, or None."""
        assert self._db is not None
        self._check_columns(table, where)

        clause, params = self._where(where)
        async with self._db.execute(f"SELECT doc FROM {table}{clause} LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
            return json.loads(row["doc"]) if row else None

    async def find_many(self, table: str, **where: Any) -> list[dict[str, Any]]:
        """Return every document matching all key columns."""
        assert self._db is not None
        self._check_columns(table, where)

        clause, params = self._where(where)
        async with self._db.execute(f"SELECT doc FROM {table}{clause}", params) as cursor:
            rows = await cursor.fetchall()
            return [json.loads(row["doc"]) for row in rows]

    async def count(self, table: str) -> int:
        """Number of documents in a collection."""
        assert self._db is not None
        self._check_columns(table, ())

        async with self._db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def insert(self, table: str, doc: dict[str, Any]) -> None:
        """Insert a document. Raises DuplicateKeyError on a unique violation."""
        assert self._db is not None
        self._check_columns(table, ())

        columns = ("id", *COLLECTIONS[table])
        values = [doc.get(column) for column in columns]
        placeholders = ", ".join("?" for _ in columns)

        async with self._write_lock:
            try:
                await self._db.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}, doc) VALUES ({placeholders}, ?)",
                    (*values, json.dumps(doc)),
                )
            except aiosqlite.IntegrityError as e:
                raise DuplicateKeyError(table, str(e)) from e
            await self._db.commit()
            self.writes += 1

        logger.debug("Inserted %s document %s", table, doc.get("id"))

    async def update(
        self,
        table: str,
        doc_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply dotted-path sets to one document.

        Returns the updated document, or None if it does not exist.
        Raises DuplicateKeyError if the change collides with a unique index.
        """
        assert self._db is not None
        self._check_columns(table, ())

        async with self._write_lock:
            async with self._db.execute(f"SELECT doc FROM {table} WHERE id = ?", (doc_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            doc = json.loads(row["doc"])
            for path, value in fields.items():
                set_path(doc, path, value)

            key_columns = COLLECTIONS[table]
            assignments = ", ".join(f"{column} = ?" for column in key_columns)
            try:
                await self._db.execute(
                    f"UPDATE {table} SET {assignments}, doc = ?, updated_at = ? WHERE id = ?",
                    (*(doc.get(c) for c in key_columns), json.dumps(doc), datetime.now(UTC).isoformat(), doc_id),
                )
            except aiosqlite.IntegrityError as e:
                raise DuplicateKeyError(table, str(e)) from e
            await self._db.commit()
            self.writes += 1

        logger.debug("Updated %s document %s: %s", table, doc_id, sorted(fields))
        return doc

    async def delete(self, table: str, doc_id: str) -> bool:
        """Delete one document by id. Returns True if deleted."""
        assert self._db is not None
        self._check_columns(table, ())

        async with self._write_lock:
            cursor = await self._db.execute(f"DELETE FROM {table} WHERE id = ?", (doc_id,))
            await self._db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            self.writes += 1
        return deleted

    async def delete_many(self, table: str, **where: Any) -> int:
        """Delete every document matching all key columns. Returns the count."""
        assert self._db is not None
        self._check_columns(table, where)
        if not where:
            raise ValueError("delete_many requires at least one condition")

        clause, params = self._where(where)
        async with self._write_lock:
            cursor = await self._db.execute(f"DELETE FROM {table}{clause}", params)
            await self._db.commit()
        if cursor.rowcount > 0:
            self.writes += 1
        return cursor.rowcount

    # ========== Content hashes ==========

    async def get_content_hash(
        self,
        media_type: MediaType,
        server_id: str,
        title: str | None = None,
        season_number: int | None = None,
        episode_number: int | None = None,
    ) -> ContentHash | None:
        """Get the stored hash for one (level, server) key."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT media_type, title, season_number, episode_number, server_id, hash, updated_at
            FROM content_hashes
            WHERE media_type = ? AND title = ? AND season_number = ? AND episode_number = ? AND server_id = ?
            """,
            (
                media_type.value,
                title if title is not None else _NO_TITLE,
                season_number if season_number is not None else _NO_NUMBER,
                episode_number if episode_number is not None else _NO_NUMBER,
                server_id,
            ),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_hash(row) if row else None

    async def get_content_hashes(self, media_type: MediaType, server_id: str, title: str) -> list[ContentHash]:
        """Get every stored hash below a title (show, season and episode levels) for one server."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT media_type, title, season_number, episode_number, server_id, hash, updated_at
            FROM content_hashes
            WHERE media_type = ? AND title = ? AND server_id = ?
            """,
            (media_type.value, title, server_id),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_hash(row) for row in rows]

    async def upsert_content_hash(self, record: ContentHash) -> None:
        """Insert or replace the hash for a (level, server) key."""
        assert self._db is not None

        async with self._write_lock:
            await self._db.execute(
                """
                INSERT INTO content_hashes
                    (media_type, title, season_number, episode_number, server_id, hash, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(media_type, title, season_number, episode_number, server_id)
                DO UPDATE SET hash = excluded.hash,
                              updated_at = excluded.updated_at
                """,
                (
                    record.media_type.value,
                    record.title if record.title is not None else _NO_TITLE,
                    record.season_number if record.season_number is not None else _NO_NUMBER,
                    record.episode_number if record.episode_number is not None else _NO_NUMBER,
                    record.server_id,
                    record.hash,
                    record.updated_at.isoformat(),
                ),
            )
            await self._db.commit()
            self.writes += 1

    async def delete_content_hashes(self, media_type: MediaType, title: str) -> int:
        """Drop every server's hashes for a title."""
        assert self._db is not None

        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM content_hashes WHERE media_type = ? AND title = ?",
                (media_type.value, title),
            )
            await self._db.commit()
        if cursor.rowcount > 0:
            self.writes += 1
        return cursor.rowcount

    # ========== Checkpoints ==========

    async def get_sync_checkpoint(self, server_id: str, name: str) -> str | None:
        """Get a stored per-server checkpoint value."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT value FROM sync_checkpoints WHERE server_id = ? AND name = ?",
            (server_id, name),
        ) as cursor:
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def set_sync_checkpoint(self, server_id: str, name: str, value: str) -> None:
        """Insert or replace a per-server checkpoint value."""
        assert self._db is not None

        async with self._write_lock:
            await self._db.execute(
                """
                INSERT INTO sync_checkpoints (server_id, name, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(server_id, name)
                DO UPDATE SET value = excluded.value,
                              updated_at = excluded.updated_at
                """,
                (server_id, name, value, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
            self.writes += 1

    @staticmethod
    def _row_to_hash(row: aiosqlite.Row) -> ContentHash:
        return ContentHash(
            media_type=MediaType(row["media_type"]),
            title=row["title"] or None,
            season_number=None if row["season_number"] == _NO_NUMBER else row["season_number"],
            episode_number=None if row["episode_number"] == _NO_NUMBER else row["episode_number"],
            server_id=row["server_id"],
            hash=row["hash"],
            updated_at=row["updated_at"],
        )


# Global database instance
_db: Database | None = None


async def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
