"""SQLite mirror of the fetch cache.

Holds one row per cached ``list_children`` key plus a single metadata record
(format version, ``cached_as_of`` snapshot and parent index). Write, delete and
purge methods catch ``aiosqlite.Error`` and degrade to a logged no-op: a lost
write only means the next read is a miss. Deletes and purges report whether
they reached the database, because rows they fail to remove outlive the
in-memory eviction.

The two ``read_*`` methods are the exception. They let ``aiosqlite.Error`` and
``ValueError`` propagate so that FetchCache.load() can tell a corrupt database
from an empty one and purge it.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import aiosqlite
import structlog

from contentmirror.models.content import CacheMetadata, ChildListingEntry

log = structlog.get_logger()

_METADATA_KEY = "cache_metadata"

# The first page of a listing has no cursor; it is stored as the empty string
# so that (node_id, cursor) can be the primary key.
_NO_CURSOR = ""

_CREATE_CHILDREN_TABLE = """
CREATE TABLE IF NOT EXISTS block_children_cache (
    node_id        TEXT NOT NULL,
    cursor         TEXT NOT NULL DEFAULT '',
    response       TEXT NOT NULL,
    fetched_at     TEXT NOT NULL,
    anchor_id      TEXT,
    anchor_edited  TEXT,
    PRIMARY KEY (node_id, cursor)
)
"""

_CREATE_METADATA_TABLE = """
CREATE TABLE IF NOT EXISTS cache_metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

# Written by format version 1 only; dropped by the 1 -> 2 migration.
LEGACY_QUERY_TABLE = "collection_query_cache"


def _optional_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


class CacheStore:
    """aiosqlite-backed durable storage for one FetchCache instance."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_CHILDREN_TABLE)
        await self._db.execute(_CREATE_METADATA_TABLE)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Loading (errors propagate)
    # ------------------------------------------------------------------

    async def read_metadata(self) -> dict[str, Any] | None:
        """Return the raw metadata record, or ``None`` for an empty store."""
        cursor = await self._db.execute(
            "SELECT value FROM cache_metadata WHERE key = ?", (_METADATA_KEY,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        data = json.loads(row[0])
        if not isinstance(data, dict):
            raise ValueError("cache metadata record is not an object")
        return data

    async def read_entries(self) -> list[ChildListingEntry]:
        cursor = await self._db.execute(
            "SELECT node_id, cursor, response, fetched_at, anchor_id, anchor_edited "
            "FROM block_children_cache"
        )
        return [
            ChildListingEntry(
                node_id=row[0],
                cursor=row[1] or None,
                response=json.loads(row[2]),
                fetched_at=datetime.fromisoformat(row[3]),
                anchor_id=row[4],
                anchor_edited=_optional_datetime(row[5]),
            )
            for row in await cursor.fetchall()
        ]

    async def rebuild_listing_table(self) -> None:
        """Move rows of the pre-version-3 listing table onto the current schema.

        The old table keyed rows by a joined ``"<node>_<cursor>"`` string and
        had no anchor columns. Copied rows carry no anchor stamp.
        """
        await self._db.execute(
            "ALTER TABLE block_children_cache RENAME TO block_children_cache_old"
        )
        await self._db.execute(_CREATE_CHILDREN_TABLE)
        await self._db.execute(
            "INSERT OR REPLACE INTO block_children_cache "
            "(node_id, cursor, response, fetched_at) "
            "SELECT node_id, COALESCE(cursor, ''), response, fetched_at "
            "FROM block_children_cache_old"
        )
        await self._db.execute("DROP TABLE block_children_cache_old")
        await self._db.commit()

    # ------------------------------------------------------------------
    # Writes (non-fatal)
    # ------------------------------------------------------------------

    async def write_entry(self, entry: ChildListingEntry) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO block_children_cache "
                "(node_id, cursor, response, fetched_at, anchor_id, anchor_edited) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    entry.node_id,
                    entry.cursor or _NO_CURSOR,
                    json.dumps(entry.response),
                    entry.fetched_at.isoformat(),
                    entry.anchor_id,
                    entry.anchor_edited.isoformat() if entry.anchor_edited else None,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning(
                "cache_write_error", node_id=entry.node_id, cursor=entry.cursor, exc_info=True
            )

    async def write_metadata(self, metadata: CacheMetadata) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO cache_metadata (key, value) VALUES (?, ?)",
                (_METADATA_KEY, metadata.model_dump_json()),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_metadata_write_error", exc_info=True)

    async def delete_entries(self, node_ids: Iterable[str]) -> bool:
        """Delete every listing row of the given nodes.

        Returns ``False`` when the delete failed and the rows are still on disk.
        """
        ids = list(node_ids)
        if not ids:
            return True
        try:
            placeholders = ", ".join("?" for _ in ids)
            await self._db.execute(
                f"DELETE FROM block_children_cache WHERE node_id IN ({placeholders})",
                ids,
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_delete_error", node_count=len(ids), exc_info=True)
            return False
        return True

    async def drop_legacy_tables(self) -> None:
        try:
            await self._db.execute(f"DROP TABLE IF EXISTS {LEGACY_QUERY_TABLE}")
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_legacy_drop_error", table=LEGACY_QUERY_TABLE, exc_info=True)

    async def purge(self) -> bool:
        """Remove every durable record and recreate the listing table.

        Returns ``False`` if the purge failed.
        """
        try:
            await self._db.execute("DROP TABLE IF EXISTS block_children_cache")
            await self._db.execute("DROP TABLE IF EXISTS block_children_cache_old")
            await self._db.execute(_CREATE_CHILDREN_TABLE)
            await self._db.execute("DELETE FROM cache_metadata")
            await self._db.execute(f"DROP TABLE IF EXISTS {LEGACY_QUERY_TABLE}")
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_purge_error", exc_info=True)
            return False
        return True
