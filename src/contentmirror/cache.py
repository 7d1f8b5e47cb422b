"""Dependency-aware fetch cache for the content API.

FetchCache wraps any ContentApiProtocol implementation and exposes the same
four methods. Child listings are the only responses whose validity is tracked:
blocks carry no edit time of their own, so a listing is anchored to the root of
its chain in the parent index (normally the page that contains it) and is
served from cache only while that anchor's observed edit time equals the edit
time recorded when the listing was cached. Each entry also carries the anchor
and edit time it was fetched under, so a row that survived a failed durable
delete can never be served under a later edit.

Collection metadata, collection queries and single-node retrievals are
memoised for the lifetime of the instance only.

Storage failures never cross this class: the durable mirror is best-effort,
and the in-memory maps are always updated before a call returns. Upstream
failures are not caught here and reach the caller unchanged.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from contentmirror.models.content import CacheMetadata, ChildListingEntry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from contentmirror.protocols import ContentApiProtocol
    from contentmirror.store import CacheStore

log = structlog.get_logger()

CACHE_FORMAT_VERSION = 3

ChildKey = tuple[str, str | None]


def _walk_to_anchor(parents: dict[str, str], node_id: str) -> str | None:
    current = node_id
    visited: set[str] = set()
    while True:
        if current in visited:
            log.warning("cache_parent_cycle", node_id=node_id, repeated_id=current)
            return None
        parent = parents.get(current)
        if parent is None:
            return current
        visited.add(current)
        current = parent


@dataclass
class CacheStats:
    """Hit/miss counters keyed by operation name."""

    hits: Counter[str] = field(default_factory=Counter)
    misses: Counter[str] = field(default_factory=Counter)


def _edit_time(result: dict[str, Any]) -> datetime | None:
    value = result.get("last_edited_time")
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class FetchCache:
    """Caching ContentApiProtocol implementation.

    ``observed_edit_time``, ``cached_as_of`` and ``parents`` are public so that
    callers and tests can inspect validity state; treat them as read-only.
    """

    def __init__(self, base: ContentApiProtocol, store: CacheStore | None = None) -> None:
        self._base = base
        self._store = store
        self._children: dict[ChildKey, ChildListingEntry] = {}
        self._collections: dict[str, dict[str, Any]] = {}
        self._query_memo: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self._nodes: dict[str, dict[str, Any]] = {}
        self.observed_edit_time: dict[str, datetime] = {}
        self.cached_as_of: dict[str, datetime] = {}
        self.parents: dict[str, str] = {}
        # anchors whose superseded rows could not be deleted from the store
        self._undeleted_anchors: set[str] = set()
        self.stats = CacheStats()

    # ------------------------------------------------------------------
    # ContentApiProtocol
    # ------------------------------------------------------------------

    async def retrieve_collection(self, collection_id: str) -> dict[str, Any]:
        cached = self._collections.get(collection_id)
        if cached is not None:
            self._record("retrieve_collection", hit=True, collection_id=collection_id)
            return cached

        self._record("retrieve_collection", hit=False, collection_id=collection_id)
        response = await self._base.retrieve_collection(collection_id)
        self._collections[collection_id] = response
        return response

    async def query_collection(
        self,
        collection_id: str,
        cursor: str | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        key = (collection_id, cursor, json.dumps(params, sort_keys=True, default=str))
        cached = self._query_memo.get(key)
        if cached is not None:
            self._record("query_collection", hit=True, collection_id=collection_id, cursor=cursor)
            return cached

        self._record("query_collection", hit=False, collection_id=collection_id, cursor=cursor)
        response = await self._base.query_collection(collection_id, cursor, **params)
        self._query_memo[key] = response

        for result in response.get("results", []):
            node_id = result.get("id")
            edited = _edit_time(result)
            if node_id and edited is not None:
                self.observed_edit_time[node_id] = edited
        return response

    async def list_children(self, node_id: str, cursor: str | None = None) -> dict[str, Any]:
        key: ChildKey = (node_id, cursor)
        anchor = self.find_anchor(node_id)

        if anchor is not None and self.is_anchor_valid(anchor):
            entry = self._children.get(key)
            if entry is not None and self._fetched_under(entry, anchor):
                self._record("list_children", hit=True, node_id=node_id, cursor=cursor, anchor=anchor)
                return entry.response

        self._record("list_children", hit=False, node_id=node_id, cursor=cursor, anchor=anchor)

        observed = self.observed_edit_time.get(anchor) if anchor is not None else None
        if anchor is not None and observed is not None:
            if self.cached_as_of.get(anchor) != observed:
                await self._invalidate_anchor(anchor)

        response = await self._base.list_children(node_id, cursor)

        entry = ChildListingEntry(
            node_id=node_id,
            cursor=cursor,
            response=response,
            fetched_at=datetime.now(UTC),
            anchor_id=anchor,
            anchor_edited=observed,
        )
        self._children[key] = entry
        if anchor is not None and observed is not None:
            self.cached_as_of[anchor] = observed
        for child in response.get("results", []):
            child_id = child.get("id")
            if child.get("has_children") and child_id and child_id != node_id:
                self.parents[child_id] = node_id

        if self._store is not None:
            await self._store.write_entry(entry)
            await self._store.write_metadata(self._metadata())
        return response

    async def retrieve_node(self, node_id: str) -> dict[str, Any]:
        cached = self._nodes.get(node_id)
        if cached is not None:
            self._record("retrieve_node", hit=True, node_id=node_id)
            return cached

        self._record("retrieve_node", hit=False, node_id=node_id)
        response = await self._base.retrieve_node(node_id)
        self._nodes[node_id] = response
        return response

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def find_anchor(self, node_id: str) -> str | None:
        """Walk the parent index upward to the root of ``node_id``'s chain.

        Returns ``None`` when the chain loops, which callers treat as a miss.
        """
        return _walk_to_anchor(self.parents, node_id)

    def is_anchor_valid(self, anchor: str) -> bool:
        observed = self.observed_edit_time.get(anchor)
        cached = self.cached_as_of.get(anchor)
        return observed is not None and cached is not None and observed == cached

    def _fetched_under(self, entry: ChildListingEntry, anchor: str) -> bool:
        return entry.anchor_id == anchor and entry.anchor_edited == self.cached_as_of.get(anchor)

    def descendants(self, node_id: str) -> list[str]:
        """Every node below ``node_id`` in the parent index, cycle-safe."""
        children_of: dict[str, list[str]] = {}
        for child, parent in self.parents.items():
            children_of.setdefault(parent, []).append(child)

        found: list[str] = []
        seen = {node_id}
        stack = [node_id]
        while stack:
            for child in children_of.get(stack.pop(), []):
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    stack.append(child)
        return found

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore listings and validity state from the durable store.

        A store written by a newer format, or one that cannot be read, is
        purged and the cache starts cold. Older formats are migrated in place.
        """
        if self._store is None:
            return

        try:
            raw = await self._store.read_metadata()
            if raw is None:
                if await self._store.read_entries():
                    log.warning("cache_metadata_missing")
                    await self.purge_all()
                return

            version = raw.get("format_version")
            if not isinstance(version, int):
                raise ValueError(f"invalid cache format version: {version!r}")
            if version > CACHE_FORMAT_VERSION:
                log.warning(
                    "cache_format_newer",
                    found_version=version,
                    expected_version=CACHE_FORMAT_VERSION,
                )
                await self.purge_all()
                return

            migrated = version < CACHE_FORMAT_VERSION
            while version < CACHE_FORMAT_VERSION:
                raw = await MIGRATIONS[version](self, raw)
                log.info("cache_migrated", from_version=version, to_version=version + 1)
                version += 1
            raw["format_version"] = CACHE_FORMAT_VERSION

            metadata = CacheMetadata.model_validate(raw)
            entries = await self._store.read_entries()
        except (aiosqlite.Error, ValueError, KeyError):
            log.warning("cache_load_failed", exc_info=True)
            await self.purge_all()
            return

        self.cached_as_of = dict(metadata.cached_as_of)
        self.parents = dict(metadata.parents)
        self._children = {(e.node_id, e.cursor): e for e in entries}
        if migrated:
            await self._store.write_metadata(self._metadata())

        log.info(
            "cache_loaded",
            entries=len(self._children),
            tracked_nodes=len(self.cached_as_of),
            parent_links=len(self.parents),
        )

    async def purge_all(self) -> None:
        """Drop every cached response and all validity state."""
        self._children.clear()
        self._collections.clear()
        self._query_memo.clear()
        self._nodes.clear()
        self.observed_edit_time.clear()
        self.cached_as_of.clear()
        self.parents.clear()
        self._undeleted_anchors.clear()
        durable = True
        if self._store is not None:
            durable = await self._store.purge()
        log.info("cache_purged", durable=durable)

    async def purge_subtree(self, node_id: str) -> None:
        """Drop ``node_id`` and all its parent-index descendants, nothing else.

        If the durable rows cannot be deleted the parent links are kept, so
        that a later invalidation of the enclosing anchor still reaches them.
        """
        anchor = self.find_anchor(node_id)
        ids = {node_id, *self.descendants(node_id)}
        deleted = await self._evict_listings(ids)
        for target in ids:
            self.observed_edit_time.pop(target, None)
            self.cached_as_of.pop(target, None)
            self._nodes.pop(target, None)
            if deleted:
                self.parents.pop(target, None)
        if not deleted and anchor is not None:
            self._undeleted_anchors.add(anchor)
        if self._store is not None:
            await self._store.write_metadata(self._metadata())
        log.info("cache_subtree_purged", node_id=node_id, purged_ids=len(ids))

    async def _invalidate_anchor(self, anchor: str) -> None:
        """Evict every listing under an anchor whose edit time moved.

        Links below the anchor are rebuilt as its listings are refetched, so
        they are dropped along with the rows. When the rows stay on disk the
        links stay too and the anchor is left out of the persisted snapshot.
        """
        below = self.descendants(anchor)
        if await self._evict_listings({anchor, *below}):
            for node in below:
                self.parents.pop(node, None)
            self._undeleted_anchors.discard(anchor)
        else:
            self._undeleted_anchors.add(anchor)

    async def _evict_listings(self, node_ids: set[str]) -> bool:
        """Remove listings of ``node_ids``; ``False`` if durable rows remain."""
        stale = [key for key in self._children if key[0] in node_ids]
        for key in stale:
            del self._children[key]
        if stale:
            log.debug("cache_listings_evicted", entries=len(stale))
        if self._store is None:
            return True
        return await self._store.delete_entries(node_ids)

    def _metadata(self) -> CacheMetadata:
        return CacheMetadata(
            format_version=CACHE_FORMAT_VERSION,
            cached_as_of={
                node: edited
                for node, edited in self.cached_as_of.items()
                if node not in self._undeleted_anchors
            },
            parents=dict(self.parents),
        )

    def _record(self, op: str, *, hit: bool, **context: Any) -> None:
        if hit:
            self.stats.hits[op] += 1
        else:
            self.stats.misses[op] += 1
        log.debug("cache_hit" if hit else "cache_miss", op=op, **context)


# ---------------------------------------------------------------------------
# Format migrations
# ---------------------------------------------------------------------------


async def _migrate_v1_to_v2(cache: FetchCache, raw: dict[str, Any]) -> dict[str, Any]:
    """Version 1 persisted collection queries and named the snapshot ``updated_at``.

    Query results are no longer persisted, so only the query memo and its
    table are dropped; listings, timestamps and parent links are kept.
    """
    cache._query_memo.clear()
    if cache._store is not None:
        await cache._store.drop_legacy_tables()
    migrated = {k: v for k, v in raw.items() if k != "updated_at"}
    migrated["cached_as_of"] = raw.get("updated_at", {})
    return migrated


async def _migrate_v2_to_v3(cache: FetchCache, raw: dict[str, Any]) -> dict[str, Any]:
    """Version 2 keyed listing rows by a joined ``"<node>_<cursor>"`` string.

    That key let node ``a_b`` collide with node ``a`` at cursor ``b``. Rows are
    moved to a ``(node_id, cursor)`` key and stamped with the anchor and edit
    time the version 2 snapshot held for them; rows without one stay unstamped
    and are refetched on first use.
    """
    store = cache._store
    if store is None:
        return raw
    await store.rebuild_listing_table()
    parents = raw.get("parents", {})
    cached_as_of = raw.get("cached_as_of", {})
    for entry in await store.read_entries():
        anchor = _walk_to_anchor(parents, entry.node_id)
        edited = cached_as_of.get(anchor) if anchor is not None else None
        if edited is None:
            continue
        stamp = {"anchor_id": anchor, "anchor_edited": datetime.fromisoformat(edited)}
        await store.write_entry(entry.model_copy(update=stamp))
    return raw


MIGRATIONS: dict[int, Callable[[FetchCache, dict[str, Any]], Awaitable[dict[str, Any]]]] = {
    1: _migrate_v1_to_v2,
    2: _migrate_v2_to_v3,
}
