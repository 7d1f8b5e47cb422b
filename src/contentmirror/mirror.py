"""Orchestration: pages, hierarchy and output paths for one collection.

ContentMirror talks to the content source only through ContentApiProtocol.
When that implementation is a FetchCache, the cache controls (load, purge)
are forwarded to it; otherwise they are no-ops.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from contentmirror.cache import FetchCache
from contentmirror.client import ContentApiClient, build_http_client, collect_all
from contentmirror.errors import ContentMirrorError, ErrorCode
from contentmirror.hierarchy import build_hierarchy, output_path
from contentmirror.pages import PropertyNames, build_collection, build_page, is_valid_page
from contentmirror.store import CacheStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from contentmirror.config import HierarchyMode, Settings
    from contentmirror.models.content import Collection, Page
    from contentmirror.models.hierarchy import HierarchyTree
    from contentmirror.protocols import ContentApiProtocol

log = structlog.get_logger()


class ContentMirror:
    def __init__(
        self,
        api: ContentApiProtocol,
        collection_id: str,
        *,
        names: PropertyNames | None = None,
        hierarchy_mode: HierarchyMode = "none",
        relation_property: str = "Parent",
        only_published: bool = True,
    ) -> None:
        self.api = api
        self.cache = api if isinstance(api, FetchCache) else None
        self.collection_id = collection_id
        self.names = names or PropertyNames()
        self.hierarchy_mode = hierarchy_mode
        self.relation_property = relation_property
        self.only_published = only_published

    # ------------------------------------------------------------------
    # Cache controls
    # ------------------------------------------------------------------

    async def load_cache(self) -> None:
        if self.cache is not None:
            await self.cache.load()

    async def purge_cache(self) -> None:
        if self.cache is not None:
            await self.cache.purge_all()

    async def purge_cache_by_id(self, node_id: str) -> None:
        """Force a refetch of one page, e.g. after its signed asset URLs expired."""
        if self.cache is not None:
            await self.cache.purge_subtree(node_id)

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def get_collection(self) -> Collection:
        return build_collection(await self.api.retrieve_collection(self.collection_id))

    async def get_all_pages(self, filter: dict[str, Any] | None = None) -> list[Page]:
        """Every valid page of the collection, newest first.

        ``filter`` replaces the default published-and-not-scheduled filter.
        """
        fetch = partial(self.api.query_collection, self.collection_id, **self._query_params(filter))
        results = await collect_all(fetch)
        pages = [
            build_page(raw, self.names, [self.relation_property])
            for raw in results
            if is_valid_page(raw, self.names)
        ]
        log.info(
            "pages_loaded",
            collection_id=self.collection_id,
            results=len(results),
            pages=len(pages),
        )
        return pages

    async def get_page_by_id(self, page_id: str) -> Page | None:
        try:
            raw = await self.api.retrieve_node(page_id)
        except ContentMirrorError as exc:
            log.warning("page_retrieve_failed", page_id=page_id, code=exc.code, message=exc.message)
            return None
        if not is_valid_page(raw, self.names):
            return None
        return build_page(raw, self.names, [self.relation_property])

    def _query_params(self, filter: dict[str, Any] | None) -> dict[str, Any]:
        params: dict[str, Any] = {
            "sorts": [{"property": self.names.date, "direction": "descending"}],
        }
        if filter is not None:
            params["filter"] = filter
        elif self.only_published:
            params["filter"] = {
                "and": [
                    {"property": self.names.published, "checkbox": {"equals": True}},
                    {
                        "property": self.names.date,
                        "date": {"on_or_before": datetime.now(UTC).date().isoformat()},
                    },
                ]
            }
        return params

    # ------------------------------------------------------------------
    # Hierarchy and output layout
    # ------------------------------------------------------------------

    async def build_hierarchy(self, pages: list[Page]) -> HierarchyTree | None:
        """Build the configured hierarchy; may append discovered subpages to ``pages``."""
        if self.hierarchy_mode == "none":
            return None
        tree = await build_hierarchy(
            pages,
            self.hierarchy_mode,
            relation_property=self.relation_property,
            api=self.api,
            names=self.names,
            additional_properties=[self.relation_property],
        )
        log.info(
            "hierarchy_built",
            mode=self.hierarchy_mode,
            roots=len(tree.roots),
            nodes=len(tree.nodes),
            diagnostics=len(tree.diagnostics),
        )
        return tree

    @staticmethod
    def plan_outputs(
        pages: list[Page],
        tree: HierarchyTree | None,
        extension: str = "md",
    ) -> dict[str, str]:
        """Map each page ID to its output file path."""
        if tree is None:
            return {page.id: f"{page.slug}.{extension}" for page in pages}
        return {page.id: output_path(tree, page.id, extension) for page in pages}


@asynccontextmanager
async def open_mirror(settings: Settings) -> AsyncGenerator[ContentMirror, None]:
    """Create and tear down the HTTP client, cache database and mirror."""
    if not settings.source.collection_id:
        raise ContentMirrorError(
            code=ErrorCode.MISSING_CONFIGURATION,
            message="No collection ID configured",
            suggestion="Set CONTENTMIRROR__SOURCE__COLLECTION_ID or source.collection_id.",
        )

    http_client = build_http_client(settings.api)
    db: aiosqlite.Connection | None = None
    try:
        api: ContentApiProtocol = ContentApiClient(http_client, page_size=settings.api.page_size)
        if settings.cache.enabled:
            db_path = Path(settings.cache.db_path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(db_path))
            store = CacheStore(db)
            await store.init_db()
            api = FetchCache(api, store)

        mirror = ContentMirror(
            api,
            settings.source.collection_id,
            hierarchy_mode=settings.hierarchy.mode,
            relation_property=settings.hierarchy.relation_property,
            only_published=settings.source.only_published,
        )
        await mirror.load_cache()
        yield mirror
    finally:
        await http_client.aclose()
        if db is not None:
            await db.close()
