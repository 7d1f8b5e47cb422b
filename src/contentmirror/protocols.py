"""Protocol interfaces for swappable components.

The page builder, the hierarchy builder and the orchestration layer reference
these protocols, not the concrete implementations. This allows:
- The fetch cache to stand in for the raw upstream client transparently
- Tests to use lightweight in-memory content sources
"""

from __future__ import annotations

from typing import Any, Protocol


class ContentApiProtocol(Protocol):
    """Minimal content-API boundary shared by the upstream client and the cache.

    All responses are the raw JSON objects of the upstream API. Paginated
    responses carry ``results``, ``next_cursor`` and ``has_more``.
    """

    async def retrieve_collection(self, collection_id: str) -> dict[str, Any]: ...

    async def query_collection(
        self,
        collection_id: str,
        cursor: str | None = None,
        **params: Any,
    ) -> dict[str, Any]: ...

    async def list_children(self, node_id: str, cursor: str | None = None) -> dict[str, Any]: ...

    async def retrieve_node(self, node_id: str) -> dict[str, Any]: ...
