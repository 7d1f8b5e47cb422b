"""Builders for raw content-API objects and an in-memory content source."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import aiosqlite

from contentmirror.errors import ContentMirrorError, ErrorCode
from contentmirror.models.content import Page

DEFAULT_EDITED = "2024-01-01T00:00:00.000Z"


def raw_page(
    page_id: str,
    title: str,
    *,
    edited: str = DEFAULT_EDITED,
    slug: str | None = None,
    date: str | None = None,
    parent_ids: tuple[str, ...] = (),
    tags: tuple[str, ...] = (),
) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "Title": {"type": "title", "title": [{"plain_text": title}]},
        "Parent": {"type": "relation", "relation": [{"id": p} for p in parent_ids]},
        "Tags": {
            "type": "multi_select",
            "multi_select": [{"id": t, "name": t} for t in tags],
        },
    }
    if slug is not None:
        properties["Slug"] = {"type": "rich_text", "rich_text": [{"plain_text": slug}]}
    if date is not None:
        properties["Date"] = {"type": "date", "date": {"start": date}}
    return {
        "object": "page",
        "id": page_id,
        "created_time": "2024-01-01T00:00:00.000Z",
        "last_edited_time": edited,
        "properties": properties,
    }


def raw_subpage(page_id: str, edited: str = DEFAULT_EDITED) -> dict[str, Any]:
    """A plain subpage: no collection properties beyond its title."""
    return {
        "object": "page",
        "id": page_id,
        "created_time": "2024-02-01T00:00:00.000Z",
        "last_edited_time": edited,
        "properties": {"title": {"type": "title", "title": [{"plain_text": page_id}]}},
    }


def block(
    block_id: str,
    block_type: str = "paragraph",
    *,
    has_children: bool = False,
    title: str | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "object": "block",
        "id": block_id,
        "type": block_type,
        "has_children": has_children,
    }
    if block_type == "child_page":
        data["child_page"] = {"title": title if title is not None else block_id}
    return data


def make_page(page_id: str, slug: str, **overrides: Any) -> Page:
    fields: dict[str, Any] = {
        "id": page_id,
        "title": slug,
        "slug": slug,
        "date": "2024-01-01",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
    }
    fields.update(overrides)
    return Page(**fields)


def relation_page(page_id: str, slug: str, *parent_ids: str, **overrides: Any) -> Page:
    return make_page(
        page_id,
        slug,
        additional_properties={"Parent": [{"id": p} for p in parent_ids]},
        **overrides,
    )


def listing(*results: dict[str, Any]) -> dict[str, Any]:
    """A single-page list response."""
    return {"object": "list", "results": list(results), "next_cursor": None, "has_more": False}


@contextmanager
def failing_statements(db: aiosqlite.Connection, verb: str) -> Iterator[None]:
    """Make ``db.execute`` raise for SQL statements that start with ``verb``."""
    original_execute = db.execute

    def execute(sql: str, *args: Any, **kwargs: Any) -> Any:
        if sql.lstrip().upper().startswith(verb):
            raise aiosqlite.OperationalError("disk I/O error")
        return original_execute(sql, *args, **kwargs)

    db.execute = execute  # type: ignore[method-assign]
    try:
        yield
    finally:
        db.execute = original_execute  # type: ignore[method-assign]


def _paginate(key: str, pages: tuple[list[dict[str, Any]], ...]) -> dict[str | None, dict]:
    responses: dict[str | None, dict] = {}
    for index, results in enumerate(pages):
        cursor = None if index == 0 else f"{key}:{index}"
        has_more = index < len(pages) - 1
        responses[cursor] = {
            "object": "list",
            "results": results,
            "next_cursor": f"{key}:{index + 1}" if has_more else None,
            "has_more": has_more,
        }
    return responses


class FakeContentApi:
    """In-memory ContentApiProtocol that records every call."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, Any]] = {}
        self.nodes: dict[str, dict[str, Any]] = {}
        self._queries: dict[str, dict[str | None, dict]] = {}
        self._children: dict[str, dict[str | None, dict]] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str, str | None]] = []
        self.query_params: list[dict[str, Any]] = []

    def set_query(self, collection_id: str, *pages: list[dict[str, Any]]) -> None:
        self._queries[collection_id] = _paginate(collection_id, pages)
        for results in pages:
            for result in results:
                self.nodes.setdefault(result["id"], result)

    def set_children(self, node_id: str, *pages: list[dict[str, Any]]) -> None:
        self._children[node_id] = _paginate(node_id, pages)

    def count(self, method: str, node_id: str | None = None) -> int:
        return sum(
            1 for call in self.calls if call[0] == method and (node_id is None or call[1] == node_id)
        )

    def _check(self, method: str, node_id: str, cursor: str | None = None) -> None:
        self.calls.append((method, node_id, cursor))
        if node_id in self.failing:
            raise ContentMirrorError(
                code=ErrorCode.UPSTREAM_FETCH_FAILED,
                message=f"HTTP 502 calling {method} {node_id}",
                suggestion="",
                recoverable=True,
            )

    async def retrieve_collection(self, collection_id: str) -> dict[str, Any]:
        self._check("retrieve_collection", collection_id)
        return self.collections[collection_id]

    async def query_collection(
        self,
        collection_id: str,
        cursor: str | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        self._check("query_collection", collection_id, cursor)
        self.query_params.append(params)
        return self._queries[collection_id][cursor]

    async def list_children(self, node_id: str, cursor: str | None = None) -> dict[str, Any]:
        self._check("list_children", node_id, cursor)
        responses = self._children.get(node_id)
        if responses is None:
            return {"object": "list", "results": [], "next_cursor": None, "has_more": False}
        return responses[cursor]

    async def retrieve_node(self, node_id: str) -> dict[str, Any]:
        self._check("retrieve_node", node_id)
        if node_id not in self.nodes:
            raise ContentMirrorError(
                code=ErrorCode.NODE_NOT_FOUND,
                message=f"HTTP 404 calling retrieve_node {node_id}",
                suggestion="",
            )
        return self.nodes[node_id]
