from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class Tag(BaseModel):
    id: str = ""
    name: str
    color: str | None = None


class Collection(BaseModel):
    """Display metadata of a queried collection."""

    id: str
    title: str
    description: str = ""


class Page(BaseModel):
    """A publishable page built from a raw page node.

    ``parent_id``, ``path_segments`` and ``child_ids`` are written back by the
    hierarchy builder so callers holding only pages can resolve hierarchy facts.
    """

    id: str
    title: str
    slug: str
    date: str = ""
    created_at: str = ""
    updated_at: str = ""
    excerpt: str = ""
    tags: list[Tag] = []
    rank: float = 0
    additional_properties: dict[str, Any] = {}
    parent_id: str | None = None
    path_segments: list[str] = []
    child_ids: list[str] = []


class ChildListingEntry(BaseModel):
    """One cached ``list_children`` response for a ``(node_id, cursor)`` key.

    ``anchor_id`` and ``anchor_edited`` record which anchor the listing was
    fetched under and that anchor's edit time at the moment of the fetch.
    """

    node_id: str
    cursor: str | None = None
    response: dict[str, Any]
    fetched_at: datetime
    anchor_id: str | None = None
    anchor_edited: datetime | None = None


class CacheMetadata(BaseModel):
    """Snapshot persisted alongside the listing entries."""

    format_version: int
    cached_as_of: dict[str, datetime] = {}
    parents: dict[str, str] = {}
