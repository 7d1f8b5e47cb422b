"""Page builder: raw page nodes to Page models.

Property names are configurable because every collection names its columns
differently. A raw page is only turned into a Page when ``is_valid_page``
accepts it; everything else (plain subpages, partial objects) is left to the
caller, which builds a minimal page instead.
"""

from __future__ import annotations

import re
from typing import Any

import structlog
from pydantic import BaseModel

from contentmirror.models.content import Collection, Page, Tag

log = structlog.get_logger()


class PropertyNames(BaseModel):
    """Names of the collection properties read by the page builder."""

    title: str = "Title"
    slug: str = "Slug"
    date: str = "Date"
    published: str = "Published"
    tags: str = "Tags"
    excerpt: str = "Excerpt"
    rank: str = "Rank"
    created_at: str = "CreatedAt"
    updated_at: str = "UpdatedAt"


# field name -> expected property type
_PROPERTY_TYPES: dict[str, str] = {
    "title": "title",
    "slug": "rich_text",
    "date": "date",
    "published": "checkbox",
    "tags": "multi_select",
    "excerpt": "rich_text",
    "rank": "number",
    "created_at": "created_time",
    "updated_at": "last_edited_time",
}

_NON_WORD = re.compile(r"[^\w\s-]")
_SEPARATORS = re.compile(r"[\s_]+")
_EDGE_HYPHENS = re.compile(r"^-+|-+$")


def slugify(text: str) -> str:
    """Lowercase, drop punctuation, and join words with hyphens."""
    slug = _EDGE_HYPHENS.sub("", _SEPARATORS.sub("-", _NON_WORD.sub("", text.lower())))
    return slug or re.sub(r"\s+", "-", text.lower())


def plain_text(prop: dict[str, Any] | None) -> str:
    if not prop:
        return ""
    if prop.get("type") == "rich_text":
        return "".join(part.get("plain_text", "") for part in prop.get("rich_text", []))
    if prop.get("type") == "title" and prop.get("title"):
        return prop["title"][0].get("plain_text", "")
    return ""


def is_valid_page(raw: dict[str, Any], names: PropertyNames | None = None) -> bool:
    """True when ``raw`` has a non-empty title and correctly typed properties."""
    names = names or PropertyNames()
    properties = raw.get("properties")
    if not isinstance(properties, dict):
        return False

    title = properties.get(names.title)
    if not title or title.get("type") != "title" or not title.get("title"):
        log.debug("page_invalid", page_id=raw.get("id"), reason="missing_title")
        return False

    for field_name, expected in _PROPERTY_TYPES.items():
        prop = properties.get(getattr(names, field_name))
        if prop is not None and prop.get("type") != expected:
            log.debug(
                "page_invalid",
                page_id=raw.get("id"),
                reason="property_type",
                property=getattr(names, field_name),
                expected=expected,
            )
            return False
    return True


def build_page(
    raw: dict[str, Any],
    names: PropertyNames | None = None,
    additional_properties: list[str] | None = None,
) -> Page:
    """Build a Page from a raw page node accepted by ``is_valid_page``.

    The slug falls back to the title and the date falls back from the date
    property to the creation time and then the last edit time.
    ``additional_properties`` lists extra property names to copy verbatim;
    relation properties are reduced to a list of ``{"id": ...}`` references.
    """
    names = names or PropertyNames()
    properties: dict[str, Any] = raw.get("properties", {})

    title = plain_text(properties.get(names.title))
    slug = plain_text(properties.get(names.slug)) or title

    date_prop = properties.get(names.date) or {}
    created_prop = properties.get(names.created_at) or {}
    updated_prop = properties.get(names.updated_at) or {}
    created_at = ""
    if created_prop.get("type") == "created_time":
        created_at = created_prop.get("created_time", "")
    updated_at = ""
    if updated_prop.get("type") == "last_edited_time":
        updated_at = updated_prop.get("last_edited_time", "")

    date = ""
    if date_prop.get("type") == "date":
        date = (date_prop.get("date") or {}).get("start") or ""
    date = date or created_at or updated_at

    tags_prop = properties.get(names.tags) or {}
    tags: list[Tag] = []
    if tags_prop.get("type") == "multi_select":
        tags = [Tag.model_validate(t) for t in tags_prop.get("multi_select", [])]

    rank_prop = properties.get(names.rank) or {}
    rank = (rank_prop.get("number") or 0) if rank_prop.get("type") == "number" else 0

    extra: dict[str, Any] = {}
    for name in additional_properties or []:
        prop = properties.get(name)
        if prop is None:
            continue
        if prop.get("type") == "relation":
            extra[name] = [{"id": ref["id"]} for ref in prop.get("relation", []) if ref.get("id")]
        else:
            extra[name] = prop

    return Page(
        id=raw["id"],
        title=title,
        slug=slug,
        date=date,
        created_at=created_at,
        updated_at=updated_at,
        excerpt=plain_text(properties.get(names.excerpt)),
        tags=tags,
        rank=rank,
        additional_properties=extra,
    )


def build_collection(raw: dict[str, Any]) -> Collection:
    return Collection(
        id=raw.get("id", ""),
        title="".join(part.get("plain_text", "") for part in raw.get("title", [])),
        description="".join(part.get("plain_text", "") for part in raw.get("description", [])),
    )
