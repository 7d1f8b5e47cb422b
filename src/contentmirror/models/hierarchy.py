from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from contentmirror.models.content import Page


class DiagnosticKind(StrEnum):
    DANGLING_PARENT = "dangling_parent"
    MULTIPLE_PARENTS = "multiple_parents"
    CYCLE = "cycle"
    DUPLICATE_SLUG = "duplicate_slug"
    SUBPAGE_RETRIEVAL_FAILED = "subpage_retrieval_failed"
    CHILD_LISTING_FAILED = "child_listing_failed"


@dataclass(frozen=True)
class Diagnostic:
    """A hierarchy integrity problem that was resolved by a fallback."""

    kind: DiagnosticKind
    node_id: str
    message: str


@dataclass
class HierarchyNode:
    page: Page
    slug: str
    parent_id: str | None = None
    children: list[HierarchyNode] = field(default_factory=list)
    path_segments: list[str] = field(default_factory=list)
    depth: int = 0

    @property
    def id(self) -> str:
        return self.page.id


@dataclass
class HierarchyTree:
    """Forest of pages; roots keep the order of the input page list."""

    roots: list[HierarchyNode] = field(default_factory=list)
    nodes: dict[str, HierarchyNode] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def diagnostics_of(self, kind: DiagnosticKind) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]
