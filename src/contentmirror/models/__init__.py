from __future__ import annotations

from contentmirror.models.content import (
    CacheMetadata,
    ChildListingEntry,
    Collection,
    Page,
    Tag,
)
from contentmirror.models.hierarchy import (
    Diagnostic,
    DiagnosticKind,
    HierarchyNode,
    HierarchyTree,
)

__all__ = [
    # content
    "Collection",
    "Page",
    "Tag",
    # cache
    "CacheMetadata",
    "ChildListingEntry",
    # hierarchy
    "Diagnostic",
    "DiagnosticKind",
    "HierarchyNode",
    "HierarchyTree",
]
