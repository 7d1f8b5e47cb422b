"""Page hierarchy construction and output-path resolution.

A flat page list becomes a forest in fixed phases, each working only on the
node table left by the previous one:

  1. one node per page
  2. parent linkage (relation property, subpage discovery, or both)
  3. cycle breaking
  4. root and children collection, in input order
  5. path computation
  6. sibling slug deduplication
  7. hierarchy facts copied back onto the pages

Integrity problems in the source data never raise. Each one is resolved by a
fallback (treat as root, break the cycle, rename the slug, use the first
reference, skip the subpage), logged as a warning, and recorded as a
Diagnostic on the returned tree.
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING, Any, Literal

import structlog

from contentmirror.client import collect_all
from contentmirror.models.content import Page
from contentmirror.models.hierarchy import (
    Diagnostic,
    DiagnosticKind,
    HierarchyNode,
    HierarchyTree,
)
from contentmirror.pages import PropertyNames, build_page, is_valid_page, slugify

if TYPE_CHECKING:
    from contentmirror.protocols import ContentApiProtocol

log = structlog.get_logger()

INDEX_SLUG = "index"
CHILD_PAGE_TYPE = "child_page"
# Container blocks are searched for nested subpages; these never are.
_OPAQUE_BLOCK_TYPES = frozenset({CHILD_PAGE_TYPE, "child_database"})

BuildMode = Literal["relation", "subpage", "both"]


class _TreeBuilder:
    def __init__(self, pages: list[Page]) -> None:
        self.pages = pages
        self.nodes: dict[str, HierarchyNode] = {}
        self.diagnostics: list[Diagnostic] = []
        for page in pages:
            if page.id not in self.nodes:
                self.nodes[page.id] = HierarchyNode(page=page, slug=page.slug)

    # ------------------------------------------------------------------
    # Parent linkage
    # ------------------------------------------------------------------

    def link_relations(self, relation_property: str) -> None:
        for node in self.nodes.values():
            parent_id = self._relation_parent(node.page, relation_property)
            if parent_id is None:
                continue
            if parent_id in self.nodes:
                node.parent_id = parent_id
                continue
            # Parent filtered out upstream (unpublished, outside the query).
            self._warn(
                DiagnosticKind.DANGLING_PARENT,
                node.id,
                f'page "{node.page.title}" references parent {parent_id} '
                "which is not in the page list; treating as root",
                parent_id=parent_id,
            )

    def _relation_parent(self, page: Page, relation_property: str) -> str | None:
        # page.parent_id holds the result of an earlier build; only the
        # relation property is authoritative here
        refs = page.additional_properties.get(relation_property)
        if not isinstance(refs, list) or not refs:
            return None
        first = refs[0]
        parent_id = first.get("id") if isinstance(first, dict) else first
        if not parent_id:
            return None
        if len(refs) > 1:
            self._warn(
                DiagnosticKind.MULTIPLE_PARENTS,
                page.id,
                f'page "{page.title}" has {len(refs)} parents in "{relation_property}"; '
                "using the first one",
                parent_id=parent_id,
            )
        return parent_id

    async def discover_subpages(
        self,
        api: ContentApiProtocol,
        names: PropertyNames | None,
        additional_properties: list[str] | None,
    ) -> None:
        """Link nested pages found in block content, scanning new pages in turn."""
        queue = list(self.nodes)
        position = 0
        while position < len(queue):
            parent_id = queue[position]
            position += 1
            parent = self.nodes[parent_id]

            for block in await self._child_page_blocks(api, parent_id, parent_id, {parent_id}):
                child_id = block["id"]
                existing = self.nodes.get(child_id)
                if existing is not None:
                    if existing.parent_id is None and child_id != parent_id:
                        existing.parent_id = parent_id
                    continue

                try:
                    raw = await api.retrieve_node(child_id)
                except Exception:
                    self._warn(
                        DiagnosticKind.SUBPAGE_RETRIEVAL_FAILED,
                        child_id,
                        f'failed to retrieve subpage {child_id} of "{parent.page.title}"; skipping',
                        parent_id=parent_id,
                        exc_info=True,
                    )
                    continue

                page = self._subpage(raw, block, parent, names, additional_properties)
                self.nodes[child_id] = HierarchyNode(page=page, slug=page.slug, parent_id=parent_id)
                self.pages.append(page)
                queue.append(child_id)
                log.debug("hierarchy_subpage_discovered", page_id=child_id, parent_id=parent_id)

    async def _child_page_blocks(
        self,
        api: ContentApiProtocol,
        owner_id: str,
        block_id: str,
        seen: set[str],
    ) -> list[dict[str, Any]]:
        """Subpage blocks under ``block_id`` in document order."""
        try:
            blocks = await collect_all(partial(api.list_children, block_id))
        except Exception:
            self._warn(
                DiagnosticKind.CHILD_LISTING_FAILED,
                owner_id,
                f"failed to list child blocks of {block_id}; subpages below it are skipped",
                block_id=block_id,
                exc_info=True,
            )
            return []

        found: list[dict[str, Any]] = []
        for block in blocks:
            block_type = block.get("type")
            nested_id = block.get("id")
            if not nested_id:
                continue
            if block_type == CHILD_PAGE_TYPE:
                found.append(block)
            elif (
                block.get("has_children")
                and block_type not in _OPAQUE_BLOCK_TYPES
                and nested_id not in seen
            ):
                seen.add(nested_id)
                found.extend(await self._child_page_blocks(api, owner_id, nested_id, seen))
        return found

    @staticmethod
    def _subpage(
        raw: dict[str, Any],
        block: dict[str, Any],
        parent: HierarchyNode,
        names: PropertyNames | None,
        additional_properties: list[str] | None,
    ) -> Page:
        if is_valid_page(raw, names):
            return build_page(raw, names, additional_properties)

        # Plain subpage: no collection properties, so borrow the parent's.
        title = (block.get(CHILD_PAGE_TYPE) or {}).get("title", "")
        return Page(
            id=block["id"],
            title=title,
            slug=slugify(title) or block["id"],
            date=parent.page.date,
            created_at=raw.get("created_time", ""),
            updated_at=raw.get("last_edited_time", ""),
            tags=list(parent.page.tags),
        )

    # ------------------------------------------------------------------
    # Finishing phases
    # ------------------------------------------------------------------

    def finish(self) -> HierarchyTree:
        self.break_cycles()
        roots = self.collect()
        compute_paths(roots, [])
        self.dedupe_slugs(roots, None)
        self.sync_pages()
        return HierarchyTree(roots=roots, nodes=self.nodes, diagnostics=self.diagnostics)

    def break_cycles(self) -> None:
        """Walk every parent chain once; cut the link that closes a loop."""
        done: set[str] = set()
        for start in self.nodes:
            path: list[str] = []
            on_path: set[str] = set()
            current: str | None = start
            while current is not None and current not in done:
                path.append(current)
                on_path.add(current)
                node = self.nodes[current]
                if node.parent_id in on_path:
                    self._warn(
                        DiagnosticKind.CYCLE,
                        current,
                        f'circular reference detected involving page "{node.page.title}"; '
                        "treating as root",
                        parent_id=node.parent_id,
                    )
                    node.parent_id = None
                    break
                current = node.parent_id
            done.update(path)

    def collect(self) -> list[HierarchyNode]:
        roots: list[HierarchyNode] = []
        for node in self.nodes.values():
            node.children = []
        for node in self.nodes.values():
            if node.parent_id is None:
                roots.append(node)
            else:
                self.nodes[node.parent_id].children.append(node)
        return roots

    def dedupe_slugs(self, siblings: list[HierarchyNode], parent_id: str | None) -> None:
        # Second round uses the whole ID in case the renamed slug still collides.
        for suffix_len in (8, None):
            groups: dict[str, list[HierarchyNode]] = {}
            for node in siblings:
                groups.setdefault(node.slug, []).append(node)
            duplicates = {slug: group for slug, group in groups.items() if len(group) > 1}
            if not duplicates:
                break
            for slug, group in duplicates.items():
                self._warn(
                    DiagnosticKind.DUPLICATE_SLUG,
                    group[0].id,
                    f'duplicate slug "{slug}" found among {len(group)} siblings; '
                    "appending page ID suffix",
                    parent_id=parent_id,
                    page_ids=[node.id for node in group],
                )
                for node in group:
                    node.slug = f"{slug}-{node.id.replace('-', '')[:suffix_len]}"
                    node.path_segments = [*node.path_segments[:-1], node.slug]
                    compute_paths(node.children, node.path_segments)

        for node in siblings:
            self.dedupe_slugs(node.children, node.id)

    def sync_pages(self) -> None:
        for node in self.nodes.values():
            node.page.slug = node.slug
            node.page.parent_id = node.parent_id
            node.page.path_segments = list(node.path_segments)
            node.page.child_ids = [child.id for child in node.children]

    def _warn(self, kind: DiagnosticKind, node_id: str, message: str, **context: Any) -> None:
        self.diagnostics.append(Diagnostic(kind=kind, node_id=node_id, message=message))
        log.warning(f"hierarchy_{kind}", node_id=node_id, message=message, **context)


def compute_paths(nodes: list[HierarchyNode], parent_path: list[str]) -> None:
    """Pre-order walk setting ``path_segments`` and ``depth`` below ``parent_path``."""
    for node in nodes:
        node.path_segments = [*parent_path, node.slug]
        node.depth = len(node.path_segments) - 1
        compute_paths(node.children, node.path_segments)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_from_relation(pages: list[Page], relation_property: str) -> HierarchyTree:
    """Build a tree from a self-referencing relation property."""
    builder = _TreeBuilder(pages)
    builder.link_relations(relation_property)
    return builder.finish()


async def build_from_subpages(
    pages: list[Page],
    api: ContentApiProtocol,
    *,
    names: PropertyNames | None = None,
    additional_properties: list[str] | None = None,
) -> HierarchyTree:
    """Build a tree from nested subpages. Discovered pages are appended to ``pages``."""
    builder = _TreeBuilder(pages)
    await builder.discover_subpages(api, names, additional_properties)
    return builder.finish()


async def build_combined(
    pages: list[Page],
    relation_property: str,
    api: ContentApiProtocol,
    *,
    names: PropertyNames | None = None,
    additional_properties: list[str] | None = None,
) -> HierarchyTree:
    """Relation linkage first, then subpage discovery over the linked nodes."""
    builder = _TreeBuilder(pages)
    builder.link_relations(relation_property)
    await builder.discover_subpages(api, names, additional_properties)
    return builder.finish()


async def build_hierarchy(
    pages: list[Page],
    mode: BuildMode,
    *,
    relation_property: str = "Parent",
    api: ContentApiProtocol | None = None,
    names: PropertyNames | None = None,
    additional_properties: list[str] | None = None,
) -> HierarchyTree:
    if mode == "relation":
        return build_from_relation(pages, relation_property)
    if api is None:
        raise ValueError(f"hierarchy mode {mode!r} needs a content API to scan subpages")
    if mode == "subpage":
        return await build_from_subpages(
            pages, api, names=names, additional_properties=additional_properties
        )
    if mode == "both":
        return await build_combined(
            pages, relation_property, api, names=names, additional_properties=additional_properties
        )
    raise ValueError(f"unknown hierarchy mode: {mode!r}")


# ---------------------------------------------------------------------------
# Derived queries
# ---------------------------------------------------------------------------


def output_directory(tree: HierarchyTree, node_id: str) -> str:
    """Directory of a page's output file, ``""`` for flat root leaves.

    A page with children becomes the index of its own directory; a leaf sits
    in its parent's directory.
    """
    node = tree.nodes.get(node_id)
    if node is None:
        return ""
    if node.children:
        return "/".join(node.path_segments)
    return "/".join(node.path_segments[:-1])


def effective_slug(tree: HierarchyTree, node_id: str) -> str:
    node = tree.nodes.get(node_id)
    if node is None:
        return ""
    return INDEX_SLUG if node.children else node.slug


def output_path(tree: HierarchyTree, node_id: str, extension: str) -> str:
    """File path of a page's output relative to the output root."""
    slug = effective_slug(tree, node_id)
    if not slug:
        return ""
    directory = output_directory(tree, node_id)
    filename = f"{slug}.{extension}"
    return f"{directory}/{filename}" if directory else filename


def relative_path(tree: HierarchyTree, from_id: str | None, to_id: str) -> str:
    """Link target from one page's output file to another's, without extension.

    Index pages are linked by their directory (``"."`` when it is the source's
    own directory). With no source page the target's full path is returned.
    """
    target = tree.nodes.get(to_id)
    if target is None:
        return ""
    if from_id is None:
        return "/".join(target.path_segments)

    from_parts = _split(output_directory(tree, from_id))
    to_parts = _split(output_directory(tree, to_id))

    common = 0
    while (
        common < len(from_parts)
        and common < len(to_parts)
        and from_parts[common] == to_parts[common]
    ):
        common += 1

    parts = [".."] * (len(from_parts) - common) + to_parts[common:]
    slug = effective_slug(tree, to_id)
    if slug == INDEX_SLUG:
        return "/".join(parts) or "."
    parts.append(slug)
    return "/".join(parts)


def _split(directory: str) -> list[str]:
    return directory.split("/") if directory else []
