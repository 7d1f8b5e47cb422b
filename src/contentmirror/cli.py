"""Command-line entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Open the mirror for the configured collection
- Print the output plan (page paths plus hierarchy diagnostics) as JSON

All options come from Settings (environment or contentmirror.yaml).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import structlog

from contentmirror import __version__
from contentmirror.config import Settings
from contentmirror.errors import ContentMirrorError
from contentmirror.mirror import ContentMirror, open_mirror

log = structlog.get_logger()


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Logs go to stderr; stdout carries the JSON plan
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


async def build_plan(mirror: ContentMirror) -> dict[str, Any]:
    collection = await mirror.get_collection()
    pages = await mirror.get_all_pages()
    tree = await mirror.build_hierarchy(pages)
    paths = mirror.plan_outputs(pages, tree)

    plan: dict[str, Any] = {
        "collection": collection.model_dump(mode="json"),
        "pages": [
            {
                "id": page.id,
                "title": page.title,
                "path": paths[page.id],
                "parent_id": page.parent_id,
                "child_ids": page.child_ids,
            }
            for page in pages
        ],
        "diagnostics": [
            {"kind": d.kind, "node_id": d.node_id, "message": d.message}
            for d in (tree.diagnostics if tree is not None else [])
        ],
    }
    if mirror.cache is not None:
        plan["cache"] = {
            "hits": dict(mirror.cache.stats.hits),
            "misses": dict(mirror.cache.stats.misses),
        }
    return plan


async def _run(settings: Settings) -> dict[str, Any]:
    async with open_mirror(settings) as mirror:
        return await build_plan(mirror)


def main() -> None:
    settings = Settings()
    setup_logging(settings)
    log.info(
        "contentmirror_starting",
        version=__version__,
        collection_id=settings.source.collection_id,
    )

    try:
        plan = asyncio.run(_run(settings))
    except ContentMirrorError as exc:
        log.error("run_failed", code=exc.code, message=exc.message, suggestion=exc.suggestion)
        print(json.dumps(exc.to_dict()))
        sys.exit(1)

    print(json.dumps(plan, indent=2))


if __name__ == "__main__":
    main()
