"""Integration test fixtures.

Wires the real ContentApiClient to a respx-mocked content API and points the
cache database at an isolated tmp directory, so each test can open the mirror
several times and observe what reached the network.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest
import respx

from contentmirror.config import (
    ApiSettings,
    CacheSettings,
    HierarchySettings,
    Settings,
    SourceSettings,
)
from tests.helpers import block, listing, raw_page, raw_subpage

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

BASE_URL = "https://api.notion.com"
COLLECTION_ID = "db1"
EDITED = "2024-03-01T10:00:00.000Z"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        api=ApiSettings(token="secret_test"),
        source=SourceSettings(collection_id=COLLECTION_ID),
        cache=CacheSettings(db_path=str(tmp_path / "cache" / "cache.db")),
        hierarchy=HierarchySettings(mode="both"),
    )


@pytest.fixture()
def content_api() -> Iterator[respx.MockRouter]:
    """Mocked content API: guide -> setup (relation), setup holds subpage faq.

    guide's body nests a toggle block, so the parent index gets a block-level
    entry anchored at guide.
    """
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
        router.get(f"/v1/databases/{COLLECTION_ID}", name="collection").mock(
            return_value=httpx.Response(
                200, json={"id": COLLECTION_ID, "title": [{"plain_text": "Handbook"}]}
            )
        )
        router.post(f"/v1/databases/{COLLECTION_ID}/query", name="query").mock(
            return_value=httpx.Response(
                200,
                json=listing(
                    raw_page("guide", "Guide", slug="guide", edited=EDITED),
                    raw_page("setup", "Setup", slug="setup", edited=EDITED, parent_ids=("guide",)),
                ),
            )
        )
        router.get("/v1/blocks/guide/children", name="guide_children").mock(
            return_value=httpx.Response(
                200, json=listing(block("intro"), block("toggle-1", "toggle", has_children=True))
            )
        )
        router.get("/v1/blocks/toggle-1/children", name="toggle_children").mock(
            return_value=httpx.Response(200, json=listing(block("hidden-text")))
        )
        router.get("/v1/blocks/setup/children", name="setup_children").mock(
            return_value=httpx.Response(200, json=listing(block("faq", "child_page", title="FAQ")))
        )
        router.get("/v1/blocks/faq/children", name="faq_children").mock(
            return_value=httpx.Response(200, json=listing())
        )
        router.get("/v1/pages/faq", name="faq_page").mock(
            return_value=httpx.Response(200, json=raw_subpage("faq"))
        )
        yield router
