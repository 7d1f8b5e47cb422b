"""Shared test fixtures for the contentmirror test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import pytest

from contentmirror.cache import FetchCache
from contentmirror.store import CacheStore
from tests.helpers import FakeContentApi

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@pytest.fixture()
def fake_api() -> FakeContentApi:
    return FakeContentApi()


@pytest.fixture()
async def db() -> AsyncGenerator[aiosqlite.Connection, None]:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def store(db: aiosqlite.Connection) -> CacheStore:
    cache_store = CacheStore(db)
    await cache_store.init_db()
    return cache_store


@pytest.fixture()
def cache(fake_api: FakeContentApi, store: CacheStore) -> FetchCache:
    """FetchCache over the fake API, mirrored to an in-memory database."""
    return FetchCache(fake_api, store)
