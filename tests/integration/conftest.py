"""Per-test SQLite stores for integration tests."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio

from nexus_forge.store import SqliteIndexStore


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path) -> AsyncGenerator[SqliteIndexStore, None]:
    """Per-test store so each event loop gets its own connection pool."""
    repo = tmp_path / "store-repo"
    repo.mkdir()
    store = SqliteIndexStore.for_repository(repo)
    await store.ensure_ready()
    yield store
    await store.dispose()
