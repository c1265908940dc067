import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt
from sqlalchemy import bindparam, text
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from nexus_forge.core.ports.store import StoredEntry, VectorTable
from nexus_forge.errors import CorruptIndexError, IndexIOError, StoreUnavailableError
from nexus_forge.models import Chunk, ChunkKind, FileRecord, FileStatus
from nexus_forge.store.engine import get_engine
from nexus_forge.store.helpers import (
    META_SCHEMA_VERSION,
    SCHEMA_VERSION,
    index_db_path,
    stack_vectors,
    vector_from_bytes,
    vector_to_bytes,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS files (
        path TEXT PRIMARY KEY,
        size INTEGER NOT NULL,
        mtime_ns INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        language TEXT NOT NULL,
        chunk_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'ok'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        row_id INTEGER PRIMARY KEY AUTOINCREMENT,
        chunk_id TEXT NOT NULL UNIQUE,
        path TEXT NOT NULL REFERENCES files(path) ON DELETE CASCADE,
        symbol TEXT NOT NULL,
        kind TEXT NOT NULL,
        language TEXT NOT NULL,
        start_byte INTEGER NOT NULL,
        end_byte INTEGER NOT NULL,
        start_line INTEGER NOT NULL,
        end_line INTEGER NOT NULL,
        parent_id TEXT,
        text TEXT NOT NULL,
        vector BLOB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entries_path ON entries(path)",
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

_ENTRY_COLUMNS = (
    "row_id, chunk_id, path, symbol, kind, language, start_byte, end_byte, "
    "start_line, end_line, parent_id, text, vector"
)


def _row_to_entry(row: Any) -> StoredEntry:
    chunk = Chunk(
        id=row.chunk_id,
        symbol=row.symbol,
        kind=ChunkKind(row.kind),
        text=row.text,
        path=row.path,
        start_byte=row.start_byte,
        end_byte=row.end_byte,
        start_line=row.start_line,
        end_line=row.end_line,
        language=row.language,
        parent_id=row.parent_id,
    )
    return StoredEntry(row_id=row.row_id, chunk=chunk, vector=vector_from_bytes(row.vector))


async def _read_vectors(conn: AsyncConnection) -> VectorTable:
    result = await conn.execute(text("SELECT row_id, chunk_id, path, kind, vector FROM entries ORDER BY row_id"))
    rows = result.fetchall()
    try:
        vectors = stack_vectors([row.vector for row in rows])
    except ValueError as exc:
        raise CorruptIndexError(str(exc)) from exc
    return VectorTable(
        row_ids=np.array([row.row_id for row in rows], dtype=np.int64),
        chunk_ids=[row.chunk_id for row in rows],
        paths=[row.path for row in rows],
        kinds=[row.kind for row in rows],
        vectors=vectors,
    )


async def _read_entries(conn: AsyncConnection, row_ids: list[int]) -> list[StoredEntry]:
    query = text(f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE row_id IN :row_ids").bindparams(
        bindparam("row_ids", expanding=True)
    )
    result = await conn.execute(query, {"row_ids": row_ids})
    by_id = {row.row_id: _row_to_entry(row) for row in result}
    return [by_id[row_id] for row_id in row_ids if row_id in by_id]


class SqliteIndexStore:
    """Index store persisted in ``<repo>/.nexus/index.db``.

    Every file is replaced inside one transaction, so concurrent readers on
    their own connections see either the old or the new entries of a file.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._ready = False

    @classmethod
    def for_repository(cls, repo_root: Path, create: bool = True) -> "SqliteIndexStore":
        db_path = index_db_path(repo_root)
        if not create and not db_path.exists():
            raise StoreUnavailableError(f"No index found at {db_path}")
        try:
            engine = get_engine(db_path)
        except OSError as exc:
            raise IndexIOError(f"Cannot create index directory for {db_path}: {exc}") from exc
        return cls(engine)

    async def ensure_ready(self) -> None:
        if self._ready:
            return
        try:
            async with self._engine.begin() as conn:
                for ddl in _SCHEMA:
                    await conn.execute(text(ddl))
                await conn.execute(
                    text("INSERT OR IGNORE INTO meta (key, value) VALUES (:key, :value)"),
                    {"key": META_SCHEMA_VERSION, "value": SCHEMA_VERSION},
                )
        except OperationalError as exc:
            raise IndexIOError(f"Cannot open index database: {exc.orig}") from exc
        except DatabaseError as exc:
            raise CorruptIndexError(f"Index database is unreadable: {exc.orig}") from exc
        self._ready = True

    async def get_meta(self) -> dict[str, str]:
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT key, value FROM meta"))
            return {row.key: row.value for row in result}

    async def set_meta(self, values: dict[str, str]) -> None:
        await self.ensure_ready()
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO meta (key, value) VALUES (:key, :value)
                    ON CONFLICT (key) DO UPDATE SET value = excluded.value
                    """
                ),
                [{"key": key, "value": value} for key, value in values.items()],
            )

    async def list_files(self) -> dict[str, FileRecord]:
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("SELECT path, size, mtime_ns, content_hash, language, chunk_count, status FROM files")
            )
            return {
                row.path: FileRecord(
                    path=row.path,
                    size=row.size,
                    mtime_ns=row.mtime_ns,
                    content_hash=row.content_hash,
                    language=row.language,
                    chunk_count=row.chunk_count,
                    status=FileStatus(row.status),
                )
                for row in result
            }

    async def replace_file(self, record: FileRecord, chunks: list[Chunk], vectors: npt.NDArray[np.float32]) -> int:
        """Delete the old entries of ``record.path`` and insert ``chunks`` in one transaction.

        Returns the number of entries removed.
        """
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors for {record.path}")
        await self.ensure_ready()
        async with self._engine.begin() as conn:
            removed = await conn.execute(text("DELETE FROM entries WHERE path = :path"), {"path": record.path})
            await conn.execute(
                text(
                    """
                    INSERT INTO files (path, size, mtime_ns, content_hash, language, chunk_count, status)
                    VALUES (:path, :size, :mtime_ns, :content_hash, :language, :chunk_count, :status)
                    ON CONFLICT (path) DO UPDATE SET
                        size = excluded.size,
                        mtime_ns = excluded.mtime_ns,
                        content_hash = excluded.content_hash,
                        language = excluded.language,
                        chunk_count = excluded.chunk_count,
                        status = excluded.status
                    """
                ),
                {**record.model_dump(), "chunk_count": len(chunks), "status": record.status.value},
            )
            if chunks:
                await conn.execute(
                    text(
                        """
                        INSERT INTO entries (
                            chunk_id, path, symbol, kind, language, start_byte, end_byte,
                            start_line, end_line, parent_id, text, vector
                        ) VALUES (
                            :chunk_id, :path, :symbol, :kind, :language, :start_byte, :end_byte,
                            :start_line, :end_line, :parent_id, :text, :vector
                        )
                        """
                    ),
                    [
                        {
                            "chunk_id": chunk.id,
                            "path": chunk.path,
                            "symbol": chunk.symbol,
                            "kind": chunk.kind.value,
                            "language": chunk.language,
                            "start_byte": chunk.start_byte,
                            "end_byte": chunk.end_byte,
                            "start_line": chunk.start_line,
                            "end_line": chunk.end_line,
                            "parent_id": chunk.parent_id,
                            "text": chunk.text,
                            "vector": vector_to_bytes(vector),
                        }
                        for chunk, vector in zip(chunks, vectors, strict=True)
                    ],
                )
        return removed.rowcount or 0

    async def update_file_record(self, record: FileRecord) -> None:
        await self.ensure_ready()
        async with self._engine.begin() as conn:
            await conn.execute(
                text("UPDATE files SET size = :size, mtime_ns = :mtime_ns WHERE path = :path"),
                {"path": record.path, "size": record.size, "mtime_ns": record.mtime_ns},
            )

    async def remove_file(self, path: str) -> int:
        await self.ensure_ready()
        async with self._engine.begin() as conn:
            removed = await conn.execute(text("DELETE FROM entries WHERE path = :path"), {"path": path})
            await conn.execute(text("DELETE FROM files WHERE path = :path"), {"path": path})
        return removed.rowcount or 0

    async def clear(self) -> None:
        await self.ensure_ready()
        async with self._engine.begin() as conn:
            await conn.execute(text("DELETE FROM entries"))
            await conn.execute(text("DELETE FROM files"))
            await conn.execute(text("DELETE FROM meta WHERE key != :key"), {"key": META_SCHEMA_VERSION})

    async def count_entries(self) -> int:
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT COUNT(*) FROM entries"))
            return int(result.scalar_one())

    async def load_vectors(self) -> VectorTable:
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            return await _read_vectors(conn)

    async def fetch_entries(self, row_ids: list[int]) -> list[StoredEntry]:
        if not row_ids:
            return []
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            return await _read_entries(conn, row_ids)

    async def select_entries(self, select: Callable[[VectorTable], list[int]]) -> list[StoredEntry]:
        """Run ``select`` over the vector table, then fetch the rows it picks.

        Both reads share one transaction, so a file replaced concurrently is
        seen either before or after its commit, never in between.
        """
        await self.ensure_ready()
        async with self._engine.connect() as conn:
            table = await _read_vectors(conn)
            row_ids = select(table) if len(table) else []
            if not row_ids:
                return []
            return await _read_entries(conn, row_ids)

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except DatabaseError:
            return False
        return True

    async def dispose(self) -> None:
        await self._engine.dispose()
