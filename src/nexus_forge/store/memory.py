from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from nexus_forge.core.ports.store import StoredEntry, VectorTable
from nexus_forge.models import Chunk, FileRecord
from nexus_forge.store.helpers import META_SCHEMA_VERSION, SCHEMA_VERSION


@dataclass(frozen=True)
class InMemoryEntry:
    row_id: int
    chunk: Chunk
    vector: npt.NDArray[np.float32]


class InMemoryIndexStore:
    def __init__(self) -> None:
        self.files: dict[str, FileRecord] = {}
        self.entries: dict[int, InMemoryEntry] = {}
        self.entries_by_path: dict[str, list[int]] = {}
        self.meta: dict[str, str] = {META_SCHEMA_VERSION: SCHEMA_VERSION}
        self.transactions = 0
        self._next_row_id = 1

    async def ensure_ready(self) -> None:
        pass

    async def get_meta(self) -> dict[str, str]:
        return dict(self.meta)

    async def set_meta(self, values: dict[str, str]) -> None:
        self.meta.update(values)

    async def list_files(self) -> dict[str, FileRecord]:
        return dict(self.files)

    async def replace_file(self, record: FileRecord, chunks: list[Chunk], vectors: npt.NDArray[np.float32]) -> int:
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors for {record.path}")
        removed = self._drop_entries(record.path)
        row_ids: list[int] = []
        for chunk, vector in zip(chunks, vectors, strict=True):
            row_id = self._next_row_id
            self._next_row_id += 1
            self.entries[row_id] = InMemoryEntry(row_id=row_id, chunk=chunk, vector=np.array(vector, dtype=np.float32))
            row_ids.append(row_id)
        self.entries_by_path[record.path] = row_ids
        self.files[record.path] = record.model_copy(update={"chunk_count": len(chunks)})
        self.transactions += 1
        return removed

    async def update_file_record(self, record: FileRecord) -> None:
        existing = self.files.get(record.path)
        if existing is not None:
            self.files[record.path] = existing.model_copy(update={"size": record.size, "mtime_ns": record.mtime_ns})

    async def remove_file(self, path: str) -> int:
        removed = self._drop_entries(path)
        self.files.pop(path, None)
        self.transactions += 1
        return removed

    async def clear(self) -> None:
        self.files.clear()
        self.entries.clear()
        self.entries_by_path.clear()
        self.meta = {META_SCHEMA_VERSION: self.meta.get(META_SCHEMA_VERSION, SCHEMA_VERSION)}

    async def count_entries(self) -> int:
        return len(self.entries)

    async def load_vectors(self) -> VectorTable:
        ordered = [self.entries[row_id] for row_id in sorted(self.entries)]
        vectors = np.stack([e.vector for e in ordered]) if ordered else np.zeros((0, 0), dtype=np.float32)
        return VectorTable(
            row_ids=np.array([e.row_id for e in ordered], dtype=np.int64),
            chunk_ids=[e.chunk.id for e in ordered],
            paths=[e.chunk.path for e in ordered],
            kinds=[e.chunk.kind.value for e in ordered],
            vectors=vectors,
        )

    async def fetch_entries(self, row_ids: list[int]) -> list[StoredEntry]:
        return [
            StoredEntry(row_id=row_id, chunk=self.entries[row_id].chunk, vector=self.entries[row_id].vector)
            for row_id in row_ids
            if row_id in self.entries
        ]

    async def select_entries(self, select: Callable[[VectorTable], list[int]]) -> list[StoredEntry]:
        table = await self.load_vectors()
        row_ids = select(table) if len(table) else []
        return await self.fetch_entries(row_ids)

    async def ping(self) -> bool:
        return True

    async def dispose(self) -> None:
        pass

    def _drop_entries(self, path: str) -> int:
        row_ids = self.entries_by_path.pop(path, [])
        for row_id in row_ids:
            self.entries.pop(row_id, None)
        return len(row_ids)
