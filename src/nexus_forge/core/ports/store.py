from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import numpy.typing as npt

from nexus_forge.models import Chunk, FileRecord


@dataclass(frozen=True)
class StoredEntry:
    row_id: int
    chunk: Chunk
    vector: npt.NDArray[np.float32]


@dataclass(frozen=True)
class VectorTable:
    """Column view over every live entry, ordered by row id."""

    row_ids: npt.NDArray[np.int64]
    chunk_ids: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    kinds: list[str] = field(default_factory=list)
    vectors: npt.NDArray[np.float32] = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float32))

    def __len__(self) -> int:
        return len(self.chunk_ids)


class IndexStore(Protocol):
    async def ensure_ready(self) -> None: ...

    async def get_meta(self) -> dict[str, str]: ...

    async def set_meta(self, values: dict[str, str]) -> None: ...

    async def list_files(self) -> dict[str, FileRecord]: ...

    async def replace_file(
        self, record: FileRecord, chunks: list[Chunk], vectors: npt.NDArray[np.float32]
    ) -> int: ...

    async def update_file_record(self, record: FileRecord) -> None: ...

    async def remove_file(self, path: str) -> int: ...

    async def clear(self) -> None: ...

    async def count_entries(self) -> int: ...

    async def load_vectors(self) -> VectorTable: ...

    async def fetch_entries(self, row_ids: list[int]) -> list[StoredEntry]: ...

    async def select_entries(self, select: Callable[[VectorTable], list[int]]) -> list[StoredEntry]: ...

    async def ping(self) -> bool: ...

    async def dispose(self) -> None: ...
