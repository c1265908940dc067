"""Persisted FAISS sidecar for approximate search on large indexes.

The sidecar is an IVF inner-product index over the store's row ids, written
next to ``index.db`` as ``ann.faiss`` plus an ``ann.json`` descriptor that
pins the store generation it was built from. A stale or missing sidecar is
never used.
"""

import logging
import math
import os
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt
from pydantic import BaseModel, ValidationError

from nexus_forge.core.ports.store import VectorTable

logger = logging.getLogger(__name__)

ANN_INDEX_NAME = "ann.faiss"
ANN_META_NAME = "ann.json"

# FAISS wants roughly this many training points per inverted list.
_POINTS_PER_LIST = 39


class AnnMeta(BaseModel):
    generation: int
    count: int
    dimension: int
    nlist: int
    embedder: str


def choose_nlist(count: int) -> int:
    return max(1, min(int(4 * math.sqrt(count)), count // _POINTS_PER_LIST))


class AnnIndex:
    def __init__(self, index: Any, meta: AnnMeta) -> None:
        self._index = index
        self.meta = meta

    def search(self, query: npt.NDArray[np.float32], k: int, nprobe: int = 8) -> list[int]:
        """Return up to ``k`` candidate row ids for ``query``, best first."""
        self._index.nprobe = max(1, min(nprobe, self.meta.nlist))
        matrix = np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32)
        _scores, ids = self._index.search(matrix, k)
        return [int(row_id) for row_id in ids[0] if row_id >= 0]


def _atomic_write_bytes(path: Path, payload: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(payload)
    os.replace(tmp, path)


def build_ann(table: VectorTable, directory: Path, generation: int, embedder: str) -> AnnMeta:
    import faiss

    vectors = np.ascontiguousarray(table.vectors, dtype=np.float32)
    count, dimension = vectors.shape
    nlist = choose_nlist(count)
    quantizer = faiss.IndexFlatIP(dimension)
    index = faiss.IndexIVFFlat(quantizer, dimension, nlist, faiss.METRIC_INNER_PRODUCT)
    index.train(vectors)
    index.add_with_ids(vectors, np.ascontiguousarray(table.row_ids, dtype=np.int64))

    meta = AnnMeta(generation=generation, count=count, dimension=dimension, nlist=nlist, embedder=embedder)
    directory.mkdir(parents=True, exist_ok=True)
    _atomic_write_bytes(directory / ANN_INDEX_NAME, faiss.serialize_index(index).tobytes())
    _atomic_write_bytes(directory / ANN_META_NAME, meta.model_dump_json().encode("utf-8"))
    logger.info("Built ANN sidecar: %d vectors, nlist=%d, generation=%d", count, nlist, generation)
    return meta


def load_ann(directory: Path, generation: int, embedder: str) -> AnnIndex | None:
    meta_path = directory / ANN_META_NAME
    index_path = directory / ANN_INDEX_NAME
    if not meta_path.exists() or not index_path.exists():
        return None
    try:
        meta = AnnMeta.model_validate_json(meta_path.read_bytes())
    except (OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable ANN descriptor %s: %s", meta_path, exc)
        return None
    if meta.generation != generation or meta.embedder != embedder:
        logger.debug("ANN sidecar is stale (generation %d, store %d)", meta.generation, generation)
        return None

    import faiss

    try:
        index = faiss.deserialize_index(np.frombuffer(index_path.read_bytes(), dtype=np.uint8))
    except (OSError, RuntimeError) as exc:
        logger.warning("Ignoring unreadable ANN index %s: %s", index_path, exc)
        return None
    return AnnIndex(index, meta)


def remove_ann(directory: Path) -> None:
    for name in (ANN_INDEX_NAME, ANN_META_NAME):
        (directory / name).unlink(missing_ok=True)
