from pathlib import Path

import numpy as np
import numpy.typing as npt

INDEX_DIR_NAME = ".nexus"
INDEX_DB_NAME = "index.db"
SCHEMA_VERSION = "1"

META_SCHEMA_VERSION = "schema_version"
META_EMBEDDER = "embedder"
META_DIMENSION = "dimension"
META_GENERATION = "generation"
META_INDEXED_AT = "indexed_at"


def index_dir(repo_root: Path) -> Path:
    return repo_root.resolve() / INDEX_DIR_NAME


def index_db_path(repo_root: Path) -> Path:
    return index_dir(repo_root) / INDEX_DB_NAME


def vector_to_bytes(vector: npt.NDArray[np.float32]) -> bytes:
    return np.ascontiguousarray(vector, dtype=np.float32).tobytes()


def vector_from_bytes(raw: bytes) -> npt.NDArray[np.float32]:
    return np.frombuffer(raw, dtype=np.float32).copy()


def stack_vectors(raw_vectors: list[bytes]) -> npt.NDArray[np.float32]:
    """Decode equally sized float32 blobs into one ``(n, dim)`` matrix.

    Raises ``ValueError`` when the blobs disagree on their length.
    """
    if not raw_vectors:
        return np.zeros((0, 0), dtype=np.float32)
    width = len(raw_vectors[0])
    if any(len(raw) != width for raw in raw_vectors):
        raise ValueError("Stored vectors have inconsistent dimensions")
    return np.frombuffer(b"".join(raw_vectors), dtype=np.float32).reshape(len(raw_vectors), -1).copy()
