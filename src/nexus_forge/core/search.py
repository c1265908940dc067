"""Similarity search over an index store.

Scores are cosine similarities between non-negative unit vectors, so they lie
in ``[0, 1]``. Up to ``exact_search_threshold`` entries every vector is scored
(exact top-k). Above it a persisted FAISS IVF sidecar proposes candidates that
are re-scored exactly; a missing or stale sidecar falls back to the exact scan.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import numpy.typing as npt

from nexus_forge.core.embedder import Embedder
from nexus_forge.core.indexer import DEFAULT_EXACT_SEARCH_THRESHOLD, embedder_id
from nexus_forge.core.ports.store import IndexStore, StoredEntry, VectorTable
from nexus_forge.errors import IndexingError, MalformedQueryError, StoreUnavailableError
from nexus_forge.models import ChunkKind, SearchHit
from nexus_forge.store.ann import load_ann
from nexus_forge.store.helpers import META_GENERATION

logger = logging.getLogger(__name__)

SNIPPET_LINES = 8


def use_approximate(entry_count: int, threshold: int) -> bool:
    """Exact scoring is guaranteed for indexes of at most ``threshold`` entries."""
    return entry_count > threshold


def candidate_count(limit: int, factor: int = 8, floor: int = 64) -> int:
    return max(limit * factor, floor)


@dataclass(frozen=True)
class SearchOptions:
    exact_search_threshold: int = DEFAULT_EXACT_SEARCH_THRESHOLD
    nprobe: int = 8
    candidate_factor: int = 8
    min_candidates: int = 64


def _snippet(text: str) -> str:
    return "\n".join(text.splitlines()[:SNIPPET_LINES])


def _to_hit(entry: StoredEntry, score: float) -> SearchHit:
    c = entry.chunk
    return SearchHit(
        chunk_id=c.id,
        symbol=c.symbol,
        kind=c.kind,
        path=c.path,
        language=c.language,
        start_byte=c.start_byte,
        end_byte=c.end_byte,
        start_line=c.start_line,
        end_line=c.end_line,
        parent_id=c.parent_id,
        snippet=_snippet(c.text),
        score=min(1.0, max(0.0, score)),
    )


def rank(scores: npt.NDArray[np.float32], chunk_ids: list[str], limit: int) -> list[int]:
    """Positions of the best ``limit`` positive scores, ties broken by ascending chunk id."""
    positive = np.flatnonzero(scores > 0.0)
    if positive.size == 0:
        return []
    ids = np.array([chunk_ids[i] for i in positive])
    order = np.lexsort((ids, -scores[positive]))
    return [int(positive[i]) for i in order[:limit]]


class SemanticSearch:
    def __init__(
        self,
        store: IndexStore,
        embedder: Embedder,
        options: SearchOptions | None = None,
        ann_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.options = options or SearchOptions()
        self.ann_dir = ann_dir

    async def query(
        self,
        text: str,
        limit: int = 10,
        path_prefix: str | None = None,
        kinds: Iterable[ChunkKind] | None = None,
    ) -> list[SearchHit]:
        try:
            count = await self.store.count_entries()
        except IndexingError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if count == 0 or limit <= 0:
            return []

        if not text.strip():
            raise MalformedQueryError("Query is empty")
        query_vector = self.embedder.embed([text])[0]
        if not np.any(query_vector):
            raise MalformedQueryError(f"Query {text!r} contains no searchable terms")

        kind_values = {ChunkKind(k).value for k in kinds} if kinds else None
        try:
            if use_approximate(count, self.options.exact_search_threshold):
                hits = await self._approximate(query_vector, limit, path_prefix, kind_values)
                if hits is not None:
                    return hits
            return await self._exact(query_vector, limit, path_prefix, kind_values)
        except IndexingError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def _exact(
        self,
        query_vector: npt.NDArray[np.float32],
        limit: int,
        path_prefix: str | None,
        kind_values: set[str] | None,
    ) -> list[SearchHit]:
        scores_by_row: dict[int, float] = {}

        def _select(table: VectorTable) -> list[int]:
            scores = table.vectors @ query_vector
            if path_prefix or kind_values:
                mask = np.array(
                    [
                        (not path_prefix or path.startswith(path_prefix)) and (not kind_values or kind in kind_values)
                        for path, kind in zip(table.paths, table.kinds, strict=True)
                    ]
                )
                scores = np.where(mask, scores, 0.0).astype(np.float32)
            for i in rank(scores, table.chunk_ids, limit):
                scores_by_row[int(table.row_ids[i])] = float(scores[i])
            return list(scores_by_row)

        entries = await self.store.select_entries(_select)
        return [_to_hit(entry, scores_by_row[entry.row_id]) for entry in entries]

    async def _approximate(
        self,
        query_vector: npt.NDArray[np.float32],
        limit: int,
        path_prefix: str | None,
        kind_values: set[str] | None,
    ) -> list[SearchHit] | None:
        if self.ann_dir is None:
            return None
        meta = await self.store.get_meta()
        ann = load_ann(self.ann_dir, int(meta.get(META_GENERATION, "0")), embedder_id(self.embedder))
        if ann is None:
            logger.warning("ANN sidecar missing or stale; falling back to exact search")
            return None

        k = candidate_count(limit, self.options.candidate_factor, self.options.min_candidates)
        candidates = await self.store.fetch_entries(ann.search(query_vector, k, self.options.nprobe))
        candidates = [
            entry
            for entry in candidates
            if (not path_prefix or entry.chunk.path.startswith(path_prefix))
            and (not kind_values or entry.chunk.kind.value in kind_values)
        ]
        if not candidates:
            return []
        scores = np.array([float(entry.vector @ query_vector) for entry in candidates], dtype=np.float32)
        positions = rank(scores, [entry.chunk.id for entry in candidates], limit)
        return [_to_hit(candidates[i], float(scores[i])) for i in positions]
