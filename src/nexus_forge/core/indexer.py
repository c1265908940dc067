import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import numpy.typing as npt

from nexus_forge.core.chunker import DEFAULT_MIN_NESTED_LINES, chunk
from nexus_forge.core.discovery import DEFAULT_EXCLUDE_PATTERNS, detect_delta, discover_files
from nexus_forge.core.embedder import Embedder, document_text
from nexus_forge.core.parser import parse_source, read_source
from nexus_forge.core.ports.store import IndexStore
from nexus_forge.errors import FatalParseError, RecoverableSyntaxError
from nexus_forge.models import Chunk, FileRecord, FileStatus, IndexProblem, IndexStats
from nexus_forge.store.ann import build_ann, remove_ann
from nexus_forge.store.helpers import (
    META_DIMENSION,
    META_EMBEDDER,
    META_GENERATION,
    META_INDEXED_AT,
    META_SCHEMA_VERSION,
    SCHEMA_VERSION,
    index_dir,
)
from nexus_forge.store.lock import IndexLock

logger = logging.getLogger(__name__)

DEFAULT_EXACT_SEARCH_THRESHOLD = 20_000
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

ProgressCallback = Callable[[str, int, int], None]


def default_workers() -> int:
    return min(8, os.cpu_count() or 1)


@dataclass(frozen=True)
class IndexOptions:
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    max_file_size: int | None = DEFAULT_MAX_FILE_SIZE
    workers: int = field(default_factory=default_workers)
    min_nested_lines: int = DEFAULT_MIN_NESTED_LINES
    exact_search_threshold: int = DEFAULT_EXACT_SEARCH_THRESHOLD


@dataclass
class _FileResult:
    record: FileRecord
    chunks: list[Chunk] = field(default_factory=list)
    vectors: npt.NDArray[np.float32] | None = None
    problem: IndexProblem | None = None
    fatal: bool = False


def embedder_id(embedder: Embedder) -> str:
    return f"{embedder.name}:{embedder.dimension}"


class Indexer:
    """Incrementally index one repository into an ``IndexStore``.

    Files are parsed, chunked and embedded in a bounded worker pool; the
    results are written by a single writer, one store transaction per file.
    """

    def __init__(self, store: IndexStore, embedder: Embedder, options: IndexOptions | None = None) -> None:
        self.store = store
        self.embedder = embedder
        self.options = options or IndexOptions()

    async def index(self, root: Path, force: bool = False, progress: ProgressCallback | None = None) -> IndexStats:
        root = root.resolve()
        started = time.perf_counter()
        with IndexLock(index_dir(root)):
            stats = await self._index_locked(root, force, progress)
        stats.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "index %s: %d scanned, %d indexed, %d unchanged, %d removed, %d chunks written (%d ms)",
            root,
            stats.files_scanned,
            stats.files_indexed,
            stats.files_unchanged,
            stats.files_removed,
            stats.chunks_written,
            stats.duration_ms,
        )
        return stats

    def _needs_rebuild(self, meta: dict[str, str]) -> bool:
        if meta.get(META_SCHEMA_VERSION, SCHEMA_VERSION) != SCHEMA_VERSION:
            return True
        stored = meta.get(META_EMBEDDER)
        if stored is not None and stored != embedder_id(self.embedder):
            logger.warning("Embedder changed (%s -> %s), rebuilding index", stored, embedder_id(self.embedder))
            return True
        return False

    async def _index_locked(self, root: Path, force: bool, progress: ProgressCallback | None) -> IndexStats:
        await self.store.ensure_ready()
        meta = await self.store.get_meta()
        generation = int(meta.get(META_GENERATION, "0"))
        full_rebuild = force or self._needs_rebuild(meta)
        if full_rebuild:
            await self.store.clear()
            previous: dict[str, FileRecord] = {}
        else:
            previous = await self.store.list_files()

        discovery = await asyncio.to_thread(
            discover_files,
            root,
            self.options.exclude_patterns,
            self.options.max_file_size,
            previous,
        )
        delta = detect_delta(previous, discovery.records)
        current = {record.path: record for record in discovery.records}
        stats = IndexStats(
            files_scanned=len(discovery.records),
            files_unchanged=len(delta.unchanged),
            full_rebuild=full_rebuild,
        )
        for path in discovery.unreadable:
            stats.fatal_errors += 1
            stats.problems.append(IndexProblem(path=path, kind=FatalParseError.kind, message="unreadable"))
        for path in discovery.skipped_too_large:
            stats.problems.append(IndexProblem(path=path, kind="skipped", message="larger than max_file_size"))

        for path in delta.unchanged:
            known, seen = previous[path], current[path]
            if (known.size, known.mtime_ns) != (seen.size, seen.mtime_ns):
                await self.store.update_file_record(seen)

        for path in delta.removed:
            stats.chunks_removed += await self.store.remove_file(path)
            stats.files_removed += 1

        to_index = delta.to_index
        semaphore = asyncio.Semaphore(max(1, self.options.workers))

        async def _produce(record: FileRecord) -> _FileResult:
            async with semaphore:
                return await asyncio.to_thread(self._process_file, root, record)

        tasks = [asyncio.create_task(_produce(current[path])) for path in to_index]
        try:
            for done, next_result in enumerate(asyncio.as_completed(tasks), start=1):
                result = await next_result
                await self._write(result, previous, stats)
                if progress is not None:
                    progress(result.record.path, done, len(tasks))
        finally:
            for task in tasks:
                task.cancel()

        changed = full_rebuild or bool(to_index) or bool(delta.removed)
        if changed:
            generation += 1
            await self.store.set_meta(
                {
                    META_GENERATION: str(generation),
                    META_EMBEDDER: embedder_id(self.embedder),
                    META_DIMENSION: str(self.embedder.dimension),
                    META_INDEXED_AT: datetime.now(timezone.utc).isoformat(),
                }
            )
            await self._refresh_ann(root, generation)
        return stats

    def _process_file(self, root: Path, record: FileRecord) -> _FileResult:
        try:
            source = read_source(root / record.path, root, record.language or None)
            tree = parse_source(source)
        except FatalParseError as exc:
            logger.warning("Skipping %s: %s", record.path, exc)
            return _FileResult(
                record=record,
                problem=IndexProblem(path=record.path, kind=exc.kind, message=str(exc)),
                fatal=True,
            )

        if source.content_hash != record.content_hash:
            record = record.model_copy(
                update={"content_hash": source.content_hash, "size": len(source.content), "mtime_ns": source.mtime_ns}
            )

        chunks = chunk(tree, self.options.min_nested_lines)
        vectors = self.embedder.embed([document_text(c) for c in chunks])
        problem = None
        status = FileStatus.OK
        if tree.error_count:
            recoverable = RecoverableSyntaxError(record.path, tree.error_count)
            problem = IndexProblem(path=record.path, kind=recoverable.kind, message=str(recoverable))
            status = FileStatus.RECOVERABLE
        return _FileResult(
            record=record.model_copy(update={"status": status, "chunk_count": len(chunks)}),
            chunks=chunks,
            vectors=vectors,
            problem=problem,
        )

    async def _write(self, result: _FileResult, previous: dict[str, FileRecord], stats: IndexStats) -> None:
        if result.problem is not None:
            stats.problems.append(result.problem)
        if result.fatal:
            stats.fatal_errors += 1
            if result.record.path in previous:
                stats.chunks_removed += await self.store.remove_file(result.record.path)
            return
        if result.record.status is FileStatus.RECOVERABLE:
            stats.recoverable_errors += 1

        vectors = result.vectors
        if vectors is None:
            vectors = np.zeros((0, self.embedder.dimension), dtype=np.float32)
        stats.chunks_removed += await self.store.replace_file(result.record, result.chunks, vectors)
        stats.chunks_written += len(result.chunks)
        stats.files_indexed += 1

    async def _refresh_ann(self, root: Path, generation: int) -> None:
        ann_dir = index_dir(root)
        count = await self.store.count_entries()
        if count <= self.options.exact_search_threshold:
            remove_ann(ann_dir)
            return
        table = await self.store.load_vectors()
        await asyncio.to_thread(build_ann, table, ann_dir, generation, embedder_id(self.embedder))
