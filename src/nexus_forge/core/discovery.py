"""Deterministic source discovery and incremental change detection."""

import fnmatch
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from nexus_forge.core.languages import detect_language_from_path, is_supported_path
from nexus_forge.models import FileRecord

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    "node_modules",
    ".git",
    "target",
    "build",
    "dist",
    "vendor",
    "__pycache__",
    "*.lock",
)

_HASH_BLOCK_SIZE = 1 << 16


@dataclass(frozen=True)
class IndexDelta:
    added: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    @property
    def to_index(self) -> tuple[str, ...]:
        return tuple(sorted(self.added + self.changed))


@dataclass
class DiscoveryResult:
    records: list[FileRecord] = field(default_factory=list)
    skipped_too_large: list[str] = field(default_factory=list)
    unreadable: list[str] = field(default_factory=list)
    reused_hashes: int = 0


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(_HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def is_excluded(relative_path: str, patterns: tuple[str, ...]) -> bool:
    """Match ``patterns`` against the whole relative path and each of its components."""
    parts = relative_path.split("/")
    for pattern in patterns:
        if fnmatch.fnmatch(relative_path, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def discover_files(
    root: Path,
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS,
    max_file_size: int | None = None,
    previous: dict[str, FileRecord] | None = None,
) -> DiscoveryResult:
    """Walk ``root`` and return one record per indexable file, sorted by path.

    Hidden directories and files are skipped. When ``previous`` holds a record
    with the same size and mtime, its content hash is reused instead of
    re-reading the file.
    """
    result = DiscoveryResult()
    prior = previous or {}
    root = root.resolve()

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir + "/"
        dirnames[:] = sorted(
            name for name in dirnames if not name.startswith(".") and not is_excluded(rel_dir + name, exclude_patterns)
        )
        for name in sorted(filenames):
            rel_path = rel_dir + name
            full_path = current / name
            if name.startswith(".") or not is_supported_path(full_path):
                continue
            if is_excluded(rel_path, exclude_patterns):
                continue
            try:
                stat = full_path.stat()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", rel_path, exc)
                result.unreadable.append(rel_path)
                continue
            if max_file_size is not None and stat.st_size > max_file_size:
                result.skipped_too_large.append(rel_path)
                continue

            known = prior.get(rel_path)
            if known is not None and known.size == stat.st_size and known.mtime_ns == stat.st_mtime_ns:
                content_hash = known.content_hash
                result.reused_hashes += 1
            else:
                try:
                    content_hash = sha256_file(full_path)
                except OSError as exc:
                    logger.warning("Cannot read %s: %s", rel_path, exc)
                    result.unreadable.append(rel_path)
                    continue

            result.records.append(
                FileRecord(
                    path=rel_path,
                    size=stat.st_size,
                    mtime_ns=stat.st_mtime_ns,
                    content_hash=content_hash,
                    language=detect_language_from_path(full_path),
                )
            )

    result.records.sort(key=lambda record: record.path)
    return result


def detect_delta(previous: dict[str, FileRecord], current: list[FileRecord]) -> IndexDelta:
    current_by_path = {record.path: record for record in current}
    previous_paths = set(previous)
    current_paths = set(current_by_path)

    changed: list[str] = []
    unchanged: list[str] = []
    for path in sorted(previous_paths & current_paths):
        if previous[path].content_hash == current_by_path[path].content_hash:
            unchanged.append(path)
        else:
            changed.append(path)

    return IndexDelta(
        added=tuple(sorted(current_paths - previous_paths)),
        changed=tuple(changed),
        unchanged=tuple(unchanged),
        removed=tuple(sorted(previous_paths - current_paths)),
    )
