from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from watchfiles import Change, awatch

from nexus_forge.core.discovery import DEFAULT_EXCLUDE_PATTERNS, is_excluded
from nexus_forge.core.languages import is_supported_path

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 500


def is_relevant_change(root: Path, path: Path, exclude_patterns: tuple[str, ...]) -> bool:
    """A change matters when it touches an indexable, non-hidden, non-excluded source file."""
    try:
        relative = path.relative_to(root)
    except ValueError:
        return False
    if any(part.startswith(".") for part in relative.parts):
        return False
    if not is_supported_path(path):
        return False
    return not is_excluded(relative.as_posix(), exclude_patterns)


class WatchfilesWatcher:
    """Watch a repository for source-file changes and trigger a callback.

    Implements the ``FileWatcherPort`` protocol. Changes are batched by
    ``awatch``'s debounce window, so one burst of saves triggers one callback.
    """

    def __init__(
        self,
        directory: str | Path,
        on_change: Callable[[set[Path]], Coroutine[Any, Any, None]],
        exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ) -> None:
        self._directory = Path(directory).resolve()
        self._on_change = on_change
        self._exclude_patterns = exclude_patterns
        self._debounce_ms = debounce_ms
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._watch())
        logger.info("Watcher started for %s", self._directory)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Watcher stopped for %s", self._directory)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def _filter(self, change: Change, path: str) -> bool:
        return is_relevant_change(self._directory, Path(path), self._exclude_patterns)

    async def _watch(self) -> None:
        async for changes in awatch(self._directory, watch_filter=self._filter, debounce=self._debounce_ms):
            paths = {Path(p) for change, p in changes if self._filter(change, p)}
            if paths:
                logger.info("Detected changes in %d file(s)", len(paths))
                try:
                    await self._on_change(paths)
                except Exception:
                    logger.exception("Error in watcher callback")
