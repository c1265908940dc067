"""Per-repository exclusivity for index writers.

Two layers guard a destination: an in-process registry of active index
directories and an ``index.lock`` file created with ``O_CREAT | O_EXCL`` that
records the owner pid. A lock file whose pid is gone is reclaimed.
"""

import logging
import os
import threading
import time
from pathlib import Path
from types import TracebackType

from nexus_forge.errors import ConcurrentIndexError, IndexIOError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "index.lock"
# An empty lock file older than this was abandoned before its pid was written.
EMPTY_LOCK_GRACE_SECONDS = 5.0

_active: set[str] = set()
_active_guard = threading.Lock()


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class IndexLock:
    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.path = directory / LOCK_FILE_NAME
        self._key = str(directory.resolve())
        self._held = False

    def acquire(self) -> None:
        with _active_guard:
            if self._key in _active:
                raise ConcurrentIndexError(f"Index at {self.directory} is already being updated by this process")
            _active.add(self._key)
        try:
            self._create_lock_file()
        except BaseException:
            with _active_guard:
                _active.discard(self._key)
            raise
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        with _active_guard:
            _active.discard(self._key)
        self._held = False

    def _create_lock_file(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IndexIOError(f"Cannot create {self.directory}: {exc}") from exc

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._read_owner()
                if owner is None or (owner != os.getpid() and _pid_alive(owner)):
                    raise ConcurrentIndexError(
                        f"Index at {self.directory} is locked by pid {owner if owner is not None else '?'}"
                    ) from None
                logger.warning("Reclaiming stale index lock %s left by pid %s", self.path, owner)
                self.path.unlink(missing_ok=True)
                continue
            except OSError as exc:
                raise IndexIOError(f"Cannot create lock file {self.path}: {exc}") from exc
            try:
                os.write(fd, f"{os.getpid()}\n".encode())
            except OSError as exc:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise IndexIOError(f"Cannot write lock file {self.path}: {exc}") from exc
            os.close(fd)
            return
        raise ConcurrentIndexError(f"Index at {self.directory} is locked by another process")

    def _read_owner(self) -> int | None:
        """Return the recorded pid, ``-1`` for garbage or an abandoned empty file, ``None`` while the owner writes it."""
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return -1
        except OSError:
            return None
        if not raw:
            return -1 if age > EMPTY_LOCK_GRACE_SECONDS else None
        try:
            return int(raw)
        except ValueError:
            return -1

    def __enter__(self) -> "IndexLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
