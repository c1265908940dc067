"""Tests for per-repository index locking."""

import os
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from nexus_forge.errors import ConcurrentIndexError, IndexIOError
from nexus_forge.store.lock import EMPTY_LOCK_GRACE_SECONDS, LOCK_FILE_NAME, IndexLock


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def test_lock_file_holds_pid_and_is_removed_on_release(tmp_path: Path) -> None:
    lock = IndexLock(tmp_path / ".nexus")
    with lock:
        assert (tmp_path / ".nexus" / LOCK_FILE_NAME).read_text().strip() == str(os.getpid())
    assert not (tmp_path / ".nexus" / LOCK_FILE_NAME).exists()


def test_second_lock_in_same_process_is_rejected(tmp_path: Path) -> None:
    with IndexLock(tmp_path):
        with pytest.raises(ConcurrentIndexError):
            IndexLock(tmp_path).acquire()
    # Released: can be taken again.
    with IndexLock(tmp_path):
        pass


def test_lock_held_by_live_process_is_rejected(tmp_path: Path) -> None:
    owner = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        (tmp_path / LOCK_FILE_NAME).write_text(f"{owner.pid}\n")
        with pytest.raises(ConcurrentIndexError, match="locked by pid"):
            IndexLock(tmp_path).acquire()
    finally:
        owner.kill()
        owner.wait()
    assert (tmp_path / LOCK_FILE_NAME).exists()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    (tmp_path / LOCK_FILE_NAME).write_text(f"{_dead_pid()}\n")
    with IndexLock(tmp_path):
        assert (tmp_path / LOCK_FILE_NAME).read_text().strip() == str(os.getpid())


def test_garbage_lock_is_reclaimed(tmp_path: Path) -> None:
    (tmp_path / LOCK_FILE_NAME).write_text("not-a-pid")
    with IndexLock(tmp_path):
        pass


def test_release_without_acquire_is_noop(tmp_path: Path) -> None:
    IndexLock(tmp_path).release()


def test_fresh_empty_lock_is_treated_as_held(tmp_path: Path) -> None:
    (tmp_path / LOCK_FILE_NAME).write_text("")
    with pytest.raises(ConcurrentIndexError, match="pid \\?"):
        IndexLock(tmp_path).acquire()


def test_abandoned_empty_lock_is_reclaimed(tmp_path: Path) -> None:
    lock_file = tmp_path / LOCK_FILE_NAME
    lock_file.write_text("")
    old = time.time() - EMPTY_LOCK_GRACE_SECONDS - 60
    os.utime(lock_file, (old, old))

    with IndexLock(tmp_path):
        assert lock_file.read_text().strip() == str(os.getpid())


def test_failed_pid_write_removes_lock_file(tmp_path: Path) -> None:
    with patch("nexus_forge.store.lock.os.write", side_effect=OSError("disk full")):
        with pytest.raises(IndexIOError, match="disk full"):
            IndexLock(tmp_path).acquire()

    assert not (tmp_path / LOCK_FILE_NAME).exists()
    with IndexLock(tmp_path):
        pass
