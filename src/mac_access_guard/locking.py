from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import LockTimeout

logger = logging.getLogger(__name__)


class ThreadLock:
    """In-process exclusive lock with a bounded wait."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._lock = threading.Lock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            logger.warning("Timed out after %.2fs waiting for store lock", self.timeout)
            raise LockTimeout(f"Could not acquire store lock within {self.timeout:g}s")
        try:
            yield
        finally:
            self._lock.release()


class FileLock:
    """
    Cross-process exclusive lock backed by a lock file created with O_EXCL.

    The owning pid is written into the file. A lock file older than
    `stale_after` seconds is treated as abandoned by a crashed process and
    removed. Threads of one process are serialized through an internal mutex
    first, so the lock file only ever arbitrates between processes.
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = 5.0,
        poll_interval: float = 0.01,
        stale_after: float | None = 30.0,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self._mutex = threading.Lock()

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
        finally:
            os.close(fd)
        return True

    def _break_if_stale(self) -> None:
        if self.stale_after is None:
            return
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_after:
            logger.warning("Removing stale lock file %s (age %.1fs)", self.path, age)
            self.path.unlink(missing_ok=True)

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self._mutex.acquire(timeout=self.timeout):
            logger.warning("Timed out after %.2fs waiting for store lock", self.timeout)
            raise LockTimeout(f"Could not acquire store lock within {self.timeout:g}s")

        while True:
            if self._try_create():
                return
            self._break_if_stale()
            if time.monotonic() >= deadline:
                self._mutex.release()
                logger.warning("Timed out after %.2fs waiting for lock file %s", self.timeout, self.path)
                raise LockTimeout(f"Could not acquire database lock {self.path} within {self.timeout:g}s")
            time.sleep(self.poll_interval)

    def release(self) -> None:
        try:
            owner = self.path.read_text(encoding="ascii").strip()
            # another process may have broken our lock as stale and taken it
            if owner == str(os.getpid()):
                self.path.unlink(missing_ok=True)
            else:
                logger.warning("Lock file %s is now held by pid %s; leaving it in place", self.path, owner)
        except FileNotFoundError:
            logger.warning("Lock file %s vanished before release", self.path)
        finally:
            self._mutex.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
