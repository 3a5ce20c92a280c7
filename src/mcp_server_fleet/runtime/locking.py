"""
Locking primitives for the fleet manager.

- KeyedLocks: one re-entrant lock per key, created on demand. Used for
  per-pool scaling serialization inside a process.
- StoreLock / FileStoreLock: cross-process exclusive lock around the
  on-disk archive, so two fleet processes never interleave writes.
"""

import abc
try:
    import fcntl
except ImportError:
    fcntl = None

try:
    import msvcrt
except ImportError:
    msvcrt = None
import contextlib
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("fleet.locking")


class KeyedLocks:
    """Lazily-created RLock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._guard:
            return key in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class StoreLock(abc.ABC):
    """Interface for the archive lock so it can move off the local disk later."""

    @abc.abstractmethod
    def acquire(self, timeout: float = 5.0) -> bool:
        """Attempt to acquire the lock. Returns True if successful."""

    @abc.abstractmethod
    def release(self) -> None:
        """Release the lock."""

    @contextlib.contextmanager
    def section(self, timeout: float = 5.0):
        """Context manager for critical sections."""
        if not self.acquire(timeout):
            raise TimeoutError(f"Could not acquire lock on {self} after {timeout}s")
        try:
            yield
        finally:
            self.release()


class FileStoreLock(StoreLock):
    """Local implementation using `fcntl` (or `msvcrt` on Windows)."""

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None
        # Threads of one process share the OS-level lock, serialize them here
        self._thread_lock = threading.Lock()

    def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        if not self._thread_lock.acquire(timeout=timeout):
            return False
        self._file = open(self.lock_path, "a+")
        while True:
            try:
                if fcntl:
                    fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                elif msvcrt:
                    self._file.seek(0)
                    msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
                self._file.seek(0)
                self._file.truncate()
                self._file.write(str(os.getpid()))
                self._file.flush()
                return True
            except OSError:
                if time.monotonic() > deadline:
                    logger.warning(f"Timeout waiting for lock: {self.lock_path}")
                    self._close()
                    self._thread_lock.release()
                    return False
                time.sleep(0.05)

    def release(self) -> None:
        if self._file is None:
            return
        try:
            if fcntl:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            elif msvcrt:
                self._file.seek(0)
                msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._close()
            self._thread_lock.release()

    def _close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __repr__(self):
        return f"<FileStoreLock: {self.lock_path}>"


def get_lock(resource_name: str, base_dir: Optional[Path] = None) -> StoreLock:
    """Factory for the lock guarding a named on-disk resource."""
    if base_dir is None:
        base_dir = Path(os.environ.get("FLEET_LOCK_DIR", ".fleet/.locks"))
    return FileStoreLock(Path(base_dir) / f"{resource_name}.lock")
