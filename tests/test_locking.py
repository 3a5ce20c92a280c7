"""
Tests for keyed in-process locks and the archive file lock.
"""

import threading

from mcp_server_fleet.runtime.locking import FileStoreLock, KeyedLocks, get_lock


class TestKeyedLocks:
    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock("pool-a") is locks.lock("pool-a")
        assert locks.lock("pool-a") is not locks.lock("pool-b")
        assert len(locks) == 2

    def test_lock_is_reentrant(self):
        lock = KeyedLocks().lock("k")
        with lock:
            with lock:
                pass

    def test_discard(self):
        locks = KeyedLocks()
        locks.lock("k")
        locks.discard("k")
        assert "k" not in locks
        locks.discard("missing")


class TestFileStoreLock:
    def test_section(self, tmp_path):
        lock = FileStoreLock(tmp_path / "locks" / "archive.lock")
        with lock.section():
            assert (tmp_path / "locks" / "archive.lock").exists()

    def test_threads_are_serialized(self, tmp_path):
        lock = FileStoreLock(tmp_path / "archive.lock")
        assert lock.acquire(timeout=1)

        acquired = []
        worker = threading.Thread(target=lambda: acquired.append(lock.acquire(timeout=0.2)))
        worker.start()
        worker.join()

        assert acquired == [False]
        lock.release()
        assert lock.acquire(timeout=1)
        lock.release()

    def test_get_lock_uses_env_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_LOCK_DIR", str(tmp_path))
        lock = get_lock("archive")
        assert lock.lock_path == tmp_path / "archive.lock"
