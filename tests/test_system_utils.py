"""Tests for the single-instance lock.

Source: core/system_utils.py - SingleInstanceLock.
"""

import os

import pytest

from core.system_utils import SingleInstanceLock


@pytest.fixture
def lock_path(temp_dir):
    return os.path.join(temp_dir, "arrsweep.lock")


# ============================================================================
# TestSingleInstanceLock
# ============================================================================

class TestSingleInstanceLock:
    """Only one pass may hold the lock at a time."""

    def test_acquire_writes_pid(self, fake_fcntl, lock_path):
        lock = SingleInstanceLock(lock_path)
        assert lock.acquire()
        assert lock.locked
        with open(lock_path, encoding="utf-8") as f:
            assert f.read() == str(os.getpid())
        lock.release()

    def test_second_instance_is_refused(self, fake_fcntl, lock_path):
        first = SingleInstanceLock(lock_path)
        second = SingleInstanceLock(lock_path)

        assert first.acquire()
        assert not second.acquire()
        assert not second.locked
        assert second.lock_fd is None
        first.release()

    def test_release_allows_reacquire(self, fake_fcntl, lock_path):
        first = SingleInstanceLock(lock_path)
        assert first.acquire()
        first.release()

        assert not os.path.exists(lock_path)
        assert not first.locked

        second = SingleInstanceLock(lock_path)
        assert second.acquire()
        second.release()

    def test_release_without_acquire_is_noop(self, fake_fcntl, lock_path):
        lock = SingleInstanceLock(lock_path)
        lock.release()
        assert not os.path.exists(lock_path)

    def test_refused_instance_does_not_remove_lock_file(self, fake_fcntl, lock_path):
        """Releasing a lock that was never acquired leaves the holder's file alone."""
        holder = SingleInstanceLock(lock_path)
        assert holder.acquire()
        refused = SingleInstanceLock(lock_path)
        assert not refused.acquire()

        refused.release()

        assert os.path.exists(lock_path)
        assert fake_fcntl.held == {lock_path}
        holder.release()
