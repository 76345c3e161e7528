"""Tests for per-unit in-process locks."""

import threading

import pytest

from dues_engine.services.unit_locks import UnitLockRegistry, get_unit_locks


class TestUnitLockRegistry:
    """Test unit lock acquisition."""

    def test_same_unit_returns_same_lock(self):
        """Test one lock per unit id."""
        registry = UnitLockRegistry()

        assert registry.lock_for(1) is registry.lock_for(1)
        assert registry.lock_for(1) is not registry.lock_for(2)

    def test_hold_is_reentrant(self):
        """Test a thread can nest holds on its own unit."""
        registry = UnitLockRegistry(timeout=0.1)

        with registry.hold(1):
            with registry.hold(1):
                pass

    def test_blocked_unit_times_out(self):
        """Test a unit held by another thread raises TimeoutError."""
        registry = UnitLockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold(7):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(timeout=5)
            with pytest.raises(TimeoutError, match="unit 7"):
                with registry.hold(7):
                    pass
        finally:
            release.set()
            thread.join()

    def test_other_unit_not_blocked(self):
        """Test holding one unit leaves others free."""
        registry = UnitLockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold(7):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(timeout=5)
            with registry.hold(8):
                pass
        finally:
            release.set()
            thread.join()

    def test_failed_hold_many_releases_acquired_locks(self):
        """Test a timeout part way leaves no earlier lock held."""
        registry = UnitLockRegistry(timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold(3):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(timeout=5)
            with pytest.raises(TimeoutError):
                with registry.hold_many([3, 1, 2]):
                    pass
        finally:
            release.set()
            thread.join()

        results = []

        def check():
            results.append(registry.lock_for(1).acquire(timeout=0.1))

        checker = threading.Thread(target=check)
        checker.start()
        checker.join()
        assert results == [True]

    def test_concurrent_holders_serialize(self):
        """Test increments under the lock are never interleaved."""
        registry = UnitLockRegistry()
        counter = {"value": 0}

        def work():
            for _ in range(200):
                with registry.hold(1):
                    current = counter["value"]
                    counter["value"] = current + 1

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter["value"] == 800


def test_get_unit_locks_is_singleton():
    """Test the process-wide registry."""
    assert get_unit_locks() is get_unit_locks()
