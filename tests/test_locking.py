"""Kaynak kilidi unit testleri."""

import threading
import time

import pytest

from src.ledger.errors import BusyError
from src.ledger.locking import ResourceLock, current_owner, material_key, session_key


class TestResourceLock:
    """Eşzamanlı kaynak erişim kontrolü."""

    def test_acquire_and_release(self):
        lock = ResourceLock()
        assert lock.acquire("material:m1", "A") is True
        assert lock.is_locked("material:m1") is True
        assert lock.release("material:m1", "A") is True
        assert lock.is_locked("material:m1") is False

    def test_wrong_owner_cannot_release(self):
        lock = ResourceLock()
        lock.acquire("material:m1", "A")
        assert lock.release("material:m1", "B") is False
        assert lock.is_locked("material:m1") is True

    def test_release_unknown_key(self):
        assert ResourceLock().release("material:yok", "A") is False
        assert ResourceLock().is_locked("material:yok") is False

    def test_acquire_times_out(self):
        lock = ResourceLock()
        lock.acquire("material:m1", "A")
        assert lock.acquire("material:m1", "B", timeout=0.05) is False

    def test_key_helpers(self):
        assert material_key("m1") == "material:m1"
        assert session_key("s1") == "session:s1"


class TestHold:
    """Çoklu anahtar context manager."""

    def test_hold_releases_on_exit(self):
        lock = ResourceLock()
        with lock.hold(material_key("b"), material_key("a")):
            assert lock.is_locked("material:a")
            assert lock.is_locked("material:b")
        assert not lock.is_locked("material:a")
        assert not lock.is_locked("material:b")

    def test_hold_releases_on_error(self):
        lock = ResourceLock()
        with pytest.raises(RuntimeError):
            with lock.hold("material:a"):
                raise RuntimeError("hata")
        assert not lock.is_locked("material:a")

    def test_hold_busy_releases_partial(self):
        lock = ResourceLock(default_timeout=0.05)
        blocked = threading.Event()
        done = threading.Event()

        def holder():
            with lock.hold("material:b"):
                blocked.set()
                done.wait(2)

        t = threading.Thread(target=holder)
        t.start()
        blocked.wait(2)
        try:
            with pytest.raises(BusyError) as exc:
                with lock.hold("material:a", "material:b"):
                    pass
            assert exc.value.resource_key == "material:b"
            # Önce alınan "a" serbest bırakılmış olmalı
            assert not lock.is_locked("material:a")
        finally:
            done.set()
            t.join()

    def test_duplicate_keys_locked_once(self):
        lock = ResourceLock(default_timeout=0.05)
        with lock.hold("material:a", "material:a"):
            assert lock.is_locked("material:a")

    def test_owner_is_thread_scoped(self):
        owners = []
        t = threading.Thread(target=lambda: owners.append(current_owner()))
        t.start()
        t.join()
        assert owners[0] != current_owner()


class TestEviction:
    """Serbest kalan kilitlerin tablodan silinmesi."""

    def test_released_lock_is_evicted(self):
        lock = ResourceLock()
        for i in range(50):
            with lock.hold(material_key(f"m{i}"), session_key("s1")):
                pass
        assert lock.tracked_count() == 0

    def test_held_lock_is_kept(self):
        lock = ResourceLock()
        lock.acquire("material:m1", "A")
        assert lock.tracked_count() == 1
        lock.release("material:m1", "A")
        assert lock.tracked_count() == 0

    def test_timed_out_waiter_does_not_evict_held_lock(self):
        lock = ResourceLock()
        lock.acquire("material:m1", "A")
        assert lock.acquire("material:m1", "B", timeout=0.05) is False
        assert lock.is_locked("material:m1")
        assert lock.release("material:m1", "A") is True
        assert lock.tracked_count() == 0

    def test_waiter_gets_lock_after_release(self):
        lock = ResourceLock()
        lock.acquire("material:m1", "A")
        results = []

        def waiter():
            results.append(lock.acquire("material:m1", "B", timeout=2))

        t = threading.Thread(target=waiter)
        t.start()
        # B kilidi beklerken A bırakır; kilit silinmeden B'ye geçmeli
        for _ in range(200):
            if lock._waiters.get("material:m1", 0):
                break
            time.sleep(0.01)
        lock.release("material:m1", "A")
        t.join()

        assert results == [True]
        assert lock.is_locked("material:m1")
        assert lock.release("material:m1", "B") is True
        assert lock.tracked_count() == 0
