"""Malzeme ve oturum bazında eşzamanlı erişim kontrolü.

Aynı malzemeye yönelik kullanım/giriş/sayım işlemleri tek yazıcıya
indirgenir. Farklı malzemeler birbirini beklemez. Kilit alma süresi
sınırlıdır; zaman aşımında BusyError fırlatılır.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from src.ledger.errors import BusyError

logger = logging.getLogger(__name__)

CATALOG_KEY = "catalog"
SESSION_NUMBERING_KEY = "session-numbering"


def material_key(material_id: str) -> str:
    return f"material:{material_id}"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def current_owner() -> str:
    return f"thread-{threading.get_ident()}"


class ResourceLock:
    """Kaynak anahtarı bazında kilit yöneticisi.

    Kilit nesneleri ilk kullanımda oluşturulur; serbest kalan ve bekleyeni
    olmayan kilit tablodan silinir.
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        self.default_timeout = default_timeout
        self._locks: dict[str, threading.Lock] = {}
        self._lock_owners: dict[str, str] = {}
        # Kilidi almaya çalışan iş parçacığı sayısı
        self._waiters: dict[str, int] = {}
        self._master_lock = threading.Lock()

    def acquire(self, resource_key: str, owner: str, timeout: Optional[float] = None) -> bool:
        """Bir kaynak için kilit alır."""
        with self._master_lock:
            if resource_key not in self._locks:
                self._locks[resource_key] = threading.Lock()
            lock = self._locks[resource_key]
            self._waiters[resource_key] = self._waiters.get(resource_key, 0) + 1

        wait = self.default_timeout if timeout is None else timeout
        acquired = False
        try:
            acquired = lock.acquire(timeout=wait)
        finally:
            with self._master_lock:
                self._waiters[resource_key] -= 1
                if acquired:
                    self._lock_owners[resource_key] = owner
                elif not lock.locked():
                    self._evict(resource_key)

        if acquired:
            logger.debug("Kilit alındı: %s -> %s", owner, resource_key)
        else:
            logger.warning("Kilit alınamadı: %s -> %s (timeout)", owner, resource_key)
        return acquired

    def release(self, resource_key: str, owner: str) -> bool:
        """Bir kaynak kilidini serbest bırakır."""
        with self._master_lock:
            if resource_key not in self._locks:
                return False

            holder = self._lock_owners.get(resource_key)
            if holder != owner:
                logger.warning("Kilit sahibi uyuşmazlığı: %s != %s", owner, holder)
                return False

            del self._lock_owners[resource_key]
            self._locks[resource_key].release()
            self._evict(resource_key)
        return True

    def _evict(self, resource_key: str) -> None:
        """Bekleyeni olmayan kilidi tablodan siler (master kilit altında)."""
        if self._waiters.get(resource_key, 0) == 0:
            self._waiters.pop(resource_key, None)
            self._locks.pop(resource_key, None)

    def tracked_count(self) -> int:
        """Tabloda tutulan kilit sayısı."""
        with self._master_lock:
            return len(self._locks)

    def is_locked(self, resource_key: str) -> bool:
        """Kaynağın kilitli olup olmadığını kontrol eder."""
        lock = self._locks.get(resource_key)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, *resource_keys: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Birden çok kaynağı sıralı şekilde kilitler.

        Anahtarlar her zaman alfabetik sırada alınır; böylece iki işlem
        aynı kaynak kümesini ters sırada bekleyemez.
        """
        owner = current_owner()
        acquired: list[str] = []
        try:
            for key in sorted(set(resource_keys)):
                if not self.acquire(key, owner, timeout):
                    raise BusyError(key, self.default_timeout if timeout is None else timeout)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self.release(key, owner)
