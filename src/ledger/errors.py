"""Stok defteri hata sınıfları.

Tüm hatalar kurtarılabilir; çağıran taraf `code` alanı ile türü ayırt eder.
"""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Stok defteri işlemlerinin temel hatası."""

    code = "ledger_error"


class ValidationError(LedgerError):
    """Geçersiz girdi (miktar, alan, fiyat)."""

    code = "validation_error"


class NotFoundError(LedgerError):
    """Başvurulan malzeme, oturum veya olay bulunamadı."""

    code = "not_found"

    def __init__(self, entity: str, record_id: str):
        super().__init__(f"{entity} bulunamadı: {record_id}")
        self.entity = entity
        self.record_id = record_id


class InsufficientStockError(LedgerError):
    """Yetersiz stok hatası."""

    code = "insufficient_stock"

    def __init__(self, material_id: str, available: int, requested: int):
        super().__init__(
            f"Yetersiz stok: {material_id} mevcut={available}, istenen={requested}"
        )
        self.material_id = material_id
        self.available = available
        self.requested = requested


class DuplicateSerialError(LedgerError):
    """Seri numarası başka bir malzemeye ait."""

    code = "duplicate_serial"

    def __init__(self, sn: str, owner_id: str, owner_name: str):
        super().__init__(f"SN {sn} zaten sistemde kayıtlı! Malzeme: {owner_name}")
        self.sn = sn
        self.owner_id = owner_id
        self.owner_name = owner_name


class InvalidSessionStatusError(LedgerError):
    """Oturum durumu veya statü kapsamı işleme izin vermiyor."""

    code = "invalid_session_status"


class BusyError(LedgerError):
    """Kaynak kilidi zaman aşımına uğradı; işlem tekrar denenebilir."""

    code = "busy"

    def __init__(self, resource_key: str, timeout: Optional[float] = None):
        super().__init__(f"Kaynak meşgul: {resource_key} (timeout={timeout})")
        self.resource_key = resource_key
        self.timeout = timeout


class PersistenceError(LedgerError):
    """Kalıcı depolama yazma/okuma hatası."""

    code = "persistence_error"
