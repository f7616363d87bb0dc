"""Hastane stok defteri veri modelleri."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

SYSTEM_USER = "Sistem"
ALL_STATUSES = "all"
UNKNOWN_MATERIAL = "Bilinmiyor"


class MaterialStatus(str, Enum):
    NORMAL = "normal"
    KONSINYE = "konsinye"
    IADE = "iade"
    FATURALI = "faturalı"


class SessionStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CountStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CORRECTED = "corrected"


class CountMode(str, Enum):
    REPLACE = "replace"
    ACCUMULATE = "accumulate"


class Granularity(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MovementType(str, Enum):
    CREATE = "create"
    USAGE = "usage"
    USAGE_REVERSAL = "usage_reversal"
    USAGE_ADJUSTMENT = "usage_adjustment"
    RECEIPT = "receipt"
    COUNT_REPLACE = "count_replace"
    COUNT_FINALIZE = "count_finalize"
    COUNT_CORRECTION = "count_correction"


# Oturum durum makinesi: mevcut durum -> izin verilen hedef durumlar
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PLANNED: frozenset({SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED}),
    SessionStatus.IN_PROGRESS: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

ScopeFilter = Union[MaterialStatus, str, None]


def normalize_scope(scope: ScopeFilter) -> Optional[MaterialStatus]:
    """Statü filtresini normalize eder. None / "" / "all" kısıtsız demektir."""
    if scope is None or scope == "" or scope == ALL_STATUSES:
        return None
    return MaterialStatus(scope)


@dataclass
class Material:
    material_id: str
    name: str
    barcode: str = ""
    gtin: str = ""
    sn: str = ""
    udi_code: str = ""
    all_barcode: str = ""
    category: str = ""
    sub_category: str = ""
    unit: str = "adet"
    unit_price: float = 0.0
    current_stock: int = 0
    min_stock: int = 0
    status: MaterialStatus = MaterialStatus.NORMAL
    supplier: str = ""
    expiration_date: Optional[str] = None
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""
    last_count_date: Optional[str] = None
    last_counted_by: Optional[str] = None
    last_counted_quantity: Optional[int] = None

    @property
    def is_critical(self) -> bool:
        return self.current_stock <= self.min_stock

    @property
    def stock_value(self) -> float:
        return self.current_stock * self.unit_price

    def in_scope(self, scope: ScopeFilter) -> bool:
        status = normalize_scope(scope)
        return status is None or self.status == status


@dataclass
class UsageEvent:
    usage_id: str
    material_id: str
    quantity: int
    unit_price_at_usage: float
    total_cost: float
    timestamp: str
    patient_ref: str = ""
    notes: str = ""


@dataclass
class ReceiptEvent:
    receipt_id: str
    material_id: str
    quantity: int
    unit_price_at_receipt: float
    total_value: float
    timestamp: str
    invoice_ref: str = ""


@dataclass
class CountSession:
    session_id: str
    session_no: str
    invoice_no: str
    count_date: str
    counted_by: str
    created_by: str
    session_status_filter: Optional[MaterialStatus] = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    notes: str = ""
    total_products_counted: int = 0
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    # Yarıda kalan finalize'da stoğa yansıtılmış malzemeler
    applied_materials: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in (SessionStatus.PLANNED, SessionStatus.IN_PROGRESS)

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in SESSION_TRANSITIONS[self.status]


@dataclass
class CountEvent:
    count_id: str
    session_id: str
    material_id: str
    counted_quantity: int
    unit_price_at_count: float
    total_value: float
    counted_by: str
    mode: CountMode
    timestamp: str
    status: CountStatus = CountStatus.PENDING
    code: str = ""
    previous_stock: Optional[int] = None
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    correction_notes: str = ""


@dataclass
class StockMovement:
    movement_id: str
    material_id: str
    movement_type: MovementType
    quantity_before: int
    quantity_after: int
    timestamp: str
    sequence: int
    reference_id: Optional[str] = None

    @property
    def change_amount(self) -> int:
        return self.quantity_after - self.quantity_before


@dataclass
class AuditLogEntry:
    entry_id: str
    action: str
    module: str
    record_id: str
    details: str
    performed_by: str
    timestamp: str


@dataclass
class SessionSummary:
    session_id: str
    session_no: str
    invoice_no: str
    status: SessionStatus
    session_status_filter: Optional[MaterialStatus]
    total_products_counted: int
    total_value: float
    count_events: int
    pending_quantity: int
    count_date: str = ""
    counted_by: str = ""


# --- Backend serileştirme ---

# Tablo adı -> (kayıt sınıfı, anahtar alanı)
RECORD_TYPES: dict[str, tuple[type, str]] = {
    "Materials": (Material, "material_id"),
    "UsageEvents": (UsageEvent, "usage_id"),
    "ReceiptEvents": (ReceiptEvent, "receipt_id"),
    "CountSessions": (CountSession, "session_id"),
    "CountEvents": (CountEvent, "count_id"),
    "StockMovements": (StockMovement, "movement_id"),
    "AuditLog": (AuditLogEntry, "entry_id"),
}

# Enum alanlarının dönüşüm tablosu
_ENUM_FIELDS: dict[str, type[Enum]] = {
    "status": MaterialStatus,
    "session_status_filter": MaterialStatus,
    "mode": CountMode,
    "movement_type": MovementType,
}
_STATUS_ENUMS: dict[type, type[Enum]] = {
    Material: MaterialStatus,
    CountSession: SessionStatus,
    CountEvent: CountStatus,
}
_INT_FIELDS = {
    "current_stock", "min_stock", "quantity", "counted_quantity", "previous_stock",
    "quantity_before", "quantity_after", "sequence", "total_products_counted",
    "last_counted_quantity",
}
_FLOAT_FIELDS = {
    "unit_price", "unit_price_at_usage", "unit_price_at_receipt",
    "unit_price_at_count", "total_cost", "total_value",
}


def key_field(table: str) -> str:
    return RECORD_TYPES[table][1]


def record_key(table: str, record: Any) -> str:
    return getattr(record, key_field(table))


def record_to_item(record: Any) -> dict:
    """Kaydı düz bir sözlüğe çevirir (enum -> değer)."""
    item = {}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = list(value)
        item[f.name] = value
    return item


def record_from_item(table: str, item: dict) -> Any:
    """Backend'den gelen sözlüğü kayıt nesnesine çevirir."""
    cls, _ = RECORD_TYPES[table]
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for name, value in item.items():
        if name not in names:
            continue
        if value is not None:
            if name == "status":
                value = _STATUS_ENUMS[cls](value) if cls in _STATUS_ENUMS else value
            elif name in _ENUM_FIELDS:
                value = _ENUM_FIELDS[name](value) if value != "" else None
            elif name in _INT_FIELDS:
                value = int(value)
            elif name in _FLOAT_FIELDS:
                value = float(value)
        kwargs[name] = value
    return cls(**kwargs)
