"""Stok defteri servis katmanı - dış çağıranlar için tek giriş noktası.

Konfigürasyon, arka uç, çözümleyici, defter, sayım motoru ve analitik
burada birbirine bağlanır.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from src.ledger.analytics import AnalyticsEngine
from src.ledger.backends import DynamoDBBackend, InMemoryBackend, LedgerBackend
from src.ledger.config import LedgerConfig, load_config
from src.ledger.count_session import CountSessionEngine, QuickScanResult
from src.ledger.errors import ValidationError
from src.ledger.identity_resolver import IdentityResolver, Resolution
from src.ledger.ledger_store import LedgerStore
from src.models.inventory import (
    SYSTEM_USER,
    AuditLogEntry,
    CountEvent,
    CountSession,
    Granularity,
    Material,
    MaterialStatus,
    ReceiptEvent,
    ScopeFilter,
    SessionStatus,
    SessionSummary,
    UsageEvent,
)

logger = logging.getLogger(__name__)


class StockLedgerService:
    """Defter işlemlerinin dış arayüzü."""

    def __init__(
        self,
        ledger: LedgerStore,
        engine: Optional[CountSessionEngine] = None,
        analytics: Optional[AnalyticsEngine] = None,
    ):
        self.ledger = ledger
        self.engine = engine or CountSessionEngine(ledger)
        self.analytics = analytics or AnalyticsEngine(ledger)

    # --- Kimlik ---

    def resolve_identity(self, code: str, scope: ScopeFilter = None) -> Resolution:
        return self.ledger.resolve(code, scope)

    # --- Malzemeler ---

    def create_material(self, name: str, performed_by: str = SYSTEM_USER, **fields: Any) -> Material:
        return self.ledger.create_material(name, performed_by=performed_by, **fields)

    def update_material(
        self, material_id: str, patch: dict, performed_by: str = SYSTEM_USER
    ) -> Material:
        return self.ledger.update_material(material_id, patch, performed_by)

    def delete_material(self, material_id: str, performed_by: str = SYSTEM_USER) -> Material:
        return self.ledger.delete_material(material_id, performed_by)

    def get_material(self, material_id: str) -> Material:
        return self.ledger.get_material(material_id)

    def list_materials(
        self,
        search_term: Optional[str] = None,
        category: Optional[str] = None,
        status: ScopeFilter = None,
        low_stock_only: bool = False,
    ) -> list[Material]:
        return self.ledger.list_materials(search_term, category, status, low_stock_only)

    def update_materials_status(
        self,
        material_ids: Iterable[str],
        status: Union[MaterialStatus, str],
        performed_by: str = SYSTEM_USER,
    ) -> int:
        return self.ledger.update_materials_status(material_ids, status, performed_by)

    # --- Sayım oturumları ---

    def create_session(
        self,
        invoice_no: str,
        counted_by: str,
        session_status_filter: ScopeFilter = None,
        count_date: Optional[str] = None,
        **kwargs: Any,
    ) -> CountSession:
        return self.engine.create_session(
            invoice_no, counted_by, session_status_filter, count_date, **kwargs
        )

    def record_quick_scan(
        self, session_id: str, code: str, counted_by: Optional[str] = None
    ) -> QuickScanResult:
        return self.engine.record_quick_scan(session_id, code, counted_by)

    def register_and_scan(
        self, session_id: str, code: str, name: str,
        counted_by: Optional[str] = None, **fields: Any,
    ) -> QuickScanResult:
        return self.engine.register_and_scan(session_id, code, name, counted_by, **fields)

    def record_controlled_count(
        self,
        session_id: str,
        material_id: str,
        quantity: int,
        counted_by: Optional[str] = None,
    ) -> CountEvent:
        return self.engine.record_controlled_count(session_id, material_id, quantity, counted_by)

    def finalize_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        return self.engine.finalize_session(session_id, performed_by)

    def cancel_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        return self.engine.cancel_session(session_id, performed_by)

    def approve_count(self, count_id: str, verified_by: str, notes: str = "") -> CountEvent:
        return self.engine.approve_count(count_id, verified_by, notes)

    def reject_count(self, count_id: str, verified_by: str, notes: str = "") -> CountEvent:
        return self.engine.reject_count(count_id, verified_by, notes)

    def correct_count(
        self, count_id: str, corrected_quantity: int, verified_by: str, notes: str = ""
    ) -> CountEvent:
        return self.engine.correct_count(count_id, corrected_quantity, verified_by, notes)

    def get_session_summary(self, session_id: str) -> SessionSummary:
        return self.engine.get_session_summary(session_id)

    def list_sessions(
        self,
        status: Union[SessionStatus, str, None] = None,
        invoice_no: Optional[str] = None,
        year: Optional[int] = None,
    ) -> list[SessionSummary]:
        return self.engine.list_sessions(status, invoice_no, year)

    def list_session_counts(self, session_id: str) -> list[dict]:
        return self.engine.list_session_counts(session_id)

    # --- Kullanım ve giriş ---

    def apply_usage(
        self,
        material_id: str,
        quantity: int,
        patient_ref: str = "",
        notes: str = "",
        performed_by: str = SYSTEM_USER,
    ) -> UsageEvent:
        return self.ledger.apply_usage(material_id, quantity, patient_ref, notes, performed_by)

    def apply_usage_by_code(
        self, code: str, quantity: int, patient_ref: str = "", notes: str = ""
    ) -> UsageEvent:
        return self.ledger.apply_usage_by_code(code, quantity, patient_ref, notes)

    def reverse_usage(self, usage_id: str, performed_by: str = SYSTEM_USER) -> UsageEvent:
        return self.ledger.reverse_usage(usage_id, performed_by)

    def adjust_usage(
        self, usage_id: str, new_quantity: int, performed_by: str = SYSTEM_USER
    ) -> UsageEvent:
        return self.ledger.adjust_usage(usage_id, new_quantity, performed_by)

    def apply_receipt(
        self,
        material_id: str,
        quantity: int,
        invoice_ref: str = "",
        unit_price: Optional[float] = None,
        performed_by: str = SYSTEM_USER,
    ) -> ReceiptEvent:
        return self.ledger.apply_receipt(material_id, quantity, invoice_ref, unit_price, performed_by)

    # --- Analitik ve denetim ---

    def get_usage_trend(
        self,
        year: int,
        material_id: Optional[str] = None,
        granularity: Union[Granularity, str] = Granularity.MONTHLY,
    ) -> dict:
        return self.analytics.get_usage_trend(year, material_id, granularity)

    def get_stock_value_trend(
        self, year: int, granularity: Union[Granularity, str] = Granularity.MONTHLY
    ) -> dict:
        return self.analytics.get_stock_value_trend(year, granularity)

    def get_yearly_summary(self, year: int) -> dict:
        return self.analytics.get_yearly_summary(year)

    def verify_integrity(self) -> dict:
        return self.ledger.verify_integrity()

    def get_audit_log(
        self, module: Optional[str] = None, record_id: Optional[str] = None
    ) -> list[AuditLogEntry]:
        return self.ledger.get_audit_log(module, record_id)


def create_backend(config: LedgerConfig, dynamodb_resource: Optional[Any] = None) -> LedgerBackend:
    """Konfigürasyondaki arka uç adına göre depolama oluşturur."""
    if config.backend == "memory":
        return InMemoryBackend()
    if config.backend == "dynamodb":
        return DynamoDBBackend(
            region_name=config.region_name,
            table_prefix=config.table_prefix,
            dynamodb_resource=dynamodb_resource,
        )
    raise ValidationError(f"Bilinmeyen arka uç: {config.backend!r}")


def build_service(
    config: Optional[LedgerConfig] = None,
    backend: Optional[LedgerBackend] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> StockLedgerService:
    """Servisi konfigürasyondan kurar."""
    config = config or load_config()
    backend = backend or create_backend(config)
    resolver = IdentityResolver(config.gs1)
    ledger = LedgerStore(backend=backend, resolver=resolver, config=config, clock=clock)
    logger.info("Stok defteri servisi hazır (arka uç: %s)", config.backend)
    return StockLedgerService(ledger)
