"""Sayım Oturumu Motoru - fiziksel stok sayımının yaşam döngüsü.

- Oturum açma ve OSG-YYYY-AA-NNN numaralandırma
- Hızlı sayım (okut-ekle, tampona yazılır)
- Kontrollü sayım (mutlak miktar, stoğa hemen yansır)
- Yeni malzeme kaydedip okutma
- Tamamlama / iptal
- Sayım doğrulama (onay, red, düzeltme)
- Oturum özetleri ve sayım listesi
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from src.ledger.errors import DuplicateSerialError, InvalidSessionStatusError, ValidationError
from src.ledger.identity_resolver import Resolution, ResolutionOutcome
from src.ledger.ledger_store import LedgerStore, new_id
from src.ledger.locking import SESSION_NUMBERING_KEY
from src.models.inventory import (
    SYSTEM_USER,
    UNKNOWN_MATERIAL,
    CountEvent,
    CountMode,
    CountSession,
    CountStatus,
    MaterialStatus,
    ScopeFilter,
    SessionStatus,
    SessionSummary,
    normalize_scope,
)

logger = logging.getLogger(__name__)

SESSION_PREFIX = "OSG"


@dataclass
class QuickScanResult:
    accepted: bool
    resolution: Resolution
    count_event: Optional[CountEvent] = None
    running_total: int = 0
    message: str = ""


class CountSessionEngine:
    """Sayım oturumlarını yöneten motor."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    # --- Oturum açma ---

    def _next_session_no(self, year: int, month: int) -> str:
        """Aynı ay içindeki mevcut oturumları sayarak numara üretir."""
        prefix = f"{SESSION_PREFIX}-{year}-{month:02d}-"
        existing = sum(
            1 for s in self.ledger.list_sessions_raw() if s.session_no.startswith(prefix)
        )
        return f"{prefix}{existing + 1:03d}"

    def create_session(
        self,
        invoice_no: str,
        counted_by: str,
        session_status_filter: ScopeFilter = None,
        count_date: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: str = "",
        planned: bool = False,
    ) -> CountSession:
        """Yeni sayım oturumu açar.

        Args:
            invoice_no: Oturumun bağlı olduğu fatura / belge numarası.
            counted_by: Sayımı yapan kişi.
            session_status_filter: Sayılabilecek malzeme statüsü ("all" / None = hepsi).
            count_date: Sayım tarihi (YYYY-AA-GG). Verilmezse bugün.
            planned: True ise oturum "planned" durumunda açılır.
        """
        if not invoice_no or not invoice_no.strip():
            raise ValidationError("Fatura numarası boş olamaz")
        if not counted_by or not counted_by.strip():
            raise ValidationError("Sayımı yapan kişi boş olamaz")
        try:
            scope = normalize_scope(session_status_filter)
        except ValueError as e:
            raise ValidationError(f"Geçersiz statü filtresi: {session_status_filter!r}") from e

        with self.ledger.exclusive(SESSION_NUMBERING_KEY):
            moment = self.ledger.clock()
            now = moment.isoformat()
            session = CountSession(
                session_id=new_id("ses"),
                session_no=self._next_session_no(moment.year, moment.month),
                invoice_no=invoice_no.strip(),
                count_date=count_date or moment.date().isoformat(),
                counted_by=counted_by.strip(),
                created_by=created_by or counted_by.strip(),
                session_status_filter=scope,
                status=SessionStatus.PLANNED if planned else SessionStatus.IN_PROGRESS,
                notes=notes or "",
                created_at=now,
                updated_at=now,
            )
            self.ledger.add_session(session, performed_by=session.created_by)

        logger.info(
            "Sayım oturumu açıldı: %s (fatura %s, kapsam %s)",
            session.session_no, session.invoice_no, scope.value if scope else "all",
        )
        return session

    def _require_open(self, session_id: str) -> CountSession:
        session = self.ledger.get_session(session_id)
        if not session.is_open:
            raise InvalidSessionStatusError(
                f"Oturum {session.session_no} {session.status.value}: sayım eklenemez"
            )
        return session

    # --- Sayım ---

    def record_quick_scan(
        self, session_id: str, code: str, counted_by: Optional[str] = None
    ) -> QuickScanResult:
        """Okutulan kodu çözer ve malzemeye 1 adet ekler (tampon)."""
        session = self._require_open(session_id)
        resolution = self.ledger.resolve(code, session.session_status_filter)

        if resolution.outcome == ResolutionOutcome.DUPLICATE_SERIAL:
            message = (
                f"SN {resolution.decoded.sn} zaten sistemde kayıtlı! "
                f"Malzeme: {resolution.owner_name}"
            )
            logger.warning("Hızlı sayım reddedildi: %s", message)
            return QuickScanResult(accepted=False, resolution=resolution, message=message)

        if not resolution.resolved:
            message = "Malzeme bulunamadı, yeni malzeme kaydı gerekli"
            if session.session_status_filter is not None:
                outside = self.ledger.resolve(code)
                if outside.resolved:
                    message = (
                        f"{outside.material.name} {outside.material.status.value} statüsünde, "
                        f"oturum kapsamı {session.session_status_filter.value}"
                    )
            logger.info("Hızlı sayım çözülemedi: %s (%s)", code, message)
            return QuickScanResult(accepted=False, resolution=resolution, message=message)

        material = resolution.material
        event = self.ledger.apply_count(
            session_id,
            material.material_id,
            1,
            CountMode.ACCUMULATE,
            counted_by or session.counted_by,
            code=code,
        )
        running_total = self.ledger.pending_quantity(session_id, material.material_id)
        return QuickScanResult(
            accepted=True,
            resolution=resolution,
            count_event=event,
            running_total=running_total,
            message=f"{material.name} eklendi (toplam {running_total})",
        )

    def register_and_scan(
        self,
        session_id: str,
        code: str,
        name: str,
        counted_by: Optional[str] = None,
        **fields: Any,
    ) -> QuickScanResult:
        """Çözülemeyen kod için yeni malzeme oluşturur ve okutur.

        Kimlik alanları çözülen koddan doldurulur; statü verilmezse
        oturum kapsamı kullanılır.
        """
        session = self._require_open(session_id)
        resolution = self.ledger.resolve(code, session.session_status_filter)
        if resolution.outcome == ResolutionOutcome.DUPLICATE_SERIAL:
            raise DuplicateSerialError(
                resolution.decoded.sn, resolution.owner_id, resolution.owner_name
            )
        if resolution.resolved:
            logger.info("Kod zaten kayıtlı, doğrudan okutuluyor: %s", code)
            return self.record_quick_scan(session_id, code, counted_by)

        decoded = resolution.decoded
        fields.setdefault("barcode", decoded.barcode)
        fields.setdefault("gtin", decoded.gtin)
        fields.setdefault("sn", decoded.sn)
        if decoded.composite:
            fields.setdefault("all_barcode", decoded.raw)
        fields.setdefault(
            "status", session.session_status_filter or MaterialStatus.NORMAL
        )
        scope = session.session_status_filter
        if scope is not None and fields["status"] != scope:
            raise InvalidSessionStatusError(
                f"Yeni malzeme statüsü ({fields['status']}) oturum kapsamı dışında ({scope.value})"
            )

        material = self.ledger.create_material(
            name, performed_by=counted_by or session.counted_by, **fields
        )
        event = self.ledger.apply_count(
            session_id,
            material.material_id,
            1,
            CountMode.ACCUMULATE,
            counted_by or session.counted_by,
            code=code,
        )
        running_total = self.ledger.pending_quantity(session_id, material.material_id)
        return QuickScanResult(
            accepted=True,
            resolution=Resolution(
                ResolutionOutcome.RESOLVED, decoded.raw, decoded,
                material=material, matched_by="registered",
            ),
            count_event=event,
            running_total=running_total,
            message=f"Yeni malzeme eklendi: {material.name}",
        )

    def record_controlled_count(
        self,
        session_id: str,
        material_id: str,
        quantity: int,
        counted_by: Optional[str] = None,
    ) -> CountEvent:
        """Mutlak sayım miktarı girer; stok hemen bu değere eşitlenir."""
        session = self.ledger.get_session(session_id)
        return self.ledger.apply_count(
            session_id,
            material_id,
            quantity,
            CountMode.REPLACE,
            counted_by or session.counted_by,
        )

    def finalize_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        return self.ledger.finalize_session(session_id, performed_by)

    def cancel_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        return self.ledger.cancel_session(session_id, performed_by)

    # --- Doğrulama ---

    def approve_count(self, count_id: str, verified_by: str, notes: str = "") -> CountEvent:
        return self.ledger.verify_count(count_id, "approve", verified_by, notes=notes)

    def reject_count(self, count_id: str, verified_by: str, notes: str = "") -> CountEvent:
        return self.ledger.verify_count(count_id, "reject", verified_by, notes=notes)

    def correct_count(
        self, count_id: str, corrected_quantity: int, verified_by: str, notes: str = ""
    ) -> CountEvent:
        return self.ledger.verify_count(
            count_id, "correct", verified_by,
            corrected_quantity=corrected_quantity, notes=notes,
        )

    # --- Özetler ---

    def _summarize(self, session: CountSession, events: list[CountEvent]) -> SessionSummary:
        counted = [e for e in events if e.status != CountStatus.REJECTED]
        return SessionSummary(
            session_id=session.session_id,
            session_no=session.session_no,
            invoice_no=session.invoice_no,
            status=session.status,
            session_status_filter=session.session_status_filter,
            total_products_counted=sum(e.counted_quantity for e in counted),
            total_value=round(sum(e.total_value for e in counted), 2),
            count_events=len(counted),
            pending_quantity=self.ledger.pending_quantity(session.session_id),
            count_date=session.count_date,
            counted_by=session.counted_by,
        )

    def get_session_summary(self, session_id: str) -> SessionSummary:
        """Oturum özeti; her çağrıda sayım kayıtlarından yeniden hesaplanır."""
        session = self.ledger.get_session(session_id)
        return self._summarize(session, self.ledger.counts_for_session(session_id))

    def list_sessions(
        self,
        status: Union[SessionStatus, str, None] = None,
        invoice_no: Optional[str] = None,
        year: Optional[int] = None,
    ) -> list[SessionSummary]:
        """Oturum özetlerini filtreler; en yeni sayım tarihi önce."""
        try:
            wanted = SessionStatus(status) if status else None
        except ValueError as e:
            raise ValidationError(f"Geçersiz oturum durumu: {status!r}") from e
        needle = (invoice_no or "").strip().lower()

        sessions = []
        for session in self.ledger.list_sessions_raw():
            if wanted is not None and session.status != wanted:
                continue
            if needle and needle not in session.invoice_no.lower():
                continue
            if year is not None and not session.count_date.startswith(f"{year}-"):
                continue
            sessions.append(session)

        sessions.sort(key=lambda s: (s.count_date, s.created_at), reverse=True)
        return [
            self._summarize(s, self.ledger.counts_for_session(s.session_id)) for s in sessions
        ]

    def list_session_counts(self, session_id: str) -> list[dict]:
        """Oturumdaki sayımları malzeme bilgisiyle birleştirir.

        Silinmiş malzemeler "Bilinmiyor" olarak gösterilir.
        """
        self.ledger.get_session(session_id)
        rows = []
        for event in self.ledger.counts_for_session(session_id):
            material = self.ledger.find_material(event.material_id)
            rows.append({
                "count_id": event.count_id,
                "material_id": event.material_id,
                "material_name": material.name if material else UNKNOWN_MATERIAL,
                "barcode": material.barcode if material else "",
                "sn": material.sn if material else "",
                "category": material.category if material else UNKNOWN_MATERIAL,
                "unit": material.unit if material else "",
                "current_stock": material.current_stock if material else None,
                "counted_quantity": event.counted_quantity,
                "unit_price": event.unit_price_at_count,
                "total_value": event.total_value,
                "mode": event.mode.value,
                "status": event.status.value,
                "counted_by": event.counted_by,
                "previous_stock": event.previous_stock,
                "verified_by": event.verified_by,
                "verified_at": event.verified_at,
                "correction_notes": event.correction_notes,
                "timestamp": event.timestamp,
            })
        return rows
