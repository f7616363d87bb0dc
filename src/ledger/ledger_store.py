"""Stok Defteri - malzeme stoğunun tek yazıcısı.

- Malzeme kayıt/güncelleme/silme (SN tekilliği korunur)
- Kullanım, iade ve fatura girişi ile atomik stok değişimi
- Sayım olaylarının uygulanması (replace / accumulate)
- Oturum tamponunun finalize edilmesi
- Sayım doğrulama (onay / red / düzeltme)
- Stok hareket zinciri ve işlem günlüğü

Her işlem önce yeni kayıtları oluşturur, arka uca tek commit ile yazar,
ardından bellekteki tabloları değiştirir. Commit başarısız olursa
bellek değişmez. Arka ucun tek commit limitini aşan finalize, malzeme
bazında tekrar edilebilir parçalar ve oturumu kapatan son bir commit
olarak yazılır.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from src.ledger.backends import Change, InMemoryBackend, LedgerBackend, delete, put
from src.ledger.config import LedgerConfig
from src.ledger.errors import (
    BusyError,
    DuplicateSerialError,
    InsufficientStockError,
    InvalidSessionStatusError,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from src.ledger.identity_resolver import IdentityResolver, Resolution, ResolutionOutcome
from src.ledger.locking import (
    CATALOG_KEY,
    ResourceLock,
    material_key,
    session_key,
)
from src.ledger.stock_validator import StockValidator
from src.models.inventory import (
    RECORD_TYPES,
    SYSTEM_USER,
    AuditLogEntry,
    CountEvent,
    CountMode,
    CountSession,
    CountStatus,
    Material,
    MaterialStatus,
    MovementType,
    ReceiptEvent,
    ScopeFilter,
    SessionStatus,
    StockMovement,
    UsageEvent,
    normalize_scope,
)

logger = logging.getLogger(__name__)

PendingKey = tuple[str, str]

# Operatörün doğrudan değiştiremeyeceği alanlar
_PROTECTED_FIELDS = {"material_id", "current_stock", "created_at"}
_MATERIAL_FIELDS = {f.name for f in dataclasses.fields(Material)}
_CREATE_FIELDS = _MATERIAL_FIELDS - {"material_id", "name", "created_at", "updated_at"}
_PATCH_FIELDS = _MATERIAL_FIELDS - _PROTECTED_FIELDS - {"updated_at"}

_VERIFY_ACTIONS = {
    "approve": CountStatus.APPROVED,
    "reject": CountStatus.REJECTED,
    "correct": CountStatus.CORRECTED,
}

# Finalize sırasında tampon kümesi değişirse kilit yeniden alınır
_FINALIZE_ATTEMPTS = 3


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class LedgerSnapshot:
    """Defterin tutarlı bir kopyası (analitik ve raporlar için)."""

    materials: dict[str, Material] = field(default_factory=dict)
    usage_events: list[UsageEvent] = field(default_factory=list)
    receipt_events: list[ReceiptEvent] = field(default_factory=list)
    sessions: list[CountSession] = field(default_factory=list)
    count_events: list[CountEvent] = field(default_factory=list)
    movements: list[StockMovement] = field(default_factory=list)
    pending: dict[PendingKey, int] = field(default_factory=dict)
    taken_at: str = ""


class LedgerStore:
    """Malzeme stoklarının tek yetkili kaynağı."""

    def __init__(
        self,
        backend: Optional[LedgerBackend] = None,
        resolver: Optional[IdentityResolver] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or LedgerConfig()
        self.backend = backend or InMemoryBackend()
        self.resolver = resolver or IdentityResolver(self.config.gs1)
        self.clock = clock or datetime.now
        self.validator = StockValidator()

        self._locks = ResourceLock(default_timeout=self.config.lock_timeout_seconds)
        self._state_lock = threading.RLock()
        self._tables: dict[str, dict[str, Any]] = {name: {} for name in RECORD_TYPES}
        # Hızlı sayım tamponu: {(session_id, material_id): miktar}
        self._pending: dict[PendingKey, int] = {}
        self._sequence = 0

        self._load()

    # --- Yükleme ve commit ---

    def _load(self) -> None:
        """Arka uçtaki kayıtlardan bellek durumunu yeniden kurar."""
        data = self.backend.load()
        tables: dict[str, dict[str, Any]] = {name: {} for name in RECORD_TYPES}
        for table, records in data.items():
            key = RECORD_TYPES[table][1]
            for record in records:
                tables[table][getattr(record, key)] = record

        # Açık oturum -> yarıda kalan finalize'da stoğa yansımış malzemeler
        open_sessions = {
            sid: set(s.applied_materials)
            for sid, s in tables["CountSessions"].items() if s.is_open
        }
        pending: dict[PendingKey, int] = {}
        for event in tables["CountEvents"].values():
            if (
                event.session_id in open_sessions
                and event.material_id not in open_sessions[event.session_id]
                and event.mode == CountMode.ACCUMULATE
                and event.status != CountStatus.REJECTED
            ):
                k = (event.session_id, event.material_id)
                pending[k] = pending.get(k, 0) + event.counted_quantity

        sequence = max(
            (m.sequence for m in tables["StockMovements"].values()), default=0
        )
        with self._state_lock:
            self._tables = tables
            self._pending = pending
            self._sequence = sequence

        if any(tables.values()):
            logger.info(
                "Defter yüklendi: %d malzeme, %d oturum, %d tampon kaydı",
                len(tables["Materials"]), len(tables["CountSessions"]), len(pending),
            )

    def _commit(
        self,
        changes: list[Change],
        pending: Optional[dict[PendingKey, int]] = None,
    ) -> None:
        """Değişiklikleri önce arka uca, sonra belleğe uygular.

        `pending` tampon için mutlak yeni değerleri taşır; 0 girdiyi siler.
        """
        try:
            self.backend.commit(changes)
        except LedgerError:
            raise
        except Exception as e:
            logger.error("Arka uç commit hatası: %s", e)
            raise PersistenceError(f"Commit başarısız: {e}") from e

        with self._state_lock:
            for change in changes:
                rows = self._tables[change.table]
                if change.op == "put":
                    rows[change.key] = change.record
                else:
                    rows.pop(change.key, None)
            for k, value in (pending or {}).items():
                if value:
                    self._pending[k] = value
                else:
                    self._pending.pop(k, None)

    def exclusive(self, *resource_keys: str):
        """Kaynak anahtarları için sıralı kilit (context manager)."""
        return self._locks.hold(*resource_keys)

    def _now(self) -> str:
        return self.clock().isoformat()

    def _next_sequence(self) -> int:
        with self._state_lock:
            self._sequence += 1
            return self._sequence

    def _movement(
        self,
        material_id: str,
        movement_type: MovementType,
        before: int,
        after: int,
        reference_id: Optional[str],
        now: str,
    ) -> Change:
        return put("StockMovements", StockMovement(
            movement_id=new_id("mov"),
            material_id=material_id,
            movement_type=movement_type,
            quantity_before=before,
            quantity_after=after,
            timestamp=now,
            sequence=self._next_sequence(),
            reference_id=reference_id,
        ))

    def _audit(
        self, action: str, module: str, record_id: str, details: str,
        performed_by: str, now: str,
    ) -> Change:
        return put("AuditLog", AuditLogEntry(
            entry_id=new_id("log"),
            action=action,
            module=module,
            record_id=record_id,
            details=details,
            performed_by=performed_by or SYSTEM_USER,
            timestamp=now,
        ))

    def _rows(self, table: str) -> list[Any]:
        with self._state_lock:
            return list(self._tables[table].values())

    def _row(self, table: str, record_id: str) -> Any:
        with self._state_lock:
            return self._tables[table].get(record_id)

    # --- Malzeme okuma ---

    def find_material(self, material_id: str) -> Optional[Material]:
        return self._row("Materials", material_id)

    def get_material(self, material_id: str) -> Material:
        material = self.find_material(material_id)
        if material is None:
            raise NotFoundError("Malzeme", material_id)
        return material

    def list_materials(
        self,
        search_term: Optional[str] = None,
        category: Optional[str] = None,
        status: ScopeFilter = None,
        low_stock_only: bool = False,
    ) -> list[Material]:
        """Malzemeleri filtreler ve ada göre sıralar."""
        term = (search_term or "").strip().lower()
        scope = normalize_scope(status)
        result = []
        for m in self._rows("Materials"):
            if term and not any(
                term in (value or "").lower()
                for value in (m.name, m.barcode, m.gtin, m.sn, m.udi_code, m.category, m.supplier)
            ):
                continue
            if category and m.category != category:
                continue
            if scope is not None and m.status != scope:
                continue
            if low_stock_only and not m.is_critical:
                continue
            result.append(m)
        return sorted(result, key=lambda m: m.name.lower())

    def low_stock_materials(self) -> list[Material]:
        return self.list_materials(low_stock_only=True)

    def resolve(self, code: str, scope: ScopeFilter = None) -> Resolution:
        return self.resolver.resolve(code, self._rows("Materials"), scope)

    # --- Malzeme yazma ---

    @staticmethod
    def _coerce_fields(fields: dict) -> dict:
        """Alan tiplerini düzeltir; hatalı değerler ValidationError."""
        result = dict(fields)
        try:
            if "status" in result:
                result["status"] = MaterialStatus(result["status"])
            for name in ("current_stock", "min_stock"):
                if name in result and result[name] is not None:
                    if isinstance(result[name], bool):
                        raise ValueError(name)
                    result[name] = int(result[name])
            if "unit_price" in result and result["unit_price"] is not None:
                result["unit_price"] = float(result["unit_price"])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Geçersiz malzeme alanı: {e}") from e

        check = StockValidator.validate_material_fields(result)
        if not check.is_valid:
            raise ValidationError("; ".join(check.errors))
        return result

    def create_material(
        self, name: str, performed_by: str = SYSTEM_USER, **fields: Any
    ) -> Material:
        """Yeni malzeme oluşturur. SN doluysa tekil olmalıdır."""
        unknown = set(fields) - _CREATE_FIELDS
        if unknown:
            raise ValidationError(f"Bilinmeyen alan(lar): {sorted(unknown)}")
        if not name or not name.strip():
            raise ValidationError("Malzeme adı boş olamaz")
        values = self._coerce_fields(fields)

        with self._locks.hold(CATALOG_KEY):
            sn = values.get("sn") or ""
            StockValidator.ensure_serial_available(sn, self._rows("Materials"))

            now = self._now()
            material = Material(
                material_id=new_id("mat"),
                name=name.strip(),
                created_at=now,
                updated_at=now,
                **values,
            )
            changes = [
                put("Materials", material),
                self._movement(
                    material.material_id, MovementType.CREATE,
                    0, material.current_stock, None, now,
                ),
                self._audit(
                    "CREATE", "materials", material.material_id,
                    f"Malzeme eklendi: {material.name}", performed_by, now,
                ),
            ]
            self._commit(changes)

        logger.info("Malzeme eklendi: %s (%s)", material.name, material.material_id)
        return material

    def update_material(
        self, material_id: str, patch: dict, performed_by: str = SYSTEM_USER
    ) -> Material:
        """Malzeme alanlarını günceller. Stok yalnızca defter işlemleriyle değişir."""
        protected = set(patch) & _PROTECTED_FIELDS
        if protected:
            raise ValidationError(f"Bu alanlar değiştirilemez: {sorted(protected)}")
        unknown = set(patch) - _PATCH_FIELDS
        if unknown:
            raise ValidationError(f"Bilinmeyen alan(lar): {sorted(unknown)}")
        if "name" in patch and not str(patch["name"] or "").strip():
            raise ValidationError("Malzeme adı boş olamaz")
        values = self._coerce_fields(patch)

        with self._locks.hold(CATALOG_KEY, material_key(material_id)):
            current = self.get_material(material_id)
            new_sn = values.get("sn")
            if new_sn and new_sn != current.sn:
                StockValidator.ensure_serial_available(
                    new_sn, self._rows("Materials"), exclude_id=material_id
                )

            now = self._now()
            updated = dataclasses.replace(current, updated_at=now, **values)
            self._commit([
                put("Materials", updated),
                self._audit(
                    "UPDATE", "materials", material_id,
                    f"Malzeme güncellendi: {sorted(values)}", performed_by, now,
                ),
            ])
        return updated

    def delete_material(self, material_id: str, performed_by: str = SYSTEM_USER) -> Material:
        """Malzemeyi siler. Geçmiş olaylar kimliği korur."""
        with self._locks.hold(CATALOG_KEY, material_key(material_id)):
            material = self.get_material(material_id)
            now = self._now()
            self._commit([
                delete("Materials", material),
                self._audit(
                    "DELETE", "materials", material_id,
                    f"Malzeme silindi: {material.name}", performed_by, now,
                ),
            ])
        logger.info("Malzeme silindi: %s", material_id)
        return material

    def update_materials_status(
        self,
        material_ids: Iterable[str],
        status: Union[MaterialStatus, str],
        performed_by: str = SYSTEM_USER,
    ) -> int:
        """Toplu statü değişikliği. Bilinmeyen kimlikler atlanır."""
        try:
            new_status = MaterialStatus(status)
        except ValueError as e:
            raise ValidationError(f"Geçersiz statü: {status!r}") from e

        ids = sorted(set(material_ids))
        keys = [material_key(mid) for mid in ids]
        with self._locks.hold(CATALOG_KEY, *keys):
            now = self._now()
            changes = []
            for mid in ids:
                material = self.find_material(mid)
                if material is None or material.status == new_status:
                    continue
                changes.append(put(
                    "Materials",
                    dataclasses.replace(material, status=new_status, updated_at=now),
                ))
            if not changes:
                return 0
            changes.append(self._audit(
                "UPDATE", "materials", ",".join(c.key for c in changes),
                f"Toplu statü değişikliği: {new_status.value}", performed_by, now,
            ))
            self._commit(changes)
        return len(changes) - 1

    # --- Kullanım ve giriş ---

    def apply_usage(
        self,
        material_id: str,
        quantity: int,
        patient_ref: str = "",
        notes: str = "",
        performed_by: str = SYSTEM_USER,
    ) -> UsageEvent:
        """Hasta kullanımı kaydeder ve stoğu düşer."""
        StockValidator.require_positive_quantity(quantity)

        with self._locks.hold(material_key(material_id)):
            material = self.get_material(material_id)
            if quantity > material.current_stock:
                raise InsufficientStockError(material_id, material.current_stock, quantity)

            now = self._now()
            event = UsageEvent(
                usage_id=new_id("use"),
                material_id=material_id,
                quantity=quantity,
                unit_price_at_usage=material.unit_price,
                total_cost=round(quantity * material.unit_price, 2),
                timestamp=now,
                patient_ref=patient_ref or "",
                notes=notes or "",
            )
            after = material.current_stock - quantity
            self._commit([
                put("Materials", dataclasses.replace(material, current_stock=after, updated_at=now)),
                put("UsageEvents", event),
                self._movement(
                    material_id, MovementType.USAGE,
                    material.current_stock, after, event.usage_id, now,
                ),
                self._audit(
                    "CREATE", "usage", event.usage_id,
                    f"{material.name} x{quantity} kullanıldı", performed_by, now,
                ),
            ])

        logger.info("Kullanım kaydedildi: %s x%d (kalan %d)", material_id, quantity, after)
        return event

    def apply_usage_by_code(
        self,
        code: str,
        quantity: int,
        patient_ref: str = "",
        notes: str = "",
        performed_by: str = SYSTEM_USER,
    ) -> UsageEvent:
        """Okutulan kodu çözer ve kullanım kaydeder."""
        resolution = self.resolve(code)
        if resolution.outcome == ResolutionOutcome.DUPLICATE_SERIAL:
            raise DuplicateSerialError(
                resolution.decoded.sn, resolution.owner_id, resolution.owner_name
            )
        if not resolution.resolved:
            raise NotFoundError("Malzeme", code)
        return self.apply_usage(
            resolution.material.material_id, quantity, patient_ref, notes, performed_by
        )

    def _require_usage(self, usage_id: str) -> UsageEvent:
        event = self._row("UsageEvents", usage_id)
        if event is None:
            raise NotFoundError("Kullanım kaydı", usage_id)
        return event

    def reverse_usage(self, usage_id: str, performed_by: str = SYSTEM_USER) -> UsageEvent:
        """Kullanım kaydını siler ve stoğu aynen geri yükler."""
        event = self._require_usage(usage_id)

        with self._locks.hold(material_key(event.material_id)):
            event = self._require_usage(usage_id)
            material = self.find_material(event.material_id)
            now = self._now()
            changes = [delete("UsageEvents", event)]
            if material is None:
                logger.warning(
                    "Kullanım iptali: malzeme bulunamadı (%s), yalnızca kayıt silindi",
                    event.material_id,
                )
            else:
                after = material.current_stock + event.quantity
                changes.append(put(
                    "Materials",
                    dataclasses.replace(material, current_stock=after, updated_at=now),
                ))
                changes.append(self._movement(
                    material.material_id, MovementType.USAGE_REVERSAL,
                    material.current_stock, after, usage_id, now,
                ))
            changes.append(self._audit(
                "DELETE", "usage", usage_id,
                f"Kullanım iptal edildi: {event.material_id} x{event.quantity}",
                performed_by, now,
            ))
            self._commit(changes)
        return event

    def adjust_usage(
        self, usage_id: str, new_quantity: int, performed_by: str = SYSTEM_USER
    ) -> UsageEvent:
        """Kullanım miktarını düzeltir; fark stoğa yansır."""
        StockValidator.require_positive_quantity(new_quantity)
        event = self._require_usage(usage_id)

        with self._locks.hold(material_key(event.material_id)):
            event = self._require_usage(usage_id)
            material = self.get_material(event.material_id)
            delta = new_quantity - event.quantity
            if delta > material.current_stock:
                raise InsufficientStockError(material.material_id, material.current_stock, delta)

            now = self._now()
            updated_event = dataclasses.replace(
                event,
                quantity=new_quantity,
                total_cost=round(new_quantity * event.unit_price_at_usage, 2),
            )
            changes = [put("UsageEvents", updated_event)]
            if delta:
                after = material.current_stock - delta
                changes.append(put(
                    "Materials",
                    dataclasses.replace(material, current_stock=after, updated_at=now),
                ))
                changes.append(self._movement(
                    material.material_id, MovementType.USAGE_ADJUSTMENT,
                    material.current_stock, after, usage_id, now,
                ))
            changes.append(self._audit(
                "UPDATE", "usage", usage_id,
                f"Kullanım miktarı {event.quantity} -> {new_quantity}", performed_by, now,
            ))
            self._commit(changes)
        return updated_event

    def apply_receipt(
        self,
        material_id: str,
        quantity: int,
        invoice_ref: str = "",
        unit_price: Optional[float] = None,
        performed_by: str = SYSTEM_USER,
    ) -> ReceiptEvent:
        """Fatura girişi: stoğu artırır."""
        StockValidator.require_positive_quantity(quantity)
        if unit_price is not None and unit_price < 0:
            raise ValidationError(f"Birim fiyat negatif olamaz: {unit_price}")

        with self._locks.hold(material_key(material_id)):
            material = self.get_material(material_id)
            price = material.unit_price if unit_price is None else float(unit_price)
            now = self._now()
            event = ReceiptEvent(
                receipt_id=new_id("rcv"),
                material_id=material_id,
                quantity=quantity,
                unit_price_at_receipt=price,
                total_value=round(quantity * price, 2),
                timestamp=now,
                invoice_ref=invoice_ref or "",
            )
            after = material.current_stock + quantity
            self._commit([
                put("Materials", dataclasses.replace(material, current_stock=after, updated_at=now)),
                put("ReceiptEvents", event),
                self._movement(
                    material_id, MovementType.RECEIPT,
                    material.current_stock, after, event.receipt_id, now,
                ),
                self._audit(
                    "CREATE", "receipts", event.receipt_id,
                    f"{material.name} x{quantity} giriş (fatura {invoice_ref or '-'})",
                    performed_by, now,
                ),
            ])

        logger.info("Giriş kaydedildi: %s x%d (stok %d)", material_id, quantity, after)
        return event

    # --- Sayım oturumları ---

    def get_session(self, session_id: str) -> CountSession:
        session = self._row("CountSessions", session_id)
        if session is None:
            raise NotFoundError("Sayım oturumu", session_id)
        return session

    def list_sessions_raw(self) -> list[CountSession]:
        return self._rows("CountSessions")

    def add_session(self, session: CountSession, performed_by: str = SYSTEM_USER) -> CountSession:
        """Yeni oturumu kaydeder. Numaralandırma kilidi çağıranda tutulur."""
        self._commit([
            put("CountSessions", session),
            self._audit(
                "CREATE", "stock-count", session.session_id,
                f"Sayım oturumu açıldı: {session.session_no}",
                performed_by, session.created_at or self._now(),
            ),
        ])
        return session

    def get_count(self, count_id: str) -> CountEvent:
        event = self._row("CountEvents", count_id)
        if event is None:
            raise NotFoundError("Sayım kaydı", count_id)
        return event

    def counts_for_session(self, session_id: str) -> list[CountEvent]:
        events = [e for e in self._rows("CountEvents") if e.session_id == session_id]
        return sorted(events, key=lambda e: e.timestamp)

    def pending_quantity(self, session_id: str, material_id: Optional[str] = None) -> int:
        """Oturum tamponundaki (henüz stoğa yansımamış) miktar."""
        with self._state_lock:
            return sum(
                qty for (sid, mid), qty in self._pending.items()
                if sid == session_id and (material_id is None or mid == material_id)
            )

    def _pending_for(self, session_id: str) -> dict[str, int]:
        with self._state_lock:
            return {
                mid: qty for (sid, mid), qty in self._pending.items() if sid == session_id
            }

    def apply_count(
        self,
        session_id: str,
        material_id: str,
        quantity: int,
        mode: Union[CountMode, str],
        counted_by: str,
        code: str = "",
        performed_by: Optional[str] = None,
    ) -> CountEvent:
        """Sayım olayı ekler.

        replace: stok hemen sayılan miktara eşitlenir.
        accumulate: miktar oturum tamponuna eklenir, finalize'da uygulanır.
        """
        StockValidator.require_positive_quantity(quantity)
        try:
            mode = CountMode(mode)
        except ValueError as e:
            raise ValidationError(f"Geçersiz sayım modu: {mode!r}") from e

        with self._locks.hold(session_key(session_id), material_key(material_id)):
            session = self.get_session(session_id)
            if not session.is_open:
                raise InvalidSessionStatusError(
                    f"Oturum {session.session_no} {session.status.value}: sayım eklenemez"
                )
            self._require_no_partial_finalize(session)
            material = self.get_material(material_id)
            if not material.in_scope(session.session_status_filter):
                raise InvalidSessionStatusError(
                    f"{material.name} ({material.status.value}) bu oturumun kapsamında değil"
                )

            now = self._now()
            event = CountEvent(
                count_id=new_id("cnt"),
                session_id=session_id,
                material_id=material_id,
                counted_quantity=quantity,
                unit_price_at_count=material.unit_price,
                total_value=round(quantity * material.unit_price, 2),
                counted_by=counted_by,
                mode=mode,
                timestamp=now,
                code=code or "",
                previous_stock=material.current_stock if mode == CountMode.REPLACE else None,
            )
            session_status = (
                SessionStatus.IN_PROGRESS
                if session.status == SessionStatus.PLANNED else session.status
            )
            changes = [
                put("CountEvents", event),
                put("CountSessions", dataclasses.replace(
                    session,
                    status=session_status,
                    total_products_counted=session.total_products_counted + quantity,
                    updated_at=now,
                )),
            ]
            pending: dict[PendingKey, int] = {}
            if mode == CountMode.REPLACE:
                changes.append(put("Materials", dataclasses.replace(
                    material,
                    current_stock=quantity,
                    last_count_date=now,
                    last_counted_by=counted_by,
                    last_counted_quantity=quantity,
                    updated_at=now,
                )))
                changes.append(self._movement(
                    material_id, MovementType.COUNT_REPLACE,
                    material.current_stock, quantity, event.count_id, now,
                ))
            else:
                k = (session_id, material_id)
                pending[k] = self.pending_quantity(session_id, material_id) + quantity
            changes.append(self._audit(
                "CREATE", "stock-count", event.count_id,
                f"{session.session_no}: {material.name} x{quantity} ({mode.value})",
                performed_by or counted_by, now,
            ))
            self._commit(changes, pending)
        return event

    def finalize_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        """Tamponu stoğa uygular ve oturumu tamamlar."""
        for _ in range(_FINALIZE_ATTEMPTS):
            expected = set(self._pending_for(session_id))
            keys = [material_key(mid) for mid in expected]
            with self._locks.hold(session_key(session_id), *keys):
                buffered = self._pending_for(session_id)
                if set(buffered) - expected:
                    # Kilit alınırken tampona yeni malzeme eklendi
                    continue
                return self._finalize_locked(session_id, buffered, performed_by)
        raise BusyError(session_key(session_id), self.config.lock_timeout_seconds)

    def _finalize_locked(
        self, session_id: str, buffered: dict[str, int], performed_by: str
    ) -> CountSession:
        session = self.get_session(session_id)
        if not session.can_transition_to(SessionStatus.COMPLETED):
            raise InvalidSessionStatusError(
                f"Oturum {session.session_no} {session.status.value} durumunda tamamlanamaz"
            )

        now = self._now()
        # Her malzeme için (material_id, [stok güncellemesi, hareket])
        steps: list[tuple[str, list[Change]]] = []
        for material_id, total in sorted(buffered.items()):
            material = self.find_material(material_id)
            if material is None:
                logger.warning("Finalize: malzeme silinmiş, tampon atlandı (%s)", material_id)
                continue
            after = material.current_stock + total
            steps.append((material_id, [
                put("Materials", dataclasses.replace(
                    material,
                    current_stock=after,
                    last_count_date=now,
                    last_counted_by=session.counted_by,
                    last_counted_quantity=total,
                    updated_at=now,
                )),
                self._movement(
                    material_id, MovementType.COUNT_FINALIZE,
                    material.current_stock, after, session_id, now,
                ),
            ]))

        frozen_total = sum(
            e.counted_quantity for e in self.counts_for_session(session_id)
            if e.status != CountStatus.REJECTED
        )
        completed = dataclasses.replace(
            session,
            status=SessionStatus.COMPLETED,
            total_products_counted=frozen_total,
            completed_at=now,
            updated_at=now,
            applied_materials=[],
        )
        closing = [
            put("CountSessions", completed),
            self._audit(
                "UPDATE", "stock-count", session_id,
                f"Oturum tamamlandı: {session.session_no} ({frozen_total} ürün)",
                performed_by, now,
            ),
        ]
        cleared = {(session_id, mid): 0 for mid in buffered}

        limit = self.backend.max_changes
        size = sum(len(group) for _, group in steps) + len(closing)
        if limit is None or size <= limit:
            self._commit([c for _, group in steps for c in group] + closing, cleared)
        else:
            logger.warning(
                "Finalize tek transaction'a sığmıyor (%d > %d), malzeme bazında uygulanıyor: %s",
                size, limit, session.session_no,
            )
            self._apply_finalize_steps(session, steps, limit)
            self._commit(closing, cleared)

        logger.info(
            "Oturum tamamlandı: %s, %d malzeme stoğa yansıtıldı",
            session.session_no, len(buffered),
        )
        return completed

    def _apply_finalize_steps(
        self, session: CountSession, steps: list[tuple[str, list[Change]]], limit: int
    ) -> None:
        """Tamponu transaction limitine sığan parçalar halinde stoğa yansıtır.

        Her parça, uyguladığı malzemeleri oturumun `applied_materials`
        listesine ekleyen oturum kaydıyla birlikte yazılır. Parçalardan biri
        başarısız olursa oturum açık kalır; tekrar çağrılan finalize yalnızca
        kalan tamponu uygular ve yeniden yükleme uygulanmış malzemeleri
        tampona geri almaz.
        """
        batch: list[Change] = []
        applied: list[str] = []
        for material_id, group in steps:
            # +1: oturum kaydı
            if batch and len(batch) + len(group) + 1 > limit:
                session = self._commit_finalize_batch(session, batch, applied)
                batch, applied = [], []
            batch.extend(group)
            applied.append(material_id)
        if batch:
            self._commit_finalize_batch(session, batch, applied)

    def _commit_finalize_batch(
        self, session: CountSession, batch: list[Change], applied: list[str]
    ) -> CountSession:
        progressed = dataclasses.replace(
            session, applied_materials=session.applied_materials + applied
        )
        self._commit(
            batch + [put("CountSessions", progressed)],
            {(session.session_id, mid): 0 for mid in applied},
        )
        logger.info(
            "Finalize parçası yazıldı: %s, %d malzeme", session.session_no, len(applied)
        )
        return progressed

    @staticmethod
    def _require_no_partial_finalize(session: CountSession) -> None:
        if session.applied_materials:
            raise InvalidSessionStatusError(
                f"Oturum {session.session_no} finalize işlemi yarıda kaldı, "
                "önce finalize tamamlanmalı"
            )

    def cancel_session(self, session_id: str, performed_by: str = SYSTEM_USER) -> CountSession:
        """Oturumu iptal eder; tampon stoğa yansımadan silinir."""
        with self._locks.hold(session_key(session_id)):
            session = self.get_session(session_id)
            if not session.can_transition_to(SessionStatus.CANCELLED):
                raise InvalidSessionStatusError(
                    f"Oturum {session.session_no} {session.status.value} durumunda iptal edilemez"
                )
            self._require_no_partial_finalize(session)
            now = self._now()
            cancelled = dataclasses.replace(
                session, status=SessionStatus.CANCELLED, cancelled_at=now, updated_at=now
            )
            buffered = self._pending_for(session_id)
            self._commit(
                [
                    put("CountSessions", cancelled),
                    self._audit(
                        "UPDATE", "stock-count", session_id,
                        f"Oturum iptal edildi: {session.session_no}", performed_by, now,
                    ),
                ],
                {(session_id, mid): 0 for mid in buffered},
            )
        if buffered:
            logger.info(
                "Oturum iptal edildi: %s, %d malzemelik tampon silindi",
                session.session_no, len(buffered),
            )
        return cancelled

    def verify_count(
        self,
        count_id: str,
        action: str,
        verified_by: str,
        corrected_quantity: Optional[int] = None,
        notes: str = "",
    ) -> CountEvent:
        """Sayım kaydını onaylar, reddeder veya düzeltir."""
        if action not in _VERIFY_ACTIONS:
            raise ValidationError(f"Geçersiz doğrulama işlemi: {action!r}")
        if action == "correct":
            StockValidator.require_positive_quantity(corrected_quantity, "Düzeltilmiş miktar")

        event = self.get_count(count_id)
        with self._locks.hold(session_key(event.session_id), material_key(event.material_id)):
            event = self.get_count(count_id)
            session = self.get_session(event.session_id)
            if session.status == SessionStatus.CANCELLED:
                raise InvalidSessionStatusError(
                    f"İptal edilmiş oturumdaki sayım doğrulanamaz: {session.session_no}"
                )
            if event.status == CountStatus.REJECTED:
                raise ValidationError(f"Reddedilmiş sayım tekrar doğrulanamaz: {count_id}")

            now = self._now()
            new_status = _VERIFY_ACTIONS[action]
            old_qty = event.counted_quantity
            if action == "approve":
                new_qty = old_qty
            elif action == "reject":
                new_qty = 0
            else:
                new_qty = corrected_quantity
            delta = new_qty - old_qty

            changes: list[Change] = []
            pending: dict[PendingKey, int] = {}
            stock_target: Optional[int] = None
            material = self.find_material(event.material_id)

            if event.mode == CountMode.REPLACE:
                if action == "correct":
                    stock_target = new_qty
            elif delta:
                if session.is_open and event.material_id not in session.applied_materials:
                    k = (event.session_id, event.material_id)
                    pending[k] = max(0, self.pending_quantity(*k) + delta)
                elif material is not None:
                    stock_target = material.current_stock + delta

            if stock_target is not None:
                if material is None:
                    raise NotFoundError("Malzeme", event.material_id)
                if stock_target < 0:
                    raise InsufficientStockError(
                        material.material_id, material.current_stock, -delta
                    )
                changes.append(put("Materials", dataclasses.replace(
                    material,
                    current_stock=stock_target,
                    last_count_date=now,
                    last_counted_by=verified_by,
                    last_counted_quantity=new_qty,
                    updated_at=now,
                )))
                changes.append(self._movement(
                    material.material_id, MovementType.COUNT_CORRECTION,
                    material.current_stock, stock_target, count_id, now,
                ))

            updated_event = dataclasses.replace(
                event,
                status=new_status,
                verified_by=verified_by,
                verified_at=now,
                correction_notes=notes or event.correction_notes,
            )
            if action == "correct":
                updated_event = dataclasses.replace(
                    updated_event,
                    counted_quantity=new_qty,
                    total_value=round(new_qty * event.unit_price_at_count, 2),
                )
            changes.append(put("CountEvents", updated_event))
            if delta:
                changes.append(put("CountSessions", dataclasses.replace(
                    session,
                    total_products_counted=max(0, session.total_products_counted + delta),
                    updated_at=now,
                )))
            changes.append(self._audit(
                "UPDATE", "stock-count", count_id,
                f"Sayım {new_status.value}: {old_qty} -> {new_qty}", verified_by, now,
            ))
            self._commit(changes, pending)

        logger.info("Sayım doğrulandı: %s -> %s", count_id, new_status.value)
        return updated_event

    # --- Okuma ve denetim ---

    def usage_events(self, material_id: Optional[str] = None) -> list[UsageEvent]:
        events = [
            e for e in self._rows("UsageEvents")
            if material_id is None or e.material_id == material_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    def receipt_events(self, material_id: Optional[str] = None) -> list[ReceiptEvent]:
        events = [
            e for e in self._rows("ReceiptEvents")
            if material_id is None or e.material_id == material_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    def movements(self, material_id: Optional[str] = None) -> list[StockMovement]:
        moves = [
            m for m in self._rows("StockMovements")
            if material_id is None or m.material_id == material_id
        ]
        return sorted(moves, key=lambda m: m.sequence)

    def get_audit_log(
        self, module: Optional[str] = None, record_id: Optional[str] = None
    ) -> list[AuditLogEntry]:
        """İşlem günlüğü, en yeni kayıt önce."""
        entries = [
            e for e in self._rows("AuditLog")
            if (module is None or e.module == module)
            and (record_id is None or e.record_id == record_id)
        ]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    def snapshot(self) -> LedgerSnapshot:
        """Tek kilit altında alınmış tutarlı kopya.

        Kayıtlar değiştirilmez (her güncelleme yeni nesne üretir), bu
        yüzden tabloların yüzeysel kopyası yeterlidir.
        """
        with self._state_lock:
            return LedgerSnapshot(
                materials=dict(self._tables["Materials"]),
                usage_events=list(self._tables["UsageEvents"].values()),
                receipt_events=list(self._tables["ReceiptEvents"].values()),
                sessions=list(self._tables["CountSessions"].values()),
                count_events=list(self._tables["CountEvents"].values()),
                movements=sorted(
                    self._tables["StockMovements"].values(), key=lambda m: m.sequence
                ),
                pending=dict(self._pending),
                taken_at=self._now(),
            )

    def verify_integrity(self) -> dict:
        """Stok değişmezlerini doğrular (negatif stok, SN tekilliği, hareket zinciri)."""
        snap = self.snapshot()
        return self.validator.daily_stock_verification(
            list(snap.materials.values()), snap.movements
        )
