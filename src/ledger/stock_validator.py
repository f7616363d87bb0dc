"""Stok Tutarlılığı ve Validasyon - Veri bütünlüğü garantileri.

- Miktar ve fiyat validasyonu
- Negatif stok kontrolü
- Seri numarası tekilliği
- Stok hareket zinciri doğrulama (günlük kontrol)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from src.ledger.errors import DuplicateSerialError, ValidationError
from src.models.inventory import Material, StockMovement

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class StockValidator:
    """Stok tutarlılığı ve validasyon yöneticisi."""

    # --- Girdi validasyonu ---

    @staticmethod
    def require_positive_quantity(quantity: Any, label: str = "Miktar") -> int:
        """Miktarın pozitif tam sayı olduğunu doğrular."""
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"{label} tam sayı olmalıdır: {quantity!r}")
        if quantity <= 0:
            raise ValidationError(f"{label} pozitif olmalıdır: {quantity}")
        return quantity

    @staticmethod
    def validate_material_fields(fields: dict) -> ValidationResult:
        """Malzeme alanlarını doğrular."""
        errors = []
        name = fields.get("name")
        if name is not None and not str(name).strip():
            errors.append("Malzeme adı boş olamaz")
        stock = fields.get("current_stock")
        if stock is not None and (not isinstance(stock, int) or stock < 0):
            errors.append("Stok miktarı negatif olamaz")
        price = fields.get("unit_price")
        if price is not None and price < 0:
            errors.append("Birim fiyat negatif olamaz")
        min_stock = fields.get("min_stock")
        if min_stock is not None and min_stock < 0:
            errors.append("Kritik stok negatif olamaz")
        return ValidationResult(is_valid=len(errors) == 0, errors=errors)

    @staticmethod
    def ensure_serial_available(
        sn: str, materials: Iterable[Material], exclude_id: Optional[str] = None
    ) -> None:
        """SN başka bir malzemede kayıtlıysa DuplicateSerialError fırlatır."""
        if not sn:
            return
        for material in materials:
            if material.sn == sn and material.material_id != exclude_id:
                raise DuplicateSerialError(sn, material.material_id, material.name)

    # --- Değişmez kontrolleri ---

    def check_no_negative_stock(self, materials: Iterable[Material]) -> ValidationResult:
        """Tüm stok seviyelerinin negatif olmadığını doğrular."""
        errors = [
            f"Negatif stok tespit edildi: {m.material_id} ({m.name}) = {m.current_stock}"
            for m in materials
            if m.current_stock < 0
        ]
        return ValidationResult(is_valid=len(errors) == 0, errors=errors)

    def check_unique_serials(self, materials: Iterable[Material]) -> ValidationResult:
        """Boş olmayan seri numaralarının tekil olduğunu doğrular."""
        owners: dict[str, str] = {}
        errors = []
        for m in materials:
            if not m.sn:
                continue
            if m.sn in owners:
                errors.append(f"SN çakışması: {m.sn} -> {owners[m.sn]}, {m.material_id}")
            else:
                owners[m.sn] = m.material_id
        return ValidationResult(is_valid=len(errors) == 0, errors=errors)

    def verify_movement_chain(
        self, materials: Iterable[Material], movements: Iterable[StockMovement]
    ) -> ValidationResult:
        """Her malzemenin stoğu son hareket kaydıyla eşleşmeli."""
        last: dict[str, StockMovement] = {}
        for mv in sorted(movements, key=lambda m: m.sequence):
            last[mv.material_id] = mv

        errors = []
        warnings = []
        for m in materials:
            mv = last.get(m.material_id)
            if mv is None:
                warnings.append(f"Hareket kaydı yok: {m.material_id}")
                continue
            if mv.quantity_after != m.current_stock:
                errors.append(
                    f"Stok/hareket uyuşmazlığı: {m.material_id} "
                    f"stok={m.current_stock}, son hareket={mv.quantity_after}"
                )
        return ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

    def daily_stock_verification(
        self, materials: list[Material], movements: list[StockMovement]
    ) -> dict:
        """Günlük stok doğrulama: tüm değişmezleri tek raporda toplar."""
        checks = {
            "negative_stock": self.check_no_negative_stock(materials),
            "unique_serials": self.check_unique_serials(materials),
            "movement_chain": self.verify_movement_chain(materials, movements),
        }
        all_valid = all(r.is_valid for r in checks.values())
        if not all_valid:
            logger.error(
                "Stok doğrulaması başarısız: %s",
                [name for name, r in checks.items() if not r.is_valid],
            )
        return {
            "materials_checked": len(materials),
            "all_valid": all_valid,
            "checks": {
                name: {"is_valid": r.is_valid, "errors": r.errors, "warnings": r.warnings}
                for name, r in checks.items()
            },
        }
