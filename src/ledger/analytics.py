"""Analitik Motoru - defter geçmişi üzerinde salt okunur projeksiyonlar.

- Kullanım trendi (gün/hafta/ay/yıl) ve mevsimsel desen
- Stok değeri trendi (hareket zincirinden dönem sonu stoğu)
- Yıllık özet

Tüm hesaplar `ledger.snapshot()` kopyası üzerinde yapılır; defter
hiçbir zaman değiştirilmez. Boş defter sıfırlanmış yapılar döndürür.
"""

from __future__ import annotations

import bisect
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from src.ledger.errors import ValidationError
from src.ledger.ledger_store import LedgerSnapshot, LedgerStore
from src.models.inventory import (
    UNKNOWN_MATERIAL,
    Granularity,
    SessionStatus,
    StockMovement,
)

logger = logging.getLogger(__name__)

# Ay indeksi // 3 (Ocak=0) -> mevsim
SEASONS: tuple[str, ...] = ("Kış", "İlkbahar", "Yaz", "Sonbahar")

TREND_UP_RATIO = 1.1
TREND_DOWN_RATIO = 0.9
TOP_MATERIALS_LIMIT = 10
YEARLY_TOP_LIMIT = 5


@dataclass
class Period:
    key: str
    start: date
    end: date  # hariç

    @property
    def end_timestamp(self) -> str:
        return datetime.combine(self.end, time()).isoformat()


def _coerce_granularity(granularity: Union[Granularity, str]) -> Granularity:
    try:
        return Granularity(granularity)
    except ValueError as e:
        raise ValidationError(f"Geçersiz periyot: {granularity!r}") from e


def build_periods(year: int, granularity: Union[Granularity, str]) -> list[Period]:
    """Bir yılın dönemlerini üretir.

    Haftalar 1 Ocak'tan başlayan 7 günlük bloklardır (YYYY-Www).
    """
    granularity = _coerce_granularity(granularity)
    first = date(year, 1, 1)
    next_year = date(year + 1, 1, 1)

    if granularity == Granularity.YEARLY:
        return [Period(str(year), first, next_year)]

    if granularity == Granularity.MONTHLY:
        periods = []
        for month in range(1, 13):
            end = date(year, month + 1, 1) if month < 12 else next_year
            periods.append(Period(f"{year}-{month:02d}", date(year, month, 1), end))
        return periods

    step = timedelta(days=1 if granularity == Granularity.DAILY else 7)
    periods = []
    start = first
    week = 1
    while start < next_year:
        end = min(start + step, next_year)
        if granularity == Granularity.DAILY:
            key = start.isoformat()
        else:
            key = f"{year}-W{week:02d}"
            week += 1
        periods.append(Period(key, start, end))
        start = end
    return periods


def period_key(day: date, granularity: Granularity) -> str:
    if granularity == Granularity.DAILY:
        return day.isoformat()
    if granularity == Granularity.WEEKLY:
        week = (day - date(day.year, 1, 1)).days // 7 + 1
        return f"{day.year}-W{week:02d}"
    if granularity == Granularity.MONTHLY:
        return f"{day.year}-{day.month:02d}"
    return str(day.year)


def _event_date(timestamp: str) -> date:
    return datetime.fromisoformat(timestamp).date()


def analyze_trend(values: list[float]) -> str:
    """İlk yarı ile ikinci yarı ortalamasını karşılaştırır."""
    if len(values) < 2:
        return "stable"
    half = len(values) // 2
    first = sum(values[:half]) / half
    second = sum(values[half:]) / (len(values) - half)
    if second > first * TREND_UP_RATIO:
        return "increasing"
    if second < first * TREND_DOWN_RATIO:
        return "decreasing"
    return "stable"


class AnalyticsEngine:
    """Defter üzerinde salt okunur analizler."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    @staticmethod
    def _material_name(snap: LedgerSnapshot, material_id: str) -> str:
        material = snap.materials.get(material_id)
        return material.name if material else UNKNOWN_MATERIAL

    # --- Kullanım trendi ---

    def get_usage_trend(
        self,
        year: int,
        material_id: Optional[str] = None,
        granularity: Union[Granularity, str] = Granularity.MONTHLY,
    ) -> dict:
        """Dönem bazında kullanım miktarı ve maliyeti."""
        granularity = _coerce_granularity(granularity)
        snap = self.ledger.snapshot()

        rows = {
            p.key: {"period": p.key, "total_quantity": 0, "total_cost": 0.0, "usage_count": 0}
            for p in build_periods(year, granularity)
        }
        monthly = [0] * 12
        per_material: dict[str, dict] = defaultdict(lambda: {"quantity": 0, "cost": 0.0})

        events = [
            e for e in snap.usage_events
            if material_id is None or e.material_id == material_id
        ]
        total_quantity = 0
        total_cost = 0.0
        usage_count = 0
        for event in events:
            day = _event_date(event.timestamp)
            if day.year != year:
                continue
            row = rows[period_key(day, granularity)]
            row["total_quantity"] += event.quantity
            row["total_cost"] += event.total_cost
            row["usage_count"] += 1
            monthly[day.month - 1] += event.quantity
            per_material[event.material_id]["quantity"] += event.quantity
            per_material[event.material_id]["cost"] += event.total_cost
            total_quantity += event.quantity
            total_cost += event.total_cost
            usage_count += 1

        for row in rows.values():
            row["total_cost"] = round(row["total_cost"], 2)

        season_totals = {name: 0 for name in SEASONS}
        for month_index, qty in enumerate(monthly):
            season_totals[SEASONS[month_index // 3]] += qty
        peak_season = (
            max(SEASONS, key=lambda s: season_totals[s]) if total_quantity > 0 else None
        )

        top = sorted(per_material.items(), key=lambda kv: kv[1]["quantity"], reverse=True)
        return {
            "year": year,
            "material_id": material_id,
            "granularity": granularity.value,
            "periods": list(rows.values()),
            "total_quantity": total_quantity,
            "total_cost": round(total_cost, 2),
            "usage_count": usage_count,
            "average_quantity_per_usage": (
                round(total_quantity / usage_count, 2) if usage_count else 0.0
            ),
            "seasonal_pattern": {
                "seasons": season_totals,
                "peak_season": peak_season,
                "trend": analyze_trend(monthly),
            },
            "top_materials": [
                {
                    "material_id": mid,
                    "name": self._material_name(snap, mid),
                    "quantity": data["quantity"],
                    "cost": round(data["cost"], 2),
                }
                for mid, data in top[:TOP_MATERIALS_LIMIT]
            ],
        }

    # --- Stok değeri trendi ---

    @staticmethod
    def _movement_index(movements: list[StockMovement]) -> dict[str, tuple[list[str], list[int]]]:
        """Malzeme bazında zaman sıralı (timestamp, stok) dizileri."""
        grouped: dict[str, list[StockMovement]] = defaultdict(list)
        for mv in movements:
            grouped[mv.material_id].append(mv)
        index = {}
        for mid, items in grouped.items():
            items.sort(key=lambda m: (m.timestamp, m.sequence))
            index[mid] = ([m.timestamp for m in items], [m.quantity_after for m in items])
        return index

    def get_stock_value_trend(
        self,
        year: int,
        granularity: Union[Granularity, str] = Granularity.MONTHLY,
    ) -> dict:
        """Dönem sonu stok değeri ve kritik stok sayısı.

        Dönem sonu stoğu, o andan önceki son hareket kaydından bulunur;
        değer güncel birim fiyatla hesaplanır. Silinmiş malzemeler dahil
        edilmez.
        """
        granularity = _coerce_granularity(granularity)
        snap = self.ledger.snapshot()
        index = self._movement_index(snap.movements)

        periods = []
        for period in build_periods(year, granularity):
            cutoff = period.end_timestamp
            total_value = 0.0
            material_count = 0
            critical_count = 0
            for material in snap.materials.values():
                stamps, stocks = index.get(material.material_id, ([], []))
                pos = bisect.bisect_left(stamps, cutoff) - 1
                if pos < 0:
                    continue
                stock = stocks[pos]
                material_count += 1
                total_value += stock * material.unit_price
                if stock <= material.min_stock:
                    critical_count += 1
            periods.append({
                "period": period.key,
                "total_value": round(total_value, 2),
                "material_count": material_count,
                "critical_count": critical_count,
            })

        values = [p["total_value"] for p in periods]
        return {
            "year": year,
            "granularity": granularity.value,
            "periods": periods,
            "current_total_value": round(
                sum(m.stock_value for m in snap.materials.values()), 2
            ),
            "peak_value": max(values) if values else 0.0,
            "trend": analyze_trend(values),
        }

    # --- Yıllık özet ---

    def get_yearly_summary(self, year: int) -> dict:
        snap = self.ledger.snapshot()
        materials = list(snap.materials.values())

        months = {
            f"{year}-{m:02d}": {
                "month": f"{year}-{m:02d}",
                "usage_quantity": 0,
                "usage_cost": 0.0,
                "receipt_quantity": 0,
                "receipt_value": 0.0,
            }
            for m in range(1, 13)
        }
        patients: set[str] = set()
        used: dict[str, dict] = defaultdict(lambda: {"quantity": 0, "cost": 0.0})
        usage_cost = 0.0
        usage_quantity = 0
        for event in snap.usage_events:
            day = _event_date(event.timestamp)
            if day.year != year:
                continue
            row = months[period_key(day, Granularity.MONTHLY)]
            row["usage_quantity"] += event.quantity
            row["usage_cost"] += event.total_cost
            used[event.material_id]["quantity"] += event.quantity
            used[event.material_id]["cost"] += event.total_cost
            usage_quantity += event.quantity
            usage_cost += event.total_cost
            if event.patient_ref:
                patients.add(event.patient_ref)

        receipt_value = 0.0
        receipt_quantity = 0
        for event in snap.receipt_events:
            day = _event_date(event.timestamp)
            if day.year != year:
                continue
            row = months[period_key(day, Granularity.MONTHLY)]
            row["receipt_quantity"] += event.quantity
            row["receipt_value"] += event.total_value
            receipt_quantity += event.quantity
            receipt_value += event.total_value

        for row in months.values():
            row["usage_cost"] = round(row["usage_cost"], 2)
            row["receipt_value"] = round(row["receipt_value"], 2)

        sessions = [
            s for s in snap.sessions
            if s.count_date.startswith(f"{year}-") and s.status != SessionStatus.CANCELLED
        ]
        top = sorted(used.items(), key=lambda kv: kv[1]["quantity"], reverse=True)

        summary = {
            "year": year,
            "material_count": len(materials),
            "patient_count": len(patients),
            "total_stock_value": round(sum(m.stock_value for m in materials), 2),
            "critical_stock_count": sum(1 for m in materials if m.is_critical),
            "total_usage_cost": round(usage_cost, 2),
            "total_usage_quantity": usage_quantity,
            "total_receipt_value": round(receipt_value, 2),
            "total_receipt_quantity": receipt_quantity,
            "sessions_count": len(sessions),
            "completed_sessions": sum(
                1 for s in sessions if s.status == SessionStatus.COMPLETED
            ),
            "monthly": list(months.values()),
            "top_used_materials": [
                {
                    "material_id": mid,
                    "name": self._material_name(snap, mid),
                    "quantity": data["quantity"],
                    "cost": round(data["cost"], 2),
                }
                for mid, data in top[:YEARLY_TOP_LIMIT]
            ],
        }
        logger.debug("Yıllık özet hesaplandı: %s", year)
        return summary
