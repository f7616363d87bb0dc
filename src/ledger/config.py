"""Merkezi konfigürasyon. .env dosyası python-dotenv ile yüklenir."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Proje kokundeki .env dosyasi
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Gs1Config:
    """GS1 Application Identifier sınırları (All-Barcode çözümleme)."""

    gtin_ai: str = "01"
    gtin_length: int = 14
    serial_ai: str = "21"
    lot_ai: str = "10"
    barcode_length: int = 13
    group_separator: str = "\x1d"
    # Sabit uzunluklu AI'lar: {ai: uzunluk}
    fixed_length_ais: dict[str, int] = field(
        default_factory=lambda: {"11": 6, "17": 6}
    )
    # GS ayracı yoksa seriyi sonlandıran AI'lar; boşsa seri kodun sonuna kadar okunur
    serial_terminator_ais: tuple[str, ...] = ()


@dataclass(frozen=True)
class LedgerConfig:
    backend: str = "memory"
    region_name: str = "us-west-2"
    table_prefix: str = ""
    lock_timeout_seconds: float = 5.0
    log_level: str = "INFO"
    gs1: Gs1Config = field(default_factory=Gs1Config)


def load_config(env_path: Optional[Path] = None) -> LedgerConfig:
    """Ortam değişkenlerinden konfigürasyon oluşturur.

    Mevcut ortam değişkenleri .env değerlerini ezer (override=False).
    """
    load_dotenv(env_path or _ENV_PATH, override=False)

    gs1_defaults = Gs1Config()
    terminators = os.environ.get("STOCK_GS1_SERIAL_TERMINATORS")
    gs1 = Gs1Config(
        gtin_ai=os.environ.get("STOCK_GS1_GTIN_AI", gs1_defaults.gtin_ai),
        gtin_length=int(os.environ.get("STOCK_GS1_GTIN_LENGTH", gs1_defaults.gtin_length)),
        serial_ai=os.environ.get("STOCK_GS1_SERIAL_AI", gs1_defaults.serial_ai),
        barcode_length=int(
            os.environ.get("STOCK_GS1_BARCODE_LENGTH", gs1_defaults.barcode_length)
        ),
        serial_terminator_ais=(
            _csv(terminators) if terminators is not None else gs1_defaults.serial_terminator_ais
        ),
    )

    return LedgerConfig(
        backend=os.environ.get("STOCK_BACKEND", "memory").lower(),
        region_name=os.environ.get("AWS_DEFAULT_REGION", "us-west-2"),
        table_prefix=os.environ.get("STOCK_TABLE_PREFIX", ""),
        lock_timeout_seconds=float(os.environ.get("STOCK_LOCK_TIMEOUT", "5.0")),
        log_level=os.environ.get("STOCK_LOG_LEVEL", "INFO").upper(),
        gs1=gs1,
    )
