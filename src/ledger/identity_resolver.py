"""Kimlik Çözümleyici - okutulan/yazılan kodu tek bir malzemeye eşler.

- GS1 "All-Barcode" (AI + değer dizisi) çözümleme
- Global seri numarası çakışma kontrolü
- Öncelik tablosuna göre eşleştirme
- Oturum statü kapsamı filtresi

Çözümleyici hiçbir zaman hata fırlatmaz; bozuk kodlar düz barkod kabul edilir.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from src.ledger.config import Gs1Config
from src.models.inventory import Material, ScopeFilter

logger = logging.getLogger(__name__)


@dataclass
class DecodedIdentity:
    raw: str
    barcode: str
    gtin: str = ""
    sn: str = ""
    lot: str = ""
    expiry: str = ""
    composite: bool = False
    segments: dict[str, str] = field(default_factory=dict)


class ResolutionOutcome(str, Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    DUPLICATE_SERIAL = "duplicate_serial"


@dataclass
class Resolution:
    outcome: ResolutionOutcome
    code: str
    decoded: DecodedIdentity
    material: Optional[Material] = None
    matched_by: Optional[str] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.outcome == ResolutionOutcome.RESOLVED


class Gs1Decoder:
    """GS1 Application Identifier segmentlerini çözer."""

    def __init__(self, config: Optional[Gs1Config] = None) -> None:
        self.config = config or Gs1Config()

    @property
    def variable_length_ais(self) -> tuple[str, ...]:
        return (self.config.serial_ai, self.config.lot_ai) + tuple(
            ai for ai in self.config.serial_terminator_ais
            if ai not in self.config.fixed_length_ais
        )

    def is_composite(self, code: str) -> bool:
        cfg = self.config
        gtin_start = len(cfg.gtin_ai)
        return (
            code.startswith(cfg.gtin_ai)
            and len(code) >= gtin_start + cfg.gtin_length
            and code[gtin_start:gtin_start + cfg.gtin_length].isdigit()
        )

    def decode(self, code: str) -> DecodedIdentity:
        """Kodu çözer. Bozuk veya bilinmeyen girdi düz barkoda düşer."""
        text = (code or "").strip()
        if not self.is_composite(text):
            return DecodedIdentity(raw=text, barcode=text)

        try:
            segments = self._parse_segments(text)
        except ValueError as e:
            logger.debug("All-Barcode çözülemedi, düz barkod kabul edildi: %s (%s)", text, e)
            return DecodedIdentity(raw=text, barcode=text)

        cfg = self.config
        gtin = segments[cfg.gtin_ai]
        barcode = gtin[-cfg.barcode_length:] if len(gtin) > cfg.barcode_length else gtin
        return DecodedIdentity(
            raw=text,
            barcode=barcode,
            gtin=gtin,
            sn=segments.get(cfg.serial_ai, ""),
            lot=segments.get(cfg.lot_ai, ""),
            expiry=segments.get("17", ""),
            composite=True,
            segments=segments,
        )

    def _parse_segments(self, text: str) -> dict[str, str]:
        cfg = self.config
        pos = len(cfg.gtin_ai)
        segments = {cfg.gtin_ai: text[pos:pos + cfg.gtin_length]}
        pos += cfg.gtin_length

        while pos < len(text):
            if text[pos] == cfg.group_separator:
                pos += 1
                continue

            ai = text[pos:pos + 2]
            start = pos + 2
            if ai in cfg.fixed_length_ais:
                end = start + cfg.fixed_length_ais[ai]
                if end > len(text):
                    raise ValueError(f"AI {ai} için eksik veri")
            elif ai in self.variable_length_ais:
                terminators = cfg.serial_terminator_ais if ai == cfg.serial_ai else ()
                end = self._variable_end(text, start, terminators)
            else:
                raise ValueError(f"Bilinmeyen AI: {ai!r} (konum {pos})")

            segments[ai] = text[start:end]
            pos = end

        return segments

    def _variable_end(self, text: str, start: int, terminators: tuple[str, ...]) -> int:
        """Değişken uzunluklu alanın bittiği konumu bulur."""
        separator = text.find(self.config.group_separator, start)
        end = separator if separator != -1 else len(text)
        if separator == -1 and terminators:
            # GS ayracı yoksa bir sonraki tanınan AI'da dur
            for i in range(start + 2, end - 1, 2):
                if text[i:i + 2] in terminators:
                    return i
        return end


def _literal_or_decoded(value: str, literal: str, decoded_value: str) -> bool:
    return bool(value) and value in {literal, decoded_value} - {""}


# Eşleştirme öncelik tablosu (ilk eşleşme kazanır)
MatchRule = Callable[[Material, str, DecodedIdentity], bool]
MATCH_PRECEDENCE: tuple[tuple[str, MatchRule], ...] = (
    ("sn", lambda m, code, d: _literal_or_decoded(m.sn, code, d.sn)),
    ("barcode", lambda m, code, d: _literal_or_decoded(m.barcode, code, d.barcode)),
    ("gtin", lambda m, code, d: _literal_or_decoded(m.gtin, code, d.gtin)),
    ("udi_code", lambda m, code, d: bool(m.udi_code) and m.udi_code == code),
    ("all_barcode", lambda m, code, d: bool(m.all_barcode) and m.all_barcode == code),
    (
        "all_barcode_list",
        lambda m, code, d: bool(m.all_barcode)
        and code in [part.strip() for part in m.all_barcode.split(",")],
    ),
)


class IdentityResolver:
    """Okutulan kodu sıfır veya bir malzemeye çözer."""

    def __init__(self, config: Optional[Gs1Config] = None) -> None:
        self.decoder = Gs1Decoder(config)

    def decode(self, code: str) -> DecodedIdentity:
        return self.decoder.decode(code)

    def resolve(
        self,
        code: str,
        materials: Iterable[Material],
        scope: ScopeFilter = None,
    ) -> Resolution:
        decoded = self.decoder.decode(code)
        literal = decoded.raw
        catalog = list(materials)

        if not literal:
            return Resolution(ResolutionOutcome.UNRESOLVED, literal, decoded)

        # Seri numarası bütünlük kontrolü (kapsamdan bağımsız)
        if decoded.sn:
            owner = next((m for m in catalog if m.sn == decoded.sn), None)
            if owner and owner.gtin and decoded.gtin and owner.gtin != decoded.gtin:
                logger.warning(
                    "SN çakışması: %s başka bir ürüne ait (%s)", decoded.sn, owner.name
                )
                return Resolution(
                    ResolutionOutcome.DUPLICATE_SERIAL,
                    literal,
                    decoded,
                    owner_id=owner.material_id,
                    owner_name=owner.name,
                )
            if owner:
                # Serili birim yalnızca sahibine sayılır; diğer kurallara düşülmez
                if not owner.in_scope(scope):
                    logger.info(
                        "SN %s sahibi kapsam dışında: %s (%s)",
                        decoded.sn, owner.name, owner.status.value,
                    )
                    return Resolution(
                        ResolutionOutcome.UNRESOLVED,
                        literal,
                        decoded,
                        owner_id=owner.material_id,
                        owner_name=owner.name,
                    )
                return Resolution(
                    ResolutionOutcome.RESOLVED,
                    literal,
                    decoded,
                    material=owner,
                    matched_by="sn",
                )

        candidates = [m for m in catalog if m.in_scope(scope)]
        for rule_name, rule in MATCH_PRECEDENCE:
            for material in candidates:
                if rule(material, literal, decoded):
                    return Resolution(
                        ResolutionOutcome.RESOLVED,
                        literal,
                        decoded,
                        material=material,
                        matched_by=rule_name,
                    )

        return Resolution(ResolutionOutcome.UNRESOLVED, literal, decoded)
