"""
Stock Ledger MCP Server

Hastane stok defteri işlemlerini MCP araçları olarak sunar: malzeme
kayıtları, kullanım ve giriş, sayım oturumları, sayım doğrulama,
analitik ve bütünlük kontrolü.

Arka uç STOCK_BACKEND ile seçilir (memory / dynamodb).
"""

import asyncio
import dataclasses
import json
import logging
import os
import sys
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from mcp.server import Server
from mcp.types import TextContent, Tool

from src.ledger.errors import LedgerError
from src.ledger.service import StockLedgerService, build_service
from src.models.inventory import SYSTEM_USER

logger = logging.getLogger(__name__)

app = Server("stock-ledger")

_service: Optional[StockLedgerService] = None


def get_service() -> StockLedgerService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def _to_json(obj):
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _to_json(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return int(obj) if obj == int(obj) else float(obj)
    if isinstance(obj, dict):
        return {str(k): _to_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_json(i) for i in obj]
    return obj


def _result(data):
    return [TextContent(type="text", text=json.dumps(_to_json(data), indent=2, ensure_ascii=False))]


def _obj(properties: dict, required: Optional[List[str]] = None) -> dict:
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


_STR = {"type": "string"}
_INT = {"type": "integer", "minimum": 1}
_YEAR = {"type": "integer"}
_GRANULARITY = {"type": "string", "enum": ["daily", "weekly", "monthly", "yearly"], "default": "monthly"}
_MATERIAL_STATUS = {"type": "string", "enum": ["normal", "konsinye", "iade", "faturalı", "all"]}
_MATERIAL_FIELDS = {
    "barcode": _STR, "gtin": _STR, "sn": _STR, "udi_code": _STR, "all_barcode": _STR,
    "category": _STR, "sub_category": _STR, "unit": _STR, "supplier": _STR,
    "unit_price": {"type": "number", "minimum": 0},
    "current_stock": {"type": "integer", "minimum": 0},
    "min_stock": {"type": "integer", "minimum": 0},
    "status": _MATERIAL_STATUS, "expiration_date": _STR,
}

TOOLS: List[Tool] = [
    Tool(name="resolve_identity", description="Resolve a scanned code (barcode, GTIN, SN, UDI or GS1 All-Barcode) to a material",
         inputSchema=_obj({"code": _STR, "scope": _MATERIAL_STATUS}, ["code"])),
    Tool(name="create_material", description="Create a material (serial numbers must be unique)",
         inputSchema=_obj({"name": _STR, **_MATERIAL_FIELDS, "performed_by": _STR}, ["name"])),
    Tool(name="update_material", description="Update material fields (stock changes only through ledger operations)",
         inputSchema=_obj({"material_id": _STR, "patch": {"type": "object"}, "performed_by": _STR},
                          ["material_id", "patch"])),
    Tool(name="delete_material", description="Delete a material; history keeps its id",
         inputSchema=_obj({"material_id": _STR, "performed_by": _STR}, ["material_id"])),
    Tool(name="get_material", description="Get a material by id",
         inputSchema=_obj({"material_id": _STR}, ["material_id"])),
    Tool(name="list_materials", description="List materials with optional search, category, status and low stock filters",
         inputSchema=_obj({"search_term": _STR, "category": _STR, "status": _MATERIAL_STATUS,
                           "low_stock_only": {"type": "boolean", "default": False}})),
    Tool(name="update_materials_status", description="Change the status of several materials at once",
         inputSchema=_obj({"material_ids": {"type": "array", "items": _STR}, "status": _MATERIAL_STATUS,
                           "performed_by": _STR}, ["material_ids", "status"])),
    Tool(name="create_session", description="Open a stock count session (numbered OSG-YYYY-MM-NNN)",
         inputSchema=_obj({"invoice_no": _STR, "counted_by": _STR, "session_status_filter": _MATERIAL_STATUS,
                           "count_date": _STR, "notes": _STR, "planned": {"type": "boolean", "default": False}},
                          ["invoice_no", "counted_by"])),
    Tool(name="record_quick_scan", description="Scan a code in a session; adds one unit to the session buffer",
         inputSchema=_obj({"session_id": _STR, "code": _STR, "counted_by": _STR}, ["session_id", "code"])),
    Tool(name="register_and_scan", description="Register a new material from an unresolved code and scan it",
         inputSchema=_obj({"session_id": _STR, "code": _STR, "name": _STR, "counted_by": _STR, **_MATERIAL_FIELDS},
                          ["session_id", "code", "name"])),
    Tool(name="record_controlled_count", description="Enter an absolute counted quantity; stock is set immediately",
         inputSchema=_obj({"session_id": _STR, "material_id": _STR, "quantity": _INT, "counted_by": _STR},
                          ["session_id", "material_id", "quantity"])),
    Tool(name="finalize_session", description="Apply buffered quick counts to stock and complete the session",
         inputSchema=_obj({"session_id": _STR, "performed_by": _STR}, ["session_id"])),
    Tool(name="cancel_session", description="Cancel a session and discard its buffer",
         inputSchema=_obj({"session_id": _STR, "performed_by": _STR}, ["session_id"])),
    Tool(name="approve_count", description="Approve a count event",
         inputSchema=_obj({"count_id": _STR, "verified_by": _STR, "notes": _STR}, ["count_id", "verified_by"])),
    Tool(name="reject_count", description="Reject a count event and undo its effect",
         inputSchema=_obj({"count_id": _STR, "verified_by": _STR, "notes": _STR}, ["count_id", "verified_by"])),
    Tool(name="correct_count", description="Correct the quantity of a count event",
         inputSchema=_obj({"count_id": _STR, "corrected_quantity": _INT, "verified_by": _STR, "notes": _STR},
                          ["count_id", "corrected_quantity", "verified_by"])),
    Tool(name="get_session_summary", description="Session totals recomputed from its count events",
         inputSchema=_obj({"session_id": _STR}, ["session_id"])),
    Tool(name="list_sessions", description="List session summaries, newest count date first",
         inputSchema=_obj({"status": _STR, "invoice_no": _STR, "year": _YEAR})),
    Tool(name="list_session_counts", description="List count events of a session with material details",
         inputSchema=_obj({"session_id": _STR}, ["session_id"])),
    Tool(name="apply_usage", description="Record patient usage and decrease stock",
         inputSchema=_obj({"material_id": _STR, "quantity": _INT, "patient_ref": _STR, "notes": _STR},
                          ["material_id", "quantity"])),
    Tool(name="apply_usage_by_code", description="Resolve a scanned code and record patient usage",
         inputSchema=_obj({"code": _STR, "quantity": _INT, "patient_ref": _STR, "notes": _STR},
                          ["code", "quantity"])),
    Tool(name="reverse_usage", description="Delete a usage event and restore stock",
         inputSchema=_obj({"usage_id": _STR, "performed_by": _STR}, ["usage_id"])),
    Tool(name="adjust_usage", description="Change the quantity of a usage event",
         inputSchema=_obj({"usage_id": _STR, "new_quantity": _INT, "performed_by": _STR},
                          ["usage_id", "new_quantity"])),
    Tool(name="apply_receipt", description="Record an invoice receipt and increase stock",
         inputSchema=_obj({"material_id": _STR, "quantity": _INT, "invoice_ref": _STR,
                           "unit_price": {"type": "number", "minimum": 0}}, ["material_id", "quantity"])),
    Tool(name="get_usage_trend", description="Usage quantity and cost per period with seasonal pattern",
         inputSchema=_obj({"year": _YEAR, "material_id": _STR, "granularity": _GRANULARITY}, ["year"])),
    Tool(name="get_stock_value_trend", description="Stock value and critical count at the end of each period",
         inputSchema=_obj({"year": _YEAR, "granularity": _GRANULARITY}, ["year"])),
    Tool(name="get_yearly_summary", description="Yearly rollup of materials, patients, stock value and usage cost",
         inputSchema=_obj({"year": _YEAR}, ["year"])),
    Tool(name="verify_integrity", description="Check stock invariants (no negative stock, unique serials, movement chain)",
         inputSchema=_obj({})),
    Tool(name="get_audit_log", description="Operator audit log, newest first",
         inputSchema=_obj({"module": _STR, "record_id": _STR, "limit": {"type": "integer", "default": 100}})),
]

_MATERIAL_FIELD_NAMES = set(_MATERIAL_FIELDS)


def _material_fields(a: dict) -> dict:
    return {k: v for k, v in a.items() if k in _MATERIAL_FIELD_NAMES}


HANDLERS: Dict[str, Callable[[StockLedgerService, dict], Any]] = {
    "resolve_identity": lambda s, a: s.resolve_identity(a["code"], a.get("scope")),
    "create_material": lambda s, a: s.create_material(
        a["name"], performed_by=a.get("performed_by", SYSTEM_USER), **_material_fields(a)),
    "update_material": lambda s, a: s.update_material(
        a["material_id"], a["patch"], a.get("performed_by", SYSTEM_USER)),
    "delete_material": lambda s, a: s.delete_material(a["material_id"], a.get("performed_by", SYSTEM_USER)),
    "get_material": lambda s, a: s.get_material(a["material_id"]),
    "list_materials": lambda s, a: s.list_materials(
        a.get("search_term"), a.get("category"), a.get("status"), a.get("low_stock_only", False)),
    "update_materials_status": lambda s, a: {"updated": s.update_materials_status(
        a["material_ids"], a["status"], a.get("performed_by", SYSTEM_USER))},
    "create_session": lambda s, a: s.create_session(
        a["invoice_no"], a["counted_by"], a.get("session_status_filter"), a.get("count_date"),
        notes=a.get("notes", ""), planned=a.get("planned", False)),
    "record_quick_scan": lambda s, a: s.record_quick_scan(a["session_id"], a["code"], a.get("counted_by")),
    "register_and_scan": lambda s, a: s.register_and_scan(
        a["session_id"], a["code"], a["name"], a.get("counted_by"), **_material_fields(a)),
    "record_controlled_count": lambda s, a: s.record_controlled_count(
        a["session_id"], a["material_id"], a["quantity"], a.get("counted_by")),
    "finalize_session": lambda s, a: s.finalize_session(a["session_id"], a.get("performed_by", SYSTEM_USER)),
    "cancel_session": lambda s, a: s.cancel_session(a["session_id"], a.get("performed_by", SYSTEM_USER)),
    "approve_count": lambda s, a: s.approve_count(a["count_id"], a["verified_by"], a.get("notes", "")),
    "reject_count": lambda s, a: s.reject_count(a["count_id"], a["verified_by"], a.get("notes", "")),
    "correct_count": lambda s, a: s.correct_count(
        a["count_id"], a["corrected_quantity"], a["verified_by"], a.get("notes", "")),
    "get_session_summary": lambda s, a: s.get_session_summary(a["session_id"]),
    "list_sessions": lambda s, a: s.list_sessions(a.get("status"), a.get("invoice_no"), a.get("year")),
    "list_session_counts": lambda s, a: s.list_session_counts(a["session_id"]),
    "apply_usage": lambda s, a: s.apply_usage(
        a["material_id"], a["quantity"], a.get("patient_ref", ""), a.get("notes", "")),
    "apply_usage_by_code": lambda s, a: s.apply_usage_by_code(
        a["code"], a["quantity"], a.get("patient_ref", ""), a.get("notes", "")),
    "reverse_usage": lambda s, a: s.reverse_usage(a["usage_id"], a.get("performed_by", SYSTEM_USER)),
    "adjust_usage": lambda s, a: s.adjust_usage(
        a["usage_id"], a["new_quantity"], a.get("performed_by", SYSTEM_USER)),
    "apply_receipt": lambda s, a: s.apply_receipt(
        a["material_id"], a["quantity"], a.get("invoice_ref", ""), a.get("unit_price")),
    "get_usage_trend": lambda s, a: s.get_usage_trend(
        a["year"], a.get("material_id"), a.get("granularity", "monthly")),
    "get_stock_value_trend": lambda s, a: s.get_stock_value_trend(a["year"], a.get("granularity", "monthly")),
    "get_yearly_summary": lambda s, a: s.get_yearly_summary(a["year"]),
    "verify_integrity": lambda s, a: s.verify_integrity(),
    "get_audit_log": lambda s, a: s.get_audit_log(a.get("module"), a.get("record_id"))[:a.get("limit", 100)],
}


def handle_tool(service: StockLedgerService, name: str, arguments: dict) -> Dict:
    """Aracı çalıştırır. Defter hataları başarısız sonuç olarak döner."""
    handler = HANDLERS.get(name)
    if not handler:
        raise ValueError(f"Unknown tool: {name}")
    try:
        data = handler(service, arguments or {})
    except LedgerError as e:
        logger.warning("Araç hatası [%s]: %s", name, e)
        return {"success": False, "error": str(e), "error_type": e.code}
    except KeyError as e:
        return {"success": False, "error": f"Eksik parametre: {e}", "error_type": "validation_error"}
    return {"success": True, "data": _to_json(data)}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return TOOLS


async def run_tool(service: StockLedgerService, name: str, arguments: dict) -> Dict:
    """Aracı olay döngüsü dışında, ayrı bir iş parçacığında çalıştırır."""
    return await asyncio.to_thread(handle_tool, service, name, arguments)


@app.call_tool()
async def call_tool(name: str, arguments: dict) -> List[TextContent]:
    return _result(await run_tool(get_service(), name, arguments))


if __name__ == "__main__":
    from mcp.server.stdio import stdio_server

    logging.basicConfig(
        level=os.environ.get("STOCK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    async def run():
        async with stdio_server() as (read, write):
            await app.run(read, write, app.create_initialization_options())

    asyncio.run(run())
