"""Stock Ledger MCP sunucusu unit testleri."""

import asyncio
import json
import threading

import pytest

from mcp_servers import stock_ledger_server
from mcp_servers.stock_ledger_server import HANDLERS, TOOLS, _result, handle_tool, run_tool
from src.ledger.config import LedgerConfig
from src.ledger.service import build_service

SCAN_CODE = "0112345678901234211234567890ABC"


@pytest.fixture
def service(clock):
    return build_service(config=LedgerConfig(), clock=clock)


class TestToolRegistry:
    def test_every_tool_has_handler(self):
        assert {t.name for t in TOOLS} == set(HANDLERS)

    def test_required_fields_are_declared(self):
        for tool in TOOLS:
            properties = tool.inputSchema["properties"]
            for name in tool.inputSchema.get("required", []):
                assert name in properties, f"{tool.name}: {name}"


class TestHandleTool:
    """Araç çağrıları ve hata dönüşümü."""

    def test_create_and_scan(self, service):
        created = handle_tool(service, "create_material", {
            "name": "Stent", "gtin": "12345678901234", "sn": "1234567890ABC", "unit_price": 3.5,
        })
        assert created["success"] is True
        assert created["data"]["status"] == "normal"

        session = handle_tool(service, "create_session", {"invoice_no": "FTR-1", "counted_by": "Ayşe"})
        assert session["data"]["session_no"] == "OSG-2025-03-001"

        scan = handle_tool(service, "record_quick_scan", {
            "session_id": session["data"]["session_id"], "code": SCAN_CODE,
        })
        assert scan["data"]["accepted"] is True
        assert scan["data"]["resolution"]["matched_by"] == "sn"
        assert scan["data"]["running_total"] == 1

    def test_ledger_error_is_reported(self, service):
        material = handle_tool(service, "create_material", {"name": "Vida", "current_stock": 1})
        result = handle_tool(service, "apply_usage", {
            "material_id": material["data"]["material_id"], "quantity": 5,
        })
        assert result["success"] is False
        assert result["error_type"] == "insufficient_stock"

    def test_not_found(self, service):
        result = handle_tool(service, "get_material", {"material_id": "mat-yok"})
        assert result == {
            "success": False,
            "error": "Malzeme bulunamadı: mat-yok",
            "error_type": "not_found",
        }

    def test_missing_argument(self, service):
        result = handle_tool(service, "apply_usage", {"quantity": 1})
        assert result["success"] is False
        assert result["error_type"] == "validation_error"

    def test_unknown_tool(self, service):
        with pytest.raises(ValueError):
            handle_tool(service, "transfer_stock", {})

    def test_bulk_status_result(self, service):
        a = handle_tool(service, "create_material", {"name": "A"})["data"]
        result = handle_tool(service, "update_materials_status", {
            "material_ids": [a["material_id"]], "status": "konsinye",
        })
        assert result["data"] == {"updated": 1}

    def test_audit_log_limit(self, service):
        for name in ("A", "B", "C"):
            handle_tool(service, "create_material", {"name": name})
        result = handle_tool(service, "get_audit_log", {"module": "materials", "limit": 2})
        assert len(result["data"]) == 2

    def test_result_is_json_text(self, service):
        payload = handle_tool(service, "get_yearly_summary", {"year": 2025})
        content = _result(payload)
        assert json.loads(content[0].text)["data"]["year"] == 2025


class TestAsyncDispatch:
    """Araçlar olay döngüsü dışında çalışır."""

    def test_tool_runs_in_worker_thread(self, service, monkeypatch):
        monkeypatch.setitem(HANDLERS, "verify_integrity", lambda s, a: threading.get_ident())
        result = asyncio.run(run_tool(service, "verify_integrity", {}))
        assert result["success"] is True
        assert result["data"] != threading.get_ident()

    def test_call_tool_uses_shared_service(self, service, monkeypatch):
        monkeypatch.setattr(stock_ledger_server, "_service", service)
        content = asyncio.run(
            stock_ledger_server.call_tool("create_material", {"name": "Stent"})
        )
        payload = json.loads(content[0].text)
        assert payload["success"] is True
        assert [m.name for m in service.list_materials()] == ["Stent"]

    def test_loop_stays_responsive_while_tool_waits(self, service, monkeypatch):
        release = threading.Event()

        def slow(s, a):
            release.wait(2)
            return "bitti"

        monkeypatch.setitem(HANDLERS, "verify_integrity", slow)

        async def scenario():
            task = asyncio.create_task(run_tool(service, "verify_integrity", {}))
            await asyncio.sleep(0.05)
            # Araç beklerken döngü başka işleri yürütebilmeli
            assert not task.done()
            release.set()
            return await task

        assert asyncio.run(scenario())["data"] == "bitti"
