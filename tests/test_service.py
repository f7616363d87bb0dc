"""Servis katmanı unit testleri."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from src.ledger.backends import DynamoDBBackend, InMemoryBackend
from src.ledger.config import Gs1Config, LedgerConfig
from src.ledger.errors import ValidationError
from src.ledger.service import StockLedgerService, build_service, create_backend
from src.models.inventory import SessionStatus


@pytest.fixture
def service(clock):
    return build_service(config=LedgerConfig(), clock=clock)


class TestBuildService:
    """Konfigürasyondan servis kurulumu."""

    def test_memory_backend(self):
        assert isinstance(create_backend(LedgerConfig()), InMemoryBackend)

    def test_dynamodb_backend(self):
        resource = MagicMock()
        backend = create_backend(
            LedgerConfig(backend="dynamodb", table_prefix="dev-"), dynamodb_resource=resource
        )
        assert isinstance(backend, DynamoDBBackend)
        assert backend.table_name("Materials") == "dev-Materials"

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            create_backend(LedgerConfig(backend="sqlite"))

    def test_resolver_uses_gs1_config(self):
        config = LedgerConfig(gs1=Gs1Config(serial_terminator_ais=("17",)))
        service = build_service(config=config)
        decoded = service.resolve_identity("01" + "1" * 14 + "21AB17250101").decoded
        assert decoded.sn == "AB"
        assert decoded.expiry == "250101"

    def test_existing_backend_is_reused(self, backend, clock):
        first = build_service(config=LedgerConfig(), backend=backend, clock=clock)
        first.create_material("Stent", current_stock=2)
        second = build_service(config=LedgerConfig(), backend=backend, clock=clock)
        assert [m.name for m in second.list_materials()] == ["Stent"]
        assert isinstance(second, StockLedgerService)


class TestEndToEnd:
    """Servis üzerinden tam akış."""

    def test_count_day(self, service, clock):
        stent = service.create_material(
            "Stent", barcode="111", current_stock=5, unit_price=4.0, min_stock=2
        )
        service.apply_receipt(stent.material_id, 5, invoice_ref="FTR-100")
        usage = service.apply_usage_by_code("111", 2, patient_ref="P1")

        session = service.create_session("FTR-100", "Ayşe")
        for _ in range(3):
            service.record_quick_scan(session.session_id, "111")
        clock.advance(minutes=5)
        completed = service.finalize_session(session.session_id)

        assert completed.status == SessionStatus.COMPLETED
        assert service.get_material(stent.material_id).current_stock == 11
        assert service.get_session_summary(session.session_id).total_value == 12.0

        service.reverse_usage(usage.usage_id)
        assert service.get_material(stent.material_id).current_stock == 13
        assert service.verify_integrity()["all_valid"] is True

        summary = service.get_yearly_summary(2025)
        assert summary["total_receipt_quantity"] == 5
        assert summary["total_usage_quantity"] == 0
        assert service.get_audit_log(module="stock-count")[0].record_id == session.session_id

    def test_bulk_status_change(self, service):
        a = service.create_material("A")
        b = service.create_material("B", status="iade")
        assert service.update_materials_status([a.material_id, b.material_id, "yok"], "iade") == 1
        assert [m.name for m in service.list_materials(status="iade")] == ["A", "B"]

    def test_trends(self, service, clock):
        stent = service.create_material("Stent", current_stock=10, unit_price=1.0)
        service.apply_usage(stent.material_id, 4)
        clock.set(datetime(2025, 9, 1, 9, 0, 0))
        assert service.get_usage_trend(2025, granularity="yearly")["periods"][0]["total_quantity"] == 4
        trend = service.get_stock_value_trend(2025, "monthly")
        assert trend["current_total_value"] == 6.0
