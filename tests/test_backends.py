"""Depolama arka uçları unit testleri."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from src.ledger.backends import TRANSACTION_LIMIT, DynamoDBBackend, InMemoryBackend, delete, put
from src.ledger.count_session import CountSessionEngine
from src.ledger.errors import PersistenceError
from src.ledger.ledger_store import LedgerStore
from src.models.inventory import Material, MaterialStatus, SessionStatus


def _material(material_id="m1", **kwargs):
    return Material(material_id=material_id, name=kwargs.pop("name", "Stent"), **kwargs)


def _empty_resource():
    resource = MagicMock()
    resource.Table.return_value.scan.return_value = {"Items": []}
    return resource


class TestInMemoryBackend:
    """Süreç içi depolama."""

    def test_put_and_load(self):
        backend = InMemoryBackend()
        backend.commit([put("Materials", _material(unit_price=2.5, status=MaterialStatus.IADE))])
        loaded = backend.load()["Materials"]
        assert loaded == [_material(unit_price=2.5, status=MaterialStatus.IADE)]
        assert backend.commit_count == 1

    def test_delete(self):
        backend = InMemoryBackend()
        backend.commit([put("Materials", _material())])
        backend.commit([delete("Materials", _material())])
        assert backend.item_count("Materials") == 0

    def test_loaded_records_are_copies(self):
        backend = InMemoryBackend()
        backend.commit([put("Materials", _material())])
        first = backend.load()["Materials"][0]
        first.name = "Değişti"
        assert backend.load()["Materials"][0].name == "Stent"


class TestDynamoDBCommit:
    """transact_write_items ile commit."""

    def test_put_serializes_numbers(self):
        resource = _empty_resource()
        backend = DynamoDBBackend(table_prefix="test-", dynamodb_resource=resource)
        backend.commit([put("Materials", _material(unit_price=2.5, current_stock=10))])

        client = resource.meta.client
        client.transact_write_items.assert_called_once()
        items = client.transact_write_items.call_args.kwargs["TransactItems"]
        item = items[0]["Put"]["Item"]
        assert items[0]["Put"]["TableName"] == "test-Materials"
        assert item["material_id"] == {"S": "m1"}
        assert item["unit_price"] == {"N": "2.5"}
        assert item["current_stock"] == {"N": "10"}
        assert item["status"] == {"S": "normal"}
        assert item["expiration_date"] == {"NULL": True}

    def test_delete_uses_key_field(self):
        resource = _empty_resource()
        backend = DynamoDBBackend(dynamodb_resource=resource)
        backend.commit([delete("Materials", _material())])
        items = resource.meta.client.transact_write_items.call_args.kwargs["TransactItems"]
        assert items == [
            {"Delete": {"TableName": "Materials", "Key": {"material_id": {"S": "m1"}}}}
        ]

    def test_commit_over_limit_writes_nothing(self):
        resource = _empty_resource()
        backend = DynamoDBBackend(dynamodb_resource=resource)
        with pytest.raises(PersistenceError):
            backend.commit([put("Materials", _material(f"m{i}")) for i in range(150)])
        resource.meta.client.transact_write_items.assert_not_called()

    def test_commit_at_limit_is_one_transaction(self):
        resource = _empty_resource()
        backend = DynamoDBBackend(dynamodb_resource=resource)
        backend.commit([put("Materials", _material(f"m{i}")) for i in range(TRANSACTION_LIMIT)])
        calls = resource.meta.client.transact_write_items.call_args_list
        assert [len(c.kwargs["TransactItems"]) for c in calls] == [TRANSACTION_LIMIT]

    def test_in_memory_backend_has_no_limit(self):
        assert InMemoryBackend.max_changes is None
        assert DynamoDBBackend.max_changes == TRANSACTION_LIMIT

    def test_client_error_becomes_persistence_error(self):
        resource = _empty_resource()
        resource.meta.client.transact_write_items.side_effect = ClientError(
            {"Error": {"Code": "TransactionCanceledException", "Message": "iptal"}},
            "TransactWriteItems",
        )
        backend = DynamoDBBackend(dynamodb_resource=resource)
        with pytest.raises(PersistenceError):
            backend.commit([put("Materials", _material())])


class TestDynamoDBLoad:
    """Sayfalı tablo taraması."""

    def test_paginated_scan(self):
        materials = MagicMock()
        materials.scan.side_effect = [
            {
                "Items": [{"material_id": "m1", "name": "Stent", "current_stock": Decimal("5"),
                           "unit_price": Decimal("2.5"), "status": "konsinye"}],
                "LastEvaluatedKey": {"material_id": "m1"},
            },
            {"Items": [{"material_id": "m2", "name": "Vida", "current_stock": Decimal("0")}]},
        ]
        empty = MagicMock()
        empty.scan.return_value = {"Items": []}

        resource = MagicMock()
        resource.Table.side_effect = lambda name: materials if name == "Materials" else empty
        loaded = DynamoDBBackend(dynamodb_resource=resource).load()

        stent, vida = sorted(loaded["Materials"], key=lambda m: m.material_id)
        assert stent.current_stock == 5
        assert isinstance(stent.current_stock, int)
        assert stent.unit_price == 2.5
        assert stent.status == MaterialStatus.KONSINYE
        assert vida.name == "Vida"
        assert materials.scan.call_args_list[1].kwargs == {
            "ExclusiveStartKey": {"material_id": "m1"}
        }
        assert loaded["CountSessions"] == []

    def test_scan_error(self):
        resource = MagicMock()
        resource.Table.return_value.scan.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "yok"}}, "Scan"
        )
        with pytest.raises(PersistenceError):
            DynamoDBBackend(dynamodb_resource=resource).load()


class TestLedgerOnDynamoDB:
    """Defter + DynamoDB arka ucu."""

    def test_operation_is_single_transaction(self):
        resource = _empty_resource()
        ledger = LedgerStore(backend=DynamoDBBackend(dynamodb_resource=resource))
        ledger.create_material("Stent", current_stock=3)

        client = resource.meta.client
        client.transact_write_items.assert_called_once()
        tables = [
            next(iter(item.values()))["TableName"]
            for item in client.transact_write_items.call_args.kwargs["TransactItems"]
        ]
        assert tables == ["Materials", "StockMovements", "AuditLog"]

    def test_failed_transaction_leaves_ledger_unchanged(self):
        resource = _empty_resource()
        resource.meta.client.transact_write_items.side_effect = ClientError(
            {"Error": {"Code": "InternalServerError", "Message": "hata"}}, "TransactWriteItems"
        )
        ledger = LedgerStore(backend=DynamoDBBackend(dynamodb_resource=resource))
        with pytest.raises(PersistenceError):
            ledger.create_material("Stent")
        assert ledger.list_materials() == []

    def _scanned_session(self, resource, count=60):
        ledger = LedgerStore(backend=DynamoDBBackend(dynamodb_resource=resource))
        engine = CountSessionEngine(ledger)
        materials = [
            ledger.create_material(f"M{i}", barcode=f"B{i:03d}", current_stock=1)
            for i in range(count)
        ]
        session = engine.create_session("FTR-1", "Ayşe")
        for m in materials:
            engine.record_quick_scan(session.session_id, m.barcode)
        resource.meta.client.transact_write_items.reset_mock()
        return ledger, engine, session, materials

    def test_large_finalize_stays_within_transaction_limit(self):
        resource = _empty_resource()
        ledger, engine, session, materials = self._scanned_session(resource)

        completed = engine.finalize_session(session.session_id)

        calls = resource.meta.client.transact_write_items.call_args_list
        # 49 malzeme + oturum, 11 malzeme + oturum, kapanış
        assert [len(c.kwargs["TransactItems"]) for c in calls] == [99, 23, 2]
        assert completed.status == SessionStatus.COMPLETED
        assert all(ledger.get_material(m.material_id).current_stock == 2 for m in materials)

    def test_failed_finalize_batch_keeps_session_open(self):
        resource = _empty_resource()
        ledger, engine, session, materials = self._scanned_session(resource)
        resource.meta.client.transact_write_items.side_effect = [
            None,
            ClientError(
                {"Error": {"Code": "InternalServerError", "Message": "hata"}},
                "TransactWriteItems",
            ),
        ]

        with pytest.raises(PersistenceError):
            engine.finalize_session(session.session_id)

        partial = ledger.get_session(session.session_id)
        assert partial.status == SessionStatus.IN_PROGRESS
        assert len(partial.applied_materials) == 49
        assert ledger.pending_quantity(session.session_id) == 11
        stocks = [ledger.get_material(m.material_id).current_stock for m in materials]
        assert sum(stocks) == 60 + 49
