"""Kalıcı depolama arka uçları.

Defter her işlemi tek bir `commit` ile yazar. Arka uç hata verirse
bellekteki durum değişmez.
"""

from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from src.ledger.errors import PersistenceError
from src.models.inventory import RECORD_TYPES, key_field, record_from_item, record_key, record_to_item

logger = logging.getLogger(__name__)

TABLE_NAMES: tuple[str, ...] = tuple(RECORD_TYPES)

# DynamoDB tek transaction limiti
TRANSACTION_LIMIT = 100


@dataclass
class Change:
    """Tek bir kayıt değişikliği: put (ekle/güncelle) veya delete."""

    table: str
    op: str
    record: Any

    @property
    def key(self) -> str:
        return record_key(self.table, self.record)


def put(table: str, record: Any) -> Change:
    return Change(table=table, op="put", record=record)


def delete(table: str, record: Any) -> Change:
    return Change(table=table, op="delete", record=record)


class LedgerBackend(ABC):
    """Defter kalıcılık arayüzü."""

    # Tek commit'te yazılabilecek en fazla değişiklik (None: sınırsız)
    max_changes: Optional[int] = None

    @abstractmethod
    def load(self) -> dict[str, list[Any]]:
        """Tüm tabloları {tablo: [kayıt]} olarak döndürür."""
        ...

    @abstractmethod
    def commit(self, changes: list[Change]) -> None:
        """Değişiklikleri tek birim olarak yazar."""
        ...


class InMemoryBackend(LedgerBackend):
    """Süreç içi depolama. Testler ve tek süreçli kullanım için."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict]] = {name: {} for name in TABLE_NAMES}
        self.commit_count = 0

    def load(self) -> dict[str, list[Any]]:
        return {
            table: [record_from_item(table, copy.deepcopy(item)) for item in items.values()]
            for table, items in self._tables.items()
        }

    def commit(self, changes: list[Change]) -> None:
        for change in changes:
            rows = self._tables[change.table]
            if change.op == "put":
                rows[change.key] = record_to_item(change.record)
            else:
                rows.pop(change.key, None)
        self.commit_count += 1

    def item_count(self, table: str) -> int:
        return len(self._tables[table])


def _to_dynamo(value: dict) -> dict:
    """float -> Decimal (DynamoDB float kabul etmez)."""
    return json.loads(json.dumps(value), parse_float=Decimal)


def _from_dynamo(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return int(obj) if obj == int(obj) else float(obj)
    if isinstance(obj, dict):
        return {k: _from_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_from_dynamo(i) for i in obj]
    return obj


class DynamoDBBackend(LedgerBackend):
    """DynamoDB tabanlı depolama (boto3).

    Her commit tek bir `transact_write_items` çağrısıdır. Transaction 100
    öğe ile sınırlıdır; daha büyük commit hiçbir şey yazılmadan reddedilir.
    """

    max_changes = TRANSACTION_LIMIT

    def __init__(
        self,
        region_name: str = "us-west-2",
        table_prefix: str = "",
        dynamodb_resource: Optional[Any] = None,
    ):
        self.region_name = region_name
        self.table_prefix = table_prefix
        # dependency injection destekli
        self.dynamodb = dynamodb_resource or boto3.resource("dynamodb", region_name=region_name)
        self._client = self.dynamodb.meta.client
        self._serializer = TypeSerializer()

    def table_name(self, table: str) -> str:
        return f"{self.table_prefix}{table}"

    def load(self) -> dict[str, list[Any]]:
        result: dict[str, list[Any]] = {}
        for table in TABLE_NAMES:
            items = self._scan_all(self.table_name(table))
            result[table] = [record_from_item(table, _from_dynamo(item)) for item in items]
            logger.info("Tablo yüklendi: %s (%d kayıt)", table, len(items))
        return result

    def _scan_all(self, table_name: str) -> list[dict]:
        table = self.dynamodb.Table(table_name)
        items: list[dict] = []
        kwargs: dict[str, Any] = {}
        try:
            while True:
                response = table.scan(**kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            logger.error("DynamoDB scan hatası [%s]: %s", table_name, e)
            raise PersistenceError(f"{table_name} okunamadı: {e}") from e
        return items

    def _transact_item(self, change: Change) -> dict:
        table_name = self.table_name(change.table)
        if change.op == "put":
            item = _to_dynamo(record_to_item(change.record))
            return {
                "Put": {
                    "TableName": table_name,
                    "Item": {k: self._serializer.serialize(v) for k, v in item.items()},
                }
            }
        return {
            "Delete": {
                "TableName": table_name,
                "Key": {key_field(change.table): {"S": change.key}},
            }
        }

    def commit(self, changes: list[Change]) -> None:
        if len(changes) > self.max_changes:
            logger.error(
                "Commit transaction limitini aşıyor: %d > %d", len(changes), self.max_changes
            )
            raise PersistenceError(
                f"Commit tek transaction limitini aşıyor: {len(changes)} > {self.max_changes}"
            )
        transact_items = [self._transact_item(c) for c in changes]
        try:
            self._client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            logger.error("DynamoDB transaction hatası: %s", e)
            raise PersistenceError(f"Commit başarısız: {e}") from e
