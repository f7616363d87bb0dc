"""DynamoDB tablo oluşturma ve başlangıç malzeme yükleme.

7 tablo: Materials, UsageEvents, ReceiptEvents, CountSessions, CountEvents,
StockMovements, AuditLog
"""
import json
import os
import sys
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from src.ledger.config import load_config
from src.models.inventory import RECORD_TYPES, key_field

BOTO_CONFIG = Config(retries={"max_attempts": 3})


def table_definitions(prefix: str = "") -> list[dict]:
    """Her kayıt tipi için tek anahtarlı (HASH) tablo tanımı."""
    definitions = []
    for table in RECORD_TYPES:
        key = key_field(table)
        definitions.append({
            "TableName": f"{prefix}{table}",
            "KeySchema": [{"AttributeName": key, "KeyType": "HASH"}],
            "AttributeDefinitions": [{"AttributeName": key, "AttributeType": "S"}],
            "BillingMode": "PAY_PER_REQUEST",
        })
    return definitions


def _client(region: str, client: Optional[Any] = None):
    return client or boto3.client("dynamodb", region_name=region, config=BOTO_CONFIG)


def create_tables(region: str, prefix: str = "", client: Optional[Any] = None) -> list[str]:
    """Eksik tabloları oluşturur; oluşturulan tablo adlarını döndürür."""
    dynamodb = _client(region, client)
    created = []

    for table_def in table_definitions(prefix):
        table_name = table_def["TableName"]
        try:
            dynamodb.describe_table(TableName=table_name)
            print(f"  ⏭️  {table_name} zaten mevcut, atlanıyor")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                print(f"  🔨 {table_name} oluşturuluyor...")
                dynamodb.create_table(**table_def)
                # Tablonun aktif olmasını bekle
                waiter = dynamodb.get_waiter("table_exists")
                waiter.wait(TableName=table_name)
                print(f"  ✓  {table_name} oluşturuldu")
                created.append(table_name)
            else:
                raise
    return created


def seed_materials(path: str, service=None) -> int:
    """JSON dosyasındaki malzemeleri defter üzerinden ekler.

    Kayıtlar doğrudan tabloya yazılmaz; böylece SN kontrolü ve
    başlangıç stok hareketi defter tarafından oluşturulur.
    """
    from src.ledger.service import build_service

    service = service or build_service()
    with open(path, "r", encoding="utf-8") as f:
        records = json.load(f)

    existing = {m.name for m in service.list_materials()}
    added = 0
    for record in records:
        fields = dict(record)
        name = fields.pop("name")
        if name in existing:
            print(f"  ⏭️  {name} zaten mevcut, atlanıyor")
            continue
        service.create_material(name, **fields)
        added += 1

    print(f"  ✓  {added} malzeme yüklendi")
    return added


def delete_tables(region: str, prefix: str = "", client: Optional[Any] = None):
    """Tüm tabloları siler (dikkatli kullan)."""
    dynamodb = _client(region, client)
    for table_def in table_definitions(prefix):
        table_name = table_def["TableName"]
        try:
            dynamodb.delete_table(TableName=table_name)
            print(f"  🗑️  {table_name} silindi")
        except ClientError:
            print(f"  ⏭️  {table_name} bulunamadı, atlanıyor")


if __name__ == "__main__":
    config = load_config()
    args = sys.argv[1:]

    if args and args[0] == "--delete":
        print("🗑️  Tablolar siliniyor...")
        delete_tables(config.region_name, config.table_prefix)
    else:
        print("🏗️  DynamoDB tabloları oluşturuluyor...\n")
        create_tables(config.region_name, config.table_prefix)
        if len(args) >= 2 and args[0] == "--seed":
            seed_materials(args[1])
