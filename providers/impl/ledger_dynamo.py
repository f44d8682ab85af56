from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from core.errors import DuplicateKeyError
from files.models import BucketRecord, FileRecord
from providers.impl.aws import error_code
from providers.ledger import BucketRegistryStore, FileLedger

_FILE_FIELDS = (
    "id", "filename", "size", "mime_type", "key", "bucket", "status",
    "etag", "owner_id", "created_at", "updated_at", "error",
)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _num(v: Any) -> int:
    if isinstance(v, Decimal):
        return int(v)
    return int(v or 0)


def ensure_ledger_table(ddb: Any, table_name: str) -> Any:
    """
    Create the single ledger table (pk/sk string keys, on-demand billing)
    if it does not exist yet. Returns the Table resource.
    """
    client = ddb.meta.client
    try:
        client.describe_table(TableName=table_name)
    except ClientError as e:
        if error_code(e) != "ResourceNotFoundException":
            raise
        client.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        client.get_waiter("table_exists").wait(TableName=table_name)
    return ddb.Table(table_name)


class DynamoFileLedger(FileLedger):
    """
    DynamoDB file ledger, single-table design: pk/sk.

    File record:
      pk = FILES#{instance}
      sk = FILE#{file_id}

    Key guard (uniqueness on key):
      pk = FILES#{instance}
      sk = KEY#{key}
      file_id = {file_id}

    Record + guard are written/deleted in one transaction. Status transitions
    are update_item calls conditioned on status = pending.
    """

    def __init__(self, table: Any, instance_name: str):
        self.table = table
        self.table_name = table.name
        self.instance_name = instance_name
        # resource-attached client keeps the native-type serializer
        self.client = table.meta.client

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _pk(self) -> str:
        return f"FILES#{self.instance_name}"

    def _file_key(self, file_id: str) -> Dict[str, str]:
        return {"pk": self._pk(), "sk": f"FILE#{file_id}"}

    def _guard_key(self, key: str) -> Dict[str, str]:
        return {"pk": self._pk(), "sk": f"KEY#{key}"}

    def _to_item(self, record: FileRecord) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            **self._file_key(record.id),
            "id": record.id,
            "filename": record.filename,
            "size": int(record.size),
            "mime_type": record.mime_type,
            "key": record.key,
            "bucket": record.bucket,
            "status": record.status,
            "etag": record.etag,
            "owner_id": record.owner_id,
            "created_at": _iso(record.created_at),
            "updated_at": _iso(record.updated_at),
            "meta": json.dumps(record.meta or {}),
            "error": record.error,
        }
        # drop Nones to keep Dynamo items clean
        return {k: v for k, v in item.items() if v is not None}

    def _from_item(self, item: Dict[str, Any]) -> FileRecord:
        data = {k: item.get(k) for k in _FILE_FIELDS}
        data["size"] = _num(item.get("size"))
        raw_meta = item.get("meta")
        try:
            data["meta"] = json.loads(raw_meta) if raw_meta else {}
        except (TypeError, ValueError):
            data["meta"] = {}
        return FileRecord(**{k: v for k, v in data.items() if v is not None})

    def _transition(self, file_id: str, sets: Dict[str, Any]) -> Tuple[Optional[FileRecord], bool]:
        names = {"#st": "status"}
        values: Dict[str, Any] = {":pending": "pending"}
        parts = []
        for i, (attr, value) in enumerate(sets.items()):
            names[f"#a{i}"] = attr
            values[f":v{i}"] = value
            parts.append(f"#a{i} = :v{i}")

        try:
            resp = self.table.update_item(
                Key=self._file_key(file_id),
                UpdateExpression="SET " + ", ".join(parts),
                ConditionExpression="#st = :pending",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if error_code(e) != "ConditionalCheckFailedException":
                raise
            # already terminal (or absent): report current state, no mutation
            return self.get_file(file_id), False
        return self._from_item(resp["Attributes"]), True

    # ----------------------------
    # Public API
    # ----------------------------
    def insert_file(self, record: FileRecord) -> FileRecord:
        item = self._to_item(record)
        guard = {**self._guard_key(record.key), "file_id": record.id}
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": item,
                            "ConditionExpression": "attribute_not_exists(pk)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": guard,
                            "ConditionExpression": "attribute_not_exists(pk)",
                        }
                    },
                ]
            )
        except ClientError as e:
            if error_code(e) != "TransactionCanceledException":
                raise
            reasons = e.response.get("CancellationReasons") or []
            if reasons and (reasons[0] or {}).get("Code") == "ConditionalCheckFailed":
                raise DuplicateKeyError("id", record.id) from e
            raise DuplicateKeyError("key", record.key) from e
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        resp = self.table.get_item(Key=self._file_key(file_id), ConsistentRead=True)
        item = resp.get("Item")
        return self._from_item(item) if item else None

    def find_file_by_key(self, key: str) -> Optional[FileRecord]:
        resp = self.table.get_item(Key=self._guard_key(key), ConsistentRead=True)
        guard = resp.get("Item")
        if not guard or not guard.get("file_id"):
            return None
        return self.get_file(str(guard["file_id"]))

    def mark_uploaded(self, file_id: str, etag: Optional[str], updated_at: datetime) -> Tuple[Optional[FileRecord], bool]:
        return self._transition(file_id, {"status": "uploaded", "etag": etag, "updated_at": _iso(updated_at)})

    def mark_error(self, file_id: str, reason: str, updated_at: datetime) -> Tuple[Optional[FileRecord], bool]:
        return self._transition(file_id, {"status": "error", "error": reason, "updated_at": _iso(updated_at)})

    def delete_file(self, file_id: str) -> bool:
        record = self.get_file(file_id)
        if record is None:
            return False
        self.client.transact_write_items(
            TransactItems=[
                {"Delete": {"TableName": self.table_name, "Key": self._file_key(file_id)}},
                {"Delete": {"TableName": self.table_name, "Key": self._guard_key(record.key)}},
            ]
        )
        return True


class DynamoBucketRegistry(BucketRegistryStore):
    """
    Bucket registry rows, shared by all instances:
      pk = BUCKETS
      sk = INSTANCE#{instance_name}
    """

    def __init__(self, table: Any):
        self.table = table

    def _key(self, instance_name: str) -> Dict[str, str]:
        return {"pk": "BUCKETS", "sk": f"INSTANCE#{instance_name}"}

    def get_bucket(self, instance_name: str) -> Optional[BucketRecord]:
        resp = self.table.get_item(Key=self._key(instance_name), ConsistentRead=True)
        item = resp.get("Item")
        if not item:
            return None
        return BucketRecord(
            instance_name=item["instance_name"],
            bucket_name=item["bucket_name"],
            region=item["region"],
            created_at=item["created_at"],
        )

    def insert_bucket(self, record: BucketRecord) -> BucketRecord:
        try:
            self.table.put_item(
                Item={
                    **self._key(record.instance_name),
                    "instance_name": record.instance_name,
                    "bucket_name": record.bucket_name,
                    "region": record.region,
                    "created_at": _iso(record.created_at),
                },
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise DuplicateKeyError("instance_name", record.instance_name) from e
            raise
        return record
