from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Tuple

from core.errors import DuplicateKeyError
from files.models import BucketRecord, FileRecord
from providers.ledger import BucketRegistryStore, FileLedger


class MemoryFileLedger(FileLedger):
    """
    In-process ledger for local runs and tests.

    Same contract as the DynamoDB ledger: unique keys, conditional
    pending -> terminal transitions. Single process only.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: Dict[str, FileRecord] = {}
        self._by_key: Dict[str, str] = {}

    def insert_file(self, record: FileRecord) -> FileRecord:
        with self._lock:
            if record.id in self._files:
                raise DuplicateKeyError("id", record.id)
            if record.key in self._by_key:
                raise DuplicateKeyError("key", record.key)
            self._files[record.id] = record.model_copy(deep=True)
            self._by_key[record.key] = record.id
            return record.model_copy(deep=True)

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            rec = self._files.get(file_id)
            return rec.model_copy(deep=True) if rec else None

    def find_file_by_key(self, key: str) -> Optional[FileRecord]:
        with self._lock:
            file_id = self._by_key.get(key)
            rec = self._files.get(file_id) if file_id else None
            return rec.model_copy(deep=True) if rec else None

    def _transition(self, file_id: str, updates: dict) -> Tuple[Optional[FileRecord], bool]:
        with self._lock:
            rec = self._files.get(file_id)
            if rec is None:
                return None, False
            if rec.status != "pending":
                return rec.model_copy(deep=True), False
            updated = rec.model_copy(update=updates, deep=True)
            self._files[file_id] = updated
            return updated.model_copy(deep=True), True

    def mark_uploaded(self, file_id: str, etag: Optional[str], updated_at: datetime) -> Tuple[Optional[FileRecord], bool]:
        return self._transition(file_id, {"status": "uploaded", "etag": etag, "updated_at": updated_at})

    def mark_error(self, file_id: str, reason: str, updated_at: datetime) -> Tuple[Optional[FileRecord], bool]:
        return self._transition(file_id, {"status": "error", "error": reason, "updated_at": updated_at})

    def delete_file(self, file_id: str) -> bool:
        with self._lock:
            rec = self._files.pop(file_id, None)
            if rec is None:
                return False
            self._by_key.pop(rec.key, None)
            return True


class MemoryBucketRegistry(BucketRegistryStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, BucketRecord] = {}

    def get_bucket(self, instance_name: str) -> Optional[BucketRecord]:
        with self._lock:
            row = self._rows.get(instance_name)
            return row.model_copy() if row else None

    def insert_bucket(self, record: BucketRecord) -> BucketRecord:
        with self._lock:
            if record.instance_name in self._rows:
                raise DuplicateKeyError("instance_name", record.instance_name)
            self._rows[record.instance_name] = record.model_copy()
            return record
