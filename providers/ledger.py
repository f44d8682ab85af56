from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Tuple, runtime_checkable

from files.models import BucketRecord, FileRecord


@runtime_checkable
class FileLedger(Protocol):
    """
    Durable per-instance file records.

    Uniqueness: `key` across all records (DuplicateKeyError on violation).
    Transitions: mark_uploaded / mark_error are single conditional writes that
    only apply while status == "pending". They return (record, changed); when
    changed is False the record is the current stored state, untouched.
    """

    def insert_file(self, record: FileRecord) -> FileRecord: ...

    def get_file(self, file_id: str) -> Optional[FileRecord]: ...

    def find_file_by_key(self, key: str) -> Optional[FileRecord]: ...

    def mark_uploaded(self, file_id: str, etag: Optional[str], updated_at: datetime) -> Tuple[Optional[FileRecord], bool]: ...

    def mark_error(self, file_id: str, reason: str, updated_at: datetime) -> Tuple[Optional[FileRecord], bool]: ...

    def delete_file(self, file_id: str) -> bool: ...


@runtime_checkable
class BucketRegistryStore(Protocol):
    """Shared across instances; uniqueness on instance_name."""

    def get_bucket(self, instance_name: str) -> Optional[BucketRecord]: ...

    def insert_bucket(self, record: BucketRecord) -> BucketRecord: ...
