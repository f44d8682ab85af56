from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

FileStatus = Literal["pending", "uploading", "uploaded", "error"]
FileAction = Literal["upload", "download", "delete"]

TERMINAL_STATUSES = ("uploaded", "error")
UPLOAD_PREFIX = "uploads/"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileSummary(BaseModel):
    """
    What the permission hook sees for action="upload": the client-declared
    fields only, nothing persisted yet.
    """
    filename: str
    size: int
    mime_type: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class FileRecord(BaseModel):
    """
    One upload attempt.

    - key: "uploads/..." object key, unique across the ledger, immutable
    - status: pending -> uploaded | error; terminal states never change
    - etag: set only on the pending -> uploaded transition
    - error: reason recorded on the pending -> error transition
    """
    id: str
    filename: str
    size: int
    mime_type: str = "application/octet-stream"
    key: str
    bucket: str
    status: FileStatus = "pending"
    etag: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def summary(self) -> FileSummary:
        return FileSummary(filename=self.filename, size=self.size, mime_type=self.mime_type, meta=self.meta)


class PublicFile(BaseModel):
    """Projection returned to clients: no key, no bucket, no owner."""
    id: str
    filename: str
    size: int
    mime_type: str
    status: FileStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: FileRecord) -> "PublicFile":
        return cls(
            id=record.id,
            filename=record.filename,
            size=record.size,
            mime_type=record.mime_type,
            status=record.status,
            created_at=record.created_at,
            updated_at=record.updated_at,
            meta=dict(record.meta),
        )


class UploadIntent(BaseModel):
    url: str
    file_id: str


class BucketRecord(BaseModel):
    instance_name: str
    bucket_name: str
    region: str
    created_at: datetime = Field(default_factory=utc_now)
