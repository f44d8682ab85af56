from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from core.errors import (
    DeleteFailed,
    DuplicateKeyError,
    FileNotReady,
    InvalidInput,
    NotFound,
    ObjectNotFoundError,
    PermissionDenied,
)
from core.log import instance_logger
from files.models import (
    UPLOAD_PREFIX,
    FileRecord,
    FileSummary,
    PublicFile,
    UploadIntent,
    utc_now,
)
from files.permissions import PermissionGate, maybe_await
from providers.ledger import FileLedger
from providers.storage import StorageProvider

log = logging.getLogger(__name__)

KeyNamer = Callable[[FileSummary, Optional[str], Dict[str, Any]], str]
FileHook = Callable[[FileRecord], Awaitable[None]]


def default_key_namer(summary: FileSummary, _requester_id: Optional[str], _context: Dict[str, Any]) -> str:
    return f"{uuid4().hex}-{summary.filename}"


async def _noop_hook(_record: FileRecord) -> None:
    return None


def _require_id(file_id: Any) -> str:
    if not isinstance(file_id, str) or not file_id.strip():
        raise InvalidInput("fileId must be a non-empty string")
    return file_id.strip()


def _strip_etag(etag: str) -> str:
    # head_object quotes the ETag, S3 event records do not
    return etag.strip().strip('"')


class FileService:
    """
    Upload lifecycle for one instance (one bucket, one ledger).

    pending is entered only through issue_upload_intent. confirm_upload moves
    pending -> uploaded after the object is visible in the store, or
    pending -> error on an unrecoverable mismatch. Terminal records are
    returned unchanged by later confirmations and hooks never re-run.
    """

    def __init__(
        self,
        *,
        instance_name: str,
        bucket: str,
        storage: StorageProvider,
        ledger: FileLedger,
        gate: PermissionGate,
        key_namer: Optional[KeyNamer] = None,
        on_before_upload: Optional[FileHook] = None,
        on_after_upload: Optional[FileHook] = None,
        upload_expires_in: int = 60,
        download_expires_in: int = 60,
        auto_confirm_uploads: bool = False,
        verbose: bool = False,
    ):
        self.instance_name = instance_name
        self.bucket = bucket
        self.storage = storage
        self.ledger = ledger
        self.gate = gate
        self.key_namer = key_namer or default_key_namer
        self.on_before_upload = on_before_upload or _noop_hook
        self.on_after_upload = on_after_upload or _noop_hook
        self.upload_expires_in = upload_expires_in
        self.download_expires_in = download_expires_in
        self.auto_confirm_uploads = auto_confirm_uploads
        self.log = instance_logger(__name__, "FileService", instance_name, verbose)

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _build_key(self, summary: FileSummary, requester_id: Optional[str], context: Dict[str, Any]) -> str:
        raw = self.key_namer(summary, requester_id, context)
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidInput("Key naming function returned an empty key")
        key = raw.strip().lstrip("/")
        if not key.startswith(UPLOAD_PREFIX):
            key = UPLOAD_PREFIX + key
        if key == UPLOAD_PREFIX:
            raise InvalidInput("Key naming function returned an empty key")
        return key

    async def _load(self, file_id: str) -> FileRecord:
        record = await asyncio.to_thread(self.ledger.get_file, file_id)
        if record is None:
            raise NotFound(f"File {file_id} not found")
        return record

    async def _authorize(self, subject: Any, action: str, requester_id: Optional[str], context: Dict[str, Any]) -> None:
        if not await self.gate.allowed(subject, action, requester_id, context):
            raise PermissionDenied(f"You do not have permission to {action} this file.")

    async def _fail(self, record: FileRecord, reason: str) -> None:
        await asyncio.to_thread(self.ledger.mark_error, record.id, reason, utc_now())
        self.log.warning("File %s moved to error: %s", record.id, reason)

    # ----------------------------
    # Public API
    # ----------------------------
    async def issue_upload_intent(
        self,
        filename: str,
        size: int,
        mime_type: str,
        meta: Optional[Dict[str, Any]] = None,
        requester_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> UploadIntent:
        if not isinstance(filename, str) or not filename.strip():
            raise InvalidInput("filename must be a non-empty string")
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise InvalidInput("size must be a non-negative integer")
        if not isinstance(mime_type, str) or not mime_type.strip():
            raise InvalidInput("mimeType must be a non-empty string")
        if meta is not None and not isinstance(meta, dict):
            raise InvalidInput("meta must be an object")
        if context is not None and not isinstance(context, dict):
            raise InvalidInput("context must be an object")
        context = dict(context or {})

        summary = FileSummary(filename=filename, size=size, mime_type=mime_type, meta=dict(meta or {}))
        await self._authorize(summary, "upload", requester_id, context)

        now = utc_now()
        record = FileRecord(
            id=uuid4().hex,
            filename=filename,
            size=size,
            mime_type=mime_type,
            key=self._build_key(summary, requester_id, context),
            bucket=self.bucket,
            status="uploaded" if self.auto_confirm_uploads else "pending",
            owner_id=requester_id,
            created_at=now,
            updated_at=now if self.auto_confirm_uploads else None,
            meta=summary.meta,
        )

        try:
            record = await asyncio.to_thread(self.ledger.insert_file, record)
        except DuplicateKeyError as e:
            raise InvalidInput(f"Key already in use: {record.key}", cause=e) from e

        # a failing hook aborts the request; the pending row stays for inspection
        await maybe_await(self.on_before_upload(record))

        url = await asyncio.to_thread(
            self.storage.presign_url,
            self.bucket,
            record.key,
            "put",
            self.upload_expires_in,
            mime_type,
        )
        self.log.diag("Generated upload URL for file %s (%s)", record.id, filename)
        return UploadIntent(url=url, file_id=record.id)

    async def confirm_upload(
        self,
        file_id: str,
        *,
        reported_key: Optional[str] = None,
        reported_etag: Optional[str] = None,
    ) -> FileRecord:
        """
        Probe the store and move a pending record to uploaded.

        reported_key/reported_etag come from the upload notification; when
        given they must describe this record's object, otherwise the record
        moves to error.
        """
        file_id = _require_id(file_id)
        record = await self._load(file_id)
        if record.is_terminal:
            self.log.diag("File %s already %s; nothing to do", file_id, record.status)
            return record

        if not record.key.startswith(UPLOAD_PREFIX):
            await self._fail(record, f"key {record.key!r} is outside {UPLOAD_PREFIX}")
            raise InvalidInput(f"File {file_id} has an invalid key")

        if reported_key is not None and reported_key != record.key:
            await self._fail(record, f"key mismatch: notification reported {reported_key!r}")
            raise InvalidInput(f"File {file_id} key mismatch")

        try:
            head = await asyncio.to_thread(self.storage.head_object, record.bucket, record.key)
        except ObjectNotFoundError as e:
            # not visible yet; caller/trigger retries
            raise NotFound(f"File {file_id} not found in store (key={record.key})", cause=e) from e

        store_etag = head.get("ETag")
        if reported_etag and store_etag and _strip_etag(reported_etag) != _strip_etag(store_etag):
            await self._fail(record, f"object mismatch: notification eTag {reported_etag!r}, store {store_etag!r}")
            raise InvalidInput(f"File {file_id} object mismatch")

        updated, changed = await asyncio.to_thread(
            self.ledger.mark_uploaded, file_id, store_etag, utc_now()
        )
        if updated is None:
            raise NotFound(f"File {file_id} was removed during confirmation")
        if not changed:
            # another confirmation won the conditional write
            return updated

        try:
            await maybe_await(self.on_after_upload(record))
        except Exception:
            self.log.exception("onAfterUpload hook failed for file %s", file_id)

        self.log.diag("File %s (%s) uploaded", file_id, record.filename)
        return updated

    async def confirm_upload_by_key(self, key: str, etag: Optional[str] = None) -> FileRecord:
        if not isinstance(key, str) or not key.strip():
            raise InvalidInput("key must be a non-empty string")
        record = await asyncio.to_thread(self.ledger.find_file_by_key, key)
        if record is None:
            raise NotFound(f"No file with key {key}")
        return await self.confirm_upload(record.id, reported_key=key, reported_etag=etag)

    async def find_by_key(self, key: str) -> Optional[FileRecord]:
        return await asyncio.to_thread(self.ledger.find_file_by_key, key)

    async def get_metadata(
        self,
        file_id: str,
        requester_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> PublicFile:
        record = await self._load(_require_id(file_id))
        await self._authorize(record, "download", requester_id, dict(context or {}))
        return PublicFile.from_record(record)

    async def issue_download_url(
        self,
        file_id: str,
        requester_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        record = await self._load(_require_id(file_id))
        await self._authorize(record, "download", requester_id, dict(context or {}))
        if record.status != "uploaded":
            raise FileNotReady(f"File {file_id} is not ready for download (status={record.status})")

        return await asyncio.to_thread(
            self.storage.presign_url,
            record.bucket,
            record.key,
            "get",
            self.download_expires_in,
        )

    async def remove_file(
        self,
        file_id: str,
        requester_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = await self._load(_require_id(file_id))
        await self._authorize(record, "delete", requester_id, dict(context or {}))

        try:
            await asyncio.to_thread(self.storage.delete_object, record.bucket, record.key)
        except Exception as e:
            raise DeleteFailed(f"Failed to delete file from store: {e}", cause=e) from e

        await asyncio.to_thread(self.ledger.delete_file, file_id)
        self.log.diag("File %s removed", file_id)
