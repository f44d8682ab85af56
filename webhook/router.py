from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from core.deps import InstanceDep
from core.errors import S3UplinkError

log = logging.getLogger(__name__)

# Called by the deployed upload handler, not by browsers: no bearer auth.
router = APIRouter(prefix="/api", tags=["webhook"])


@router.post("/{instance}/confirm")
async def confirm_webhook(uplink: InstanceDep, payload: Any = Body(default=None)):
    """
    Upload notification ingress.

    400 - body has no usable "key"
    404 - no record for that key (the function must not retry)
    200 - record confirmed (or already terminal)
    500 - confirmation failed, including "object not visible yet", so the
          platform retries the invocation; a key/eTag mismatch also lands
          here after moving the record to error
    """
    key = payload.get("key") if isinstance(payload, dict) else None
    if not isinstance(key, str) or not key.strip():
        return JSONResponse(status_code=400, content={"error": "Missing key"})

    files = uplink.files
    record = await files.find_by_key(key)
    if record is None:
        log.warning("[Webhook::%s] No file record for key %s", uplink.name, key)
        return JSONResponse(status_code=404, content={"error": "File not found"})

    etag = payload.get("eTag")
    try:
        updated = await files.confirm_upload(
            record.id,
            reported_key=key,
            reported_etag=etag if isinstance(etag, str) else None,
        )
    except S3UplinkError as e:
        log.error("[Webhook::%s] Confirmation failed for %s: %s (%s)", uplink.name, record.id, e.code, e.message)
        return JSONResponse(status_code=500, content={"error": "Upload confirmation failed", "code": e.code})

    return {"ok": True, "fileId": updated.id, "status": updated.status}
