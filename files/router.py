from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth.jwt import get_requester_id
from core.deps import FileServiceDep
from files.models import PublicFile, UploadIntent

# ---------------------------------------------------------------------
# Router (per-instance RPC surface; requester identity from the bearer token)
# ---------------------------------------------------------------------

router = APIRouter(prefix="/s3/{instance}", tags=["files"])


class UploadUrlRequest(BaseModel):
    filename: str
    size: int
    mime_type: str = "application/octet-stream"
    meta: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class ContextRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)


class DownloadUrlResponse(BaseModel):
    url: str


class RemoveResponse(BaseModel):
    ok: bool = True
    file_id: str


# ---------------------------------------------------------------------
# POST /s3/{instance}/upload-url
# ---------------------------------------------------------------------
@router.post("/upload-url", response_model=UploadIntent)
async def request_upload_url(
    req: UploadUrlRequest,
    files: FileServiceDep,
    requester_id: Optional[str] = Depends(get_requester_id),
):
    """Create a pending record and return a presigned PUT URL for it."""
    return await files.issue_upload_intent(
        filename=req.filename,
        size=req.size,
        mime_type=req.mime_type,
        meta=req.meta,
        requester_id=requester_id,
        context=req.context,
    )


# ---------------------------------------------------------------------
# GET /s3/{instance}/files/{file_id}
# ---------------------------------------------------------------------
@router.get("/files/{file_id}", response_model=PublicFile)
async def get_file(
    file_id: str,
    files: FileServiceDep,
    requester_id: Optional[str] = Depends(get_requester_id),
):
    return await files.get_metadata(file_id, requester_id=requester_id)


# ---------------------------------------------------------------------
# POST /s3/{instance}/files/{file_id}/head
# ---------------------------------------------------------------------
@router.post("/files/{file_id}/head", response_model=PublicFile)
async def head_file(
    file_id: str,
    files: FileServiceDep,
    req: Optional[ContextRequest] = None,
    requester_id: Optional[str] = Depends(get_requester_id),
):
    """Metadata lookup that hands the caller's context to the permission check."""
    context = req.context if req else {}
    return await files.get_metadata(file_id, requester_id=requester_id, context=context)


# ---------------------------------------------------------------------
# POST /s3/{instance}/files/{file_id}/download-url
# ---------------------------------------------------------------------
@router.post("/files/{file_id}/download-url", response_model=DownloadUrlResponse)
async def request_download_url(
    file_id: str,
    files: FileServiceDep,
    req: Optional[ContextRequest] = None,
    requester_id: Optional[str] = Depends(get_requester_id),
):
    context = req.context if req else {}
    url = await files.issue_download_url(file_id, requester_id=requester_id, context=context)
    return DownloadUrlResponse(url=url)


# ---------------------------------------------------------------------
# POST /s3/{instance}/files/{file_id}/confirm
# ---------------------------------------------------------------------
@router.post("/files/{file_id}/confirm", response_model=PublicFile)
async def confirm_file(
    file_id: str,
    files: FileServiceDep,
    _requester_id: Optional[str] = Depends(get_requester_id),
):
    """
    Explicit confirmation for setups without the bucket trigger.
    404 while the object is not visible yet; retry later.
    """
    record = await files.confirm_upload(file_id)
    return PublicFile.from_record(record)


# ---------------------------------------------------------------------
# DELETE /s3/{instance}/files/{file_id}
# ---------------------------------------------------------------------
@router.delete("/files/{file_id}", response_model=RemoveResponse)
async def remove_file(
    file_id: str,
    files: FileServiceDep,
    req: Optional[ContextRequest] = None,
    requester_id: Optional[str] = Depends(get_requester_id),
):
    context = req.context if req else {}
    await files.remove_file(file_id, requester_id=requester_id, context=context)
    return RemoveResponse(file_id=file_id)
