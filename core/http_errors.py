from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.errors import S3UplinkError

log = logging.getLogger(__name__)


async def uplink_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Map the S3UplinkError hierarchy to HTTP:
      PermissionDenied 403, NotFound 404, FileNotReady 409, InvalidInput 422,
      DeleteFailed 502, bucket/provisioning failures 500.
    """
    assert isinstance(exc, S3UplinkError)
    if exc.status_code >= 500:
        log.error("[API] %s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(S3UplinkError, uplink_error_handler)
