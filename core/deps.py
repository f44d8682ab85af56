from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from core.providers import providers_from_request
from files.instance import S3Uplink
from files.service import FileService
from providers.factory import Providers


# -----------------------------
# Canonical provider access
# -----------------------------

def get_providers(request: Request) -> Providers:
    """
    Canonical runtime provider resolver.

    Source of truth: request.app.state.providers
    """
    return providers_from_request(request)


ProvidersDep = Annotated[Providers, Depends(get_providers)]


# -----------------------------
# Canonical instance deps
# -----------------------------

def get_instance(instance: str, request: Request) -> S3Uplink:
    """
    Resolve the `{instance}` path parameter to an initialized S3Uplink.
    Unknown names are a 404 (never hint which instances exist).
    """
    uplink = get_providers(request).instance(instance)
    if uplink is None or not uplink.initialized:
        raise HTTPException(status_code=404, detail=f"Unknown instance: {instance}")
    return uplink


InstanceDep = Annotated[S3Uplink, Depends(get_instance)]


def get_file_service(uplink: InstanceDep) -> FileService:
    return uplink.files


FileServiceDep = Annotated[FileService, Depends(get_file_service)]
