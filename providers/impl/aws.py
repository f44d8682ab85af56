from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from core.settings import InstanceConfig

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def client_config(config: InstanceConfig) -> Config:
    kwargs: dict = {
        "retries": {"max_attempts": 8, "mode": "standard"},
        "region_name": config.region,
    }
    if config.uses_emulator:
        # emulators (LocalStack, MinIO) don't resolve virtual-hosted bucket names
        kwargs["s3"] = {"addressing_style": "path"}
    return Config(**kwargs)


def _session_kwargs(config: InstanceConfig) -> dict:
    kwargs = {
        "aws_access_key_id": config.access_key_id,
        "aws_secret_access_key": config.secret_access_key,
        "config": client_config(config),
    }
    if config.endpoint:
        kwargs["endpoint_url"] = config.endpoint
    return kwargs


def make_client(service: str, config: InstanceConfig) -> Any:
    return boto3.client(service, **_session_kwargs(config))


def make_resource(service: str, config: InstanceConfig) -> Any:
    return boto3.resource(service, **_session_kwargs(config))


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str((exc.response.get("Error") or {}).get("Code") or "")
    return ""


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in _NOT_FOUND_CODES
