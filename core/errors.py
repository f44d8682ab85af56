from __future__ import annotations

from typing import Optional


class S3UplinkError(Exception):
    """
    Base error for every public operation.

    `code` is a stable tag the transport layer maps onto a status code;
    `message` is human readable.
    """

    code = "Internal"
    status_code = 500

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class PermissionDenied(S3UplinkError):
    code = "PermissionDenied"
    status_code = 403


class NotFound(S3UplinkError):
    code = "NotFound"
    status_code = 404


class FileNotReady(S3UplinkError):
    code = "FileNotReady"
    status_code = 409


class InvalidInput(S3UplinkError):
    code = "InvalidInput"
    status_code = 422


class DeleteFailed(S3UplinkError):
    code = "DeleteFailed"
    status_code = 502


class BucketAccessError(S3UplinkError):
    code = "BucketAccessError"


class BucketCreationError(S3UplinkError):
    code = "BucketCreationError"


class ProvisioningError(S3UplinkError):
    """Fatal control-plane state (e.g. LastUpdateStatus=Failed)."""

    code = "ProvisioningError"


class ProvisioningTimeout(ProvisioningError):
    code = "ProvisioningTimeout"


class ProvisioningConflict(ProvisioningError):
    code = "ProvisioningConflict"


class NotificationWireFailure(ProvisioningError):
    code = "NotificationWireFailure"


class ObjectNotFoundError(Exception):
    """Raised by storage providers when an object (or bucket) is absent."""

    def __init__(self, key: str, *, bucket: Optional[str] = None):
        super().__init__(f"Object not found: {bucket}/{key}" if bucket else f"Object not found: {key}")
        self.key = key
        self.bucket = bucket


class DuplicateKeyError(Exception):
    """Raised by ledgers when a uniqueness constraint is violated."""

    def __init__(self, field: str, value: str):
        super().__init__(f"Duplicate {field}: {value}")
        self.field = field
        self.value = value
