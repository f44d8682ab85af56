from __future__ import annotations

from typing import Protocol, runtime_checkable, Optional, Dict, Any, List, Literal

PresignOperation = Literal["put", "get"]


@runtime_checkable
class StorageProvider(Protocol):
    """
    Object store abstraction, bucket passed explicitly on every call.

    Absent objects/buckets raise core.errors.ObjectNotFoundError; every other
    store failure propagates as the SDK raised it.
    """

    def head_object(self, bucket: str, key: str) -> Dict[str, Any]: ...

    def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]: ...

    def delete_object(self, bucket: str, key: str) -> None: ...

    def presign_url(
        self,
        bucket: str,
        key: str,
        operation: PresignOperation,
        expires_in: int,
        content_type: Optional[str] = None,
    ) -> str: ...

    # bucket administration (only what reconciliation needs)

    def head_bucket(self, bucket: str) -> Dict[str, Any]: ...

    def create_bucket(self, bucket: str, region: str) -> None: ...

    def put_bucket_cors(self, bucket: str, origins: List[str]) -> None: ...

    def get_notification_configuration(self, bucket: str) -> Dict[str, Any]: ...

    def put_notification_configuration(self, bucket: str, configuration: Dict[str, Any]) -> None: ...
