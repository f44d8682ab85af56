from __future__ import annotations

from typing import Optional, Dict, Any, List

from botocore.exceptions import ClientError

from core.errors import ObjectNotFoundError
from core.settings import InstanceConfig
from providers.impl.aws import is_not_found, make_client
from providers.storage import PresignOperation, StorageProvider

_CLIENT_METHODS = {"put": "put_object", "get": "get_object"}


class S3StorageProvider(StorageProvider):
    """
    S3 (or S3-compatible) StorageProvider.

    Credentials come from the instance config, not the ambient boto3 chain,
    so several instances with different accounts can live in one process.
    Pass `client` to reuse an existing boto3 S3 client (tests, moto).
    """

    def __init__(self, client: Any):
        self.s3 = client

    @classmethod
    def from_config(cls, config: InstanceConfig) -> "S3StorageProvider":
        return cls(make_client("s3", config))

    # ----------------------------
    # Objects
    # ----------------------------

    def head_object(self, bucket: str, key: str) -> Dict[str, Any]:
        try:
            resp = self.s3.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFoundError(key, bucket=bucket) from e
            raise
        # Return a stable dict (avoid dumping massive boto response)
        return {
            "Key": key,
            "ContentLength": resp.get("ContentLength"),
            "ContentType": resp.get("ContentType"),
            "ETag": resp.get("ETag"),
            "LastModified": resp.get("LastModified").isoformat() if resp.get("LastModified") else None,
        }

    def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        resp = self.s3.put_object(
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )
        return {"Key": key, "ETag": resp.get("ETag")}

    def delete_object(self, bucket: str, key: str) -> None:
        self.s3.delete_object(Bucket=bucket, Key=key)

    def presign_url(
        self,
        bucket: str,
        key: str,
        operation: PresignOperation,
        expires_in: int,
        content_type: Optional[str] = None,
    ) -> str:
        method = _CLIENT_METHODS.get(operation)
        if method is None:
            raise ValueError(f"Unsupported presign operation: {operation!r}")

        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if operation == "put" and content_type:
            params["ContentType"] = content_type

        return self.s3.generate_presigned_url(
            ClientMethod=method,
            Params=params,
            ExpiresIn=max(1, int(expires_in)),
        )

    # ----------------------------
    # Buckets
    # ----------------------------

    def head_bucket(self, bucket: str) -> Dict[str, Any]:
        resp = self.s3.head_bucket(Bucket=bucket)
        headers = (resp.get("ResponseMetadata") or {}).get("HTTPHeaders") or {}
        return {
            "Bucket": bucket,
            "Region": resp.get("BucketRegion") or headers.get("x-amz-bucket-region"),
        }

    def create_bucket(self, bucket: str, region: str) -> None:
        kwargs: Dict[str, Any] = {"Bucket": bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if region and region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        self.s3.create_bucket(**kwargs)

    def put_bucket_cors(self, bucket: str, origins: List[str]) -> None:
        self.s3.put_bucket_cors(
            Bucket=bucket,
            CORSConfiguration={
                "CORSRules": [
                    {
                        "AllowedHeaders": ["*"],
                        "AllowedMethods": ["GET", "PUT", "POST", "DELETE"],
                        "AllowedOrigins": list(origins) or ["*"],
                        "MaxAgeSeconds": 3000,
                    }
                ]
            },
        )

    def get_notification_configuration(self, bucket: str) -> Dict[str, Any]:
        resp = self.s3.get_bucket_notification_configuration(Bucket=bucket)
        return {
            "LambdaFunctionConfigurations": list(resp.get("LambdaFunctionConfigurations") or []),
            "QueueConfigurations": list(resp.get("QueueConfigurations") or []),
            "TopicConfigurations": list(resp.get("TopicConfigurations") or []),
            "EventBridgeConfiguration": resp.get("EventBridgeConfiguration"),
        }

    def put_notification_configuration(self, bucket: str, configuration: Dict[str, Any]) -> None:
        cfg = {k: v for k, v in configuration.items() if v is not None}
        self.s3.put_bucket_notification_configuration(
            Bucket=bucket,
            NotificationConfiguration=cfg,
        )
