from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from core.errors import NotificationWireFailure, ProvisioningError
from core.log import instance_logger
from core.settings import ProvisioningSettings
from files.models import UPLOAD_PREFIX
from provisioning.readiness import wait_for_function_ready
from providers.impl.aws import error_code
from providers.storage import StorageProvider

UPLOAD_EVENTS = ["s3:ObjectCreated:*"]
_RETRYABLE = ("InvalidArgument", "ResourceConflictException")


@dataclass
class TriggerResult:
    function_arn: str
    notification_id: str
    changes: List[str] = field(default_factory=list)


def notification_id_for(function_name: str) -> str:
    # S3 caps configuration ids; keep it short and stable
    return f"uploads-{function_name}"[:50]


def desired_notification(function_name: str, function_arn: str) -> Dict[str, Any]:
    return {
        "Id": notification_id_for(function_name),
        "LambdaFunctionArn": function_arn,
        "Events": list(UPLOAD_EVENTS),
        "Filter": {"Key": {"FilterRules": [{"Name": "prefix", "Value": UPLOAD_PREFIX}]}},
    }


def _normalize(entry: Dict[str, Any]) -> Dict[str, Any]:
    rules = ((entry.get("Filter") or {}).get("Key") or {}).get("FilterRules") or []
    return {
        "Id": entry.get("Id"),
        "LambdaFunctionArn": entry.get("LambdaFunctionArn"),
        "Events": sorted(entry.get("Events") or []),
        # S3 echoes rule names capitalized ("Prefix")
        "Rules": sorted((str(r.get("Name", "")).lower(), r.get("Value")) for r in rules),
    }


def same_notification(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    return _normalize(a) == _normalize(b)


def merge_notification(current: Dict[str, Any], desired: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Merged configuration with `desired` in place of any entry sharing its Id or
    function ARN, other entries untouched. None when nothing would change.
    """
    lambdas = list(current.get("LambdaFunctionConfigurations") or [])
    if any(same_notification(c, desired) for c in lambdas):
        return None

    kept = [
        c for c in lambdas
        if c.get("Id") != desired["Id"] and c.get("LambdaFunctionArn") != desired["LambdaFunctionArn"]
    ]
    merged = dict(current)
    merged["LambdaFunctionConfigurations"] = kept + [desired]
    return merged


class TriggerWiring:
    """
    Wire bucket ObjectCreated events under uploads/ to the confirmation function:
      1) wait until the function is active
      2) allow s3.amazonaws.com to invoke it, scoped to this bucket
      3) merge our entry into the bucket notification configuration
      4) read back and verify
    """

    def __init__(
        self,
        lambda_client: Any,
        storage: StorageProvider,
        settings: ProvisioningSettings,
        *,
        instance_name: str = "",
        verbose: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.lam = lambda_client
        self.storage = storage
        self.settings = settings
        self._sleep = sleep
        self.log = instance_logger(__name__, "TriggerWiring", instance_name, verbose)

    async def ensure_upload_trigger(self, function_name: str, bucket_name: str) -> TriggerResult:
        cfg = await wait_for_function_ready(
            self.lam,
            function_name,
            timeout=self.settings.ready_timeout_seconds,
            interval=self.settings.poll_interval_seconds,
            sleep=self._sleep,
        )
        if cfg is None:
            raise ProvisioningError(f"Lambda {function_name} does not exist; cannot wire bucket {bucket_name}")
        function_arn = cfg.get("FunctionArn") or ""

        result = TriggerResult(function_arn=function_arn, notification_id=notification_id_for(function_name))
        if await self._ensure_invoke_permission(function_name, bucket_name):
            result.changes.append("invoke-permission")

        desired = desired_notification(function_name, function_arn)
        if await self._ensure_notification(bucket_name, desired):
            result.changes.append("notification")

        await self._verify(bucket_name, desired)
        self.log.diag("Bucket %s wired to %s (changes: %s)", bucket_name, function_name, ", ".join(result.changes) or "none")
        return result

    async def _ensure_invoke_permission(self, function_name: str, bucket_name: str) -> bool:
        try:
            await asyncio.to_thread(
                self.lam.add_permission,
                FunctionName=function_name,
                StatementId=f"s3uplink-invoke-{bucket_name}"[:100],
                Action="lambda:InvokeFunction",
                Principal="s3.amazonaws.com",
                SourceArn=f"arn:aws:s3:::{bucket_name}",
            )
        except ClientError as e:
            if error_code(e) == "ResourceConflictException":
                self.log.diag("Invoke permission for %s already present", bucket_name)
                return False
            raise
        self.log.diag("Invoke permission granted to s3 for %s", bucket_name)
        return True

    async def _ensure_notification(self, bucket_name: str, desired: Dict[str, Any]) -> bool:
        attempts = max(1, self.settings.notification_attempts)
        last: Optional[ClientError] = None
        for i in range(attempts):
            current = await asyncio.to_thread(self.storage.get_notification_configuration, bucket_name)
            merged = merge_notification(current, desired)
            if merged is None:
                return False
            try:
                await asyncio.to_thread(self.storage.put_notification_configuration, bucket_name, merged)
                return True
            except ClientError as e:
                if error_code(e) not in _RETRYABLE:
                    raise
                last = e
                if i + 1 >= attempts:
                    break
                # S3 validates the destination; fresh invoke permissions take a moment
                delay = min(1 + i, 5) * self.settings.backoff_seconds
                self.log.diag("Notification write rejected (%s), attempt %s/%s; retrying in %.1fs", error_code(e), i + 1, attempts, delay)
                await self._sleep(delay)

        raise NotificationWireFailure(
            f"Could not write notification configuration on {bucket_name} after {attempts} attempts: {last}",
            cause=last,
        )

    async def _verify(self, bucket_name: str, desired: Dict[str, Any]) -> None:
        current = await asyncio.to_thread(self.storage.get_notification_configuration, bucket_name)
        lambdas = current.get("LambdaFunctionConfigurations") or []
        if not any(same_notification(c, desired) for c in lambdas):
            raise NotificationWireFailure(
                f"Notification {desired['Id']} missing on {bucket_name} after write"
            )
