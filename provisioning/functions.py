from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from core.errors import ProvisioningError
from core.log import instance_logger
from core.settings import InstanceConfig, ProvisioningSettings
from provisioning.artifact import CodeArtifact, upload_handler_artifact
from provisioning.readiness import get_function, wait_for_function_ready, with_conflict_retry
from provisioning.templates import render_manifest
from providers.impl.aws import error_code

MANIFEST_PATH = Path(__file__).resolve().parent / "manifests" / "upload_handler.tpl.json"

# manifest keys compared against GetFunction.Configuration
_CONFIG_KEYS = ("Role", "Handler", "Runtime", "MemorySize", "Timeout", "Description")


@dataclass
class FunctionResult:
    function_name: str
    function_arn: str = ""
    changes: List[str] = field(default_factory=list)


def function_name_for(instance_name: str) -> str:
    return f"s3uplink-{instance_name}-upload-handler"


def config_drift(manifest: Dict[str, Any], live: Dict[str, Any]) -> List[str]:
    """Names of configuration fields where the live function differs from the manifest."""
    drift = [k for k in _CONFIG_KEYS if k in manifest and live.get(k) != manifest[k]]
    want_env = (manifest.get("Environment") or {}).get("Variables") or {}
    live_env = (live.get("Environment") or {}).get("Variables") or {}
    if want_env != live_env:
        drift.append("Environment")
    return drift


class FunctionDeployer:
    """
    Create or converge the upload-confirmation function.

    create path:
      - IAM roles take a while to become assumable; CreateFunction answers
        InvalidParameterValueException until then, retried with linear backoff
    update path:
      - CodeSha256 differs      -> UpdateFunctionCode
      - any config field drifts -> UpdateFunctionConfiguration
      - each mutation runs under conflict retry, then waits for readiness
    """

    def __init__(
        self,
        lambda_client: Any,
        config: InstanceConfig,
        settings: ProvisioningSettings,
        *,
        artifact: Optional[CodeArtifact] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.lam = lambda_client
        self.config = config
        self.settings = settings
        self._artifact = artifact
        self._sleep = sleep
        self.log = instance_logger(__name__, "FunctionDeployer", config.name, config.verbose)

    @property
    def function_name(self) -> str:
        return function_name_for(self.config.name)

    @property
    def artifact(self) -> CodeArtifact:
        if self._artifact is None:
            self._artifact = upload_handler_artifact()
        return self._artifact

    def render(self, bucket_name: str, role_arn: str) -> Dict[str, Any]:
        return render_manifest(
            MANIFEST_PATH,
            {
                "INSTANCE": self.config.name,
                "ROLE_ARN": role_arn,
                "WEBHOOK_URL": self.config.webhook_url,
                "BUCKET": bucket_name,
            },
        )

    async def wait_ready(self) -> Optional[Dict[str, Any]]:
        return await wait_for_function_ready(
            self.lam,
            self.function_name,
            timeout=self.settings.ready_timeout_seconds,
            interval=self.settings.poll_interval_seconds,
            sleep=self._sleep,
        )

    async def _call(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        return await asyncio.to_thread(getattr(self.lam, method), **kwargs)

    async def _mutate(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await with_conflict_retry(
            lambda: self._call(method, **kwargs),
            wait=self.wait_ready,
            attempts=self.settings.conflict_attempts,
            label=f"{method}({self.function_name})",
        )
        await self.wait_ready()
        return resp

    async def deploy(self, bucket_name: str, role_arn: str) -> FunctionResult:
        manifest = self.render(bucket_name, role_arn)
        if manifest.get("FunctionName") != self.function_name:
            raise ProvisioningError(f"Manifest function name {manifest.get('FunctionName')!r} does not match {self.function_name!r}")

        existing = await get_function(self.lam, self.function_name)
        if existing is None:
            return await self._create(manifest)
        return await self._converge(manifest)

    async def _create(self, manifest: Dict[str, Any]) -> FunctionResult:
        params = dict(manifest)
        params["Code"] = {"ZipFile": self.artifact.zip_bytes}
        params["Publish"] = False

        attempts = max(1, self.settings.conflict_attempts)
        resp: Dict[str, Any] = {}
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._call("create_function", **params)
                break
            except ClientError as e:
                code = error_code(e)
                if code == "ResourceConflictException":
                    self.log.info("Function %s created concurrently; converging", self.function_name)
                    return await self._converge(manifest)
                if code != "InvalidParameterValueException" or attempt == attempts:
                    raise
                delay = self.settings.backoff_seconds * attempt
                self.log.diag("Role not assumable yet (attempt %s/%s); retrying in %.1fs", attempt, attempts, delay)
                await self._sleep(delay)

        self.log.diag("Function created: %s", self.function_name)
        await self.wait_ready()
        return FunctionResult(
            function_name=self.function_name,
            function_arn=resp.get("FunctionArn") or "",
            changes=["function-created"],
        )

    async def _converge(self, manifest: Dict[str, Any]) -> FunctionResult:
        live = await self.wait_ready() or {}
        result = FunctionResult(function_name=self.function_name, function_arn=live.get("FunctionArn") or "")

        if live.get("CodeSha256") != self.artifact.sha256:
            await self._mutate(
                "update_function_code",
                FunctionName=self.function_name,
                ZipFile=self.artifact.zip_bytes,
                Publish=False,
            )
            result.changes.append("code")
            self.log.diag("Function code updated: %s", self.function_name)

        drift = config_drift(manifest, live)
        if drift:
            params = {k: manifest[k] for k in _CONFIG_KEYS if k in manifest}
            params["Environment"] = manifest.get("Environment") or {"Variables": {}}
            await self._mutate("update_function_configuration", FunctionName=self.function_name, **params)
            result.changes.append("configuration")
            self.log.diag("Function configuration updated (%s): %s", ", ".join(drift), self.function_name)

        if not result.changes:
            self.log.diag("Function %s already up to date", self.function_name)
        return result
