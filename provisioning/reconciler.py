from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List

from core.log import instance_logger
from core.settings import InstanceConfig, ProvisioningSettings
from provisioning.functions import FunctionDeployer
from provisioning.iam import ExecutionRoleManager
from provisioning.trigger import TriggerWiring
from providers.impl.aws import make_client
from providers.storage import StorageProvider


@dataclass
class ProvisioningState:
    bucket_name: str
    role_arn: str = ""
    function_name: str = ""
    function_arn: str = ""
    role_changes: List[str] = field(default_factory=list)
    function_changes: List[str] = field(default_factory=list)
    trigger_changes: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.role_changes or self.function_changes or self.trigger_changes)

    def to_dict(self) -> dict:
        return {
            "bucket_name": self.bucket_name,
            "role_arn": self.role_arn,
            "function_name": self.function_name,
            "function_arn": self.function_arn,
            "changes": {
                "role": list(self.role_changes),
                "function": list(self.function_changes),
                "trigger": list(self.trigger_changes),
            },
        }


class ProvisioningReconciler:
    """Bring role, function and bucket trigger to the desired state, in that order."""

    def __init__(
        self,
        *,
        config: InstanceConfig,
        settings: ProvisioningSettings,
        iam_client: Any,
        lambda_client: Any,
        storage: StorageProvider,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.roles = ExecutionRoleManager(
            iam_client,
            config.name,
            verbose=config.verbose,
            lenient=config.uses_emulator,
        )
        self.functions = FunctionDeployer(lambda_client, config, settings, sleep=sleep)
        self.trigger = TriggerWiring(
            lambda_client,
            storage,
            settings,
            instance_name=config.name,
            verbose=config.verbose,
            sleep=sleep,
        )
        self.log = instance_logger(__name__, "ProvisioningReconciler", config.name, config.verbose)

    @classmethod
    def from_config(
        cls,
        config: InstanceConfig,
        settings: ProvisioningSettings,
        storage: StorageProvider,
    ) -> "ProvisioningReconciler":
        return cls(
            config=config,
            settings=settings,
            iam_client=make_client("iam", config),
            lambda_client=make_client("lambda", config),
            storage=storage,
        )

    async def reconcile(self, bucket_name: str) -> ProvisioningState:
        state = ProvisioningState(bucket_name=bucket_name)

        role = await self.roles.ensure_lambda_exec_role(bucket_name)
        state.role_arn = role.role_arn
        state.role_changes = role.changes

        fn = await self.functions.deploy(bucket_name, role.role_arn)
        state.function_name = fn.function_name
        state.function_arn = fn.function_arn
        state.function_changes = fn.changes

        trig = await self.trigger.ensure_upload_trigger(fn.function_name, bucket_name)
        state.function_arn = state.function_arn or trig.function_arn
        state.trigger_changes = trig.changes

        if state.changed:
            self.log.info(
                "Provisioned %s (role: %s; function: %s; trigger: %s)",
                bucket_name,
                ", ".join(state.role_changes) or "-",
                ", ".join(state.function_changes) or "-",
                ", ".join(state.trigger_changes) or "-",
            )
        else:
            self.log.diag("Provisioning for %s already converged", bucket_name)
        return state
