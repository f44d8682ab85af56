from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union
from urllib.parse import unquote

from botocore.exceptions import ClientError

from core.log import instance_logger
from providers.impl.aws import error_code

BASIC_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"

TRUST_POLICY: Dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def bucket_access_policy(bucket_name: str) -> Dict[str, Any]:
    """Object access on exactly one bucket; no wildcard resources."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                "Resource": f"arn:aws:s3:::{bucket_name}/*",
            },
            {
                "Effect": "Allow",
                "Action": ["s3:ListBucket"],
                "Resource": f"arn:aws:s3:::{bucket_name}",
            },
        ],
    }


def _policy_dict(doc: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    # boto3 decodes IAM policy documents; raw API / emulators may hand back url-encoded JSON
    if doc is None:
        return {}
    if isinstance(doc, dict):
        return doc
    return json.loads(unquote(doc))


def same_policy(a: Union[str, Dict[str, Any], None], b: Union[str, Dict[str, Any], None]) -> bool:
    return json.dumps(_policy_dict(a), sort_keys=True) == json.dumps(_policy_dict(b), sort_keys=True)


@dataclass
class RoleResult:
    role_name: str
    role_arn: str
    changes: List[str] = field(default_factory=list)


class ExecutionRoleManager:
    """
    Get-or-create the function's execution role, then diff-and-update:
      1) trust policy (lambda.amazonaws.com may assume it)
      2) AWSLambdaBasicExecutionRole attachment (logs)
      3) inline least-privilege policy scoped to the instance bucket
    Every step is a no-op when the live state already matches.
    """

    def __init__(self, iam_client: Any, instance_name: str, *, verbose: bool = False, lenient: bool = False):
        self.iam = iam_client
        self.instance_name = instance_name
        # emulators may not ship AWS managed policies
        self.lenient = lenient
        self.log = instance_logger(__name__, "ExecutionRoleManager", instance_name, verbose)

    @property
    def role_name(self) -> str:
        return f"S3UplinkLambdaExecRole-{self.instance_name}"

    @property
    def inline_policy_name(self) -> str:
        return f"S3Uplink-S3Access-{self.instance_name}"

    async def _call(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        return await asyncio.to_thread(getattr(self.iam, method), **kwargs)

    async def ensure_lambda_exec_role(self, bucket_name: str) -> RoleResult:
        role, changes = await self._ensure_role()
        result = RoleResult(role_name=self.role_name, role_arn=role["Arn"], changes=changes)

        if await self._ensure_logging_policy():
            result.changes.append("logging-policy")
        if await self._ensure_inline_policy(bucket_name):
            result.changes.append("inline-policy")

        self.log.diag("Execution role %s ready (changes: %s)", self.role_name, ", ".join(result.changes) or "none")
        return result

    async def _ensure_role(self) -> Tuple[Dict[str, Any], List[str]]:
        try:
            resp = await self._call("get_role", RoleName=self.role_name)
        except ClientError as e:
            if error_code(e) != "NoSuchEntity":
                raise
            try:
                resp = await self._call(
                    "create_role",
                    RoleName=self.role_name,
                    AssumeRolePolicyDocument=json.dumps(TRUST_POLICY),
                    Description=f"Execution role for s3uplink ({self.instance_name})",
                )
                self.log.diag("Role created: %s", self.role_name)
                return resp["Role"], ["role-created"]
            except ClientError as create_err:
                if error_code(create_err) != "EntityAlreadyExists":
                    raise
                # another reconciler created it first; diff against theirs
                self.log.info("Role %s created concurrently; adopting", self.role_name)
                resp = await self._call("get_role", RoleName=self.role_name)

        role = resp["Role"]
        changes: List[str] = []
        if not same_policy(role.get("AssumeRolePolicyDocument"), TRUST_POLICY):
            await self._call(
                "update_assume_role_policy",
                RoleName=self.role_name,
                PolicyDocument=json.dumps(TRUST_POLICY),
            )
            changes.append("trust-policy")
            self.log.diag("Trust policy updated on %s", self.role_name)
        return role, changes

    async def _ensure_logging_policy(self) -> bool:
        attached = await self._call("list_attached_role_policies", RoleName=self.role_name)
        arns = {p.get("PolicyArn") for p in attached.get("AttachedPolicies") or []}
        if BASIC_EXECUTION_POLICY_ARN in arns:
            return False
        try:
            await self._call("attach_role_policy", RoleName=self.role_name, PolicyArn=BASIC_EXECUTION_POLICY_ARN)
        except ClientError as e:
            code = error_code(e)
            if code == "EntityAlreadyExists":
                self.log.diag("Logging policy already attached to %s", self.role_name)
                return False
            if self.lenient and code == "NoSuchEntity":
                self.log.warning("Managed policy %s unavailable; skipping", BASIC_EXECUTION_POLICY_ARN)
                return False
            raise
        self.log.diag("Logging policy attached to %s", self.role_name)
        return True

    async def _ensure_inline_policy(self, bucket_name: str) -> bool:
        desired = bucket_access_policy(bucket_name)
        try:
            current = await self._call(
                "get_role_policy",
                RoleName=self.role_name,
                PolicyName=self.inline_policy_name,
            )
        except ClientError as e:
            if error_code(e) != "NoSuchEntity":
                raise
            current = None

        if current is not None and same_policy(current.get("PolicyDocument"), desired):
            return False

        await self._call(
            "put_role_policy",
            RoleName=self.role_name,
            PolicyName=self.inline_policy_name,
            PolicyDocument=json.dumps(desired),
        )
        self.log.diag("Inline bucket policy written for %s on %s", self.role_name, bucket_name)
        return True
