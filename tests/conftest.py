import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

# repo root importable without an install (mirrors pythonpath in pyproject)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from core.errors import ObjectNotFoundError
from core.settings import InstanceConfig, ProvisioningSettings
from provisioning.artifact import code_sha256


def client_error(code: str, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


# ---------------------------------------------------------------------
# Object store
# ---------------------------------------------------------------------
class FakeStorage:
    """In-memory StorageProvider; counts calls and can be told to fail."""

    def __init__(self) -> None:
        self.buckets: Dict[str, str] = {}
        self.objects: Dict[tuple, Dict[str, Any]] = {}
        self.cors: Dict[str, List[str]] = {}
        self.notifications: Dict[str, Dict[str, Any]] = {}
        self.notification_writes = 0
        self.notification_errors: List[ClientError] = []
        self.drop_notification_writes = False
        self.fail_delete = False
        self.fail_head_bucket = False
        self.create_error: Optional[Exception] = None
        self.presigned: List[tuple] = []

    # objects
    def head_object(self, bucket: str, key: str) -> Dict[str, Any]:
        obj = self.objects.get((bucket, key))
        if obj is None:
            raise ObjectNotFoundError(key, bucket=bucket)
        return {"Key": key, "ContentLength": len(obj["data"]), "ContentType": obj["content_type"], "ETag": obj["etag"]}

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream"):
        etag = f'"{code_sha256(data)[:12]}"'
        self.objects[(bucket, key)] = {"data": data, "content_type": content_type, "etag": etag}
        return {"Key": key, "ETag": etag}

    def delete_object(self, bucket: str, key: str) -> None:
        if self.fail_delete:
            raise client_error("AccessDenied", "DeleteObject")
        self.objects.pop((bucket, key), None)

    def presign_url(self, bucket, key, operation, expires_in, content_type=None) -> str:
        self.presigned.append((bucket, key, operation, expires_in, content_type))
        return f"https://{bucket}.s3.test/{key}?op={operation}&expires={expires_in}"

    # buckets
    def head_bucket(self, bucket: str) -> Dict[str, Any]:
        if self.fail_head_bucket or bucket not in self.buckets:
            raise client_error("403", "HeadBucket")
        return {"Bucket": bucket, "Region": self.buckets[bucket]}

    def create_bucket(self, bucket: str, region: str) -> None:
        if self.create_error is not None:
            raise self.create_error
        if bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        self.buckets[bucket] = region

    def put_bucket_cors(self, bucket: str, origins: List[str]) -> None:
        self.cors[bucket] = list(origins)

    def get_notification_configuration(self, bucket: str) -> Dict[str, Any]:
        cfg = self.notifications.get(bucket) or {}
        return {
            "LambdaFunctionConfigurations": [dict(c) for c in cfg.get("LambdaFunctionConfigurations") or []],
            "QueueConfigurations": list(cfg.get("QueueConfigurations") or []),
            "TopicConfigurations": list(cfg.get("TopicConfigurations") or []),
            "EventBridgeConfiguration": cfg.get("EventBridgeConfiguration"),
        }

    def put_notification_configuration(self, bucket: str, configuration: Dict[str, Any]) -> None:
        self.notification_writes += 1
        if self.notification_errors:
            raise self.notification_errors.pop(0)
        if self.drop_notification_writes:
            return
        self.notifications[bucket] = {k: v for k, v in configuration.items() if v is not None}


# ---------------------------------------------------------------------
# Lambda control plane
# ---------------------------------------------------------------------
class FakeLambda:
    def __init__(self) -> None:
        self.functions: Dict[str, Dict[str, Any]] = {}
        self.permissions: Dict[str, set] = {}
        self.mutations: List[str] = []
        self.create_errors: List[ClientError] = []
        self.update_conflicts = 0
        self.not_ready_polls = 0
        self.stuck = False
        self.failed = False
        # another process creates the function between our get and create
        self.lose_create_race = False

    def _config(self, name: str) -> Dict[str, Any]:
        if name not in self.functions:
            raise client_error("ResourceNotFoundException", "GetFunction")
        return self.functions[name]

    def get_function(self, FunctionName: str) -> Dict[str, Any]:
        cfg = dict(self._config(FunctionName))
        if self.failed:
            cfg["LastUpdateStatus"] = "Failed"
            cfg["LastUpdateStatusReason"] = "boom"
        elif self.stuck or self.not_ready_polls > 0:
            self.not_ready_polls = max(0, self.not_ready_polls - 1)
            cfg["LastUpdateStatus"] = "InProgress"
        return {"Configuration": cfg}

    def create_function(self, **params: Any) -> Dict[str, Any]:
        if self.create_errors:
            raise self.create_errors.pop(0)
        name = params["FunctionName"]
        if self.lose_create_race:
            self.lose_create_race = False
            self.create_function(**params)
            self.mutations.remove("create_function")
            raise client_error("ResourceConflictException", "CreateFunction", "Function already exist")
        self.mutations.append("create_function")
        cfg = {k: v for k, v in params.items() if k not in ("Code", "Publish")}
        cfg.update(
            FunctionArn=f"arn:aws:lambda:eu-central-1:000000000000:function:{name}",
            CodeSha256=code_sha256(params["Code"]["ZipFile"]),
            State="Active",
            LastUpdateStatus="Successful",
        )
        self.functions[name] = cfg
        return dict(cfg)

    def _conflict(self, op: str) -> None:
        if self.update_conflicts > 0:
            self.update_conflicts -= 1
            raise client_error("ResourceConflictException", op)

    def update_function_code(self, FunctionName: str, ZipFile: bytes, Publish: bool = False) -> Dict[str, Any]:
        self._conflict("UpdateFunctionCode")
        self.mutations.append("update_function_code")
        self._config(FunctionName)["CodeSha256"] = code_sha256(ZipFile)
        return dict(self.functions[FunctionName])

    def update_function_configuration(self, FunctionName: str, **params: Any) -> Dict[str, Any]:
        self._conflict("UpdateFunctionConfiguration")
        self.mutations.append("update_function_configuration")
        self._config(FunctionName).update(params)
        return dict(self.functions[FunctionName])

    def add_permission(self, FunctionName: str, StatementId: str, **params: Any) -> Dict[str, Any]:
        statements = self.permissions.setdefault(FunctionName, set())
        if StatementId in statements:
            raise client_error("ResourceConflictException", "AddPermission")
        self.mutations.append("add_permission")
        statements.add(StatementId)
        return {"Statement": "{}"}


# ---------------------------------------------------------------------
# IAM
# ---------------------------------------------------------------------
class FakeIAM:
    def __init__(self) -> None:
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.attached: Dict[str, List[str]] = {}
        self.inline: Dict[tuple, Any] = {}
        self.mutations: List[str] = []
        self.attach_error: Optional[ClientError] = None
        # trust policy another process writes when it wins the create race
        self.racer_trust_policy: Optional[Dict[str, Any]] = None

    def get_role(self, RoleName: str) -> Dict[str, Any]:
        if RoleName not in self.roles:
            raise client_error("NoSuchEntity", "GetRole")
        return {"Role": dict(self.roles[RoleName])}

    def create_role(self, RoleName: str, AssumeRolePolicyDocument: str, **_: Any) -> Dict[str, Any]:
        if self.racer_trust_policy is not None:
            self.roles[RoleName] = {
                "RoleName": RoleName,
                "Arn": f"arn:aws:iam::000000000000:role/{RoleName}",
                "AssumeRolePolicyDocument": self.racer_trust_policy,
            }
            self.racer_trust_policy = None
            raise client_error("EntityAlreadyExists", "CreateRole")
        self.mutations.append("create_role")
        self.roles[RoleName] = {
            "RoleName": RoleName,
            "Arn": f"arn:aws:iam::000000000000:role/{RoleName}",
            "AssumeRolePolicyDocument": json.loads(AssumeRolePolicyDocument),
        }
        return {"Role": dict(self.roles[RoleName])}

    def update_assume_role_policy(self, RoleName: str, PolicyDocument: str) -> None:
        self.mutations.append("update_assume_role_policy")
        self.roles[RoleName]["AssumeRolePolicyDocument"] = json.loads(PolicyDocument)

    def list_attached_role_policies(self, RoleName: str) -> Dict[str, Any]:
        return {"AttachedPolicies": [{"PolicyArn": a} for a in self.attached.get(RoleName, [])]}

    def attach_role_policy(self, RoleName: str, PolicyArn: str) -> None:
        if self.attach_error is not None:
            raise self.attach_error
        self.mutations.append("attach_role_policy")
        self.attached.setdefault(RoleName, []).append(PolicyArn)

    def get_role_policy(self, RoleName: str, PolicyName: str) -> Dict[str, Any]:
        if (RoleName, PolicyName) not in self.inline:
            raise client_error("NoSuchEntity", "GetRolePolicy")
        return {"RoleName": RoleName, "PolicyName": PolicyName, "PolicyDocument": self.inline[(RoleName, PolicyName)]}

    def put_role_policy(self, RoleName: str, PolicyName: str, PolicyDocument: str) -> None:
        self.mutations.append("put_role_policy")
        self.inline[(RoleName, PolicyName)] = json.loads(PolicyDocument)


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def instance_config() -> InstanceConfig:
    return InstanceConfig(
        name="test",
        access_key_id="testing",
        secret_access_key="testing",
        region="eu-central-1",
        webhook_base_url="https://app.example.com",
    )


@pytest.fixture
def provisioning_settings() -> ProvisioningSettings:
    return ProvisioningSettings(
        enabled=True,
        ready_timeout_seconds=5.0,
        poll_interval_seconds=0.01,
        conflict_attempts=4,
        notification_attempts=4,
        backoff_seconds=0.0,
    )


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_lambda() -> FakeLambda:
    return FakeLambda()


@pytest.fixture
def fake_iam() -> FakeIAM:
    return FakeIAM()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def recording_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep
