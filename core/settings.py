from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from core.errors import InvalidInput

DEFAULT_REGION = "eu-central-1"
DEFAULT_EXPIRES_IN = 60

# instance names end up in Lambda function and IAM role names (64 char cap)
_INSTANCE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,40}$")


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else str(v)


def _env_float(name: str, default: float) -> float:
    raw = _env(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _split_csv(value: str) -> List[str]:
    return [x.strip() for x in (value or "").split(",") if x.strip()]


# ---------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InstanceConfig:
    """
    Configuration of one logical upload instance (one bucket, one ledger).

    endpoint:
      - None     -> real AWS endpoints
      - "http://localhost:4566" (LocalStack, MinIO, ...) -> path-style addressing
    auto_confirm_uploads:
      - explicit opt-in for setups where the store cannot call the webhook;
        records are created as "uploaded" without a probe.
    """
    name: str
    access_key_id: str
    secret_access_key: str
    region: str = DEFAULT_REGION
    endpoint: Optional[str] = None
    upload_expires_in: int = DEFAULT_EXPIRES_IN
    download_expires_in: int = DEFAULT_EXPIRES_IN
    skip_permission_checks: bool = False
    verbose: bool = False
    webhook_base_url: str = "http://localhost:8000"
    auto_confirm_uploads: bool = False
    production: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self) -> None:
        if not (self.name or "").strip():
            raise InvalidInput("Instance name is required")
        if not _INSTANCE_NAME_RE.match(self.name):
            raise InvalidInput(f"Invalid instance name: {self.name!r}")
        if not (self.access_key_id or "").strip():
            raise InvalidInput("access_key_id is required")
        if not (self.secret_access_key or "").strip():
            raise InvalidInput("secret_access_key is required")
        if not (self.region or "").strip():
            raise InvalidInput("region must not be empty")
        for attr in ("upload_expires_in", "download_expires_in"):
            v = getattr(self, attr)
            if not isinstance(v, int) or isinstance(v, bool) or v <= 0:
                raise InvalidInput(f"{attr} must be a positive integer")

    @property
    def uses_emulator(self) -> bool:
        return bool(self.endpoint)

    @property
    def webhook_url(self) -> str:
        return f"{self.webhook_base_url.rstrip('/')}/api/{self.name}/confirm"


@dataclass(frozen=True)
class LedgerSettings:
    """
    provider:
      - "memory"   -> MemoryLedger (single process, local dev)
      - "dynamodb" -> DynamoLedger (table must exist, pk/sk string keys)
    """
    provider: str = "memory"
    table_name: str = "s3uplink"


@dataclass(frozen=True)
class ProvisioningSettings:
    enabled: bool = False
    ready_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.8
    conflict_attempts: int = 6
    notification_attempts: int = 8
    backoff_seconds: float = 1.0


@dataclass(frozen=True)
class AuthSettings:
    enabled: bool
    issuer: str
    issuer_allowed: List[str]
    client_id: str


@dataclass(frozen=True)
class Settings:
    instance: Optional[InstanceConfig]
    ledger: LedgerSettings
    provisioning: ProvisioningSettings
    auth: AuthSettings


# ---------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------

def _normalize_ledger_provider(raw: str) -> str:
    v = (raw or "").strip().lower()
    if v in ("dynamodb", "dynamo", "ddb"):
        return "dynamodb"
    return "memory"


def _load_instance_config() -> Optional[InstanceConfig]:
    """
    Instance config from S3U_* env. Returns None when no instance name is set,
    so the app can start without any instance (health only).
    """
    name = _env("S3U_NAME", "").strip()
    if not name:
        return None

    access_key_id = (_env("S3U_ACCESS_KEY_ID", "") or _env("AWS_ACCESS_KEY_ID", "")).strip()
    secret_access_key = (_env("S3U_SECRET_ACCESS_KEY", "") or _env("AWS_SECRET_ACCESS_KEY", "")).strip()
    region = (_env("S3U_REGION", "") or _env("AWS_REGION", "") or DEFAULT_REGION).strip()
    endpoint = _env("S3U_ENDPOINT", "").strip().rstrip("/") or None
    origins = _split_csv(_env("S3U_CORS_ORIGINS", "")) or ["*"]

    return InstanceConfig(
        name=name,
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        region=region,
        endpoint=endpoint,
        upload_expires_in=_env_int("S3U_UPLOAD_EXPIRES_IN", DEFAULT_EXPIRES_IN),
        download_expires_in=_env_int("S3U_DOWNLOAD_EXPIRES_IN", DEFAULT_EXPIRES_IN),
        skip_permission_checks=_env_bool("S3U_SKIP_PERMISSION_CHECKS", False),
        verbose=_env_bool("S3U_VERBOSE", False),
        webhook_base_url=(_env("S3U_WEBHOOK_BASE_URL", "") or "http://localhost:8000").strip(),
        auto_confirm_uploads=_env_bool("S3U_AUTO_CONFIRM_UPLOADS", False),
        production=_env_bool("S3U_PRODUCTION", False),
        cors_origins=origins,
    )


def _load_ledger_settings() -> LedgerSettings:
    provider = _normalize_ledger_provider(_env("S3U_LEDGER", "memory"))
    table_name = (_env("S3U_LEDGER_TABLE", "") or "s3uplink").strip()
    return LedgerSettings(provider=provider, table_name=table_name)


def _load_provisioning_settings() -> ProvisioningSettings:
    timeout = _env_float("S3U_LAMBDA_READY_TIMEOUT", 60.0)
    interval = _env_float("S3U_LAMBDA_POLL_INTERVAL", 0.8)
    return ProvisioningSettings(
        enabled=_env_bool("S3U_PROVISION", False),
        ready_timeout_seconds=max(1.0, timeout),
        poll_interval_seconds=max(0.05, interval),
        conflict_attempts=max(1, min(_env_int("S3U_CONFLICT_ATTEMPTS", 6), 20)),
        notification_attempts=max(1, min(_env_int("S3U_NOTIFICATION_ATTEMPTS", 8), 20)),
        backoff_seconds=max(0.0, _env_float("S3U_BACKOFF_SECONDS", 1.0)),
    )


def _load_auth_settings() -> AuthSettings:
    issuer = (_env("KEYCLOAK_ISSUER", "http://keycloak:8080/realms/s3uplink") or "").strip().rstrip("/")

    issuer_allowed = [x.rstrip("/") for x in _split_csv(_env("KEYCLOAK_ISSUER_ALLOWED", ""))]
    # Dev convenience: if internal issuer is used, allow localhost issuer too
    if issuer and issuer not in issuer_allowed:
        issuer_allowed.append(issuer)
    if issuer.startswith("http://keycloak:8080"):
        external = issuer.replace("http://keycloak:8080", "http://localhost:8090")
        if external not in issuer_allowed:
            issuer_allowed.append(external)

    client_id = (_env("KEYCLOAK_CLIENT_ID", "") or "s3uplink-frontend").strip()

    return AuthSettings(
        enabled=_env_bool("AUTH_ENABLED", True),
        issuer=issuer,
        issuer_allowed=issuer_allowed,
        client_id=client_id,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        instance=_load_instance_config(),
        ledger=_load_ledger_settings(),
        provisioning=_load_provisioning_settings(),
        auth=_load_auth_settings(),
    )
