from __future__ import annotations

from typing import Any, Callable, Optional

from buckets.registry import BucketRegistry
from core.log import instance_logger
from core.settings import InstanceConfig, ProvisioningSettings
from files.models import BucketRecord
from files.permissions import PermissionCheck, PermissionGate
from files.service import FileHook, FileService, KeyNamer
from provisioning.reconciler import ProvisioningReconciler, ProvisioningState
from providers.factory import Ledger, memory_ledger
from providers.impl.storage_s3 import S3StorageProvider
from providers.storage import StorageProvider

ReconcilerFactory = Callable[[InstanceConfig, ProvisioningSettings, StorageProvider], Any]


class S3Uplink:
    """
    One logical upload instance: a bucket, its ledger, its hooks.

    Construction is cheap and side-effect free. `await init()` talks to the
    cloud: resolves/creates the bucket, sets CORS, and (when provisioning is
    enabled) reconciles role, function and trigger. `files` is usable after.
    """

    def __init__(
        self,
        config: InstanceConfig,
        ledger: Optional[Ledger] = None,
        *,
        on_check_permissions: Optional[PermissionCheck] = None,
        on_get_key: Optional[KeyNamer] = None,
        on_before_upload: Optional[FileHook] = None,
        on_after_upload: Optional[FileHook] = None,
        provisioning: Optional[ProvisioningSettings] = None,
        storage: Optional[StorageProvider] = None,
        reconciler_factory: Optional[ReconcilerFactory] = None,
    ):
        self.config = config
        self.ledger = ledger or memory_ledger()
        self.provisioning = provisioning or ProvisioningSettings()
        self.gate = PermissionGate(
            on_check_permissions,
            skip=config.skip_permission_checks,
            instance=config.name,
        )
        self._on_get_key = on_get_key
        self._on_before_upload = on_before_upload
        self._on_after_upload = on_after_upload
        self._storage = storage
        self._reconciler_factory = reconciler_factory or ProvisioningReconciler.from_config
        self._files: Optional[FileService] = None
        self.bucket: Optional[BucketRecord] = None
        self.provisioning_state: Optional[ProvisioningState] = None
        self.log = instance_logger(__name__, "S3Uplink", config.name, config.verbose)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def initialized(self) -> bool:
        return self._files is not None

    @property
    def storage(self) -> StorageProvider:
        if self._storage is None:
            self._storage = S3StorageProvider.from_config(self.config)
        return self._storage

    @property
    def files(self) -> FileService:
        if self._files is None:
            raise RuntimeError(f"S3Uplink instance {self.config.name} is not initialized; call init() first")
        return self._files

    @property
    def bucket_name(self) -> Optional[str]:
        return self.bucket.bucket_name if self.bucket else None

    async def init(self) -> "S3Uplink":
        if self._files is not None:
            return self

        cfg = self.config
        registry = BucketRegistry(self.storage, self.ledger.buckets, verbose=cfg.verbose)
        self.bucket = await registry.ensure_bucket(cfg.name, cfg.region, production=cfg.production)
        await registry.ensure_cors(self.bucket.bucket_name, cfg.cors_origins)

        if self.provisioning.enabled:
            reconciler = self._reconciler_factory(cfg, self.provisioning, self.storage)
            self.provisioning_state = await reconciler.reconcile(self.bucket.bucket_name)
        else:
            self.log.diag("Provisioning disabled; uploads must be confirmed explicitly or via an existing trigger")

        if cfg.auto_confirm_uploads:
            self.log.warning("auto_confirm_uploads is on: records are marked uploaded without a store probe")

        self._files = FileService(
            instance_name=cfg.name,
            bucket=self.bucket.bucket_name,
            storage=self.storage,
            ledger=self.ledger.files,
            gate=self.gate,
            key_namer=self._on_get_key,
            on_before_upload=self._on_before_upload,
            on_after_upload=self._on_after_upload,
            upload_expires_in=cfg.upload_expires_in,
            download_expires_in=cfg.download_expires_in,
            auto_confirm_uploads=cfg.auto_confirm_uploads,
            verbose=cfg.verbose,
        )
        self.log.info("Instance ready on bucket %s", self.bucket.bucket_name)
        return self
