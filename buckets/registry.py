from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from core.errors import BucketAccessError, BucketCreationError, DuplicateKeyError
from core.log import instance_logger
from buckets.naming import generate_bucket_name
from files.models import BucketRecord, utc_now
from providers.impl.aws import error_code
from providers.ledger import BucketRegistryStore
from providers.storage import StorageProvider

log = logging.getLogger(__name__)


class BucketRegistry:
    """
    Maps an instance name to its physical bucket; at most one per instance.

    The registry row is the source of truth. Bucket creation and row insert
    are not transactional: a crash in between leaves a bucket without a row.
    Non-production names are stable, so the next start gets
    BucketAlreadyOwnedByYou and registers it; a random production name is
    never adopted (operator resolves out of band).
    """

    def __init__(self, storage: StorageProvider, store: BucketRegistryStore, *, verbose: bool = False):
        self.storage = storage
        self.store = store
        self.verbose = verbose

    async def ensure_bucket(self, instance_name: str, region: str, *, production: bool = False) -> BucketRecord:
        vlog = instance_logger(__name__, "BucketRegistry", instance_name, self.verbose)

        existing = await asyncio.to_thread(self.store.get_bucket, instance_name)
        if existing is not None:
            vlog.diag("Using existing bucket: %s", existing.bucket_name)
            await self._verify_reachable(existing, vlog)
            if existing.region != region:
                vlog.warning(
                    "Bucket region mismatch: expected %s, found %s (bucket=%s)",
                    region, existing.region, existing.bucket_name,
                )
            return existing

        record = BucketRecord(
            instance_name=instance_name,
            bucket_name=generate_bucket_name(instance_name, production=production),
            region=region,
            created_at=utc_now(),
        )

        try:
            await asyncio.to_thread(self.storage.create_bucket, record.bucket_name, region)
            vlog.diag("Created bucket: %s", record.bucket_name)
        except Exception as e:
            if error_code(e) != "BucketAlreadyOwnedByYou":
                vlog.error("Failed to create bucket %s: %s", record.bucket_name, e)
                raise BucketCreationError(f"Failed to create bucket {record.bucket_name}: {e}", cause=e) from e
            # our own bucket from a run that died before registering it
            vlog.warning("Bucket %s already owned by this account; registering it", record.bucket_name)

        try:
            await asyncio.to_thread(self.store.insert_bucket, record)
        except DuplicateKeyError:
            # another process registered this instance first; its row wins
            winner = await asyncio.to_thread(self.store.get_bucket, instance_name)
            if winner is None:
                raise
            vlog.warning(
                "Instance registered concurrently; using %s instead of %s",
                winner.bucket_name, record.bucket_name,
            )
            await self._verify_reachable(winner, vlog)
            return winner

        vlog.diag("Registered bucket %s for instance %s", record.bucket_name, instance_name)
        return record

    async def _verify_reachable(self, record: BucketRecord, vlog) -> None:
        try:
            await asyncio.to_thread(self.storage.head_bucket, record.bucket_name)
        except Exception as e:
            vlog.error("HeadBucket failed for %s: %s", record.bucket_name, e)
            raise BucketAccessError(f"Failed to access bucket {record.bucket_name}: {e}", cause=e) from e
        vlog.diag("Bucket %s is reachable", record.bucket_name)

    async def ensure_cors(self, bucket_name: str, origins: Optional[List[str]] = None) -> None:
        try:
            await asyncio.to_thread(self.storage.put_bucket_cors, bucket_name, list(origins or ["*"]))
        except Exception as e:
            raise BucketAccessError(f"Failed to set CORS configuration on {bucket_name}: {e}", cause=e) from e
        log.debug("[BucketRegistry] CORS configured for bucket %s", bucket_name)
