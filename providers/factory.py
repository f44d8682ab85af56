from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from core.settings import InstanceConfig, LedgerSettings, Settings
from providers.ledger import BucketRegistryStore, FileLedger
from providers.impl.aws import make_resource
from providers.impl.ledger_dynamo import DynamoBucketRegistry, DynamoFileLedger, ensure_ledger_table
from providers.impl.ledger_memory import MemoryBucketRegistry, MemoryFileLedger

if TYPE_CHECKING:
    from files.instance import S3Uplink

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ledger:
    """File ledger plus the bucket registry rows, backed by the same store."""
    files: FileLedger
    buckets: BucketRegistryStore


def memory_ledger() -> Ledger:
    return Ledger(files=MemoryFileLedger(), buckets=MemoryBucketRegistry())


def dynamo_ledger(config: InstanceConfig, table_name: str) -> Ledger:
    ddb = make_resource("dynamodb", config)
    table = ensure_ledger_table(ddb, table_name)
    return Ledger(
        files=DynamoFileLedger(table, config.name),
        buckets=DynamoBucketRegistry(table),
    )


def build_ledger(config: InstanceConfig, settings: LedgerSettings) -> Ledger:
    """
    Ledger backend selection:
      - S3U_LEDGER=dynamodb -> DynamoDB single table (created when missing)
      - anything else       -> in-process memory ledger
    """
    if settings.provider == "dynamodb":
        log.info("[Ledger] Using DynamoDB table %s for instance %s", settings.table_name, config.name)
        return dynamo_ledger(config, settings.table_name)
    log.info("[Ledger] Using in-memory ledger for instance %s", config.name)
    return memory_ledger()


@dataclass
class Providers:
    """
    Central container attached to app.state.providers.

    instances: initialized S3Uplink facades keyed by instance name.
    """
    settings: Settings
    instances: Dict[str, "S3Uplink"] = field(default_factory=dict)

    def instance(self, name: str) -> Optional["S3Uplink"]:
        return self.instances.get(name)
