"""
Storage layer for SafeBack.

- TenantStore: per-tenant SQLite domain tables captured and restored by providers
- SnapshotStore: engine metadata (snapshot index, tokens, markers, settings, audit)
- PayloadStore: snapshot payload blobs (local directory or S3)

Invariants:
    - Every domain read and write is scoped by workspace_id
    - Payload blobs are immutable and checksummed
"""

from .payload_store import (
    LocalPayloadStore,
    PayloadStore,
    S3PayloadStore,
    StoredPayload,
    create_payload_store,
)
from .snapshot_store import (
    AuditEntry,
    ProviderSettings,
    RestoreMarker,
    Snapshot,
    SnapshotStore,
    TokenRecord,
)
from .tenant_store import DOMAIN_TABLES, TenantStore, UnitOfWork

__all__ = [
    "AuditEntry",
    "DOMAIN_TABLES",
    "LocalPayloadStore",
    "PayloadStore",
    "ProviderSettings",
    "RestoreMarker",
    "S3PayloadStore",
    "Snapshot",
    "SnapshotStore",
    "StoredPayload",
    "TenantStore",
    "TokenRecord",
    "UnitOfWork",
    "create_payload_store",
]
