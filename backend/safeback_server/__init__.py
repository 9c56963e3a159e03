"""
SafeBack Server - provider-pluggable snapshot and restore engine for tenant data.

This package captures point-in-time snapshots of a tenant's data across
independent domains (workboard, billing, team chat, booking), previews what a
restore would change, and restores confirmed snapshots domain by domain.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────────┐
    │   Client    │────▶│    HTTP     │────▶│ SnapshotOrchestrator │
    │   (SDK)     │     │   Server    │     └──────────┬───────────┘
    └─────────────┘     └─────────────┘                │
                        ┌──────────────────┬───────────┼──────────────┐
                        ▼                  ▼           ▼              ▼
                   ┌─────────┐       ┌─────────┐  ┌─────────┐   ┌──────────┐
                   │Workboard│       │ Billing │  │Team chat│   │ Booking  │
                   └────┬────┘       └────┬────┘  └────┬────┘   └────┬─────┘
                        └──────────────────┴─────┬─────┴─────────────┘
                                                 ▼
                                        ┌────────────────┐
                                        │  TenantStore   │
                                        │ (SQLite/tenant)│
                                        └────────────────┘
    Payloads: LocalPayloadStore / S3PayloadStore
    Metadata: SnapshotStore (index, tokens, restore markers, audit)

Invariants:
    - Every operation is scoped to exactly one workspace
    - Snapshots are immutable once created
    - Restores require a single-use, short-lived confirmation token
    - Restore is atomic per domain, never across domains

How to change safely:
    - Add a domain by writing a provider and registering it in the registry
    - Never rename a provider id or reuse a fragment version
"""

from ._version import __version__

__all__ = ["__version__"]
