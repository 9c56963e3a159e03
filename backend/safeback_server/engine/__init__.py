"""
Snapshot engine core for SafeBack.

- SnapshotOrchestrator: capture, preview and restore across all providers
- TokenManager: restore confirmation tokens
- models: payload, preview and restore result types

Invariants:
    - The orchestrator treats fragment data as opaque
    - Restore is atomic per provider, never across providers
"""

from .models import (
    ENGINE_VERSION,
    PreviewProviderSummary,
    PreviewResult,
    ProviderRestoreState,
    RestoreOutcome,
    RestorePreview,
    RestoreResult,
    Snapshot,
    SnapshotPayload,
)
from .orchestrator import SnapshotOrchestrator
from .tokens import TokenManager, hash_token

__all__ = [
    "ENGINE_VERSION",
    "PreviewProviderSummary",
    "PreviewResult",
    "ProviderRestoreState",
    "RestoreOutcome",
    "RestorePreview",
    "RestoreResult",
    "Snapshot",
    "SnapshotOrchestrator",
    "SnapshotPayload",
    "TokenManager",
    "hash_token",
]
