"""
CLI tools for SafeBack administration.

- snapshot_cli: capture, list, preview, restore, providers and export

Invariants:
    - Tools work offline (no running server required)
    - Restores go through the same confirmation flow as the HTTP API
"""

from .snapshot_cli import SnapshotCLI

__all__ = ["SnapshotCLI"]
