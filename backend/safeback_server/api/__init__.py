"""
API module for the SafeBack engine.

Provides the HTTP surface over SnapshotOrchestrator.

Invariants:
    - All operations require a tenant and an actor
    - No request may operate on another tenant's snapshots

How to change safely:
    - Add endpoints; never change the meaning of an existing one
"""

from .http_server import create_http_app

__all__ = ["create_http_app"]
