"""
SafeBack Python SDK - Client library for the SafeBack snapshot engine.

This SDK wraps the SafeBack HTTP API:
- SafebackClient for capture, preview, restore, providers and export
- Result types (SnapshotInfo, PreviewResult, RestoreResult, ProviderInfo)
- Typed errors mapped from server error codes

Example:
    >>> from safeback_sdk import SafebackClient
    >>>
    >>> async with SafebackClient("http://localhost:8081", "ws_1", "user:42") as sb:
    ...     snapshot = await sb.capture(reason="before bulk edit")
    ...     preview = await sb.preview(snapshot.id)
    ...     result = await sb.restore(snapshot.id, preview.confirmation_token)

Invariants:
    - All operations are scoped to one workspace and one actor
    - Restore requires a token from preview

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import (
    PreviewResult,
    ProviderChanges,
    ProviderInfo,
    RestoreResult,
    SafebackClient,
    SnapshotInfo,
)
from .config import ClientSettings
from .errors import (
    CaptureFailedError,
    ConnectionError,
    ExecutionDeniedError,
    NotFoundError,
    RestoreFailedError,
    SafebackError,
    UnsupportedVersionError,
    ValidationError,
)

__all__ = [
    "CaptureFailedError",
    "ClientSettings",
    "ConnectionError",
    "ExecutionDeniedError",
    "NotFoundError",
    "PreviewResult",
    "ProviderChanges",
    "ProviderInfo",
    "RestoreFailedError",
    "RestoreResult",
    "SafebackClient",
    "SafebackError",
    "SnapshotInfo",
    "UnsupportedVersionError",
    "ValidationError",
    "__version__",
]
