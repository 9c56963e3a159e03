"""
Error types for the SafeBack snapshot engine.

This module defines the exception hierarchy raised by the engine, its
providers and its stores:
- SafebackError: Base exception
- ValidationFailure: Malformed request
- SnapshotNotFound: Unknown snapshot id
- ExecutionDenied: Token, lock or permission rejection
- UnsupportedVersion: Payload newer than this build understands
- UnknownProvider: Fragment owned by a provider that is not registered
- CaptureFailure: One provider's capture failed
- RestoreFailure: One provider's restore failed (carries partial results)
- StoreWriteError: A single statement of a restore unit of work failed
- PayloadCorrupted: A payload blob failed its integrity check

Invariants:
    - All errors inherit from SafebackError
    - Every error has a stable code and an HTTP status for the API layer
    - details is always JSON-serializable
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .engine.models import RestoreResult


class SafebackError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        http_status: Status code used by the HTTP layer
    """

    http_status = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SAFEBACK_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ValidationFailure(SafebackError):
    """Request is malformed (missing snapshot_id, bad field type, ...)."""

    http_status = 400

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_FAILED", details={"field": field_name})
        self.field_name = field_name


class SnapshotNotFound(SafebackError):
    """Snapshot id does not exist (or its payload is gone)."""

    http_status = 404

    def __init__(self, snapshot_id: str) -> None:
        super().__init__(
            f"Snapshot not found: {snapshot_id}",
            code="SNAPSHOT_NOT_FOUND",
            details={"snapshot_id": snapshot_id},
        )
        self.snapshot_id = snapshot_id


class ExecutionDenied(SafebackError):
    """Execution refused before any state was touched.

    Raised when:
    - Confirmation token is unknown, expired or already consumed
    - Token was minted for another snapshot or actor
    - A restore is already in progress for the tenant
    - A capture is running while a restore is requested (and vice versa)
    - Caller's tenant does not own the snapshot
    """

    http_status = 403

    def __init__(self, reason: str, conflict: bool = False) -> None:
        super().__init__(
            f"Execution denied: {reason}",
            code="EXECUTION_DENIED",
            details={"reason": reason, "conflict": conflict},
        )
        self.reason = reason
        self.conflict = conflict
        if conflict:
            self.http_status = 409


class UnsupportedVersion(SafebackError):
    """A payload or fragment was written by a newer engine/provider."""

    http_status = 422

    def __init__(self, provider_id: str, found_version: int, max_supported: int) -> None:
        super().__init__(
            f"{provider_id}: fragment version {found_version} is newer than the "
            f"supported version {max_supported}",
            code="UNSUPPORTED_VERSION",
            details={
                "provider_id": provider_id,
                "found_version": found_version,
                "max_supported": max_supported,
            },
        )
        self.provider_id = provider_id
        self.found_version = found_version
        self.max_supported = max_supported


class UnknownProvider(SafebackError):
    """Fragment references a provider id that is not in the registry."""

    http_status = 422

    def __init__(self, provider_id: str) -> None:
        super().__init__(
            f"No registered provider for fragment '{provider_id}'",
            code="UNKNOWN_PROVIDER",
            details={"provider_id": provider_id},
        )
        self.provider_id = provider_id


class CaptureFailure(SafebackError):
    """A provider's capture failed.

    Non-fatal for the snapshot unless the provider is critical or every
    provider failed.
    """

    http_status = 502

    def __init__(self, provider_id: str, cause: str) -> None:
        super().__init__(
            f"Capture failed for {provider_id}: {cause}",
            code="CAPTURE_FAILED",
            details={"provider_id": provider_id, "cause": cause},
        )
        self.provider_id = provider_id
        self.cause = cause


class RestoreFailure(SafebackError):
    """A provider's restore failed; the tenant may be in a mixed state.

    The attached result lists which domains were restored (with row counts),
    which failed and why, and which were never attempted.
    """

    http_status = 500

    def __init__(self, provider_id: str, cause: str, result: RestoreResult) -> None:
        restored = ", ".join(sorted(result.restored_counts)) or "none"
        super().__init__(
            f"Restore failed for {provider_id}: {cause}. "
            f"Tenant is in a PARTIAL state; restored domains: {restored}",
            code="RESTORE_FAILED",
            details=result.to_dict(),
        )
        self.provider_id = provider_id
        self.cause = cause
        self.result = result


class StoreWriteError(SafebackError):
    """A delete/insert/upsert statement failed inside a unit of work."""

    def __init__(self, table: str, operation: str, cause: str) -> None:
        super().__init__(
            f"{operation} on {table} failed: {cause}",
            code="STORE_WRITE_FAILED",
            details={"table": table, "operation": operation, "cause": cause},
        )
        self.table = table
        self.operation = operation
        self.cause = cause


class PayloadCorrupted(SafebackError):
    """A stored payload blob failed its checksum or could not be decoded."""

    def __init__(self, storage_key: str, cause: str) -> None:
        super().__init__(
            f"Snapshot payload {storage_key} is unreadable: {cause}",
            code="PAYLOAD_CORRUPTED",
            details={"storage_key": storage_key, "cause": cause},
        )
        self.storage_key = storage_key
        self.cause = cause


WORKSPACE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")


def check_workspace_id(workspace_id: str | None) -> str:
    """Reject workspace ids that cannot name a tenant file or blob prefix.

    Raises:
        ValidationFailure: Missing or non-conforming workspace_id
    """
    if not workspace_id:
        raise ValidationFailure("workspace_id is required", "workspace_id")
    if not WORKSPACE_ID_PATTERN.fullmatch(workspace_id):
        raise ValidationFailure(
            "workspace_id may only contain letters, digits, '-' and '_'", "workspace_id"
        )
    return workspace_id
