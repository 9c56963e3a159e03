"""
Error types for the SafeBack SDK.

This module defines all exception types raised by the SDK:
- SafebackError: Base exception
- ConnectionError: Server unreachable or timed out
- ValidationError: Request rejected as malformed
- NotFoundError: Snapshot does not exist
- ExecutionDeniedError: Token, lock or tenant rejection
- UnsupportedVersionError: Snapshot written by a newer engine or provider
- CaptureFailedError: Snapshot could not be taken
- RestoreFailedError: Restore stopped part way; carries the partial result

Invariants:
    - All errors inherit from SafebackError
    - Server errors are mapped by their error_code, never by message text
"""

from __future__ import annotations

from typing import Any


class SafebackError(Exception):
    """Base exception for all SafeBack SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

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


class ConnectionError(SafebackError):
    """Failed to reach the SafeBack server."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"address": address})
        self.address = address


class ValidationError(SafebackError):
    """Request was rejected as malformed."""

    @property
    def field_name(self) -> str | None:
        return self.details.get("field")


class NotFoundError(SafebackError):
    """Snapshot does not exist."""

    @property
    def snapshot_id(self) -> str | None:
        return self.details.get("snapshot_id")


class ExecutionDeniedError(SafebackError):
    """Restore or capture refused before anything was changed.

    Raised when:
    - Confirmation token is missing, expired, consumed or minted for
      another snapshot or actor
    - Another restore (or a capture) is in progress for the workspace
    - The snapshot belongs to another workspace
    """

    @property
    def reason(self) -> str:
        return self.details.get("reason", self.message)

    @property
    def conflict(self) -> bool:
        return bool(self.details.get("conflict", False))


class UnsupportedVersionError(SafebackError):
    """Snapshot cannot be read by this server build."""


class CaptureFailedError(SafebackError):
    """Snapshot capture failed and nothing was stored."""


class RestoreFailedError(SafebackError):
    """Restore stopped part way; the workspace may be in a mixed state.

    Attributes:
        restored_counts: Rows written per provider that completed
        failures: Cause per provider that failed
        not_attempted: Providers skipped after the failure
        pre_restore_snapshot_id: Safety snapshot taken before the restore
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.restored_counts: dict[str, int] = dict(self.details.get("restored_counts", {}))
        self.failures: dict[str, str] = dict(self.details.get("failures", {}))
        self.not_attempted: list[str] = list(self.details.get("not_attempted", []))
        self.pre_restore_snapshot_id: str | None = self.details.get("pre_restore_snapshot_id")


_ERRORS_BY_CODE: dict[str, type[SafebackError]] = {
    "VALIDATION_FAILED": ValidationError,
    "SNAPSHOT_NOT_FOUND": NotFoundError,
    "EXECUTION_DENIED": ExecutionDeniedError,
    "UNSUPPORTED_VERSION": UnsupportedVersionError,
    "UNKNOWN_PROVIDER": UnsupportedVersionError,
    "CAPTURE_FAILED": CaptureFailedError,
    "RESTORE_FAILED": RestoreFailedError,
}


def error_from_response(status: int, body: dict[str, Any] | None) -> SafebackError:
    """Build the SDK exception matching a server error body."""
    body = body or {}
    code = body.get("error_code") or f"HTTP_{status}"
    message = body.get("error") or f"Server returned HTTP {status}"
    error_cls = _ERRORS_BY_CODE.get(code, SafebackError)
    return error_cls(message, code=code, details=body.get("details") or {})
