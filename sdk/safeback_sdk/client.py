"""
SafeBack client.

This module provides SafebackClient, an async HTTP client for the SafeBack
snapshot engine API. Every call is made as one workspace (X-Tenant-ID) and
one actor (X-Actor).

Example:
    >>> async with SafebackClient("http://localhost:8081", "ws_1", "user:42") as sb:
    ...     snapshot = await sb.capture(reason="before import")
    ...     preview = await sb.preview(snapshot.id)
    ...     if preview.can_execute:
    ...         result = await sb.restore(snapshot.id, preview.confirmation_token)

Invariants:
    - A restore needs the token from a preview made by the same actor
    - Server errors are raised as SafebackError subclasses
    - Transport failures are raised as ConnectionError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import ClientSettings
from .errors import ConnectionError, SafebackError, error_from_response

logger = logging.getLogger(__name__)


@dataclass
class SnapshotInfo:
    """Snapshot index entry.

    Attributes:
        id: Snapshot id
        workspace_id: Workspace the snapshot belongs to
        snapshot_type: "manual" or "pre_restore"
        created_by: Actor that took it
        created_at: Creation time (Unix ms)
        reason: Free-form note
        size_bytes: Stored payload size
        checksum: Payload checksum
        warnings: Capture warnings (skipped or truncated domains)
    """

    id: str
    workspace_id: str
    snapshot_type: str
    created_by: str
    created_at: int
    reason: str | None = None
    size_bytes: int = 0
    checksum: str | None = None
    engine_version: int = 1
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotInfo:
        return cls(
            id=data["id"],
            workspace_id=data["workspace_id"],
            snapshot_type=data.get("snapshot_type", "manual"),
            created_by=data.get("created_by", ""),
            created_at=int(data.get("created_at", 0)),
            reason=data.get("reason"),
            size_bytes=int(data.get("size_bytes", 0)),
            checksum=data.get("checksum"),
            engine_version=int(data.get("engine_version", 1)),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class ProviderInfo:
    """A provider as it applies to one workspace."""

    provider_id: str
    name: str
    description: str
    critical: bool
    effective_policy: str
    is_enabled: bool
    include_files: bool = False
    limits: dict[str, int] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderInfo:
        return cls(
            provider_id=data["provider_id"],
            name=data.get("name", data["provider_id"]),
            description=data.get("description", ""),
            critical=bool(data.get("critical", False)),
            effective_policy=data.get("effective_policy", data.get("default_policy", "full")),
            is_enabled=bool(data.get("is_enabled", True)),
            include_files=bool(data.get("include_files", False)),
            limits=dict(data.get("limits", {})),
            depends_on=list(data.get("depends_on", [])),
        )


@dataclass
class ProviderChanges:
    """What restoring one provider would change."""

    provider_id: str
    creates: int
    updates: int
    deletes: int
    will_restore: int
    will_replace: int
    entities: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderChanges:
        return cls(
            provider_id=data["provider_id"],
            creates=int(data.get("creates", 0)),
            updates=int(data.get("updates", 0)),
            deletes=int(data.get("deletes", 0)),
            will_restore=int(data.get("will_restore", 0)),
            will_replace=int(data.get("will_replace", 0)),
            entities=list(data.get("entities", [])),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class PreviewResult:
    """Restore preview and the confirmation token needed to execute it.

    Attributes:
        snapshot_id: Snapshot previewed
        changes: Per-provider changes
        warnings: Non-blocking conditions
        errors: Blocking conditions; restore will be refused if non-empty
        confirmation_token: Single-use token for restore()
        confirmation_hash: Hash of the token, safe to display
        expires_at: Token expiry (Unix ms)
    """

    snapshot_id: str
    workspace_id: str
    changes: list[ProviderChanges]
    warnings: list[str]
    errors: list[str]
    can_execute: bool
    will_restore: dict[str, int]
    will_replace: dict[str, int]
    confirmation_token: str
    confirmation_hash: str
    expires_at: int

    def changes_for(self, provider_id: str) -> ProviderChanges | None:
        for changes in self.changes:
            if changes.provider_id == provider_id:
                return changes
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreviewResult:
        preview = data["preview"]
        return cls(
            snapshot_id=preview["snapshot_id"],
            workspace_id=preview["workspace_id"],
            changes=[ProviderChanges.from_dict(d) for d in preview.get("diffs", [])],
            warnings=list(preview.get("warnings", [])),
            errors=list(preview.get("errors", [])),
            can_execute=bool(preview.get("can_execute", False)),
            will_restore=dict(preview.get("will_restore", {})),
            will_replace=dict(preview.get("will_replace", {})),
            confirmation_token=data["confirmation_token"],
            confirmation_hash=data["confirmation_hash"],
            expires_at=int(data["expires_at"]),
        )


@dataclass
class RestoreResult:
    """Outcome of a completed restore."""

    snapshot_id: str
    workspace_id: str
    restored_counts: dict[str, int]
    outcome: str
    pre_restore_snapshot_id: str | None = None
    states: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RestoreResult:
        return cls(
            snapshot_id=data["snapshot_id"],
            workspace_id=data["workspace_id"],
            restored_counts=dict(data.get("restored_counts", {})),
            outcome=data.get("outcome", "done"),
            pre_restore_snapshot_id=data.get("pre_restore_snapshot_id"),
            states=dict(data.get("states", {})),
        )


class SafebackClient:
    """Async client for the SafeBack HTTP API.

    Args:
        base_url: Server URL (defaults to SAFEBACK_BASE_URL)
        tenant_id: Workspace to operate on (defaults to SAFEBACK_TENANT_ID)
        actor: Acting user (defaults to SAFEBACK_ACTOR)
        timeout: Request timeout in seconds
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        base_url: str | None = None,
        tenant_id: str | None = None,
        actor: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: ClientSettings | None = None,
    ) -> None:
        settings = settings or ClientSettings()
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.tenant_id = tenant_id or settings.tenant_id
        self.actor = actor or settings.actor
        if not self.tenant_id or not self.actor:
            raise ValueError("tenant_id and actor are required")

        self._timeout = timeout if timeout is not None else settings.timeout_seconds
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"X-Tenant-ID": self.tenant_id, "X-Actor": self.actor},
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> SafebackClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self.connect()
        assert self._http is not None

        try:
            response = await self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise ConnectionError(f"Request to {path} failed: {e}", address=self.base_url) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            error = error_from_response(response.status_code, body)
            logger.debug(
                f"{method} {path} returned {response.status_code}",
                extra={"error_code": error.code},
            )
            raise error
        if not isinstance(body, dict):
            raise SafebackError(f"Unexpected response from {path}", code="BAD_RESPONSE")
        return body

    async def capture(self, reason: str | None = None) -> SnapshotInfo:
        """Take a snapshot of the workspace.

        Raises:
            CaptureFailedError: If a critical provider (or every provider) failed
            ExecutionDeniedError: If a restore is in progress
        """
        body = await self._request("POST", "/v1/capture", json={"reason": reason})
        return SnapshotInfo.from_dict(body["snapshot"])

    async def list_snapshots(self, limit: int = 50) -> list[SnapshotInfo]:
        """List the workspace's snapshots, newest first."""
        body = await self._request("GET", "/v1/snapshots", params={"limit": limit})
        return [SnapshotInfo.from_dict(s) for s in body.get("snapshots", [])]

    async def preview(self, snapshot_id: str) -> PreviewResult:
        """Dry-run a restore and obtain a confirmation token."""
        body = await self._request("POST", "/v1/preview", json={"snapshot_id": snapshot_id})
        return PreviewResult.from_dict(body)

    async def restore(self, snapshot_id: str, confirmation_token: str) -> RestoreResult:
        """Restore a snapshot.

        Raises:
            ExecutionDeniedError: Token rejected or restore already running
            RestoreFailedError: Some providers failed; see restored_counts
        """
        body = await self._request(
            "POST",
            "/v1/restore",
            json={"snapshot_id": snapshot_id, "confirmation_token": confirmation_token},
        )
        return RestoreResult.from_dict(body)

    async def providers(self) -> list[ProviderInfo]:
        body = await self._request("POST", "/v1/providers", json={})
        return [ProviderInfo.from_dict(p) for p in body.get("providers", [])]

    async def export(self, snapshot_id: str) -> dict[str, Any]:
        """Fetch a snapshot for download.

        Returns:
            {"snapshot": ..., "download_url": ...} for object storage, or
            {"snapshot": ..., "payload": ...} for local storage
        """
        return await self._request("GET", "/v1/export", params={"snapshot_id": snapshot_id})

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/health")
