"""
Engine metadata store for SafeBack.

The SnapshotStore is a single SQLite database (engine.db) holding everything
the orchestrator owns besides payload blobs:
- snapshots: the snapshot index
- confirmation_tokens: restore confirmation tokens (hashes only)
- restore_markers: advisory "restore in progress" markers, one per tenant
- provider_settings: per-tenant provider overrides
- audit_log: append-only record of snapshot operations

Invariants:
    - Snapshot rows are immutable once inserted
    - Raw confirmation tokens are never stored; only their SHA-256 hash
    - A token is consumed at most once (conditional UPDATE)
    - At most one live restore marker per tenant
    - Timestamps are Unix milliseconds

How to change safely:
    - Add columns with defaults; existing rows must stay readable
    - Never relax the consumed_at IS NULL guard on token consumption
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENGINE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS snapshots (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        snapshot_type TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        reason TEXT,
        engine_version INTEGER NOT NULL,
        storage_key TEXT NOT NULL,
        size_bytes INTEGER NOT NULL,
        checksum TEXT NOT NULL,
        warnings TEXT NOT NULL DEFAULT '[]'
    );
    CREATE INDEX IF NOT EXISTS idx_snapshots_ws
        ON snapshots(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS confirmation_tokens (
        token_hash TEXT PRIMARY KEY,
        snapshot_id TEXT NOT NULL,
        workspace_id TEXT NOT NULL,
        actor TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        consumed_at INTEGER
    );
    CREATE INDEX IF NOT EXISTS idx_tokens_expiry ON confirmation_tokens(expires_at);

    CREATE TABLE IF NOT EXISTS restore_markers (
        workspace_id TEXT PRIMARY KEY,
        marker_id TEXT NOT NULL,
        snapshot_id TEXT NOT NULL,
        actor TEXT NOT NULL,
        acquired_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS provider_settings (
        workspace_id TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        is_enabled INTEGER,
        policy TEXT,
        include_files INTEGER,
        limits TEXT NOT NULL DEFAULT '{}',
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (workspace_id, provider_id)
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id TEXT NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        snapshot_id TEXT,
        provider_id TEXT,
        details TEXT NOT NULL DEFAULT '{}',
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_audit_ws ON audit_log(workspace_id, created_at DESC);
"""


@dataclass
class Snapshot:
    """An immutable, tenant-scoped snapshot index record.

    Attributes:
        id: Snapshot identifier
        workspace_id: Owning tenant
        snapshot_type: "manual", "scheduled", "pre_restore", ...
        created_by: Actor that requested the capture
        created_at: Creation time (Unix ms)
        reason: Free-form reason given by the caller
        engine_version: Payload format version written by the engine
        storage_key: Payload blob key
        size_bytes: Stored payload size
        checksum: Payload checksum ("sha256:<hex>")
        warnings: Capture-time warnings (omitted providers, truncation)
    """

    id: str
    workspace_id: str
    snapshot_type: str
    created_by: str
    created_at: int
    reason: str | None
    engine_version: int
    storage_key: str
    size_bytes: int
    checksum: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "snapshot_type": self.snapshot_type,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "reason": self.reason,
            "engine_version": self.engine_version,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class TokenRecord:
    """Stored state of a confirmation token."""

    token_hash: str
    snapshot_id: str
    workspace_id: str
    actor: str
    created_at: int
    expires_at: int
    consumed_at: int | None


@dataclass(frozen=True)
class RestoreMarker:
    """Advisory restore-in-progress marker.

    marker_id is unique per acquisition; only its holder may release it.
    """

    workspace_id: str
    marker_id: str
    snapshot_id: str
    actor: str
    acquired_at: int
    expires_at: int


@dataclass
class ProviderSettings:
    """Per-tenant override of a provider's defaults.

    None means "use the provider's default".
    """

    is_enabled: bool | None = None
    policy: str | None = None
    include_files: bool | None = None
    limits: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEntry:
    """One audit log row."""

    id: int
    workspace_id: str
    actor: str
    action: str
    snapshot_id: str | None
    provider_id: str | None
    details: dict[str, Any]
    created_at: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def _opt_bool(value: int | None) -> bool | None:
    return None if value is None else bool(value)


class SnapshotStore:
    """SQLite store for snapshot metadata, tokens, markers and audit.

    Example:
        >>> store = SnapshotStore("/var/lib/safeback")
        >>> await store.create_snapshot(snapshot)
        >>> snapshots = await store.list_snapshots("ws_1")
    """

    def __init__(self, data_dir: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / "engine.db"
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection to engine.db, creating the schema once."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                conn.executescript(ENGINE_SCHEMA)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    async def create_snapshot(self, snapshot: Snapshot) -> None:
        """Insert a snapshot index row."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO snapshots (id, workspace_id, snapshot_type, created_by,
                                       created_at, reason, engine_version, storage_key,
                                       size_bytes, checksum, warnings)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    snapshot.workspace_id,
                    snapshot.snapshot_type,
                    snapshot.created_by,
                    snapshot.created_at,
                    snapshot.reason,
                    snapshot.engine_version,
                    snapshot.storage_key,
                    snapshot.size_bytes,
                    snapshot.checksum,
                    json.dumps(snapshot.warnings),
                ),
            )

    def _row_to_snapshot(self, row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            workspace_id=row["workspace_id"],
            snapshot_type=row["snapshot_type"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            reason=row["reason"],
            engine_version=row["engine_version"],
            storage_key=row["storage_key"],
            size_bytes=row["size_bytes"],
            checksum=row["checksum"],
            warnings=json.loads(row["warnings"]),
        )

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM snapshots WHERE id = ?", (snapshot_id,)).fetchone()
        return self._row_to_snapshot(row) if row else None

    async def list_snapshots(
        self,
        workspace_id: str,
        limit: int = 50,
        snapshot_type: str | None = None,
    ) -> list[Snapshot]:
        """List a tenant's snapshots, newest first."""
        sql = "SELECT * FROM snapshots WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if snapshot_type:
            sql += " AND snapshot_type = ?"
            params.append(snapshot_type)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    async def store_token(
        self,
        token_hash: str,
        snapshot_id: str,
        workspace_id: str,
        actor: str,
        created_at: int,
        expires_at: int,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO confirmation_tokens (token_hash, snapshot_id, workspace_id,
                                                 actor, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (token_hash, snapshot_id, workspace_id, actor, created_at, expires_at),
            )

    async def get_token(self, token_hash: str) -> TokenRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM confirmation_tokens WHERE token_hash = ?", (token_hash,)
            ).fetchone()
        if row is None:
            return None
        return TokenRecord(
            token_hash=row["token_hash"],
            snapshot_id=row["snapshot_id"],
            workspace_id=row["workspace_id"],
            actor=row["actor"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row["consumed_at"],
        )

    async def consume_token(self, token_hash: str, consumed_at: int) -> bool:
        """Mark a token consumed.

        Returns:
            True if this call consumed it, False if it was already consumed
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE confirmation_tokens SET consumed_at = ?
                WHERE token_hash = ? AND consumed_at IS NULL
                """,
                (consumed_at, token_hash),
            )
            return cursor.rowcount == 1

    async def purge_expired_tokens(self, now_ms: int) -> int:
        """Delete tokens that expired before now_ms."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM confirmation_tokens WHERE expires_at < ?", (now_ms,)
            )
            return cursor.rowcount

    async def acquire_restore_marker(
        self,
        workspace_id: str,
        snapshot_id: str,
        actor: str,
        now_ms: int,
        ttl_ms: int,
    ) -> str | None:
        """Take the tenant's restore marker.

        A marker older than its expiry is considered abandoned and taken over.

        Returns:
            The new marker_id, or None if a live marker is held
        """
        marker_id = uuid.uuid4().hex
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT expires_at, snapshot_id FROM restore_markers WHERE workspace_id = ?",
                    (workspace_id,),
                ).fetchone()
                if row is not None and row["expires_at"] > now_ms:
                    conn.execute("ROLLBACK")
                    return None
                if row is not None:
                    logger.warning(
                        "Taking over stale restore marker",
                        extra={"workspace_id": workspace_id, "snapshot_id": row["snapshot_id"]},
                    )
                conn.execute(
                    """
                    INSERT OR REPLACE INTO restore_markers
                        (workspace_id, marker_id, snapshot_id, actor, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (workspace_id, marker_id, snapshot_id, actor, now_ms, now_ms + ttl_ms),
                )
                conn.execute("COMMIT")
                return marker_id
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def release_restore_marker(self, workspace_id: str, marker_id: str) -> bool:
        """Release a marker this caller acquired.

        A marker that was taken over by a later restore is left in place.

        Returns:
            True if the marker was still held and is now released
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM restore_markers WHERE workspace_id = ? AND marker_id = ?",
                (workspace_id, marker_id),
            )
            return cursor.rowcount > 0

    async def get_restore_marker(self, workspace_id: str, now_ms: int) -> RestoreMarker | None:
        """Return the tenant's live restore marker, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM restore_markers WHERE workspace_id = ? AND expires_at > ?",
                (workspace_id, now_ms),
            ).fetchone()
        if row is None:
            return None
        return RestoreMarker(
            workspace_id=row["workspace_id"],
            marker_id=row["marker_id"],
            snapshot_id=row["snapshot_id"],
            actor=row["actor"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    async def get_provider_settings(self, workspace_id: str) -> dict[str, ProviderSettings]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM provider_settings WHERE workspace_id = ?", (workspace_id,)
            ).fetchall()
        return {
            r["provider_id"]: ProviderSettings(
                is_enabled=_opt_bool(r["is_enabled"]),
                policy=r["policy"],
                include_files=_opt_bool(r["include_files"]),
                limits=json.loads(r["limits"]),
            )
            for r in rows
        }

    async def set_provider_settings(
        self, workspace_id: str, provider_id: str, settings: ProviderSettings
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO provider_settings (workspace_id, provider_id, is_enabled, policy,
                                               include_files, limits, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (workspace_id, provider_id) DO UPDATE SET
                    is_enabled = excluded.is_enabled,
                    policy = excluded.policy,
                    include_files = excluded.include_files,
                    limits = excluded.limits,
                    updated_at = excluded.updated_at
                """,
                (
                    workspace_id,
                    provider_id,
                    None if settings.is_enabled is None else int(settings.is_enabled),
                    settings.policy,
                    None if settings.include_files is None else int(settings.include_files),
                    json.dumps(settings.limits),
                    _now_ms(),
                ),
            )

    async def record_audit(
        self,
        workspace_id: str,
        actor: str,
        action: str,
        snapshot_id: str | None = None,
        provider_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (workspace_id, actor, action, snapshot_id,
                                       provider_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workspace_id,
                    actor,
                    action,
                    snapshot_id,
                    provider_id,
                    json.dumps(details or {}, default=str),
                    _now_ms(),
                ),
            )

    async def list_audit(self, workspace_id: str, limit: int = 100) -> list[AuditEntry]:
        """List a tenant's audit entries, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE workspace_id = ? ORDER BY id LIMIT ?",
                (workspace_id, limit),
            ).fetchall()
        return [
            AuditEntry(
                id=r["id"],
                workspace_id=r["workspace_id"],
                actor=r["actor"],
                action=r["action"],
                snapshot_id=r["snapshot_id"],
                provider_id=r["provider_id"],
                details=json.loads(r["details"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]
