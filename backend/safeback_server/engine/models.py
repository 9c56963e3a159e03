"""
Data types produced and consumed by the snapshot orchestrator.

Invariants:
    - SnapshotPayload is the durable unit; everything else here is ephemeral
    - RestorePreview is computed on demand and never persisted
    - RestoreResult always accounts for every provider in the payload:
      restored, failed or not attempted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..providers.contract import ProviderDiff, ProviderFragment
from ..storage.snapshot_store import Snapshot

# Payload format version written by this engine build
ENGINE_VERSION = 1


@dataclass
class SnapshotPayload:
    """The serialized content of one snapshot.

    Attributes:
        engine_version: Payload format version
        created_at: Capture time (Unix ms)
        fragments: One fragment per captured provider
        warnings: Capture-time warnings
    """

    engine_version: int
    created_at: int
    fragments: list[ProviderFragment]
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine_version": self.engine_version,
            "created_at": self.created_at,
            "fragments": [f.to_dict() for f in self.fragments],
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotPayload:
        return cls(
            engine_version=int(data["engine_version"]),
            created_at=int(data["created_at"]),
            fragments=[ProviderFragment.from_dict(f) for f in data.get("fragments", [])],
            warnings=list(data.get("warnings", [])),
        )

    def fragment(self, provider_id: str) -> ProviderFragment | None:
        for f in self.fragments:
            if f.provider_id == provider_id:
                return f
        return None


@dataclass
class PreviewProviderSummary:
    """Per-provider line of a restore preview."""

    provider_id: str
    name: str
    critical: bool
    policy: str
    entity_count: int
    skipped: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "name": self.name,
            "critical": self.critical,
            "policy": self.policy,
            "entity_count": self.entity_count,
            "skipped": self.skipped,
        }


@dataclass
class RestorePreview:
    """Dry-run result of restoring a snapshot.

    Attributes:
        snapshot_id: Snapshot previewed
        workspace_id: Tenant the snapshot belongs to
        diffs: Per-provider diff against current state
        providers: Per-provider summary
        warnings: Non-blocking conditions
        errors: Blocking conditions
        will_restore: Rows each provider would write
        will_replace: Current rows each provider would replace
    """

    snapshot_id: str
    workspace_id: str
    diffs: list[ProviderDiff] = field(default_factory=list)
    providers: list[PreviewProviderSummary] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    will_restore: dict[str, int] = field(default_factory=dict)
    will_replace: dict[str, int] = field(default_factory=dict)

    @property
    def can_execute(self) -> bool:
        return not self.errors

    def diff_for(self, provider_id: str) -> ProviderDiff | None:
        for d in self.diffs:
            if d.provider_id == provider_id:
                return d
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "workspace_id": self.workspace_id,
            "diffs": [d.to_dict() for d in self.diffs],
            "providers": [p.to_dict() for p in self.providers],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "can_execute": self.can_execute,
            "will_restore": dict(self.will_restore),
            "will_replace": dict(self.will_replace),
        }


@dataclass
class PreviewResult:
    """Preview plus the confirmation token required to restore.

    The raw token is returned once and never stored; confirmation_hash is
    its SHA-256 and is safe to log or display.
    """

    preview: RestorePreview
    confirmation_token: str
    confirmation_hash: str
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "preview": self.preview.to_dict(),
            "confirmation_token": self.confirmation_token,
            "confirmation_hash": self.confirmation_hash,
            "expires_at": self.expires_at,
        }


class ProviderRestoreState(Enum):
    """Per-provider restore progress."""

    PENDING = "pending"
    DELETING_OLD = "deleting_old"
    INSERTING_NEW = "inserting_new"
    DONE = "done"
    FAILED = "failed"


class RestoreOutcome(Enum):
    """Terminal state of a restore attempt."""

    DONE = "done"
    PARTIAL = "partial"
    DENIED = "denied"


@dataclass
class RestoreResult:
    """Accounting of a restore attempt.

    Attributes:
        snapshot_id: Snapshot restored
        workspace_id: Tenant restored
        restored_counts: Rows written per successfully restored provider
        failures: Cause per failed provider
        not_attempted: Providers never started because the restore aborted
        states: Final per-provider state
        outcome: Terminal state
        pre_restore_snapshot_id: Safety snapshot taken before writing, if any
    """

    snapshot_id: str
    workspace_id: str
    restored_counts: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    not_attempted: list[str] = field(default_factory=list)
    states: dict[str, ProviderRestoreState] = field(default_factory=dict)
    outcome: RestoreOutcome = RestoreOutcome.DONE
    pre_restore_snapshot_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "workspace_id": self.workspace_id,
            "restored_counts": dict(self.restored_counts),
            "failures": dict(self.failures),
            "not_attempted": list(self.not_attempted),
            "states": {k: v.value for k, v in self.states.items()},
            "outcome": self.outcome.value,
            "pre_restore_snapshot_id": self.pre_restore_snapshot_id,
        }


__all__ = [
    "ENGINE_VERSION",
    "PreviewProviderSummary",
    "PreviewResult",
    "ProviderRestoreState",
    "RestoreOutcome",
    "RestorePreview",
    "RestoreResult",
    "Snapshot",
    "SnapshotPayload",
]
