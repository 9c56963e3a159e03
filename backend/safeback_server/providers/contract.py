"""
Provider fragment contract.

Every data domain plugs into the snapshot engine by implementing
SnapshotProvider. The orchestrator only ever speaks this contract:

    capture(workspace_id, effective) -> ProviderFragment
    diff(workspace_id, fragment)     -> ProviderDiff      (read-only)
    restore(workspace_id, fragment)  -> int               (rows written)
    describe()                       -> ProviderDescriptor

Invariants:
    - provider_id never changes once shipped (it joins fragments to providers)
    - A fragment's data shape is fully determined by (provider_id, version)
    - Only the owning provider interprets fragment.data
    - A provider reads every version <= its current version
    - Capture never writes; restore is idempotent
    - Blob bytes are never embedded in a fragment, only references

How to change safely:
    - Bump version when the data shape changes and extend upgrade_data()
    - Add FragmentMetadata fields with defaults; from_dict must accept old payloads
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import UnsupportedVersion

if TYPE_CHECKING:
    from ..storage.snapshot_store import ProviderSettings

logger = logging.getLogger(__name__)


class SnapshotPolicy(str, Enum):
    """How much of a domain a snapshot carries."""

    NONE = "none"
    METADATA_ONLY = "metadata_only"
    FULL = "full"
    FULL_PLUS_FILES = "full_plus_files"


@dataclass
class FragmentMetadata:
    """Descriptive data about a fragment, readable without the provider.

    Attributes:
        entity_count: Total rows carried
        size_estimate: Approximate serialized size of data in bytes
        skipped: True when data is null (policy none/metadata_only or disabled)
        include_files: Referenced files should be copied by an external collaborator
        counts: Rows per entity type
        truncated: Rows dropped per entity type by a row cap
    """

    entity_count: int = 0
    size_estimate: int = 0
    skipped: bool = False
    include_files: bool = False
    counts: dict[str, int] = field(default_factory=dict)
    truncated: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_count": self.entity_count,
            "size_estimate": self.size_estimate,
            "skipped": self.skipped,
            "include_files": self.include_files,
            "counts": dict(self.counts),
            "truncated": dict(self.truncated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FragmentMetadata:
        data = data or {}
        return cls(
            entity_count=data.get("entity_count", 0),
            size_estimate=data.get("size_estimate", 0),
            skipped=data.get("skipped", False),
            include_files=data.get("include_files", False),
            counts=dict(data.get("counts", {})),
            truncated=dict(data.get("truncated", {})),
        )


@dataclass
class ProviderFragment:
    """One provider's captured data within a snapshot payload.

    Attributes:
        provider_id: Owning provider
        version: Shape version of data
        data: Provider-owned structured value, or None when skipped
        metadata: Counts and flags
    """

    provider_id: str
    version: int
    data: dict[str, Any] | None
    metadata: FragmentMetadata = field(default_factory=FragmentMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "version": self.version,
            "data": self.data,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderFragment:
        return cls(
            provider_id=data["provider_id"],
            version=int(data["version"]),
            data=data.get("data"),
            metadata=FragmentMetadata.from_dict(data.get("metadata")),
        )

    @classmethod
    def skipped(
        cls, provider_id: str, version: int, counts: dict[str, int] | None = None
    ) -> ProviderFragment:
        """Fragment that carries no data (policy none/metadata_only or disabled)."""
        counts = counts or {}
        return cls(
            provider_id=provider_id,
            version=version,
            data=None,
            metadata=FragmentMetadata(
                entity_count=sum(counts.values()), skipped=True, counts=dict(counts)
            ),
        )


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of a provider.

    Attributes:
        provider_id: Stable provider key
        name: Display name
        description: Display description
        critical: Failure aborts the overall capture/restore
        default_policy: Policy when the tenant has no override
        is_enabled: Enabled when the tenant has no override
        depends_on: Providers whose restore must complete before this one
    """

    provider_id: str
    name: str
    description: str
    critical: bool
    default_policy: SnapshotPolicy = SnapshotPolicy.FULL
    is_enabled: bool = True
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "name": self.name,
            "description": self.description,
            "critical": self.critical,
            "default_policy": self.default_policy.value,
            "is_enabled": self.is_enabled,
            "depends_on": list(self.depends_on),
        }


@dataclass(frozen=True)
class EffectiveProvider:
    """A provider's descriptor resolved against one tenant's settings."""

    descriptor: ProviderDescriptor
    effective_policy: SnapshotPolicy
    include_files: bool
    limits: dict[str, int]
    is_enabled: bool

    @property
    def provider_id(self) -> str:
        return self.descriptor.provider_id

    @property
    def captures_data(self) -> bool:
        return self.is_enabled and self.effective_policy in (
            SnapshotPolicy.FULL,
            SnapshotPolicy.FULL_PLUS_FILES,
        )

    def to_dict(self) -> dict[str, Any]:
        result = self.descriptor.to_dict()
        result.update(
            {
                "effective_policy": self.effective_policy.value,
                "include_files": self.include_files,
                "limits": dict(self.limits),
                "is_enabled": self.is_enabled,
            }
        )
        return result


def resolve_effective(
    descriptor: ProviderDescriptor,
    default_limits: dict[str, int],
    settings: ProviderSettings | None = None,
) -> EffectiveProvider:
    """Apply a tenant's provider override on top of the descriptor defaults."""
    policy = descriptor.default_policy
    is_enabled = descriptor.is_enabled
    limits = dict(default_limits)
    include_files = policy == SnapshotPolicy.FULL_PLUS_FILES

    if settings is not None:
        if settings.policy is not None:
            policy = SnapshotPolicy(settings.policy)
            include_files = policy == SnapshotPolicy.FULL_PLUS_FILES
        if settings.is_enabled is not None:
            is_enabled = settings.is_enabled
        if settings.include_files is not None and policy != SnapshotPolicy.NONE:
            include_files = settings.include_files
        for key, value in settings.limits.items():
            # Overrides can lower a cap, never raise it
            if key in limits:
                limits[key] = min(limits[key], int(value))

    if policy == SnapshotPolicy.NONE:
        is_enabled = False

    return EffectiveProvider(
        descriptor=descriptor,
        effective_policy=policy,
        include_files=include_files,
        limits=limits,
        is_enabled=is_enabled,
    )


@dataclass
class EntityDiff:
    """Pending changes for one entity type."""

    entity: str
    creates: int = 0
    updates: int = 0
    deletes: int = 0

    @property
    def total(self) -> int:
        return self.creates + self.updates + self.deletes

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "creates": self.creates,
            "updates": self.updates,
            "deletes": self.deletes,
        }


@dataclass
class ProviderDiff:
    """What restoring one fragment would change.

    Attributes:
        provider_id: Provider that computed the diff
        entities: Per entity type changes
        will_restore: Rows the restore would write
        will_replace: Current rows the restore would replace
        warnings: Non-blocking conditions
    """

    provider_id: str
    entities: list[EntityDiff] = field(default_factory=list)
    will_restore: int = 0
    will_replace: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def creates(self) -> int:
        return sum(e.creates for e in self.entities)

    @property
    def updates(self) -> int:
        return sum(e.updates for e in self.entities)

    @property
    def deletes(self) -> int:
        return sum(e.deletes for e in self.entities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "creates": self.creates,
            "updates": self.updates,
            "deletes": self.deletes,
            "entities": [e.to_dict() for e in self.entities],
            "will_restore": self.will_restore,
            "will_replace": self.will_replace,
            "warnings": list(self.warnings),
        }


class SnapshotProvider(ABC):
    """Base class for domain snapshot providers.

    Subclasses set `id` and `version` as class attributes and receive their
    storage client through the constructor.
    """

    id: str = ""
    version: int = 1

    @abstractmethod
    def describe(self) -> ProviderDescriptor:
        """Static descriptor for display and audit."""

    @property
    def default_limits(self) -> dict[str, int]:
        """Row caps used when the tenant has no override."""
        return {}

    @abstractmethod
    async def capture(
        self, workspace_id: str, effective: EffectiveProvider | None = None
    ) -> ProviderFragment:
        """Read the tenant's domain state into a fragment. Never writes."""

    @abstractmethod
    async def diff(self, workspace_id: str, fragment: ProviderFragment) -> ProviderDiff:
        """Compare a fragment against current state. Never writes."""

    @abstractmethod
    async def restore(
        self,
        workspace_id: str,
        fragment: ProviderFragment,
        deadline: float | None = None,
        on_phase: Callable[[str], None] | None = None,
    ) -> int:
        """Replace the tenant's domain state with the fragment's.

        Args:
            workspace_id: Target tenant
            fragment: Fragment previously produced by capture()
            deadline: time.monotonic() value after which writing stops
            on_phase: Called with "deleting_old" and "inserting_new" as writing progresses

        Returns:
            Number of rows written
        """

    def upgrade_data(self, data: dict[str, Any], from_version: int) -> dict[str, Any]:
        """Convert data of an older version to the current shape."""
        return data

    def read_fragment(self, fragment: ProviderFragment) -> ProviderFragment:
        """Validate ownership and version, upgrading older shapes.

        Raises:
            UnsupportedVersion: Fragment is newer than this provider
            ValueError: Fragment belongs to another provider
        """
        if fragment.provider_id != self.id:
            raise ValueError(f"Fragment for {fragment.provider_id} passed to {self.id}")
        if fragment.version > self.version:
            raise UnsupportedVersion(self.id, fragment.version, self.version)
        if fragment.version == self.version or fragment.data is None:
            return fragment

        logger.info(
            f"Upgrading {self.id} fragment from v{fragment.version} to v{self.version}",
            extra={"provider_id": self.id},
        )
        return ProviderFragment(
            provider_id=self.id,
            version=self.version,
            data=self.upgrade_data(dict(fragment.data), fragment.version),
            metadata=fragment.metadata,
        )
