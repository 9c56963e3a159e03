"""
Snapshot providers for SafeBack.

Each provider owns capture and restore of exactly one data domain and speaks
the fragment contract defined in contract.py. The registry is the only place
domains are wired into the engine.
"""

from .billing import BillingProvider
from .booking import BookingProvider
from .contract import (
    EffectiveProvider,
    EntityDiff,
    FragmentMetadata,
    ProviderDescriptor,
    ProviderDiff,
    ProviderFragment,
    SnapshotPolicy,
    SnapshotProvider,
    resolve_effective,
)
from .registry import (
    DependencyError,
    DuplicateRegistrationError,
    ProviderRegistry,
    RegistryFrozenError,
    build_default_registry,
)
from .table_provider import ParentRef, Record, TableProvider, TableSpec
from .team_chat import TeamChatProvider
from .workboard import WorkboardProvider

__all__ = [
    "BillingProvider",
    "BookingProvider",
    "DependencyError",
    "DuplicateRegistrationError",
    "EffectiveProvider",
    "EntityDiff",
    "FragmentMetadata",
    "ParentRef",
    "ProviderDescriptor",
    "ProviderDiff",
    "ProviderFragment",
    "ProviderRegistry",
    "Record",
    "RegistryFrozenError",
    "SnapshotPolicy",
    "SnapshotProvider",
    "TableProvider",
    "TableSpec",
    "TeamChatProvider",
    "WorkboardProvider",
    "build_default_registry",
]
