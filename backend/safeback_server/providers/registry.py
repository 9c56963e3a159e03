"""
Provider registry for SafeBack.

The ProviderRegistry is the single place where data domains are wired into
the snapshot engine. It provides:
- Registration of provider instances, in capture order
- Lookup by provider id
- Restore ordering derived from declared dependencies
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Provider ids are unique
    - No runtime plugin discovery: the provider list is explicit
    - Restore order respects depends_on; registry order only breaks ties

How to change safely:
    - Add a new domain by registering it in build_default_registry()
    - Never rename or unregister a provider id that has shipped
    - Declare depends_on for any cross-domain reference before relying on it

Example:
    >>> registry = ProviderRegistry()
    >>> registry.register(WorkboardProvider(store))
    >>> registry.freeze()
    >>> [p.id for p in registry.all()]
    ['workboard']
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator

from ..config import ProviderLimitsConfig
from ..storage.tenant_store import TenantStore
from .billing import BillingProvider
from .booking import BookingProvider
from .contract import SnapshotProvider
from .team_chat import TeamChatProvider
from .workboard import WorkboardProvider

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate provider id."""

    pass


class DependencyError(Exception):
    """Raised when declared provider dependencies are unknown or cyclic."""

    pass


class ProviderRegistry:
    """Ordered collection of snapshot providers.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
    """

    def __init__(self) -> None:
        self._providers: dict[str, SnapshotProvider] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, provider: SnapshotProvider) -> None:
        """Register a provider instance.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the provider id is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register provider '{provider.id}': registry is frozen"
                )
            if not provider.id:
                raise ValueError(f"{type(provider).__name__} has no provider id")
            if provider.id in self._providers:
                raise DuplicateRegistrationError(f"Provider '{provider.id}' already registered")
            self._providers[provider.id] = provider
            logger.debug(f"Registered provider: {provider.id} (v{provider.version})")

    def freeze(self) -> None:
        """Freeze the registry after validating dependencies."""
        with self._lock:
            if self._frozen:
                return
            self.restore_order()
            self._frozen = True
            logger.info(
                "Provider registry frozen",
                extra={"providers": list(self._providers)},
            )

    def all(self) -> list[SnapshotProvider]:
        """All providers in registration order."""
        return list(self._providers.values())

    def get(self, provider_id: str) -> SnapshotProvider | None:
        return self._providers.get(provider_id)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[SnapshotProvider]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._providers)

    def restore_waves(self) -> list[list[SnapshotProvider]]:
        """Group providers into waves whose members only depend on earlier waves.

        Raises:
            DependencyError: Unknown dependency or dependency cycle
        """
        deps: dict[str, set[str]] = {}
        for provider in self._providers.values():
            declared = set(provider.describe().depends_on)
            unknown = declared - self._providers.keys()
            if unknown:
                raise DependencyError(
                    f"Provider '{provider.id}' depends on unknown providers: {sorted(unknown)}"
                )
            deps[provider.id] = declared

        waves: list[list[SnapshotProvider]] = []
        done: set[str] = set()
        while len(done) < len(deps):
            wave = [
                p for p in self._providers.values()
                if p.id not in done and deps[p.id] <= done
            ]
            if not wave:
                cycle = sorted(set(deps) - done)
                raise DependencyError(f"Dependency cycle between providers: {cycle}")
            waves.append(wave)
            done.update(p.id for p in wave)
        return waves

    def restore_order(self) -> list[SnapshotProvider]:
        """Providers in an order where every dependency precedes its dependents."""
        return [p for wave in self.restore_waves() for p in wave]


def build_default_registry(
    store: TenantStore,
    limits: ProviderLimitsConfig | None = None,
) -> ProviderRegistry:
    """Build and freeze the registry of built-in domains.

    Args:
        store: Tenant store injected into every provider
        limits: Row caps (defaults when omitted)

    Returns:
        Frozen ProviderRegistry
    """
    limits = limits or ProviderLimitsConfig()
    registry = ProviderRegistry()
    registry.register(WorkboardProvider(store, limits.workboard_max_rows_per_table))
    registry.register(BillingProvider(store))
    registry.register(TeamChatProvider(store, limits.team_chat_max_messages))
    registry.register(BookingProvider(store, limits.booking_max_rows_per_table))
    registry.freeze()
    return registry
