"""
Unit tests for the provider registry.

Tests cover:
- Registration and duplicate detection
- Freezing
- Dependency waves, unknown dependencies and cycles
- The default registry
"""

import tempfile

import pytest

from backend.safeback_server.providers.contract import (
    ProviderDescriptor,
    ProviderDiff,
    ProviderFragment,
    SnapshotProvider,
)
from backend.safeback_server.providers.registry import (
    DependencyError,
    DuplicateRegistrationError,
    ProviderRegistry,
    RegistryFrozenError,
    build_default_registry,
)
from backend.safeback_server.storage.tenant_store import TenantStore


class StubProvider(SnapshotProvider):
    def __init__(self, provider_id, depends_on=()):
        self.id = provider_id
        self._depends_on = tuple(depends_on)

    def describe(self):
        return ProviderDescriptor(
            provider_id=self.id,
            name=self.id,
            description="",
            critical=False,
            depends_on=self._depends_on,
        )

    async def capture(self, workspace_id, effective=None):
        return ProviderFragment(self.id, self.version, {})

    async def diff(self, workspace_id, fragment):
        return ProviderDiff(provider_id=self.id)

    async def restore(self, workspace_id, fragment, deadline=None, on_phase=None):
        return 0


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_register_and_lookup(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("a"))
        registry.register(StubProvider("b"))

        assert len(registry) == 2
        assert "a" in registry
        assert registry.get("b").id == "b"
        assert registry.get("missing") is None
        assert [p.id for p in registry] == ["a", "b"]

    def test_duplicate_id_rejected(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("a"))

        with pytest.raises(DuplicateRegistrationError):
            registry.register(StubProvider("a"))

    def test_register_after_freeze_rejected(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("a"))
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(StubProvider("b"))

    def test_empty_id_rejected(self):
        registry = ProviderRegistry()
        with pytest.raises(ValueError):
            registry.register(StubProvider(""))

    def test_waves_follow_dependencies(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("chat", depends_on=["workboard"]))
        registry.register(StubProvider("workboard"))
        registry.register(StubProvider("billing"))
        registry.register(StubProvider("reports", depends_on=["chat", "billing"]))

        waves = [[p.id for p in wave] for wave in registry.restore_waves()]

        assert waves == [["workboard", "billing"], ["chat"], ["reports"]]
        assert [p.id for p in registry.restore_order()] == [
            "workboard",
            "billing",
            "chat",
            "reports",
        ]

    def test_no_dependencies_single_wave_in_registration_order(self):
        registry = ProviderRegistry()
        for pid in ("c", "a", "b"):
            registry.register(StubProvider(pid))

        assert [[p.id for p in w] for w in registry.restore_waves()] == [["c", "a", "b"]]

    def test_unknown_dependency_fails_freeze(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("a", depends_on=["ghost"]))

        with pytest.raises(DependencyError, match="ghost"):
            registry.freeze()
        assert not registry.frozen

    def test_cycle_fails_freeze(self):
        registry = ProviderRegistry()
        registry.register(StubProvider("a", depends_on=["b"]))
        registry.register(StubProvider("b", depends_on=["a"]))

        with pytest.raises(DependencyError, match="cycle"):
            registry.freeze()


class TestDefaultRegistry:
    """Tests for build_default_registry."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield TenantStore(tmpdir, wal_mode=False)

    def test_builtin_domains(self, store):
        registry = build_default_registry(store)

        assert registry.frozen
        assert [p.id for p in registry.all()] == ["workboard", "billing", "team_chat", "booking"]

    def test_criticality(self, store):
        registry = build_default_registry(store)
        critical = {p.id: p.describe().critical for p in registry.all()}

        assert critical == {
            "workboard": True,
            "billing": True,
            "team_chat": False,
            "booking": False,
        }
