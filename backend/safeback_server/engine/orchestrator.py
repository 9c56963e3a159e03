"""
Snapshot orchestrator for SafeBack.

The orchestrator coordinates the three engine operations over the provider
registry. It never interprets fragment data; it routes fragments between
providers and the payload store.

capture(workspace_id):
    1. Fan out capture() to every provider concurrently (per-provider timeout)
    2. Non-critical failures become snapshot warnings; a critical failure or
       the failure of every provider aborts with no snapshot record
    3. Write the payload blob, then the snapshot index row

preview(snapshot_id):
    1. Load the payload; check engine and fragment versions
    2. Ask each provider for a read-only diff
    3. Aggregate warnings and blocking errors; mint a confirmation token

restore(snapshot_id, token):
    REQUESTED -> TOKEN_VALIDATED -> per provider
    (PENDING -> DELETING_OLD -> INSERTING_NEW -> DONE | FAILED) -> result

Invariants:
    - A snapshot record never points at a missing payload
    - No provider is touched before the token is validated and consumed
    - Restore is atomic within one provider, never across providers
    - A failed restore always reports restored, failed and skipped providers
    - One restore per tenant at a time; restores and captures exclude each other
    - The workspace of preview/restore always comes from the snapshot record

How to change safely:
    - Bump ENGINE_VERSION when the payload envelope changes
    - Never special-case a provider id here; domains live in the registry
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from ..config import EngineConfig
from ..errors import (
    CaptureFailure,
    ExecutionDenied,
    PayloadCorrupted,
    RestoreFailure,
    SafebackError,
    SnapshotNotFound,
    UnknownProvider,
    UnsupportedVersion,
    ValidationFailure,
    check_workspace_id,
)
from ..providers.contract import (
    EffectiveProvider,
    ProviderFragment,
    SnapshotPolicy,
    SnapshotProvider,
    resolve_effective,
)
from ..providers.registry import ProviderRegistry
from ..storage.payload_store import PayloadStore
from ..storage.snapshot_store import Snapshot, SnapshotStore
from .models import (
    ENGINE_VERSION,
    PreviewProviderSummary,
    PreviewResult,
    ProviderRestoreState,
    RestoreOutcome,
    RestorePreview,
    RestoreResult,
    SnapshotPayload,
)
from .tokens import TokenManager

logger = logging.getLogger(__name__)

# Audit actions
AUDIT_SNAPSHOT_CREATED = "workspace.snapshot_created"
AUDIT_CAPTURE_FAILED = "workspace.snapshot_capture_failed"
AUDIT_SNAPSHOT_PREVIEWED = "workspace.snapshot_previewed"
AUDIT_RESTORE_STARTED = "workspace.snapshot_restore_started"
AUDIT_RESTORE_COMPLETED = "workspace.snapshot_restore_completed"
AUDIT_PROVIDER_RESTORE_FAILED = "workspace.provider_restore_failed"
AUDIT_RESTORE_DENIED = "workspace.restore_denied"


def _describe_error(e: BaseException, timeout: float) -> str:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return f"timed out after {timeout:g}s"
    if isinstance(e, SafebackError):
        return e.message
    return f"{type(e).__name__}: {e}"


class SnapshotOrchestrator:
    """Capture, preview and restore of tenant snapshots.

    Attributes:
        registry: Frozen provider registry
        snapshot_store: Engine metadata store
        payload_store: Payload blob store
        config: Engine configuration
        tokens: Confirmation token manager

    Example:
        >>> engine = SnapshotOrchestrator(registry, snapshot_store, payload_store)
        >>> snapshot = await engine.capture("ws_1", actor="user:alice")
        >>> preview = await engine.preview(snapshot.id, actor="user:alice")
        >>> result = await engine.restore(snapshot.id, preview.confirmation_token, "user:alice")
        >>> result.restored_counts
        {'workboard': 4, 'billing': 1, 'team_chat': 0, 'booking': 0}
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        snapshot_store: SnapshotStore,
        payload_store: PayloadStore,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.snapshot_store = snapshot_store
        self.payload_store = payload_store
        self.config = config or EngineConfig()
        self.clock = clock
        self.tokens = TokenManager(snapshot_store, self.config.token_ttl_seconds, clock)
        self._active_captures: dict[str, int] = {}

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def effective_providers(self, workspace_id: str) -> list[EffectiveProvider]:
        """Registered providers resolved against the tenant's settings."""
        check_workspace_id(workspace_id)
        settings = await self.snapshot_store.get_provider_settings(workspace_id)
        return [
            resolve_effective(p.describe(), p.default_limits, settings.get(p.id))
            for p in self.registry.all()
        ]

    async def get_snapshot(self, snapshot_id: str, workspace_id: str | None = None) -> Snapshot:
        """Look up a snapshot, optionally enforcing tenant ownership.

        Raises:
            ValidationFailure: snapshot_id missing
            SnapshotNotFound: Unknown snapshot
            ExecutionDenied: Snapshot belongs to another workspace
        """
        if not snapshot_id:
            raise ValidationFailure("snapshot_id is required", "snapshot_id")
        snapshot = await self.snapshot_store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)
        if workspace_id is not None and snapshot.workspace_id != workspace_id:
            raise ExecutionDenied("snapshot belongs to a different workspace")
        return snapshot

    async def list_snapshots(self, workspace_id: str, limit: int = 50) -> list[Snapshot]:
        check_workspace_id(workspace_id)
        return await self.snapshot_store.list_snapshots(workspace_id, limit=limit)

    async def load_payload(self, snapshot: Snapshot) -> SnapshotPayload:
        data = await self.payload_store.get(snapshot.storage_key, snapshot.checksum)
        try:
            return SnapshotPayload.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadCorrupted(snapshot.storage_key, f"malformed payload: {e}") from e

    async def capture(
        self,
        workspace_id: str,
        actor: str,
        reason: str | None = None,
        snapshot_type: str = "manual",
    ) -> Snapshot:
        """Capture a snapshot of every registered domain.

        Args:
            workspace_id: Tenant to capture
            actor: Caller identity
            reason: Optional free-form reason
            snapshot_type: Snapshot kind recorded on the index row

        Returns:
            The created Snapshot record

        Raises:
            ValidationFailure: Missing or malformed workspace_id
            ExecutionDenied: A restore is in progress for the tenant
            CaptureFailure: A critical provider or every provider failed
        """
        check_workspace_id(workspace_id)

        marker = await self.snapshot_store.get_restore_marker(workspace_id, self._now_ms())
        if marker is not None:
            logger.warning(
                "Capture denied: restore in progress",
                extra={"workspace_id": workspace_id, "snapshot_id": marker.snapshot_id},
            )
            raise ExecutionDenied("restore in progress", conflict=True)

        return await self._capture(workspace_id, actor, reason, snapshot_type)

    async def _capture_one(
        self, workspace_id: str, provider: SnapshotProvider, effective: EffectiveProvider
    ) -> ProviderFragment:
        if not effective.is_enabled:
            return ProviderFragment.skipped(provider.id, provider.version)
        return await asyncio.wait_for(
            provider.capture(workspace_id, effective),
            timeout=self.config.provider_timeout_seconds,
        )

    async def _capture(
        self,
        workspace_id: str,
        actor: str,
        reason: str | None,
        snapshot_type: str,
    ) -> Snapshot:
        self._active_captures[workspace_id] = self._active_captures.get(workspace_id, 0) + 1
        try:
            providers = self.registry.all()
            effective = {e.provider_id: e for e in await self.effective_providers(workspace_id)}

            results = await asyncio.gather(
                *(self._capture_one(workspace_id, p, effective[p.id]) for p in providers),
                return_exceptions=True,
            )

            fragments: list[ProviderFragment] = []
            failures: dict[str, str] = {}
            for provider, outcome in zip(providers, results):
                if isinstance(outcome, BaseException):
                    failures[provider.id] = _describe_error(
                        outcome, self.config.provider_timeout_seconds
                    )
                    logger.error(
                        f"Capture failed for {provider.id}: {failures[provider.id]}",
                        exc_info=outcome,
                        extra={"workspace_id": workspace_id, "provider_id": provider.id},
                    )
                else:
                    fragments.append(outcome)

            for provider_id, cause in failures.items():
                await self.snapshot_store.record_audit(
                    workspace_id,
                    actor,
                    AUDIT_CAPTURE_FAILED,
                    provider_id=provider_id,
                    details={"cause": cause, "critical": effective[provider_id].descriptor.critical},
                )

            critical_failed = [pid for pid in failures if effective[pid].descriptor.critical]
            if critical_failed:
                pid = critical_failed[0]
                raise CaptureFailure(pid, failures[pid])
            if failures and not fragments:
                pid = next(iter(failures))
                raise CaptureFailure(pid, f"every provider failed ({failures[pid]})")

            warnings = [
                f"{effective[pid].descriptor.name} was not captured: {cause}"
                for pid, cause in failures.items()
            ]
            if self.config.warn_on_truncation:
                for fragment in fragments:
                    for key, dropped in sorted(fragment.metadata.truncated.items()):
                        warnings.append(
                            f"{fragment.provider_id}: {dropped} older {key} rows exceed the "
                            "row cap and are not in this snapshot"
                        )

            payload = SnapshotPayload(
                engine_version=ENGINE_VERSION,
                created_at=self._now_ms(),
                fragments=fragments,
                warnings=warnings,
            )
            return await self._persist(workspace_id, actor, reason, snapshot_type, payload)
        finally:
            self._active_captures[workspace_id] -= 1
            if not self._active_captures[workspace_id]:
                del self._active_captures[workspace_id]

    async def _persist(
        self,
        workspace_id: str,
        actor: str,
        reason: str | None,
        snapshot_type: str,
        payload: SnapshotPayload,
    ) -> Snapshot:
        snapshot_id = str(uuid.uuid4())
        stored = await self.payload_store.put(workspace_id, snapshot_id, payload.to_dict())

        snapshot = Snapshot(
            id=snapshot_id,
            workspace_id=workspace_id,
            snapshot_type=snapshot_type,
            created_by=actor,
            created_at=payload.created_at,
            reason=reason,
            engine_version=payload.engine_version,
            storage_key=stored.storage_key,
            size_bytes=stored.size_bytes,
            checksum=stored.checksum,
            warnings=list(payload.warnings),
        )
        try:
            await self.snapshot_store.create_snapshot(snapshot)
        except Exception:
            await self.payload_store.delete(stored.storage_key)
            raise

        await self.snapshot_store.record_audit(
            workspace_id,
            actor,
            AUDIT_SNAPSHOT_CREATED,
            snapshot_id=snapshot_id,
            details={
                "snapshot_type": snapshot_type,
                "reason": reason,
                "providers": [f.provider_id for f in payload.fragments],
                "warnings": payload.warnings,
                "size_bytes": stored.size_bytes,
            },
        )
        logger.info(
            "Created snapshot",
            extra={
                "workspace_id": workspace_id,
                "snapshot_id": snapshot_id,
                "snapshot_type": snapshot_type,
                "fragments": len(payload.fragments),
                "warnings": len(payload.warnings),
                "size_bytes": stored.size_bytes,
            },
        )
        return snapshot

    def _blocking_errors(self, payload: SnapshotPayload) -> list[SafebackError]:
        """Conditions that make a payload unrestorable by this build."""
        if payload.engine_version > ENGINE_VERSION:
            return [UnsupportedVersion("engine", payload.engine_version, ENGINE_VERSION)]
        errors: list[SafebackError] = []
        for fragment in payload.fragments:
            provider = self.registry.get(fragment.provider_id)
            if provider is None:
                errors.append(UnknownProvider(fragment.provider_id))
            elif fragment.version > provider.version:
                errors.append(
                    UnsupportedVersion(provider.id, fragment.version, provider.version)
                )
        return errors

    @staticmethod
    def _fragment_policy(fragment: ProviderFragment) -> SnapshotPolicy:
        meta = fragment.metadata
        if meta.skipped:
            return SnapshotPolicy.METADATA_ONLY if meta.counts else SnapshotPolicy.NONE
        if meta.include_files:
            return SnapshotPolicy.FULL_PLUS_FILES
        return SnapshotPolicy.FULL

    async def preview(
        self,
        snapshot_id: str,
        actor: str,
        workspace_id: str | None = None,
    ) -> PreviewResult:
        """Compute what restoring a snapshot would change and mint a token.

        Args:
            snapshot_id: Snapshot to preview
            actor: Caller identity the token is bound to
            workspace_id: Caller's tenant; must own the snapshot when given

        Returns:
            PreviewResult with the diff and the confirmation token
        """
        snapshot = await self.get_snapshot(snapshot_id, workspace_id)
        payload = await self.load_payload(snapshot)
        preview = RestorePreview(snapshot_id=snapshot.id, workspace_id=snapshot.workspace_id)
        preview.warnings.extend(snapshot.warnings)

        blocking = self._blocking_errors(payload)
        preview.errors.extend(e.message for e in blocking)
        blocked_ids = {getattr(e, "provider_id", None) for e in blocking}

        diffable = [
            (self.registry.get(f.provider_id), f)
            for f in payload.fragments
            if f.provider_id not in blocked_ids and "engine" not in blocked_ids
        ]
        diffs = await asyncio.gather(
            *(provider.diff(snapshot.workspace_id, f) for provider, f in diffable),
            return_exceptions=True,
        )

        for (provider, fragment), diff in zip(diffable, diffs):
            descriptor = provider.describe()
            preview.providers.append(
                PreviewProviderSummary(
                    provider_id=provider.id,
                    name=descriptor.name,
                    critical=descriptor.critical,
                    policy=self._fragment_policy(fragment).value,
                    entity_count=fragment.metadata.entity_count,
                    skipped=fragment.metadata.skipped,
                )
            )
            if isinstance(diff, BaseException):
                preview.errors.append(f"{provider.id}: preview failed: {diff}")
                logger.error(
                    f"Preview diff failed for {provider.id}",
                    exc_info=diff,
                    extra={"snapshot_id": snapshot.id, "provider_id": provider.id},
                )
                continue
            preview.diffs.append(diff)
            preview.warnings.extend(diff.warnings)
            preview.will_restore[provider.id] = diff.will_restore
            preview.will_replace[provider.id] = diff.will_replace

        captured = {f.provider_id for f in payload.fragments}
        for provider in self.registry.all():
            if provider.id not in captured:
                preview.warnings.append(
                    f"{provider.describe().name} is not in this snapshot and will not be changed"
                )

        minted = await self.tokens.mint(snapshot.id, snapshot.workspace_id, actor)
        await self.snapshot_store.record_audit(
            snapshot.workspace_id,
            actor,
            AUDIT_SNAPSHOT_PREVIEWED,
            snapshot_id=snapshot.id,
            details={
                "can_execute": preview.can_execute,
                "errors": preview.errors,
                "warnings": len(preview.warnings),
            },
        )
        logger.info(
            "Previewed snapshot",
            extra={
                "workspace_id": snapshot.workspace_id,
                "snapshot_id": snapshot.id,
                "can_execute": preview.can_execute,
            },
        )
        return PreviewResult(
            preview=preview,
            confirmation_token=minted.token,
            confirmation_hash=minted.token_hash,
            expires_at=minted.expires_at,
        )

    async def _deny(
        self, workspace_id: str, snapshot_id: str, actor: str, error: SafebackError
    ) -> None:
        await self.snapshot_store.record_audit(
            workspace_id,
            actor,
            AUDIT_RESTORE_DENIED,
            snapshot_id=snapshot_id,
            details={"reason": error.message, "code": error.code},
        )
        logger.warning(
            f"Restore denied: {error.message}",
            extra={"workspace_id": workspace_id, "snapshot_id": snapshot_id, "actor": actor},
        )

    async def restore(
        self,
        snapshot_id: str,
        confirmation_token: str,
        actor: str,
        workspace_id: str | None = None,
    ) -> RestoreResult:
        """Restore a snapshot after validating its confirmation token.

        Args:
            snapshot_id: Snapshot to restore
            confirmation_token: Token returned by preview()
            actor: Caller identity; must match the token
            workspace_id: Caller's tenant; must own the snapshot when given

        Returns:
            RestoreResult with outcome DONE

        Raises:
            ExecutionDenied: Token invalid/expired/consumed or restore conflict
            UnsupportedVersion: Payload too new for this build
            UnknownProvider: Payload holds a fragment with no registered provider
            RestoreFailure: A provider failed; carries the PARTIAL result
        """
        snapshot = await self.get_snapshot(snapshot_id, workspace_id)
        ws = snapshot.workspace_id

        if self._active_captures.get(ws):
            error = ExecutionDenied("capture in progress", conflict=True)
            await self._deny(ws, snapshot.id, actor, error)
            raise error

        marker_id = await self.snapshot_store.acquire_restore_marker(
            ws,
            snapshot.id,
            actor,
            self._now_ms(),
            self.config.restore_lock_ttl_seconds * 1000,
        )
        if marker_id is None:
            error = ExecutionDenied("restore already in progress", conflict=True)
            await self._deny(ws, snapshot.id, actor, error)
            raise error

        try:
            try:
                record = await self.tokens.validate(confirmation_token, snapshot.id, actor)
                await self.tokens.consume(record)
            except ExecutionDenied as e:
                await self._deny(ws, snapshot.id, actor, e)
                raise

            payload = await self.load_payload(snapshot)
            blocking = self._blocking_errors(payload)
            if blocking:
                await self._deny(ws, snapshot.id, actor, blocking[0])
                raise blocking[0]

            return await self._restore_payload(snapshot, payload, actor)
        finally:
            released = await self.snapshot_store.release_restore_marker(ws, marker_id)
            if not released:
                logger.warning(
                    "Restore marker was taken over before release",
                    extra={"workspace_id": ws, "snapshot_id": snapshot.id},
                )

    async def _restore_payload(
        self, snapshot: Snapshot, payload: SnapshotPayload, actor: str
    ) -> RestoreResult:
        ws = snapshot.workspace_id
        result = RestoreResult(snapshot_id=snapshot.id, workspace_id=ws)

        if self.config.pre_restore_snapshot:
            pre = await self._capture(
                ws, actor, reason=f"Automatic snapshot before restoring {snapshot.id}",
                snapshot_type="pre_restore",
            )
            result.pre_restore_snapshot_id = pre.id

        fragments = {f.provider_id: f for f in payload.fragments}
        waves = [
            [p for p in wave if p.id in fragments] for wave in self.registry.restore_waves()
        ]
        waves = [wave for wave in waves if wave]
        if not self.config.parallel_restore:
            waves = [[p] for wave in waves for p in wave]
        for wave in waves:
            for provider in wave:
                result.states[provider.id] = ProviderRestoreState.PENDING

        await self.snapshot_store.record_audit(
            ws,
            actor,
            AUDIT_RESTORE_STARTED,
            snapshot_id=snapshot.id,
            details={
                "providers": [p.id for wave in waves for p in wave],
                "pre_restore_snapshot_id": result.pre_restore_snapshot_id,
            },
        )
        logger.info(
            "Restore started",
            extra={"workspace_id": ws, "snapshot_id": snapshot.id, "actor": actor},
        )

        aborted = False
        for wave in waves:
            if aborted:
                result.not_attempted.extend(p.id for p in wave)
                continue
            outcomes = await asyncio.gather(
                *(self._restore_one(ws, p, fragments[p.id], result) for p in wave),
                return_exceptions=True,
            )
            for provider, outcome in zip(wave, outcomes):
                if not isinstance(outcome, BaseException):
                    continue
                if not isinstance(outcome, Exception):
                    raise outcome
                await self._record_provider_failure(snapshot, actor, provider, outcome, result)
                critical = provider.describe().critical
                if critical or not self.config.continue_on_noncritical_failure:
                    aborted = True

        result.outcome = RestoreOutcome.PARTIAL if result.failures else RestoreOutcome.DONE
        await self.snapshot_store.record_audit(
            ws,
            actor,
            AUDIT_RESTORE_COMPLETED,
            snapshot_id=snapshot.id,
            details=result.to_dict(),
        )
        logger.info(
            f"Restore finished: {result.outcome.value}",
            extra={
                "workspace_id": ws,
                "snapshot_id": snapshot.id,
                "restored_counts": result.restored_counts,
                "failures": result.failures,
                "not_attempted": result.not_attempted,
            },
        )

        if result.failures:
            failed_id = next(iter(result.failures))
            raise RestoreFailure(failed_id, result.failures[failed_id], result)
        return result

    async def _restore_one(
        self,
        workspace_id: str,
        provider: SnapshotProvider,
        fragment: ProviderFragment,
        result: RestoreResult,
    ) -> int:
        terminal = (ProviderRestoreState.DONE, ProviderRestoreState.FAILED)

        def on_phase(phase: str) -> None:
            if result.states.get(provider.id) in terminal:
                return
            result.states[provider.id] = ProviderRestoreState(phase)

        result.states[provider.id] = ProviderRestoreState.DELETING_OLD
        timeout = self.config.provider_timeout_seconds
        # The store checks the deadline before every statement and before COMMIT
        deadline = time.monotonic() + timeout
        task = asyncio.ensure_future(
            provider.restore(workspace_id, fragment, deadline=deadline, on_phase=on_phase)
        )
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(
                f"Provider {provider.id} passed its deadline, waiting for its writer to settle",
                extra={"workspace_id": workspace_id, "provider_id": provider.id},
            )
            task.cancel()
            await asyncio.wait({task})
        if task.cancelled():
            raise asyncio.TimeoutError()
        # Raises the provider error, or returns the count if the commit landed
        count = task.result()
        result.restored_counts[provider.id] = count
        result.states[provider.id] = ProviderRestoreState.DONE
        logger.info(
            f"Restored provider {provider.id}",
            extra={"workspace_id": workspace_id, "provider_id": provider.id, "rows": count},
        )
        return count

    async def _record_provider_failure(
        self,
        snapshot: Snapshot,
        actor: str,
        provider: SnapshotProvider,
        error: Exception,
        result: RestoreResult,
    ) -> None:
        cause = _describe_error(error, self.config.provider_timeout_seconds)
        result.failures[provider.id] = cause
        result.states[provider.id] = ProviderRestoreState.FAILED
        logger.error(
            f"Restore failed for {provider.id}: {cause}",
            exc_info=error,
            extra={
                "workspace_id": snapshot.workspace_id,
                "snapshot_id": snapshot.id,
                "provider_id": provider.id,
            },
        )
        await self.snapshot_store.record_audit(
            snapshot.workspace_id,
            actor,
            AUDIT_PROVIDER_RESTORE_FAILED,
            snapshot_id=snapshot.id,
            provider_id=provider.id,
            details={"cause": cause, "critical": provider.describe().critical},
        )

    async def export(self, snapshot_id: str, workspace_id: str | None = None) -> dict[str, Any]:
        """Export a snapshot as its payload document or a signed download URL."""
        snapshot = await self.get_snapshot(snapshot_id, workspace_id)
        url = await self.payload_store.export_url(snapshot.storage_key)
        if url:
            return {"snapshot": snapshot.to_dict(), "download_url": url}
        payload = await self.load_payload(snapshot)
        return {"snapshot": snapshot.to_dict(), "payload": payload.to_dict()}
