"""
Table-backed provider template.

Every built-in domain provider has the same shape and differs only in which
tables it owns and how they reference each other. TableProvider implements
that shape once; a domain declares its tables as an ordered tuple of
TableSpec (parents before children) and typed Record classes per table.

Capture:
    - All tables are read concurrently, scoped by workspace_id
    - Capped tables keep the newest rows (created_at DESC) up to the limit
    - Children whose parent was not captured are dropped (or detached)
    - File columns hold references (URL/path) only

Restore (one transaction):
    - Delete non-singleton tables leaves-first
    - Insert parent-first; singleton tables are upserted on workspace_id
    - Any statement failure rolls back the whole domain

Invariants:
    - TableSpec order is a valid parent-first order for the domain's foreign keys
    - Restore writes exactly the rows capture would produce for that state
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, ClassVar, TypeVar

from ..storage.tenant_store import TenantStore, UnitOfWork
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

logger = logging.getLogger(__name__)

R = TypeVar("R", bound="Record")

_BOOL_TYPES = ("bool", "bool | None")


class Record:
    """Base for typed per-table records.

    Subclasses are dataclasses whose fields are the table's columns minus
    workspace_id. from_row is the only place untyped rows become records.
    """

    @classmethod
    def from_row(cls: type[R], row: dict[str, Any]) -> R:
        values = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name not in row:
                continue
            value = row[f.name]
            if f.type in _BOOL_TYPES and value is not None:
                value = bool(value)
            values[f.name] = value
        return cls(**values)

    def to_row(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class ParentRef:
    """A foreign key from one table of the domain to another.

    Attributes:
        column: Referencing column on the child
        parent: Fragment key of the referenced table
        on_missing: "drop" the child row or "null" the column when the parent is absent
    """

    column: str
    parent: str
    on_missing: str = "drop"


@dataclass(frozen=True)
class TableSpec:
    """One table owned by a provider.

    Attributes:
        key: Key of the table's rows inside fragment data
        table: Tenant store table name
        record: Record class for the rows
        order_by: Column defining "newest"
        cap_limit: Limits key holding this table's row cap (None for uncapped)
        singleton: At most one row per workspace; restored by upsert
        parents: Foreign keys to other tables of the same domain
    """

    key: str
    table: str
    record: type[Record]
    order_by: str = "created_at"
    cap_limit: str | None = None
    singleton: bool = False
    parents: tuple[ParentRef, ...] = ()


@dataclass
class ReferenceReport:
    """Rows removed or detached while enforcing in-domain references."""

    dropped: dict[str, int]
    detached: dict[str, int]

    def warnings(self, domain: str) -> list[str]:
        messages = []
        for key, n in sorted(self.dropped.items()):
            messages.append(f"{n} {domain} {key} reference missing parents and will be skipped")
        for key, n in sorted(self.detached.items()):
            messages.append(f"{n} {domain} {key} lose a link to a missing parent")
        return messages


class TableProvider(SnapshotProvider):
    """Provider template driven by a tuple of TableSpec."""

    tables: ClassVar[tuple[TableSpec, ...]] = ()
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    critical: ClassVar[bool] = False
    default_policy: ClassVar[SnapshotPolicy] = SnapshotPolicy.FULL
    depends_on: ClassVar[tuple[str, ...]] = ()

    def __init__(self, store: TenantStore, limits: dict[str, int] | None = None) -> None:
        self.store = store
        self._limits = dict(limits or {})

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_id=self.id,
            name=self.name,
            description=self.description,
            critical=self.critical,
            default_policy=self.default_policy,
            depends_on=self.depends_on,
        )

    @property
    def default_limits(self) -> dict[str, int]:
        return dict(self._limits)

    def _decode(self, data: dict[str, Any]) -> dict[str, list[Record]]:
        records: dict[str, list[Record]] = {}
        for spec in self.tables:
            if spec.key not in data:
                raise ValueError(f"{self.id} fragment is missing '{spec.key}'")
            raw = data[spec.key]
            if spec.singleton:
                records[spec.key] = [spec.record.from_row(raw)] if raw else []
            else:
                records[spec.key] = [spec.record.from_row(r) for r in raw or []]
        return records

    def _encode(self, records: dict[str, list[Record]]) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for spec in self.tables:
            rows = [r.to_row() for r in records[spec.key]]
            data[spec.key] = (rows[0] if rows else None) if spec.singleton else rows
        return data

    def _resolve_references(
        self, records: dict[str, list[Record]]
    ) -> tuple[dict[str, list[Record]], ReferenceReport]:
        """Drop or detach rows whose in-domain parent is absent."""
        present: dict[str, set[Any]] = {}
        resolved: dict[str, list[Record]] = {}
        report = ReferenceReport(dropped={}, detached={})

        for spec in self.tables:
            kept = []
            for record in records[spec.key]:
                keep = True
                for ref in spec.parents:
                    value = getattr(record, ref.column)
                    if value is None or value in present.get(ref.parent, ()):
                        continue
                    if ref.on_missing == "null":
                        record = replace(record, **{ref.column: None})  # type: ignore[type-var]
                        report.detached[spec.key] = report.detached.get(spec.key, 0) + 1
                    else:
                        keep = False
                        break
                if keep:
                    kept.append(record)
                else:
                    report.dropped[spec.key] = report.dropped.get(spec.key, 0) + 1
            resolved[spec.key] = kept
            present[spec.key] = {getattr(r, "id") for r in kept}

        return resolved, report

    async def _read_table(
        self, workspace_id: str, spec: TableSpec, limits: dict[str, int]
    ) -> tuple[list[dict[str, Any]], int]:
        """Read one table, returning (rows, rows dropped by the cap)."""
        if spec.singleton:
            return await self.store.select(workspace_id, spec.table, limit=1), 0
        if spec.cap_limit is None:
            rows = await self.store.select(workspace_id, spec.table, order_by=spec.order_by)
            return rows, 0

        cap = limits[spec.cap_limit]
        rows, total = await asyncio.gather(
            self.store.select(
                workspace_id, spec.table, order_by=spec.order_by, descending=True, limit=cap
            ),
            self.store.count(workspace_id, spec.table),
        )
        return rows, max(total - len(rows), 0)

    async def _count_tables(self, workspace_id: str) -> dict[str, int]:
        counts = await asyncio.gather(
            *(self.store.count(workspace_id, spec.table) for spec in self.tables)
        )
        return {spec.key: n for spec, n in zip(self.tables, counts)}

    async def capture(
        self, workspace_id: str, effective: EffectiveProvider | None = None
    ) -> ProviderFragment:
        effective = effective or resolve_effective(self.describe(), self.default_limits)

        if not effective.is_enabled:
            return ProviderFragment.skipped(self.id, self.version)
        if effective.effective_policy == SnapshotPolicy.METADATA_ONLY:
            counts = await self._count_tables(workspace_id)
            return ProviderFragment.skipped(self.id, self.version, counts)

        results = await asyncio.gather(
            *(self._read_table(workspace_id, spec, effective.limits) for spec in self.tables)
        )
        records: dict[str, list[Record]] = {}
        truncated: dict[str, int] = {}
        for spec, (rows, dropped) in zip(self.tables, results):
            records[spec.key] = [spec.record.from_row(r) for r in rows]
            if dropped:
                truncated[spec.key] = dropped

        records, report = self._resolve_references(records)
        for key, n in report.dropped.items():
            truncated[key] = truncated.get(key, 0) + n

        data = self._encode(records)
        counts = {key: len(rows) for key, rows in records.items()}
        metadata = FragmentMetadata(
            entity_count=sum(counts.values()),
            size_estimate=len(json.dumps(data, default=str)),
            include_files=effective.include_files,
            counts=counts,
            truncated=truncated,
        )

        logger.info(
            f"Captured {self.id} fragment",
            extra={
                "workspace_id": workspace_id,
                "provider_id": self.id,
                "entity_count": metadata.entity_count,
                "truncated": truncated,
            },
        )
        return ProviderFragment(
            provider_id=self.id, version=self.version, data=data, metadata=metadata
        )

    async def _read_current(self, workspace_id: str) -> dict[str, list[Record]]:
        rows = await asyncio.gather(
            *(self.store.select(workspace_id, spec.table) for spec in self.tables)
        )
        return {
            spec.key: [spec.record.from_row(r) for r in table_rows]
            for spec, table_rows in zip(self.tables, rows)
        }

    def extra_warnings(
        self,
        current: dict[str, list[Record]],
        target: dict[str, list[Record]],
    ) -> list[str]:
        """Domain-specific preview warnings."""
        return []

    async def diff(self, workspace_id: str, fragment: ProviderFragment) -> ProviderDiff:
        fragment = self.read_fragment(fragment)
        if fragment.metadata.skipped or fragment.data is None:
            return ProviderDiff(
                provider_id=self.id,
                warnings=[
                    f"{self.name} was not captured in full; restoring leaves its current "
                    "data unchanged"
                ],
            )

        target, report = self._resolve_references(self._decode(fragment.data))
        current = await self._read_current(workspace_id)

        entities = []
        for spec in self.tables:
            cur = {getattr(r, "id"): r for r in current[spec.key]}
            tgt = {getattr(r, "id"): r for r in target[spec.key]}
            if spec.singleton:
                cur_row = next(iter(cur.values()), None)
                tgt_row = next(iter(tgt.values()), None)
                entity = EntityDiff(
                    entity=spec.key,
                    creates=int(cur_row is None and tgt_row is not None),
                    updates=int(cur_row is not None and tgt_row is not None and cur_row != tgt_row),
                    deletes=int(cur_row is not None and tgt_row is None),
                )
            else:
                entity = EntityDiff(
                    entity=spec.key,
                    creates=len(tgt.keys() - cur.keys()),
                    updates=sum(1 for k in tgt.keys() & cur.keys() if tgt[k] != cur[k]),
                    deletes=len(cur.keys() - tgt.keys()),
                )
            entities.append(entity)

        return ProviderDiff(
            provider_id=self.id,
            entities=entities,
            will_restore=sum(len(rows) for rows in target.values()),
            will_replace=sum(len(rows) for rows in current.values()),
            warnings=report.warnings(self.name) + self.extra_warnings(current, target),
        )

    def _apply(
        self,
        uow: UnitOfWork,
        target: dict[str, list[Record]],
        on_phase: Callable[[str], None] | None = None,
    ) -> int:
        if on_phase:
            on_phase("deleting_old")
        for spec in reversed(self.tables):
            if not spec.singleton:
                uow.delete_all(spec.table)

        written = 0
        if on_phase:
            on_phase("inserting_new")
        for spec in self.tables:
            rows = [r.to_row() for r in target[spec.key]]
            if spec.singleton:
                if rows:
                    written += uow.upsert(spec.table, rows[0], conflict=("workspace_id",))
                else:
                    uow.delete_all(spec.table)
            else:
                written += uow.insert_many(spec.table, rows)
        return written

    async def restore(
        self,
        workspace_id: str,
        fragment: ProviderFragment,
        deadline: float | None = None,
        on_phase: Callable[[str], None] | None = None,
    ) -> int:
        fragment = self.read_fragment(fragment)
        if fragment.metadata.skipped or fragment.data is None:
            logger.info(
                f"Skipping restore of {self.id}: fragment carries no data",
                extra={"workspace_id": workspace_id, "provider_id": self.id},
            )
            return 0

        target, report = self._resolve_references(self._decode(fragment.data))
        if report.dropped or report.detached:
            logger.warning(
                f"{self.id} restore skipped rows with missing parents",
                extra={
                    "workspace_id": workspace_id,
                    "provider_id": self.id,
                    "dropped": report.dropped,
                    "detached": report.detached,
                },
            )

        written = await self.store.transaction(
            workspace_id, lambda uow: self._apply(uow, target, on_phase), deadline=deadline
        )
        logger.info(
            f"Restored {self.id}",
            extra={"workspace_id": workspace_id, "provider_id": self.id, "rows": written},
        )
        return written
