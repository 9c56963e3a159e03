"""
Per-tenant SQLite store for SafeBack domain data.

This module manages the per-tenant SQLite database holding the application
tables that snapshot providers capture and restore:
- Workboard: goals, plans, tasks, ideas
- Billing: billing_subscriptions (one row per workspace)
- Team chat: chat_threads, chat_thread_members, chat_messages, chat_attachments
- Booking: booking_settings, booking_vendors, booking_services,
  booking_availability_rules, booking_quote_requests, booking_bookings

A TenantStore instance is constructed once and injected into every provider;
providers never open connections themselves.

Invariants:
    - One SQLite file per tenant
    - Every read and write is filtered by workspace_id
    - Written rows always carry the target workspace_id, whatever the input says
    - A unit of work is one transaction: it commits fully or rolls back fully
    - Foreign keys are enforced, so children must be deleted before parents

How to change safely:
    - Add columns with defaults; never rename a column a provider reads
    - New tables must carry workspace_id and be listed in DOMAIN_TABLES
    - Test restore ordering whenever a foreign key is added
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from ..errors import StoreWriteError, check_workspace_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOMAIN_SCHEMA = """
    -- Workboard
    CREATE TABLE IF NOT EXISTS goals (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        kpi_name TEXT,
        kpi_current REAL,
        kpi_target REAL,
        due_date TEXT,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_goals_ws ON goals(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS plans (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        plan_type TEXT NOT NULL DEFAULT 'weekly',
        goal_id TEXT REFERENCES goals(id),
        ai_generated INTEGER NOT NULL DEFAULT 0,
        weekly_breakdown TEXT,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_plans_ws ON plans(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'backlog',
        priority INTEGER,
        is_priority INTEGER NOT NULL DEFAULT 0,
        goal_id TEXT REFERENCES goals(id),
        plan_id TEXT REFERENCES plans(id),
        assigned_to TEXT,
        due_date TEXT,
        week_bucket TEXT,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        completed_at INTEGER
    );
    CREATE INDEX IF NOT EXISTS idx_tasks_ws ON tasks(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS ideas (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        source TEXT NOT NULL DEFAULT 'manual',
        status TEXT NOT NULL DEFAULT 'new',
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_ideas_ws ON ideas(workspace_id, created_at DESC);

    -- Billing
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        workspace_id TEXT PRIMARY KEY,
        id TEXT NOT NULL,
        plan TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at INTEGER NOT NULL,
        expires_at INTEGER,
        grace_period_days INTEGER NOT NULL DEFAULT 7,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    -- Team chat
    CREATE TABLE IF NOT EXISTS chat_threads (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        title TEXT,
        type TEXT NOT NULL DEFAULT 'group',
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_chat_threads_ws ON chat_threads(workspace_id);

    CREATE TABLE IF NOT EXISTS chat_thread_members (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        thread_id TEXT NOT NULL REFERENCES chat_threads(id),
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        last_read_at INTEGER,
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_chat_members_ws ON chat_thread_members(workspace_id);

    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        thread_id TEXT NOT NULL REFERENCES chat_threads(id),
        sender_user_id TEXT NOT NULL,
        meaning_object_id TEXT NOT NULL,
        source_lang TEXT NOT NULL DEFAULT 'en',
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_chat_messages_ws
        ON chat_messages(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS chat_attachments (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        message_id TEXT NOT NULL REFERENCES chat_messages(id),
        file_name TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        file_type TEXT NOT NULL,
        file_url TEXT NOT NULL,
        storage_path TEXT NOT NULL,
        uploaded_by TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_chat_attachments_ws ON chat_attachments(workspace_id);

    -- Booking
    CREATE TABLE IF NOT EXISTS booking_settings (
        workspace_id TEXT PRIMARY KEY,
        id TEXT NOT NULL,
        tenant_slug TEXT,
        currency TEXT NOT NULL DEFAULT 'USD',
        is_live INTEGER NOT NULL DEFAULT 0,
        logo_url TEXT,
        primary_color TEXT,
        cancellation_policy TEXT NOT NULL DEFAULT 'flexible',
        deposit_enabled INTEGER NOT NULL DEFAULT 0,
        payment_config TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS booking_vendors (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        owner_user_id TEXT NOT NULL,
        display_name TEXT,
        logo_url TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_booking_vendors_ws ON booking_vendors(workspace_id);

    CREATE TABLE IF NOT EXISTS booking_services (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL REFERENCES booking_vendors(id),
        title TEXT NOT NULL,
        description TEXT,
        price_amount REAL,
        currency TEXT NOT NULL DEFAULT 'USD',
        duration_minutes INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_booking_services_ws ON booking_services(workspace_id);

    CREATE TABLE IF NOT EXISTS booking_availability_rules (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL REFERENCES booking_vendors(id),
        rules TEXT NOT NULL DEFAULT '{}',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS booking_quote_requests (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL REFERENCES booking_vendors(id),
        service_id TEXT NOT NULL REFERENCES booking_services(id),
        customer_user_id TEXT NOT NULL,
        event_date TEXT,
        guest_count INTEGER,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'requested',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_booking_quotes_ws
        ON booking_quote_requests(workspace_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS booking_bookings (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL REFERENCES booking_vendors(id),
        quote_request_id TEXT REFERENCES booking_quote_requests(id),
        customer_user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'confirmed',
        total_amount REAL NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'USD',
        event_date TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_booking_bookings_ws
        ON booking_bookings(workspace_id, created_at DESC);
"""

DOMAIN_TABLES = frozenset(
    {
        "goals",
        "plans",
        "tasks",
        "ideas",
        "billing_subscriptions",
        "chat_threads",
        "chat_thread_members",
        "chat_messages",
        "chat_attachments",
        "booking_settings",
        "booking_vendors",
        "booking_services",
        "booking_availability_rules",
        "booking_quote_requests",
        "booking_bookings",
    }
)

# Columns stored as JSON text
JSON_COLUMNS: dict[str, frozenset[str]] = {
    "plans": frozenset({"weekly_breakdown"}),
    "booking_settings": frozenset({"payment_config"}),
    "booking_availability_rules": frozenset({"rules"}),
}


class UnitOfWork:
    """Write handle bound to one tenant and one open transaction.

    Obtained from TenantStore.unit_of_work(); every statement is scoped to
    the bound workspace and checked against the optional deadline.
    """

    def __init__(
        self,
        store: TenantStore,
        conn: sqlite3.Connection,
        workspace_id: str,
        deadline: float | None,
    ) -> None:
        self._store = store
        self._conn = conn
        self.workspace_id = workspace_id
        self._deadline = deadline
        self.statements = 0

    def _check_deadline(self, step: str) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise TimeoutError(f"unit of work deadline exceeded before {step}")

    def delete_all(self, table: str) -> int:
        """Delete every row of the bound workspace from a table."""
        self._store._check_table(table)
        self._check_deadline(f"writing {table}")
        try:
            cursor = self._conn.execute(
                f"DELETE FROM {table} WHERE workspace_id = ?",
                (self.workspace_id,),
            )
        except sqlite3.Error as e:
            raise StoreWriteError(table, "delete", str(e)) from e
        self.statements += 1
        return cursor.rowcount

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert rows into a table, forcing workspace_id on each one."""
        self._store._check_table(table)
        count = 0
        for row in rows:
            self._check_deadline(f"writing {table}")
            columns, values = self._store._encode_row(self._conn, table, row, self.workspace_id)
            placeholders = ", ".join("?" for _ in columns)
            try:
                self._conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
            except sqlite3.Error as e:
                raise StoreWriteError(table, "insert", f"row {row.get('id')!r}: {e}") from e
            count += 1
            self.statements += 1
        return count

    def upsert(self, table: str, row: dict[str, Any], conflict: tuple[str, ...]) -> int:
        """Insert a row or update it in place on a unique-key conflict."""
        self._store._check_table(table)
        self._check_deadline(f"writing {table}")
        columns, values = self._store._encode_row(self._conn, table, row, self.workspace_id)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in conflict)
        placeholders = ", ".join("?" for _ in columns)
        try:
            self._conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {updates}",
                values,
            )
        except sqlite3.Error as e:
            raise StoreWriteError(table, "upsert", str(e)) from e
        self.statements += 1
        return 1


class TenantStore:
    """Per-tenant SQLite store for domain tables.

    Thread safety:
        Each operation opens its own connection, so reads can run
        concurrently in the default executor. SQLite serializes writers.

    Example:
        >>> store = TenantStore("/var/lib/safeback")
        >>> await store.insert("ws_1", "tasks", {"id": "t1", "title": "Ship", ...})
        >>> rows = await store.select("ws_1", "tasks", order_by="created_at")
    """

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the tenant store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized: set[str] = set()
        self._columns: dict[str, tuple[str, ...]] = {}

    def _get_db_path(self, workspace_id: str) -> Path:
        """Get database file path for a tenant.

        Raises:
            ValidationFailure: workspace_id would not map to exactly one file
        """
        check_workspace_id(workspace_id)
        return self.data_dir / f"tenant_{workspace_id}.db"

    def get_db_path(self, workspace_id: str) -> Path:
        """Public accessor for a tenant's database path."""
        return self._get_db_path(workspace_id)

    @contextmanager
    def _get_connection(self, workspace_id: str) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a tenant, creating the schema on first use."""
        db_path = self._get_db_path(workspace_id)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            if str(db_path) not in self._initialized:
                conn.executescript(DOMAIN_SCHEMA)
                self._initialized.add(str(db_path))

            yield conn
        finally:
            conn.close()

    def _check_table(self, table: str) -> None:
        if table not in DOMAIN_TABLES:
            raise ValueError(f"Unknown domain table: {table}")

    def _table_columns(self, conn: sqlite3.Connection, table: str) -> tuple[str, ...]:
        if table not in self._columns:
            info = conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = tuple(r["name"] for r in info)
        return self._columns[table]

    def _encode_row(
        self,
        conn: sqlite3.Connection,
        table: str,
        row: dict[str, Any],
        workspace_id: str,
    ) -> tuple[list[str], list[Any]]:
        known = self._table_columns(conn, table)
        unknown = set(row) - set(known)
        if unknown:
            raise StoreWriteError(table, "encode", f"unknown columns {sorted(unknown)}")

        data = dict(row)
        data["workspace_id"] = workspace_id
        json_cols = JSON_COLUMNS.get(table, frozenset())

        columns = [c for c in known if c in data]
        values = []
        for c in columns:
            value = data[c]
            if c in json_cols and value is not None:
                value = json.dumps(value, sort_keys=True)
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        return columns, values

    def _decode_row(self, table: str, row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        for c in JSON_COLUMNS.get(table, frozenset()):
            if data.get(c) is not None:
                data[c] = json.loads(data[c])
        return data

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run blocking SQLite work in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def initialize_tenant(self, workspace_id: str) -> None:
        """Create the tenant database and schema if they don't exist."""

        def _init() -> None:
            with self._get_connection(workspace_id):
                pass

        await self._run(_init)
        logger.info(f"Initialized tenant database: {workspace_id}")

    async def tenant_exists(self, workspace_id: str) -> bool:
        """Check if tenant database exists."""
        return self._get_db_path(workspace_id).exists()

    def _select(
        self,
        workspace_id: str,
        table: str,
        order_by: str | None,
        descending: bool,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        self._check_table(table)
        with self._get_connection(workspace_id) as conn:
            sql = f"SELECT * FROM {table} WHERE workspace_id = ?"
            params: list[Any] = [workspace_id]
            if order_by:
                if order_by not in self._table_columns(conn, table):
                    raise ValueError(f"Unknown column {order_by} on {table}")
                direction = "DESC" if descending else "ASC"
                sql += f" ORDER BY {order_by} {direction}, id {direction}"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            return [self._decode_row(table, r) for r in conn.execute(sql, params).fetchall()]

    async def select(
        self,
        workspace_id: str,
        table: str,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read a tenant's rows from one table.

        Args:
            workspace_id: Tenant identifier
            table: Domain table name
            order_by: Optional column to sort by (ties broken by id)
            descending: Sort direction
            limit: Maximum number of rows

        Returns:
            Decoded rows as dictionaries
        """
        return await self._run(self._select, workspace_id, table, order_by, descending, limit)

    def _count(self, workspace_id: str, table: str) -> int:
        self._check_table(table)
        with self._get_connection(workspace_id) as conn:
            cursor = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE workspace_id = ?", (workspace_id,)
            )
            return cursor.fetchone()[0]

    async def count(self, workspace_id: str, table: str) -> int:
        """Count a tenant's rows in one table."""
        return await self._run(self._count, workspace_id, table)

    async def insert(self, workspace_id: str, table: str, row: dict[str, Any]) -> None:
        """Insert a single row in its own transaction."""
        await self.transaction(workspace_id, lambda uow: uow.insert_many(table, [row]))

    async def delete(self, workspace_id: str, table: str, row_id: str) -> bool:
        """Delete a single row by id."""

        def _delete() -> bool:
            self._check_table(table)
            with self._get_connection(workspace_id) as conn:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE workspace_id = ? AND id = ?",
                    (workspace_id, row_id),
                )
                return cursor.rowcount > 0

        return await self._run(_delete)

    @contextmanager
    def unit_of_work(
        self,
        workspace_id: str,
        deadline: float | None = None,
    ) -> Iterator[UnitOfWork]:
        """Open a write transaction scoped to one tenant.

        Args:
            workspace_id: Tenant identifier
            deadline: time.monotonic() value after which no further statement runs

        Yields:
            UnitOfWork bound to the transaction

        Raises:
            StoreWriteError: A statement failed (transaction rolled back)
            TimeoutError: Deadline exceeded (transaction rolled back)
        """
        with self._get_connection(workspace_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            uow = UnitOfWork(self, conn, workspace_id, deadline)
            try:
                yield uow
                uow._check_deadline("commit")
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                logger.warning(
                    "Rolled back unit of work",
                    extra={"workspace_id": workspace_id, "statements": uow.statements},
                )
                raise

    async def transaction(
        self,
        workspace_id: str,
        work: Callable[[UnitOfWork], T],
        deadline: float | None = None,
    ) -> T:
        """Run work(uow) inside one transaction on the executor.

        Args:
            workspace_id: Tenant identifier
            work: Blocking callable receiving the UnitOfWork
            deadline: Optional time.monotonic() deadline

        Cancelling the awaiting task does not stop the writer thread. The call
        then waits for the transaction to settle and reports what it did: the
        result if it committed, its error if it rolled back.

        Returns:
            Whatever work returns
        """

        def _apply() -> T:
            with self.unit_of_work(workspace_id, deadline=deadline) as uow:
                return work(uow)

        future = asyncio.ensure_future(self._run(_apply))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait({future})
            logger.warning(
                "Transaction settled after cancellation",
                extra={"workspace_id": workspace_id, "committed": future.exception() is None},
            )
            return future.result()
