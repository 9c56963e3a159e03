"""
Unit tests for the tenant domain store.

Tests cover:
- Per-tenant isolation
- workspace_id forced on writes
- JSON and boolean column round trips
- Unit of work rollback on statement failure and deadline
- Workspace id validation
- Cancelled transactions settle before returning
"""

import asyncio
import os
import tempfile
import time

import pytest

from backend.safeback_server.errors import StoreWriteError, ValidationFailure
from backend.safeback_server.storage.tenant_store import TenantStore
from tests.fixtures import goal_row, plan_row, task_row


class TestTenantStore:
    """Tests for TenantStore."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return TenantStore(data_dir, wal_mode=False)

    @pytest.mark.asyncio
    async def test_initialize_tenant(self, store):
        assert not await store.tenant_exists("ws_1")
        await store.initialize_tenant("ws_1")
        assert await store.tenant_exists("ws_1")

    @pytest.mark.parametrize("workspace_id", ["../../etc/ws", "acme.io", "ws 1", ""])
    def test_db_path_rejects_malformed_ids(self, store, workspace_id):
        with pytest.raises(ValidationFailure) as exc_info:
            store.get_db_path(workspace_id)
        assert exc_info.value.field_name == "workspace_id"

    def test_db_path_one_file_per_tenant(self, store):
        path = store.get_db_path("acme-io_2")
        assert path.parent == store.data_dir
        assert path.name == "tenant_acme-io_2.db"
        assert store.get_db_path("acmeio_2") != path

    @pytest.mark.asyncio
    async def test_malformed_id_never_touches_disk(self, store, data_dir):
        with pytest.raises(ValidationFailure):
            await store.insert("acme.io", "tasks", task_row("t1"))
        assert os.listdir(data_dir) == []

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))
        await store.insert("ws_2", "tasks", task_row("t2"))

        rows_1 = await store.select("ws_1", "tasks")
        rows_2 = await store.select("ws_2", "tasks")

        assert [r["id"] for r in rows_1] == ["t1"]
        assert [r["id"] for r in rows_2] == ["t2"]

    @pytest.mark.asyncio
    async def test_workspace_id_forced(self, store):
        await store.insert("ws_1", "tasks", task_row("t1", workspace_id="ws_other"))

        rows = await store.select("ws_1", "tasks")
        assert rows[0]["workspace_id"] == "ws_1"

    @pytest.mark.asyncio
    async def test_json_and_bool_columns(self, store):
        await store.insert("ws_1", "goals", goal_row("g1"))
        await store.insert("ws_1", "plans", plan_row("p1", "g1", ai_generated=True))

        row = (await store.select("ws_1", "plans"))[0]
        assert row["weekly_breakdown"] == {"mon": ["write"], "tue": []}
        assert row["ai_generated"] == 1

    @pytest.mark.asyncio
    async def test_select_order_and_limit(self, store):
        for i in range(5):
            await store.insert("ws_1", "tasks", task_row(f"t{i}", ts=1000 + i))

        newest = await store.select("ws_1", "tasks", order_by="created_at", descending=True, limit=2)
        assert [r["id"] for r in newest] == ["t4", "t3"]
        assert await store.count("ws_1", "tasks") == 5

    @pytest.mark.asyncio
    async def test_unknown_table_rejected(self, store):
        with pytest.raises(ValueError):
            await store.select("ws_1", "sqlite_master")

    @pytest.mark.asyncio
    async def test_unknown_column_rejected(self, store):
        with pytest.raises(StoreWriteError):
            await store.insert("ws_1", "tasks", task_row("t1", colour="red"))

    @pytest.mark.asyncio
    async def test_delete_row(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))

        assert await store.delete("ws_1", "tasks", "t1")
        assert not await store.delete("ws_1", "tasks", "t1")

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_failure(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))

        def work(uow):
            uow.delete_all("tasks")
            uow.insert_many("tasks", [task_row("t2"), task_row("t2")])

        with pytest.raises(StoreWriteError) as exc_info:
            await store.transaction("ws_1", work)

        assert exc_info.value.table == "tasks"
        assert exc_info.value.operation == "insert"
        assert [r["id"] for r in await store.select("ws_1", "tasks")] == ["t1"]

    @pytest.mark.asyncio
    async def test_transaction_deadline(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))

        def work(uow):
            uow.delete_all("tasks")

        with pytest.raises(TimeoutError):
            await store.transaction("ws_1", work, deadline=time.monotonic() - 1)

        assert await store.count("ws_1", "tasks") == 1

    @pytest.mark.asyncio
    async def test_deadline_checked_before_commit(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))

        def work(uow):
            uow.delete_all("tasks")
            time.sleep(0.3)

        with pytest.raises(TimeoutError, match="commit"):
            await store.transaction("ws_1", work, deadline=time.monotonic() + 0.1)

        assert await store.count("ws_1", "tasks") == 1

    @pytest.mark.asyncio
    async def test_cancelled_transaction_reports_commit(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))
        finished = []

        def work(uow):
            time.sleep(0.3)
            uow.delete_all("tasks")
            uow.insert_many("tasks", [task_row("t2")])
            finished.append(True)
            return 1

        task = asyncio.create_task(store.transaction("ws_1", work))
        await asyncio.sleep(0.05)
        task.cancel()

        assert await task == 1
        assert finished == [True]
        assert [r["id"] for r in await store.select("ws_1", "tasks")] == ["t2"]

    @pytest.mark.asyncio
    async def test_cancelled_transaction_reports_rollback(self, store):
        await store.insert("ws_1", "tasks", task_row("t1"))

        def work(uow):
            uow.delete_all("tasks")
            time.sleep(0.3)

        task = asyncio.create_task(
            store.transaction("ws_1", work, deadline=time.monotonic() + 0.1)
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(TimeoutError):
            await task
        assert await store.count("ws_1", "tasks") == 1

    @pytest.mark.asyncio
    async def test_upsert_singleton(self, store):
        row = {
            "id": "sub_1",
            "plan": "pro",
            "status": "active",
            "started_at": 1,
            "created_at": 1,
            "updated_at": 1,
        }
        await store.transaction(
            "ws_1", lambda uow: uow.upsert("billing_subscriptions", row, ("workspace_id",))
        )
        await store.transaction(
            "ws_1",
            lambda uow: uow.upsert(
                "billing_subscriptions", {**row, "plan": "free"}, ("workspace_id",)
            ),
        )

        rows = await store.select("ws_1", "billing_subscriptions")
        assert len(rows) == 1
        assert rows[0]["plan"] == "free"

    @pytest.mark.asyncio
    async def test_foreign_keys_enforced(self, store):
        with pytest.raises(StoreWriteError):
            await store.insert("ws_1", "plans", plan_row("p1", goal_id="missing"))
