"""Row builders and test doubles shared by the unit and integration tests."""

from __future__ import annotations

import asyncio
from typing import Any

from backend.safeback_server.providers.contract import (
    EntityDiff,
    ProviderDescriptor,
    ProviderDiff,
    ProviderFragment,
    SnapshotProvider,
)

BASE_TS = 1_700_000_000_000


def goal_row(goal_id: str, ts: int = BASE_TS, **extra: Any) -> dict[str, Any]:
    row = {
        "id": goal_id,
        "title": f"Goal {goal_id}",
        "created_by": "user:alice",
        "created_at": ts,
        "updated_at": ts,
    }
    row.update(extra)
    return row


def plan_row(plan_id: str, goal_id: str | None = None, ts: int = BASE_TS, **extra: Any) -> dict:
    row = {
        "id": plan_id,
        "title": f"Plan {plan_id}",
        "goal_id": goal_id,
        "weekly_breakdown": {"mon": ["write"], "tue": []},
        "created_by": "user:alice",
        "created_at": ts,
        "updated_at": ts,
    }
    row.update(extra)
    return row


def task_row(task_id: str, ts: int = BASE_TS, **extra: Any) -> dict[str, Any]:
    row = {
        "id": task_id,
        "title": f"Task {task_id}",
        "created_by": "user:alice",
        "created_at": ts,
        "updated_at": ts,
    }
    row.update(extra)
    return row


def idea_row(idea_id: str, ts: int = BASE_TS) -> dict[str, Any]:
    return {
        "id": idea_id,
        "title": f"Idea {idea_id}",
        "created_by": "user:alice",
        "created_at": ts,
        "updated_at": ts,
    }


def subscription_row(plan: str = "pro", status: str = "active", ts: int = BASE_TS) -> dict:
    return {
        "id": "sub_1",
        "plan": plan,
        "status": status,
        "started_at": ts,
        "created_at": ts,
        "updated_at": ts,
    }


def thread_row(thread_id: str, ts: int = BASE_TS) -> dict[str, Any]:
    return {"id": thread_id, "title": f"#{thread_id}", "created_by": "user:alice", "created_at": ts}


def member_row(member_id: str, thread_id: str, user_id: str = "user:bob") -> dict[str, Any]:
    return {"id": member_id, "thread_id": thread_id, "user_id": user_id, "created_at": BASE_TS}


def message_row(message_id: str, thread_id: str, ts: int = BASE_TS) -> dict[str, Any]:
    return {
        "id": message_id,
        "thread_id": thread_id,
        "sender_user_id": "user:bob",
        "meaning_object_id": f"mo_{message_id}",
        "created_at": ts,
    }


def attachment_row(attachment_id: str, message_id: str) -> dict[str, Any]:
    return {
        "id": attachment_id,
        "message_id": message_id,
        "file_name": f"{attachment_id}.pdf",
        "file_size": 1024,
        "file_type": "application/pdf",
        "file_url": f"https://files.example.com/{attachment_id}.pdf",
        "storage_path": f"chat/{attachment_id}.pdf",
        "uploaded_by": "user:bob",
        "created_at": BASE_TS,
    }


def booking_settings_row(currency: str = "USD") -> dict[str, Any]:
    return {
        "id": "bs_1",
        "currency": currency,
        "is_live": True,
        "payment_config": {"provider": "stripe", "deposit_percent": 20},
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }


def vendor_row(vendor_id: str, ts: int = BASE_TS) -> dict[str, Any]:
    return {
        "id": vendor_id,
        "owner_user_id": "user:carol",
        "display_name": f"Vendor {vendor_id}",
        "created_at": ts,
        "updated_at": ts,
    }


def service_row(service_id: str, vendor_id: str) -> dict[str, Any]:
    return {
        "id": service_id,
        "vendor_id": vendor_id,
        "title": f"Service {service_id}",
        "price_amount": 250.0,
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }


def availability_row(rule_id: str, vendor_id: str) -> dict[str, Any]:
    return {
        "id": rule_id,
        "vendor_id": vendor_id,
        "rules": {"weekdays": [1, 2, 3], "start": "09:00", "end": "17:00"},
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }


def quote_row(quote_id: str, vendor_id: str, service_id: str) -> dict[str, Any]:
    return {
        "id": quote_id,
        "vendor_id": vendor_id,
        "service_id": service_id,
        "customer_user_id": "user:dan",
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }


def booking_row(booking_id: str, vendor_id: str, quote_id: str | None = None) -> dict:
    return {
        "id": booking_id,
        "vendor_id": vendor_id,
        "quote_request_id": quote_id,
        "customer_user_id": "user:dan",
        "total_amount": 500.0,
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
    }


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryProvider(SnapshotProvider):
    """In-memory provider with fault injection.

    State is a list of item ids per workspace. Every restore appends the
    provider id to the shared restore log.
    """

    version = 1

    def __init__(
        self,
        provider_id: str,
        restore_log: list[str] | None = None,
        critical: bool = False,
        depends_on: tuple[str, ...] = (),
        fail_capture: BaseException | None = None,
        fail_restore: BaseException | None = None,
    ) -> None:
        self.id = provider_id
        self.critical = critical
        self.depends_on = depends_on
        self.fail_capture = fail_capture
        self.fail_restore = fail_restore
        self.restore_log = restore_log if restore_log is not None else []
        self.state: dict[str, list[str]] = {}
        self.capture_gate: asyncio.Event | None = None
        self.capturing = False

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_id=self.id,
            name=self.id.replace("_", " ").title(),
            description=f"{self.id} test domain",
            critical=self.critical,
            depends_on=self.depends_on,
        )

    async def capture(self, workspace_id, effective=None):
        if self.capture_gate is not None:
            self.capturing = True
            await self.capture_gate.wait()
            self.capturing = False
        if self.fail_capture is not None:
            raise self.fail_capture
        items = list(self.state.get(workspace_id, []))
        return ProviderFragment(self.id, self.version, {"items": items})

    async def diff(self, workspace_id, fragment):
        fragment = self.read_fragment(fragment)
        current = set(self.state.get(workspace_id, []))
        target = set(fragment.data["items"])
        return ProviderDiff(
            provider_id=self.id,
            entities=[
                EntityDiff(
                    entity="items",
                    creates=len(target - current),
                    deletes=len(current - target),
                )
            ],
            will_restore=len(target),
            will_replace=len(current),
        )

    async def restore(self, workspace_id, fragment, deadline=None, on_phase=None):
        fragment = self.read_fragment(fragment)
        self.restore_log.append(self.id)
        if on_phase:
            on_phase("deleting_old")
        if self.fail_restore is not None:
            raise self.fail_restore
        if on_phase:
            on_phase("inserting_new")
        self.state[workspace_id] = list(fragment.data["items"])
        return len(self.state[workspace_id])
