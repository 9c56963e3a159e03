"""
Workboard snapshot provider: goals, plans, tasks and ideas.

Fragment data (version 2):
    {"goals": [...], "plans": [...], "tasks": [...], "ideas": [...]}

Version 1 fragments predate ideas and are upgraded with an empty list.

Plans and tasks may point at goals (and tasks at plans); a link to a goal or
plan that is not in the fragment is cleared rather than dropping the row.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..storage.tenant_store import TenantStore
from .table_provider import ParentRef, Record, TableProvider, TableSpec


@dataclass(frozen=True)
class Goal(Record):
    id: str
    title: str
    created_by: str
    created_at: int
    updated_at: int
    description: str | None = None
    status: str = "active"
    kpi_name: str | None = None
    kpi_current: float | None = None
    kpi_target: float | None = None
    due_date: str | None = None


@dataclass(frozen=True)
class Plan(Record):
    id: str
    title: str
    created_by: str
    created_at: int
    updated_at: int
    description: str | None = None
    plan_type: str = "weekly"
    goal_id: str | None = None
    ai_generated: bool = False
    weekly_breakdown: Any = None


@dataclass(frozen=True)
class Task(Record):
    id: str
    title: str
    created_by: str
    created_at: int
    updated_at: int
    description: str | None = None
    status: str = "backlog"
    priority: int | None = None
    is_priority: bool = False
    goal_id: str | None = None
    plan_id: str | None = None
    assigned_to: str | None = None
    due_date: str | None = None
    week_bucket: str | None = None
    completed_at: int | None = None


@dataclass(frozen=True)
class Idea(Record):
    id: str
    title: str
    created_by: str
    created_at: int
    updated_at: int
    description: str | None = None
    source: str = "manual"
    status: str = "new"


class WorkboardProvider(TableProvider):
    """Tasks, goals, plans and ideas of a workspace."""

    id = "workboard"
    version = 2
    name = "Workboard"
    description = "Goals, plans, tasks and ideas"
    critical = True

    tables = (
        TableSpec("goals", "goals", Goal, cap_limit="max_rows_per_table"),
        TableSpec(
            "plans",
            "plans",
            Plan,
            cap_limit="max_rows_per_table",
            parents=(ParentRef("goal_id", "goals", on_missing="null"),),
        ),
        TableSpec(
            "tasks",
            "tasks",
            Task,
            cap_limit="max_rows_per_table",
            parents=(
                ParentRef("goal_id", "goals", on_missing="null"),
                ParentRef("plan_id", "plans", on_missing="null"),
            ),
        ),
        TableSpec("ideas", "ideas", Idea, cap_limit="max_rows_per_table"),
    )

    def __init__(self, store: TenantStore, max_rows_per_table: int = 20000) -> None:
        super().__init__(store, {"max_rows_per_table": max_rows_per_table})

    def upgrade_data(self, data: dict[str, Any], from_version: int) -> dict[str, Any]:
        if from_version < 2:
            data.setdefault("ideas", [])
        return data
