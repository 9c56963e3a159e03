"""
Billing snapshot provider.

Captures the workspace's subscription record only; pricing and invoicing
live elsewhere. A workspace has at most one subscription, so restore upserts
it on workspace_id, and a fragment without a subscription removes the
current one.
"""

from __future__ import annotations

from dataclasses import dataclass

from .table_provider import Record, TableProvider, TableSpec


@dataclass(frozen=True)
class Subscription(Record):
    id: str
    plan: str
    status: str
    started_at: int
    created_at: int
    updated_at: int
    expires_at: int | None = None
    grace_period_days: int = 7


class BillingProvider(TableProvider):
    id = "billing"
    version = 1
    name = "Billing"
    description = "Workspace subscription plan and status"
    critical = True

    tables = (TableSpec("subscription", "billing_subscriptions", Subscription, singleton=True),)
