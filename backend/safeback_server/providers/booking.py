"""
Booking snapshot provider.

Tables, parent-first: booking_settings (one per workspace), booking_vendors,
booking_services, booking_availability_rules, booking_quote_requests,
booking_bookings. Every multi-row table is capped at max_rows_per_table,
newest first. Logo and file columns are URLs only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..storage.tenant_store import TenantStore
from .table_provider import ParentRef, Record, TableProvider, TableSpec


@dataclass(frozen=True)
class BookingSettings(Record):
    id: str
    created_at: int
    updated_at: int
    tenant_slug: str | None = None
    currency: str = "USD"
    is_live: bool = False
    logo_url: str | None = None
    primary_color: str | None = None
    cancellation_policy: str = "flexible"
    deposit_enabled: bool = False
    payment_config: Any = None


@dataclass(frozen=True)
class Vendor(Record):
    id: str
    owner_user_id: str
    created_at: int
    updated_at: int
    display_name: str | None = None
    logo_url: str | None = None
    status: str = "pending"


@dataclass(frozen=True)
class Service(Record):
    id: str
    vendor_id: str
    title: str
    created_at: int
    updated_at: int
    description: str | None = None
    price_amount: float | None = None
    currency: str = "USD"
    duration_minutes: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class AvailabilityRule(Record):
    id: str
    vendor_id: str
    created_at: int
    updated_at: int
    rules: Any = None


@dataclass(frozen=True)
class QuoteRequest(Record):
    id: str
    vendor_id: str
    service_id: str
    customer_user_id: str
    created_at: int
    updated_at: int
    event_date: str | None = None
    guest_count: int | None = None
    notes: str | None = None
    status: str = "requested"


@dataclass(frozen=True)
class Booking(Record):
    id: str
    vendor_id: str
    customer_user_id: str
    created_at: int
    updated_at: int
    quote_request_id: str | None = None
    status: str = "confirmed"
    total_amount: float = 0.0
    currency: str = "USD"
    event_date: str | None = None


class BookingProvider(TableProvider):
    id = "booking"
    version = 1
    name = "Booking"
    description = "Booking settings, vendors, services, availability, quotes and bookings"
    critical = False

    tables = (
        TableSpec("settings", "booking_settings", BookingSettings, singleton=True),
        TableSpec("vendors", "booking_vendors", Vendor, cap_limit="max_rows_per_table"),
        TableSpec(
            "services",
            "booking_services",
            Service,
            cap_limit="max_rows_per_table",
            parents=(ParentRef("vendor_id", "vendors"),),
        ),
        TableSpec(
            "availability_rules",
            "booking_availability_rules",
            AvailabilityRule,
            cap_limit="max_rows_per_table",
            parents=(ParentRef("vendor_id", "vendors"),),
        ),
        TableSpec(
            "quote_requests",
            "booking_quote_requests",
            QuoteRequest,
            cap_limit="max_rows_per_table",
            parents=(
                ParentRef("vendor_id", "vendors"),
                ParentRef("service_id", "services"),
            ),
        ),
        TableSpec(
            "bookings",
            "booking_bookings",
            Booking,
            cap_limit="max_rows_per_table",
            parents=(
                ParentRef("vendor_id", "vendors"),
                ParentRef("quote_request_id", "quote_requests", on_missing="null"),
            ),
        ),
    )

    def __init__(self, store: TenantStore, max_rows_per_table: int = 5000) -> None:
        super().__init__(store, {"max_rows_per_table": max_rows_per_table})
