"""
Pure breakdowns over booking rows.

Shared by the live-data fallback of both generators and the nightly
aggregation job. Nothing here touches the database.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

from app.features.reporting.domain.models import (
    BookingBreakdown,
    CustomerSegments,
    EventPerformance,
    OverviewMetrics,
    PackagePerformance,
    RevenueBreakdown,
    TopCustomer,
)
from app.features.reporting.pipeline.analytics.calculations import (
    DEFAULT_TABLE_COUNT,
    event_name_for_date,
    is_special_occasion,
    local_date,
    occupancy_rate,
    round2,
    safe_divide,
)
from app.features.reporting.repository.metrics_repository import BookingRecord

CONFIRMED = "confirmed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"


def confirmed_only(bookings: Iterable[BookingRecord]) -> list[BookingRecord]:
    return [b for b in bookings if b.status == CONFIRMED]


def unique_tables(bookings: Iterable[BookingRecord]) -> int:
    return len({b.table_id for b in bookings if b.table_id is not None})


def overview_from_bookings(
    confirmed: list[BookingRecord], table_count: int = DEFAULT_TABLE_COUNT
) -> OverviewMetrics:
    tables = unique_tables(confirmed)
    return OverviewMetrics(
        total_bookings=len(confirmed),
        total_revenue=round2(sum(b.total_amount for b in confirmed)),
        total_guests=sum(b.party_size for b in confirmed),
        tables_occupied=tables,
        occupancy_rate=occupancy_rate(tables, table_count),
    )


def booking_breakdown(bookings: list[BookingRecord], waitlist: int = 0) -> BookingBreakdown:
    confirmed = confirmed_only(bookings)
    return BookingBreakdown(
        confirmed=len(confirmed),
        cancelled=sum(1 for b in bookings if b.status == CANCELLED),
        no_shows=sum(1 for b in bookings if b.status == NO_SHOW),
        walk_ins=sum(1 for b in bookings if b.is_walk_in),
        waitlist=waitlist,
        average_party_size=round2(
            safe_divide(sum(b.party_size for b in confirmed), len(confirmed))
        ),
    )


def revenue_breakdown(confirmed: list[BookingRecord]) -> RevenueBreakdown:
    gross = sum(b.total_amount for b in confirmed)
    refunds = sum(b.refund_amount for b in confirmed)
    guests = sum(b.party_size for b in confirmed)
    return RevenueBreakdown(
        gross=round2(gross),
        net=round2(gross - refunds),
        deposits=round2(sum(b.deposit_amount for b in confirmed)),
        refunds=round2(refunds),
        per_guest=round2(safe_divide(gross, guests)),
        per_table=round2(safe_divide(gross, unique_tables(confirmed))),
    )


def customer_segments(confirmed: list[BookingRecord], day: date, tz: ZoneInfo) -> CustomerSegments:
    """New means the customer record was created on the booking day."""
    segments = CustomerSegments()
    for booking in confirmed:
        if booking.customer_id is not None:
            if local_date(booking.customer_created_at, tz) == day:
                segments.new += 1
            else:
                segments.returning += 1
        if booking.is_vip:
            segments.vip += 1
        if has_occasion(booking, "birthday"):
            segments.birthdays += 1
        if has_occasion(booking, "anniversary"):
            segments.anniversaries += 1
    return segments


def has_occasion(booking: BookingRecord, occasion: str) -> bool:
    if booking.special_occasion and booking.special_occasion.lower() == occasion:
        return True
    return is_special_occasion(booking.special_requests, occasion)


def events_by_name(
    confirmed: list[BookingRecord],
    default_day: date,
    table_count: int = DEFAULT_TABLE_COUNT,
) -> list[EventPerformance]:
    """
    Group bookings by event (or the night's default name), revenue descending.

    With no bookings a single zeroed entry for the default night is returned.
    """
    if not confirmed:
        return [EventPerformance(event_name=event_name_for_date(default_day), event_date=default_day)]

    groups: dict[tuple[str, date], list[BookingRecord]] = defaultdict(list)
    for booking in confirmed:
        name = booking.event_name or event_name_for_date(booking.booking_date)
        groups[(name, booking.booking_date)].append(booking)

    events = []
    for (name, event_date), rows in groups.items():
        revenue = sum(b.total_amount for b in rows)
        guests = sum(b.party_size for b in rows)
        events.append(
            EventPerformance(
                event_name=name,
                event_date=event_date,
                event_id=next((b.event_id for b in rows if b.event_id), None),
                total_bookings=len(rows),
                attendance=guests,
                revenue=round2(revenue),
                occupancy_rate=occupancy_rate(unique_tables(rows), table_count),
                walk_ins=sum(1 for b in rows if b.is_walk_in),
                average_spend_per_guest=round2(safe_divide(revenue, guests)),
                check_in_rate=round2(
                    safe_divide(sum(1 for b in rows if b.checked_in_at), len(rows)) * 100
                ),
                average_party_size=round2(safe_divide(guests, len(rows))),
            )
        )
    events.sort(key=lambda e: e.revenue, reverse=True)
    return events


def top_packages(confirmed: list[BookingRecord], limit: int = 5) -> list[PackagePerformance]:
    totals: dict[str, PackagePerformance] = {}
    for booking in confirmed:
        if not booking.drinks_package:
            continue
        package = totals.setdefault(
            booking.drinks_package, PackagePerformance(package_name=booking.drinks_package)
        )
        package.bookings += 1
        package.revenue = round2(package.revenue + booking.total_amount)
    return sorted(totals.values(), key=lambda p: p.revenue, reverse=True)[:limit]


def top_customers(confirmed: list[BookingRecord], limit: int = 10) -> list[TopCustomer]:
    totals: dict[str, TopCustomer] = {}
    for booking in confirmed:
        if booking.customer_id is None:
            continue
        customer = totals.setdefault(
            booking.customer_id,
            TopCustomer(
                customer_id=booking.customer_id,
                name=booking.customer_name or f"Customer {booking.customer_id[-6:]}",
            ),
        )
        customer.bookings += 1
        customer.spend = round2(customer.spend + booking.total_amount)
    return sorted(totals.values(), key=lambda c: c.spend, reverse=True)[:limit]


def average_lead_time_hours(bookings: list[BookingRecord], tz: ZoneInfo) -> float:
    """Mean hours between a booking being made and local midnight of its date."""
    lead_times = []
    for booking in bookings:
        if booking.created_at is None:
            continue
        created = booking.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        booked_for = datetime.combine(booking.booking_date, datetime.min.time(), tzinfo=tz)
        lead_times.append((booked_for - created).total_seconds() / 3600)
    return round2(safe_divide(sum(lead_times), len(lead_times)))
