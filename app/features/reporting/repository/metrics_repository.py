"""
Metrics source for the report generators and the aggregation job.

Reads pre-computed rollups (report_metrics_cache, daily_aggregations,
weekly_summary_view, event_performance_analytics) and raw bookings for the
live fallback. The only writes are to the rollup tables owned by this
service; booking and payment data is read-only.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class BookingRecord:
    id: str
    booking_date: date
    status: str
    party_size: int
    total_amount: float
    deposit_amount: float
    refund_amount: float
    table_id: str | None
    is_walk_in: bool
    is_vip: bool
    special_occasion: str | None
    special_requests: Any
    drinks_package: str | None
    event_id: str | None
    event_name: str | None
    customer_id: str | None
    customer_name: str | None
    customer_created_at: datetime | None
    created_at: datetime | None
    checked_in_at: datetime | None


def _num(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def _booking_from_row(row: dict[str, Any]) -> BookingRecord:
    return BookingRecord(
        id=str(row["id"]),
        booking_date=row["booking_date"],
        status=row.get("status") or "pending",
        party_size=int(row.get("party_size") or 0),
        total_amount=_num(row.get("total_amount")),
        deposit_amount=_num(row.get("deposit_amount")),
        refund_amount=_num(row.get("refund_amount")),
        table_id=str(row["table_id"]) if row.get("table_id") is not None else None,
        is_walk_in=bool(row.get("is_walk_in")),
        is_vip=bool(row.get("is_vip")),
        special_occasion=row.get("special_occasion"),
        special_requests=row.get("special_requests"),
        drinks_package=row.get("drinks_package"),
        event_id=str(row["event_id"]) if row.get("event_id") is not None else None,
        event_name=row.get("event_name"),
        customer_id=str(row["customer_id"]) if row.get("customer_id") is not None else None,
        customer_name=row.get("customer_name"),
        customer_created_at=row.get("customer_created_at"),
        created_at=row.get("created_at"),
        checked_in_at=row.get("checked_in_at"),
    )


class MetricsRepository:
    """Raw SQL access to rollups and bookings."""

    # ------------------------------------------------------------------
    # report_metrics_cache
    # ------------------------------------------------------------------

    async def get_cached_metric(
        self, metric_key: str, period_start: datetime, period_end: datetime
    ) -> dict[str, Any] | None:
        row = await fetch_one(
            """
            SELECT metric_value
            FROM report_metrics_cache
            WHERE metric_key = %s
              AND period_start = %s
              AND period_end = %s
              AND expires_at > NOW()
            """,
            (metric_key, period_start, period_end),
        )
        return row["metric_value"] if row else None

    async def upsert_cached_metric(
        self,
        metric_key: str,
        period_start: datetime,
        period_end: datetime,
        value: dict[str, Any],
        expires_at: datetime,
    ) -> None:
        await execute_query(
            """
            INSERT INTO report_metrics_cache (
                metric_key, period_start, period_end, metric_value, calculated_at, expires_at
            )
            VALUES (%s, %s, %s, %s, NOW(), %s)
            ON CONFLICT (metric_key, period_start, period_end) DO UPDATE
            SET metric_value = EXCLUDED.metric_value,
                calculated_at = EXCLUDED.calculated_at,
                expires_at = EXCLUDED.expires_at
            """,
            (metric_key, period_start, period_end, Jsonb(value), expires_at),
        )

    async def delete_expired_cache(self, cutoff: datetime) -> int:
        return await execute_query(
            "DELETE FROM report_metrics_cache WHERE expires_at < %s",
            (cutoff,),
        )

    # ------------------------------------------------------------------
    # daily_aggregations / weekly_summary_view
    # ------------------------------------------------------------------

    async def get_daily_aggregation(self, day: date) -> dict[str, Any] | None:
        return await fetch_one(
            "SELECT * FROM daily_aggregations WHERE aggregation_date = %s",
            (day,),
        )

    async def get_daily_aggregations(self, start: date, end: date) -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT *
            FROM daily_aggregations
            WHERE aggregation_date BETWEEN %s AND %s
            ORDER BY aggregation_date ASC
            """,
            (start, end),
        )

    async def upsert_daily_aggregation(self, day: date, metrics: dict[str, Any]) -> None:
        columns = ["aggregation_date", *metrics.keys()]
        placeholders = ", ".join(["%s"] * len(columns))
        updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in metrics)
        query = f"""
            INSERT INTO daily_aggregations ({", ".join(columns)}, updated_at)
            VALUES ({placeholders}, NOW())
            ON CONFLICT (aggregation_date) DO UPDATE
            SET {updates}, updated_at = NOW()
        """
        await execute_query(query, (day, *metrics.values()))

    async def get_weekly_summary(self, week_start: date) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT week_start, total_bookings, total_guests, gross_revenue, avg_occupancy_rate
            FROM weekly_summary_view
            WHERE week_start::date = %s
            """,
            (week_start,),
        )

    async def get_event_performance(self, start: date, end: date) -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT event_id, event_name, event_date, total_bookings, total_guests,
                   total_revenue, table_occupancy_rate, walk_ins_count,
                   average_spend_per_guest, check_in_rate, no_show_rate, average_party_size
            FROM event_performance_analytics
            WHERE event_date BETWEEN %s AND %s
            ORDER BY total_revenue DESC
            """,
            (start, end),
        )

    # ------------------------------------------------------------------
    # Live transactional data
    # ------------------------------------------------------------------

    async def get_bookings(
        self, start: date, end: date, status: str | None = None
    ) -> list[BookingRecord]:
        """Bookings with booking_date in [start, end], joined to customer and event."""
        query = """
            SELECT
                b.id,
                b.booking_date,
                b.status,
                b.party_size,
                b.total_amount,
                b.deposit_amount,
                COALESCE(r.refund_amount, 0) AS refund_amount,
                b.table_id,
                b.is_walk_in,
                b.is_vip,
                b.special_occasion,
                b.special_requests,
                b.drinks_package,
                b.event_id,
                e.name AS event_name,
                b.customer_id,
                NULLIF(TRIM(CONCAT(c.first_name, ' ', c.last_name)), '') AS customer_name,
                c.created_at AS customer_created_at,
                b.created_at,
                b.checked_in_at
            FROM bookings b
            LEFT JOIN customers c ON c.id = b.customer_id
            LEFT JOIN events e ON e.id = b.event_id
            LEFT JOIN (
                SELECT booking_id, SUM(amount) AS refund_amount
                FROM payments
                WHERE payment_type = 'refund'
                GROUP BY booking_id
            ) r ON r.booking_id = b.id
            WHERE b.booking_date BETWEEN %s AND %s
        """
        params: tuple = (start, end)
        if status is not None:
            query += " AND b.status = %s"
            params = (start, end, status)

        rows = await fetch_all(query, params)
        return [_booking_from_row(row) for row in rows]

    async def get_waitlist_count(self, start: date, end: date) -> int:
        row = await fetch_one(
            """
            SELECT COUNT(*) AS waitlist_count
            FROM waitlist_entries
            WHERE event_date BETWEEN %s AND %s
            """,
            (start, end),
        )
        return int(row["waitlist_count"]) if row else 0

    async def count_new_customers(self, start: datetime, end: datetime) -> int:
        row = await fetch_one(
            "SELECT COUNT(*) AS new_customers FROM customers WHERE created_at >= %s AND created_at < %s",
            (start, end),
        )
        return int(row["new_customers"]) if row else 0
