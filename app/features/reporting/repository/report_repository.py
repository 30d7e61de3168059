"""
Repositories for report generation history, templates, recipients,
subscriptions and delivery attempts.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, execute_returning, fetch_all, fetch_one
from app.features.reporting.domain.models import (
    DeliveryChannel,
    DeliveryStatus,
    ReportGenerationRecord,
    to_jsonable,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ReportHistoryRepository:
    """Append-only report_generation_history plus template lookup."""

    async def insert(self, record: ReportGenerationRecord) -> str | None:
        row = await execute_returning(
            """
            INSERT INTO report_generation_history (
                template_id, report_type, generated_at, generation_time_ms,
                data_period_start, data_period_end, output_format, file_path, file_url,
                records_processed, sections_generated, report_summary, key_metrics,
                is_successful
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                record.template_id,
                record.report_type.value,
                record.generated_at,
                record.generation_time_ms,
                record.data_period_start,
                record.data_period_end,
                record.output_format.value,
                record.file_path,
                record.file_url,
                record.records_processed,
                record.sections_generated,
                Jsonb(to_jsonable(asdict(record.report_summary))),
                Jsonb(to_jsonable(record.key_metrics)),
                record.is_successful,
            ),
        )
        return str(row["id"]) if row else None

    async def find_system_template_id(self, name: str) -> str | None:
        row = await fetch_one(
            """
            SELECT id
            FROM report_templates
            WHERE name = %s AND is_system_template = true
            LIMIT 1
            """,
            (name,),
        )
        return str(row["id"]) if row else None

    async def delete_successful_before(self, cutoff: datetime) -> int:
        return await execute_query(
            """
            DELETE FROM report_generation_history
            WHERE generated_at < %s AND is_successful = true
            """,
            (cutoff,),
        )


_RECIPIENT_COLUMNS = (
    "id, user_id, email, name, phone, role, timezone, language_code, preferred_channels, "
    "preferred_format, is_active, email_verified, bounced_count, created_at, updated_at"
)
_UPDATABLE_RECIPIENT_COLUMNS = {
    "user_id",
    "email",
    "name",
    "phone",
    "role",
    "timezone",
    "language_code",
    "preferred_channels",
    "preferred_format",
    "is_active",
}
_UPDATABLE_SUBSCRIPTION_COLUMNS = {
    "delivery_channels",
    "delivery_format",
    "custom_schedule",
    "filter_config",
    "is_active",
    "paused_until",
    "next_delivery_at",
}


def _db_value(value: Any) -> Any:
    if isinstance(value, list):
        return [getattr(item, "value", item) for item in value]
    return getattr(value, "value", value)


def _assignments(updates: dict[str, Any], json_columns: set[str]) -> tuple[str, list[Any]]:
    columns = ", ".join(f"{column} = %s" for column in updates)
    values = [
        Jsonb(to_jsonable(value)) if column in json_columns else _db_value(value)
        for column, value in updates.items()
    ]
    return columns, values


def _where(filters: dict[str, Any]) -> tuple[str, tuple]:
    """AND together equality filters, skipping None values."""
    active = {column: value for column, value in filters.items() if value is not None}
    if not active:
        return "", ()
    clause = " AND ".join(f"{column} = %s" for column in active)
    return f"WHERE {clause}", tuple(active.values())


class RecipientRepository:
    """report_recipients: who reports can be sent to."""

    async def get_deliverable(self, recipient_ids: list[str]) -> list[dict[str, Any]]:
        """Active recipients with a verified email address."""
        if not recipient_ids:
            return []
        return await fetch_all(
            """
            SELECT id, email, name
            FROM report_recipients
            WHERE id = ANY(%s)
              AND is_active = true
              AND email_verified = true
            """,
            (list(recipient_ids),),
        )

    async def create(self, fields: dict[str, Any], verification_token: str) -> dict[str, Any] | None:
        return await execute_returning(
            f"""
            INSERT INTO report_recipients (
                user_id, email, name, phone, role, timezone, language_code,
                preferred_channels, preferred_format, is_active, email_verified,
                bounced_count, verification_token
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, true, false, 0, %s)
            RETURNING {_RECIPIENT_COLUMNS}
            """,
            (
                fields.get("user_id"),
                fields["email"],
                fields.get("name"),
                fields.get("phone"),
                fields["role"],
                fields["timezone"],
                fields["language_code"],
                _db_value(fields["preferred_channels"]),
                _db_value(fields["preferred_format"]),
                verification_token,
            ),
        )

    async def get(self, recipient_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            f"SELECT {_RECIPIENT_COLUMNS} FROM report_recipients WHERE id = %s", (recipient_id,)
        )

    async def get_by_email(self, email: str) -> dict[str, Any] | None:
        return await fetch_one(
            f"SELECT {_RECIPIENT_COLUMNS} FROM report_recipients WHERE email = %s", (email,)
        )

    async def list_page(
        self, filters: dict[str, Any], limit: int, offset: int
    ) -> tuple[list[dict[str, Any]], int]:
        """Newest first, with the total row count for the same filters."""
        where, params = _where(filters)
        rows = await fetch_all(
            f"""
            SELECT {_RECIPIENT_COLUMNS}
            FROM report_recipients
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        total = await fetch_one(f"SELECT COUNT(*) AS count FROM report_recipients {where}", params)
        return rows, int(total["count"]) if total else 0

    async def update(self, recipient_id: str, updates: dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k in _UPDATABLE_RECIPIENT_COLUMNS}
        if not fields:
            return False
        columns, values = _assignments(fields, json_columns=set())
        count = await execute_query(
            f"UPDATE report_recipients SET {columns}, updated_at = NOW() WHERE id = %s",
            (*values, recipient_id),
        )
        return count > 0

    async def verify_email(self, recipient_id: str, verification_token: str) -> bool:
        count = await execute_query(
            """
            UPDATE report_recipients
            SET email_verified = true, verification_token = NULL, updated_at = NOW()
            WHERE id = %s AND verification_token = %s
            """,
            (recipient_id, verification_token),
        )
        return count > 0

    async def increment_bounces(self, recipient_id: str) -> int | None:
        row = await execute_returning(
            """
            UPDATE report_recipients
            SET bounced_count = bounced_count + 1, updated_at = NOW()
            WHERE id = %s
            RETURNING bounced_count
            """,
            (recipient_id,),
        )
        return int(row["bounced_count"]) if row else None

    async def delete_inactive_before(self, cutoff: datetime) -> int:
        return await execute_query(
            "DELETE FROM report_recipients WHERE is_active = false AND updated_at < %s",
            (cutoff,),
        )

    async def statistics(self) -> dict[str, Any]:
        rows = await fetch_all(
            """
            SELECT role,
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE is_active) AS active,
                   COUNT(*) FILTER (WHERE email_verified) AS verified
            FROM report_recipients
            GROUP BY role
            """
        )
        return {
            "total": sum(int(r["total"]) for r in rows),
            "active": sum(int(r["active"]) for r in rows),
            "verified": sum(int(r["verified"]) for r in rows),
            "by_role": {r["role"]: int(r["total"]) for r in rows},
        }


class SubscriptionRepository:
    """report_subscriptions: which templates each recipient receives, and when."""

    async def get_template(self, template_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT id, name, report_type, is_active, template_config->>'schedule' AS schedule
            FROM report_templates
            WHERE id = %s
            """,
            (template_id,),
        )

    async def get(self, subscription_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT s.*, r.email AS recipient_email, t.name AS template_name,
                   t.report_type AS report_type
            FROM report_subscriptions s
            JOIN report_recipients r ON r.id = s.recipient_id
            LEFT JOIN report_templates t ON t.id = s.template_id
            WHERE s.id = %s
            """,
            (subscription_id,),
        )

    async def find(self, recipient_id: str, template_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT id, is_active
            FROM report_subscriptions
            WHERE recipient_id = %s AND template_id = %s
            """,
            (recipient_id, template_id),
        )

    async def create(self, fields: dict[str, Any]) -> str | None:
        row = await execute_returning(
            """
            INSERT INTO report_subscriptions (
                recipient_id, template_id, delivery_channels, delivery_format,
                custom_schedule, filter_config, custom_parameters, is_active, next_delivery_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, true, %s)
            RETURNING id
            """,
            (
                fields["recipient_id"],
                fields["template_id"],
                _db_value(fields["delivery_channels"]),
                _db_value(fields["delivery_format"]),
                fields.get("custom_schedule"),
                Jsonb(fields.get("filter_config") or {}),
                Jsonb({}),
                fields.get("next_delivery_at"),
            ),
        )
        return str(row["id"]) if row else None

    async def update(self, subscription_id: str, updates: dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k in _UPDATABLE_SUBSCRIPTION_COLUMNS}
        if not fields:
            return False
        columns, values = _assignments(fields, json_columns={"filter_config"})
        count = await execute_query(
            f"UPDATE report_subscriptions SET {columns}, updated_at = NOW() WHERE id = %s",
            (*values, subscription_id),
        )
        return count > 0

    async def deactivate_for_recipient(self, recipient_id: str, template_id: str | None = None) -> int:
        query = """
            UPDATE report_subscriptions
            SET is_active = false, updated_at = NOW()
            WHERE recipient_id = %s
        """
        params: tuple = (recipient_id,)
        if template_id:
            query += " AND template_id = %s"
            params = (recipient_id, template_id)
        return await execute_query(query, params)

    async def list_page(
        self, filters: dict[str, Any], limit: int, offset: int
    ) -> tuple[list[dict[str, Any]], int]:
        where, params = _where({f"s.{column}": value for column, value in filters.items()})
        rows = await fetch_all(
            f"""
            SELECT s.*, r.email AS recipient_email, r.name AS recipient_name,
                   t.name AS template_name, t.report_type AS report_type
            FROM report_subscriptions s
            JOIN report_recipients r ON r.id = s.recipient_id
            LEFT JOIN report_templates t ON t.id = s.template_id
            {where}
            ORDER BY s.created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        total = await fetch_one(f"SELECT COUNT(*) AS count FROM report_subscriptions s {where}", params)
        return rows, int(total["count"]) if total else 0

    async def due_for_delivery(self, now: datetime) -> list[dict[str, Any]]:
        """Active, unpaused subscriptions of verified active recipients whose delivery time has passed."""
        return await fetch_all(
            """
            SELECT s.*, r.email AS recipient_email, r.timezone AS recipient_timezone,
                   t.report_type AS report_type, t.template_config->>'schedule' AS template_schedule
            FROM report_subscriptions s
            JOIN report_recipients r ON r.id = s.recipient_id
            LEFT JOIN report_templates t ON t.id = s.template_id
            WHERE s.is_active = true
              AND (s.paused_until IS NULL OR s.paused_until < %s)
              AND s.next_delivery_at < %s
              AND r.is_active = true
              AND r.email_verified = true
            ORDER BY s.next_delivery_at
            """,
            (now, now),
        )

    async def mark_delivered(self, subscription_id: str, next_delivery_at: datetime | None) -> bool:
        count = await execute_query(
            """
            UPDATE report_subscriptions
            SET next_delivery_at = %s, last_delivered_at = NOW(), updated_at = NOW()
            WHERE id = %s
            """,
            (next_delivery_at, subscription_id),
        )
        return count > 0

    async def statistics(self) -> dict[str, Any]:
        rows = await fetch_all(
            "SELECT is_active, delivery_format, delivery_channels FROM report_subscriptions"
        )
        by_format: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        for row in rows:
            if row["delivery_format"]:
                by_format[row["delivery_format"]] = by_format.get(row["delivery_format"], 0) + 1
            for channel in row["delivery_channels"] or []:
                by_channel[channel] = by_channel.get(channel, 0) + 1
        return {
            "total": len(rows),
            "active": sum(1 for row in rows if row["is_active"]),
            "by_format": by_format,
            "by_channel": by_channel,
        }


class DeliveryRepository:
    """report_delivery_history: one row per recipient per send attempt."""

    async def create(
        self,
        generation_id: str,
        recipient_id: str,
        channel: DeliveryChannel,
        address: str,
    ) -> str | None:
        row = await execute_returning(
            """
            INSERT INTO report_delivery_history (
                generation_id, recipient_id, delivery_channel, delivery_status, delivery_address
            )
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (generation_id, recipient_id, channel.value, DeliveryStatus.PENDING.value, address),
        )
        return str(row["id"]) if row else None

    async def mark_delivered(self, delivery_id: str, message_id: str | None) -> None:
        await execute_query(
            """
            UPDATE report_delivery_history
            SET delivery_status = %s, sent_at = NOW(), delivered_at = NOW(), message_id = %s
            WHERE id = %s
            """,
            (DeliveryStatus.DELIVERED.value, message_id, delivery_id),
        )

    async def mark_failed(self, delivery_id: str, reason: str) -> None:
        await execute_query(
            """
            UPDATE report_delivery_history
            SET delivery_status = %s, failure_reason = %s, retry_count = retry_count + 1
            WHERE id = %s
            """,
            (DeliveryStatus.FAILED.value, reason[:500], delivery_id),
        )
