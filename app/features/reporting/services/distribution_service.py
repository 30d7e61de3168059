"""
Report and alert distribution.

Sends generated reports and job alerts by email through the Resend HTTP API
and posts alert webhooks. Each report email is tracked in
report_delivery_history (pending -> delivered | failed).
"""

import asyncio
import html
import json
from datetime import UTC, datetime
from typing import Any

import httpx

from app.features.reporting.domain.models import (
    DailySummaryReportData,
    DeliveryChannel,
    WeeklySummaryReportData,
)
from app.features.reporting.repository.report_repository import (
    DeliveryRepository,
    RecipientRepository,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15.0
WEBHOOK_USER_AGENT = "BackroomLeeds-JobMonitor/1.0"
SUPPORT_EMAIL = "reports@backroomleeds.co.uk"


class DistributionError(Exception):
    """Raised when an outbound email or webhook is rejected."""


def _money(value: float) -> str:
    return f"£{value:,.2f}"


def _signed(value: float) -> str:
    return f"+{value}" if value > 0 else f"{value}"


def build_webhook_body(alert_data: dict[str, Any], timestamp: datetime | None = None) -> bytes:
    """Compact JSON body: {"type":"job_alert","data":{...},"timestamp":"..."}."""
    stamp = (timestamp or datetime.now(UTC)).isoformat()
    body = {"type": "job_alert", "data": alert_data, "timestamp": stamp}
    return json.dumps(body, separators=(",", ":"), default=str).encode()


def daily_report_text(report: DailySummaryReportData) -> str:
    day = report.date.strftime("%d/%m/%Y")
    lines = [
        "THE BACKROOM LEEDS - DAILY SUMMARY REPORT",
        day,
        "=" * 50,
        "",
        "OVERVIEW",
        f"- Total Bookings: {report.overview.total_bookings}",
        f"- Total Revenue: {_money(report.revenue.gross)}",
        f"- Total Guests: {report.overview.total_guests}",
        f"- Tables Occupied: {report.overview.tables_occupied}",
        f"- Occupancy Rate: {report.overview.occupancy_rate:.1f}%",
        "",
        "BOOKINGS",
        f"- Confirmed: {report.bookings.confirmed}",
        f"- Cancelled: {report.bookings.cancelled}",
        f"- No Shows: {report.bookings.no_shows}",
        f"- Walk-ins: {report.bookings.walk_ins}",
        f"- Waitlist: {report.bookings.waitlist}",
        f"- Avg Party Size: {report.bookings.average_party_size:.1f}",
        "",
        "REVENUE",
        f"- Gross: {_money(report.revenue.gross)}",
        f"- Net: {_money(report.revenue.net)}",
        f"- Deposits: {_money(report.revenue.deposits)}",
        f"- Refunds: {_money(report.revenue.refunds)}",
        f"- Per Guest: {_money(report.revenue.per_guest)}",
        f"- Per Table: {_money(report.revenue.per_table)}",
        "",
        "EVENTS",
    ]
    lines += [
        f"- {e.event_name}: {e.attendance} guests, {_money(e.revenue)} revenue, "
        f"{e.occupancy_rate:.1f}% occupancy"
        for e in report.events
    ]
    lines += ["", "TOP PACKAGES"]
    lines += [
        f"- {p.package_name}: {p.bookings} bookings, {_money(p.revenue)}"
        for p in report.top_packages
    ]
    lines += _advice_lines(report.recommendations, report.alerts)
    lines += ["", f"Generated automatically. Questions: {SUPPORT_EMAIL}"]
    return "\n".join(lines)


def weekly_report_text(report: WeeklySummaryReportData) -> str:
    overview = report.overview
    change = overview.vs_last_week
    lines = [
        "THE BACKROOM LEEDS - WEEKLY SUMMARY REPORT",
        f"{report.week_start.strftime('%d/%m/%Y')} to {report.week_end.strftime('%d/%m/%Y')}",
        "=" * 60,
        "",
        "WEEKLY OVERVIEW",
        f"- Total Bookings: {overview.total_bookings} ({_signed(change.bookings_change)}% vs last week)",
        f"- Total Revenue: {_money(overview.total_revenue)} ({_signed(change.revenue_change)}% vs last week)",
        f"- Total Guests: {overview.total_guests} ({_signed(change.guests_change)}% vs last week)",
        f"- Avg Occupancy: {overview.average_occupancy_rate:.1f}%",
        "",
        "DAILY BREAKDOWN",
    ]
    lines += [
        f"- {d.date.strftime('%a')}: {d.bookings} bookings, {_money(d.revenue)}, "
        f"{d.guests} guests, {d.occupancy_rate:.1f}% occupancy"
        for d in report.daily_breakdown
    ]
    lines += ["", "TOP EVENTS"]
    lines += [
        f"- {e.event_name}: {e.attendance} guests, {_money(e.revenue)} revenue"
        for e in report.top_events[:3]
    ]
    lines += [
        "",
        "CUSTOMER METRICS",
        f"- New Customers: {report.customer_metrics.new_customers}",
        f"- Returning Rate: {report.customer_metrics.returning_rate:.1f}%",
        f"- Average LTV: {_money(report.customer_metrics.average_ltv)}",
        "",
        "TRENDS",
        f"- Bookings: {report.trends.booking_trend.value.upper()}",
        f"- Revenue: {report.trends.revenue_trend.value.upper()}",
        f"- Occupancy: {report.trends.occupancy_trend.value.upper()}",
    ]
    lines += _advice_lines(report.recommendations, report.alerts)
    lines += ["", f"Generated automatically. Questions: {SUPPORT_EMAIL}"]
    return "\n".join(lines)


def _advice_lines(recommendations: list[str], alerts: list[str]) -> list[str]:
    lines: list[str] = []
    if recommendations:
        lines += ["", "RECOMMENDATIONS", *[f"- {r}" for r in recommendations]]
    if alerts:
        lines += ["", "ALERTS", *[f"! {a}" for a in alerts]]
    return lines


def job_alert_text(alert_data: dict[str, Any]) -> str:
    execution = alert_data.get("executionData") or {}
    lines = [
        f"JOB ALERT - {alert_data.get('jobName')}",
        "=" * 40,
        "",
        f"Alert Type: {alert_data.get('alertType')}",
        f"Job: {alert_data.get('jobName')}",
        f"Time: {alert_data.get('timestamp')}",
        "",
        f"Description: {alert_data.get('jobDescription') or 'No description available'}",
    ]
    if execution:
        lines += [
            "",
            "Execution Details:",
            f"- Status: {execution.get('status')}",
            f"- Error: {execution.get('errorMessage') or 'N/A'}",
            f"- Execution Time: {execution.get('executionTimeMs') or 0}ms",
        ]
    lines += ["", "This is an automated alert from the reporting system."]
    return "\n".join(lines)


def _text_to_html(text: str) -> str:
    return f"<pre style=\"font-family: monospace\">{html.escape(text)}</pre>"


class EmailDistributor:
    """Sends reports and alerts over email (Resend) and webhooks."""

    def __init__(
        self,
        recipients: RecipientRepository,
        deliveries: DeliveryRepository,
        *,
        api_key: str | None,
        api_url: str,
        from_email: str,
        from_name: str,
    ):
        self.recipients = recipients
        self.deliveries = deliveries
        self.api_key = api_key
        self.api_url = api_url
        self.sender = f"{from_name} <{from_email}>"

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def schedule_daily_report_distribution(
        self, report_id: str, recipient_ids: list[str], report_data: DailySummaryReportData
    ) -> int:
        subject = (
            f"Daily Summary Report - {report_data.date.strftime('%d/%m/%Y')} | The Backroom Leeds"
        )
        return await self._distribute_report(
            report_id, recipient_ids, subject, daily_report_text(report_data)
        )

    async def schedule_weekly_report_distribution(
        self, report_id: str, recipient_ids: list[str], report_data: WeeklySummaryReportData
    ) -> int:
        subject = (
            f"Weekly Summary Report - {report_data.week_start.strftime('%d/%m/%Y')} to "
            f"{report_data.week_end.strftime('%d/%m/%Y')} | The Backroom Leeds"
        )
        return await self._distribute_report(
            report_id, recipient_ids, subject, weekly_report_text(report_data)
        )

    async def _distribute_report(
        self, report_id: str, recipient_ids: list[str], subject: str, text: str
    ) -> int:
        recipients = await self.recipients.get_deliverable(recipient_ids)
        logger.info(
            "Distributing report",
            report_id=report_id,
            requested=len(recipient_ids),
            deliverable=len(recipients),
        )

        results = await asyncio.gather(
            *(self._send_report_email(report_id, r, subject, text) for r in recipients)
        )
        return sum(1 for delivered in results if delivered)

    async def _send_report_email(
        self, report_id: str, recipient: dict[str, Any], subject: str, text: str
    ) -> bool:
        recipient_id = str(recipient["id"])
        delivery_id = await self.deliveries.create(
            report_id, recipient_id, DeliveryChannel.EMAIL, recipient["email"]
        )
        try:
            message_id = await self.send_email(recipient["email"], subject, text)
        except (DistributionError, httpx.HTTPError) as e:
            logger.error(
                "Report email delivery failed",
                report_id=report_id,
                recipient_id=recipient_id,
                error=str(e),
            )
            if delivery_id:
                await self.deliveries.mark_failed(delivery_id, str(e))
            return False

        if delivery_id:
            await self.deliveries.mark_delivered(delivery_id, message_id)
        return True

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def send_job_alert(self, recipient_emails: list[str], alert_data: dict[str, Any]) -> int:
        """Email a job alert to each address. Returns the number delivered."""
        subject = f"🚨 Job Alert: {alert_data.get('jobName')} - {alert_data.get('alertType')}"
        text = job_alert_text(alert_data)

        delivered = 0
        for email in recipient_emails:
            try:
                await self.send_email(email, subject, text)
                delivered += 1
            except (DistributionError, httpx.HTTPError) as e:
                logger.error("Job alert email failed", recipient=email, error=str(e))
        return delivered

    async def send_verification_email(self, email: str, verify_url: str) -> bool:
        """Ask a new recipient to confirm their address. Failures are logged, not raised."""
        text = (
            "You have been added as a report recipient for The Backroom Leeds.\n\n"
            f"Confirm your email address to start receiving reports:\n{verify_url}\n\n"
            "If you did not expect this email you can ignore it."
        )
        try:
            await self.send_email(email, "Confirm your email | The Backroom Leeds", text)
        except (DistributionError, httpx.HTTPError) as e:
            logger.error("Verification email failed", recipient=email, error=str(e))
            return False
        return True

    async def send_webhook_alert(self, url: str, alert_data: dict[str, Any]) -> int:
        """POST the alert body; raises DistributionError on a non-2xx response."""
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            response = await client.post(
                url,
                content=build_webhook_body(alert_data),
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": WEBHOOK_USER_AGENT,
                },
            )

        if not response.is_success:
            raise DistributionError(f"Webhook returned {response.status_code}")

        logger.info("Webhook alert delivered", status_code=response.status_code)
        return response.status_code

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def send_email(self, to: str, subject: str, text: str) -> str | None:
        if not self.api_key:
            raise DistributionError("RESEND_API_KEY is not configured")

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            response = await client.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "text": text,
                    "html": _text_to_html(text),
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )

        if not response.is_success:
            raise DistributionError(f"Email API returned {response.status_code}: {response.text[:200]}")

        return response.json().get("id")
