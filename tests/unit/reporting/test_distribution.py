import json
from datetime import UTC, date, datetime

import httpx
import pytest

from app.features.reporting.domain.models import (
    BookingBreakdown,
    CustomerSegments,
    DailySummaryReportData,
    OverviewMetrics,
    RevenueBreakdown,
)
from app.features.reporting.services.distribution_service import (
    DistributionError,
    EmailDistributor,
    build_webhook_body,
    daily_report_text,
)

API_URL = "https://api.resend.test/emails"
WEBHOOK_URL = "https://hooks.example.com/job-alerts"


@pytest.fixture
def distributor(recipients, deliveries):
    return EmailDistributor(
        recipients,
        deliveries,
        api_key="re_test",
        api_url=API_URL,
        from_email="reports@example.com",
        from_name="Reports",
    )


def sample_report() -> DailySummaryReportData:
    return DailySummaryReportData(
        date=date(2024, 3, 8),
        overview=OverviewMetrics(total_bookings=10, total_revenue=500, total_guests=40),
        bookings=BookingBreakdown(confirmed=10),
        revenue=RevenueBreakdown(gross=1500.5),
        events=[],
        customers=CustomerSegments(),
        top_packages=[],
        alerts=["Daily revenue below target threshold"],
    )


def test_webhook_body_is_compact_json():
    stamp = datetime(2024, 3, 8, 22, 0, tzinfo=UTC)

    body = build_webhook_body({"jobName": "nightly", "alertType": "failure"}, stamp)

    assert body == (
        b'{"type":"job_alert","data":{"jobName":"nightly","alertType":"failure"},'
        b'"timestamp":"2024-03-08T22:00:00+00:00"}'
    )


@pytest.mark.asyncio
async def test_webhook_alert_posts_with_headers(distributor, httpx_mock):
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=204)

    status = await distributor.send_webhook_alert(WEBHOOK_URL, {"jobName": "nightly"})

    assert status == 204
    request = httpx_mock.get_request()
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == "BackroomLeeds-JobMonitor/1.0"
    payload = json.loads(request.content)
    assert payload["type"] == "job_alert"
    assert payload["data"] == {"jobName": "nightly"}
    assert "timestamp" in payload


@pytest.mark.asyncio
async def test_webhook_alert_raises_on_error_status(distributor, httpx_mock):
    httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=502)

    with pytest.raises(DistributionError):
        await distributor.send_webhook_alert(WEBHOOK_URL, {"jobName": "nightly"})


@pytest.mark.asyncio
async def test_send_email_requires_api_key(recipients, deliveries):
    distributor = EmailDistributor(
        recipients, deliveries, api_key=None, api_url=API_URL, from_email="a@b.c", from_name="A"
    )

    with pytest.raises(DistributionError):
        await distributor.send_email("ops@example.com", "subject", "body")


@pytest.mark.asyncio
async def test_job_alert_email_counts_deliveries(distributor, httpx_mock):
    httpx_mock.add_response(url=API_URL, method="POST", json={"id": "msg-1"})
    httpx_mock.add_response(url=API_URL, method="POST", status_code=422, text="bad address")

    delivered = await distributor.send_job_alert(
        ["ops@example.com", "broken"], {"jobName": "nightly", "alertType": "failure"}
    )

    assert delivered == 1
    first = json.loads(httpx_mock.get_requests()[0].content)
    assert first["subject"] == "🚨 Job Alert: nightly - failure"
    assert first["from"] == "Reports <reports@example.com>"
    assert "JOB ALERT - nightly" in first["text"]


@pytest.mark.asyncio
async def test_report_distribution_tracks_each_delivery(distributor, recipients, deliveries, httpx_mock):
    recipients.recipients = {
        "r1": {"id": "r1", "email": "manager@example.com", "name": "Manager"},
        "r2": {"id": "r2", "email": "owner@example.com", "name": "Owner"},
    }

    def respond(request: httpx.Request) -> httpx.Response:
        to = json.loads(request.content)["to"]
        if to == ["owner@example.com"]:
            return httpx.Response(500, text="mailbox unavailable")
        return httpx.Response(200, json={"id": "msg-42"})

    httpx_mock.add_callback(respond, url=API_URL)
    httpx_mock.add_callback(respond, url=API_URL)

    delivered = await distributor.schedule_daily_report_distribution(
        "report-1", ["r1", "r2", "unknown"], sample_report()
    )

    assert delivered == 1
    by_recipient = {row["recipient_id"]: row for row in deliveries.rows.values()}
    assert by_recipient["r1"]["status"] == "delivered"
    assert by_recipient["r1"]["message_id"] == "msg-42"
    assert by_recipient["r2"]["status"] == "failed"
    assert "500" in by_recipient["r2"]["reason"]

    sent = json.loads(httpx_mock.get_requests()[0].content)
    assert sent["subject"] == "Daily Summary Report - 08/03/2024 | The Backroom Leeds"


def test_daily_report_text_lists_sections():
    text = daily_report_text(sample_report())

    assert text.startswith("THE BACKROOM LEEDS - DAILY SUMMARY REPORT\n08/03/2024")
    assert "- Total Revenue: £1,500.50" in text
    assert "! Daily revenue below target threshold" in text
    assert "RECOMMENDATIONS" not in text


@pytest.mark.asyncio
async def test_email_html_body_escapes_markup_and_quotes(distributor, httpx_mock):
    httpx_mock.add_response(url=API_URL, method="POST", json={"id": "msg-1"})

    message_id = await distributor.send_email(
        "ops@example.com", "Notes", 'Guest asked for "window" table <b>& cake</b>\'s'
    )

    assert message_id == "msg-1"
    sent = json.loads(httpx_mock.get_request().content)
    assert sent["html"] == (
        '<pre style="font-family: monospace">'
        "Guest asked for &quot;window&quot; table &lt;b&gt;&amp; cake&lt;/b&gt;&#x27;s"
        "</pre>"
    )
