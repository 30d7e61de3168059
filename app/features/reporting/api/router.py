"""
Reporting routes.

Operational endpoints over the job scheduler and monitor: queue status,
per-job control, on-demand report generation, alert rules, and recipient
and subscription management. The
container is attached to app.state by the application lifespan.
"""

from dataclasses import asdict
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from app.features.reporting.container import ReportingContainer
from app.features.reporting.domain.errors import (
    ConflictError,
    InfrastructureError,
    JobValidationError,
    NotFoundError,
)
from app.features.reporting.domain.models import (
    AlertType,
    DeliveryChannel,
    JobPriority,
    JobType,
    ReportFormat,
    to_jsonable,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/reporting", tags=["reporting"])


def get_reporting(request: Request) -> ReportingContainer:
    container = getattr(request.app.state, "reporting", None)
    if container is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Reporting not initialized")
    return container


class GenerateReportRequest(BaseModel):
    format: ReportFormat = ReportFormat.PDF
    recipient_ids: list[str] = Field(default_factory=list)
    template_id: str | None = None
    delay_ms: int = Field(default=0, ge=0)
    priority: JobPriority = JobPriority.HIGH


class GenerateDailyRequest(GenerateReportRequest):
    report_date: date | None = None


class GenerateWeeklyRequest(GenerateReportRequest):
    week_start: date | None = None


class CreateAlertRequest(BaseModel):
    job_id: str
    alert_type: AlertType
    notification_channels: list[DeliveryChannel] = Field(min_length=1)
    threshold_value: float | None = None
    recipient_emails: list[str] = Field(default_factory=list)
    webhook_url: str | None = None
    enabled: bool = True


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@router.get("/jobs/status")
async def get_jobs_status(reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    """Queue counts plus the 24h execution overview."""
    return {
        "queue": await reporting.scheduler.get_queue_stats(),
        "system": await reporting.monitor.get_system_performance_overview(),
    }


@router.get("/jobs/history")
async def get_job_history(
    limit: int = Query(default=50, ge=1, le=200),
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    return {"jobs": await reporting.scheduler.get_job_history(limit)}


@router.get("/jobs/active")
async def get_active_jobs(reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    return {"jobs": await reporting.scheduler.get_active_jobs()}


@router.get("/jobs/waiting")
async def get_waiting_jobs(reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    return {"jobs": await reporting.scheduler.get_waiting_jobs()}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    job_status = await reporting.scheduler.get_job_status(job_id)
    if job_status is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {
        "job_id": job_id,
        "status": job_status.value,
        "performance": await reporting.monitor.get_job_performance_metrics(job_id),
    }


@router.get("/jobs/{job_id}/logs")
async def get_job_logs(
    job_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    logs = await reporting.monitor.get_job_execution_logs(job_id, limit, offset)
    return {"job_id": job_id, "logs": logs}


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/pause")
async def pause_job(job_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    if not await reporting.scheduler.pause_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} cannot be paused")
    return {"job_id": job_id, "status": "paused"}


@router.post("/jobs/{job_id}/resume")
async def resume_job(job_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    if not await reporting.scheduler.resume_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} cannot be resumed")
    return {"job_id": job_id, "status": "resumed"}


@router.delete("/jobs/{job_id}")
async def remove_job(job_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    removed = await reporting.scheduler.remove_job(job_id)
    return {"job_id": job_id, "removed": removed}


# ---------------------------------------------------------------------------
# On-demand generation
# ---------------------------------------------------------------------------


def _report_payload(body: GenerateReportRequest, extra: dict[str, Any]) -> dict[str, Any]:
    payload = {
        "format": body.format.value,
        "recipient_ids": body.recipient_ids,
        "template_id": body.template_id,
    }
    payload.update({key: value.isoformat() for key, value in extra.items() if value is not None})
    return payload


async def _enqueue(
    reporting: ReportingContainer, name: str, job_type: JobType, body: GenerateReportRequest, payload: dict
) -> dict:
    try:
        job_id = await reporting.scheduler.schedule_one_time_job(
            name, job_type, payload, body.delay_ms, priority=body.priority
        )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=e.message) from e
    return {"job_id": job_id, "status": "pending"}


@router.post("/generate/daily", status_code=status.HTTP_202_ACCEPTED)
async def generate_daily(
    body: GenerateDailyRequest, reporting: ReportingContainer = Depends(get_reporting)
) -> dict:
    payload = _report_payload(body, {"report_date": body.report_date})
    return await _enqueue(reporting, "manual-daily-summary", JobType.DAILY_SUMMARY, body, payload)


@router.post("/generate/weekly", status_code=status.HTTP_202_ACCEPTED)
async def generate_weekly(
    body: GenerateWeeklyRequest, reporting: ReportingContainer = Depends(get_reporting)
) -> dict:
    payload = _report_payload(body, {"week_start": body.week_start})
    return await _enqueue(reporting, "manual-weekly-summary", JobType.WEEKLY_SUMMARY, body, payload)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@router.post("/alerts", status_code=status.HTTP_201_CREATED)
async def create_alert(
    body: CreateAlertRequest, reporting: ReportingContainer = Depends(get_reporting)
) -> dict:
    try:
        alert = await reporting.monitor.create_job_alert(
            body.job_id,
            body.alert_type,
            body.notification_channels,
            threshold_value=body.threshold_value,
            recipient_emails=body.recipient_emails,
            webhook_url=body.webhook_url,
            enabled=body.enabled,
        )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=e.message) from e

    if alert is None:
        raise HTTPException(status_code=500, detail="Alert could not be stored")
    return to_jsonable(asdict(alert))


# ---------------------------------------------------------------------------
# Recipients and subscriptions
# ---------------------------------------------------------------------------


class CreateRecipientRequest(BaseModel):
    email: str
    user_id: str | None = None
    name: str | None = None
    phone: str | None = None
    role: str | None = None
    timezone: str | None = None
    language_code: str | None = None
    preferred_channels: list[DeliveryChannel] | None = None
    preferred_format: ReportFormat | None = None


class UpdateRecipientRequest(BaseModel):
    email: str | None = None
    user_id: str | None = None
    name: str | None = None
    phone: str | None = None
    role: str | None = None
    timezone: str | None = None
    language_code: str | None = None
    preferred_channels: list[DeliveryChannel] | None = None
    preferred_format: ReportFormat | None = None
    is_active: bool | None = None


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


class SubscribeRequest(BaseModel):
    recipient_email: str
    template_id: str
    delivery_format: ReportFormat
    delivery_channels: list[DeliveryChannel] = Field(min_length=1)
    custom_schedule: str | None = None
    filters: dict[str, Any] = Field(default_factory=dict)


class UpdateSubscriptionRequest(BaseModel):
    delivery_format: ReportFormat | None = None
    delivery_channels: list[DeliveryChannel] | None = Field(default=None, min_length=1)
    custom_schedule: str | None = None
    filters: dict[str, Any] | None = None
    pause_until: datetime | None = None


def _http_error(e: JobValidationError | InfrastructureError) -> HTTPException:
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, InfrastructureError):
        return HTTPException(status_code=500, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


@router.post("/recipients", status_code=status.HTTP_201_CREATED)
async def create_recipient(
    body: CreateRecipientRequest, reporting: ReportingContainer = Depends(get_reporting)
) -> dict:
    try:
        recipient = await reporting.recipients.create_recipient(
            body.email, **body.model_dump(exclude={"email"})
        )
    except (JobValidationError, InfrastructureError) as e:
        raise _http_error(e) from e
    return {
        "recipient": to_jsonable(recipient),
        "message": "Recipient created. Verification email sent.",
    }


@router.get("/recipients")
async def list_recipients(
    role: str | None = None,
    active: bool | None = None,
    verified: bool | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    result = await reporting.recipients.list_recipients(
        role=role, is_active=active, email_verified=verified, page=page, page_size=page_size
    )
    return to_jsonable(result)


@router.get("/recipients/{recipient_id}")
async def get_recipient(recipient_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    recipient = await reporting.recipients.get_recipient(recipient_id)
    if recipient is None:
        raise HTTPException(status_code=404, detail=f"Recipient {recipient_id} not found")
    return {"recipient": to_jsonable(recipient)}


@router.put("/recipients/{recipient_id}")
async def update_recipient(
    recipient_id: str,
    body: UpdateRecipientRequest,
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    try:
        recipient = await reporting.recipients.update_recipient(
            recipient_id, body.model_dump(exclude_unset=True)
        )
    except JobValidationError as e:
        raise _http_error(e) from e
    return {"recipient": to_jsonable(recipient)}


@router.delete("/recipients/{recipient_id}")
async def deactivate_recipient(
    recipient_id: str, reporting: ReportingContainer = Depends(get_reporting)
) -> dict:
    if not await reporting.recipients.deactivate_recipient(recipient_id):
        raise HTTPException(status_code=404, detail=f"Recipient {recipient_id} not found")
    return {"recipient_id": recipient_id, "deactivated": True}


@router.post("/recipients/{recipient_id}/verify")
async def verify_recipient_email(
    recipient_id: str,
    body: VerifyEmailRequest,
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    if not await reporting.recipients.verify_email(recipient_id, body.token):
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")
    return {"recipient_id": recipient_id, "email_verified": True}


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def subscribe(body: SubscribeRequest, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    try:
        result = await reporting.recipients.subscribe(
            body.recipient_email,
            body.template_id,
            body.delivery_format,
            body.delivery_channels,
            custom_schedule=body.custom_schedule,
            filters=body.filters,
        )
    except (JobValidationError, InfrastructureError) as e:
        raise _http_error(e) from e
    return to_jsonable(asdict(result))


@router.get("/subscriptions")
async def list_subscriptions(
    recipient_id: str | None = None,
    email: str | None = None,
    template_id: str | None = None,
    active: bool | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    try:
        result = await reporting.recipients.list_subscriptions(
            recipient_id=recipient_id,
            recipient_email=email,
            template_id=template_id,
            is_active=active,
            page=page,
            page_size=page_size,
        )
    except JobValidationError as e:
        raise _http_error(e) from e
    return to_jsonable(result)


@router.put("/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    body: UpdateSubscriptionRequest,
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    fields = body.model_dump(exclude_unset=True)
    # An explicit null pause_until resumes the subscription
    resume = "pause_until" in fields and fields["pause_until"] is None
    pause_until = fields.pop("pause_until", None)
    if "filters" in fields:
        fields["filter_config"] = fields.pop("filters")
    try:
        subscription = await reporting.recipients.update_subscription(
            subscription_id, fields, pause_until=pause_until, resume=resume
        )
    except JobValidationError as e:
        raise _http_error(e) from e
    return {"subscription": to_jsonable(subscription)}


@router.delete("/subscriptions/{subscription_id}")
async def unsubscribe(subscription_id: str, reporting: ReportingContainer = Depends(get_reporting)) -> dict:
    if not await reporting.recipients.unsubscribe(subscription_id):
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    return {"subscription_id": subscription_id, "unsubscribed": True}


@router.delete("/subscriptions")
async def unsubscribe_by_email(
    email: str,
    template_id: str | None = None,
    reporting: ReportingContainer = Depends(get_reporting),
) -> dict:
    try:
        unsubscribed = await reporting.recipients.unsubscribe_by_email(email, template_id)
    except JobValidationError as e:
        raise _http_error(e) from e
    if not unsubscribed:
        raise HTTPException(status_code=404, detail="No recipient with that email")
    return {"email": email.strip().lower(), "template_id": template_id, "unsubscribed": True}
