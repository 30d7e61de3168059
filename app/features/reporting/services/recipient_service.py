"""
Recipient and subscription management.

Recipients are the people reports are emailed to; subscriptions bind a
recipient to a report template with their own format, channels and
optional cron schedule. New recipients start unverified and only receive
reports once they confirm their address through the emailed link.
"""

import math
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.reporting.domain.errors import (
    ConflictError,
    InfrastructureError,
    JobValidationError,
    NotFoundError,
)
from app.features.reporting.domain.models import (
    DeliveryChannel,
    ReportFormat,
    SubscriptionResult,
    SubscriptionStatus,
)
from app.features.reporting.jobs.queue import next_fire_time, validate_schedule
from app.features.reporting.repository.report_repository import (
    RecipientRepository,
    SubscriptionRepository,
)
from app.features.reporting.services.distribution_service import EmailDistributor
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_SOFT_BOUNCES = 5
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if "@" not in email:
        raise JobValidationError("Valid email address is required", details={"email": email})
    return email


def _page(rows: list[dict[str, Any]], total: int, page: int, page_size: int) -> dict[str, Any]:
    total_pages = math.ceil(total / page_size) if page_size else 0
    return {
        "items": rows,
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total_count": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_previous_page": page > 1,
        },
    }


def _check_page(page: int, page_size: int) -> int:
    if page < 1 or page_size < 1:
        raise JobValidationError("page and page_size must be positive integers")
    return min(page_size, MAX_PAGE_SIZE)


class RecipientManager:
    def __init__(
        self,
        recipients: RecipientRepository,
        subscriptions: SubscriptionRepository,
        distributor: EmailDistributor,
        *,
        public_url: str,
        default_timezone: str = "Europe/London",
    ):
        self.recipients = recipients
        self.subscriptions = subscriptions
        self.distributor = distributor
        self.public_url = public_url.rstrip("/")
        self.default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    async def create_recipient(
        self,
        email: str,
        *,
        user_id: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        role: str | None = None,
        timezone: str | None = None,
        language_code: str | None = None,
        preferred_channels: list[DeliveryChannel] | None = None,
        preferred_format: ReportFormat | None = None,
    ) -> dict[str, Any]:
        """Create an unverified recipient and email them a verification link."""
        email = normalize_email(email)
        if await self.recipients.get_by_email(email) is not None:
            raise ConflictError("Recipient with this email already exists", details={"email": email})

        token = secrets.token_urlsafe(32)
        recipient = await self.recipients.create(
            {
                "user_id": user_id,
                "email": email,
                "name": name.strip() if name else None,
                "phone": phone.strip() if phone else None,
                "role": role or "stakeholder",
                "timezone": timezone or self.default_timezone,
                "language_code": language_code or "en",
                "preferred_channels": preferred_channels or [DeliveryChannel.EMAIL],
                "preferred_format": preferred_format or ReportFormat.PDF,
            },
            token,
        )
        if recipient is None:
            raise InfrastructureError("Recipient could not be stored", details={"email": email})

        recipient_id = str(recipient["id"])
        await self.distributor.send_verification_email(email, self.verification_url(recipient_id, token))
        logger.info("Report recipient created", recipient_id=recipient_id)
        return recipient

    def verification_url(self, recipient_id: str, token: str) -> str:
        return f"{self.public_url}/reporting/recipients/{recipient_id}/verify?token={token}"

    async def verify_email(self, recipient_id: str, token: str) -> bool:
        verified = await self.recipients.verify_email(recipient_id, token)
        if verified:
            logger.info("Recipient email verified", recipient_id=recipient_id)
        return verified

    async def get_recipient(self, recipient_id: str) -> dict[str, Any] | None:
        return await self.recipients.get(recipient_id)

    async def get_recipient_by_email(self, email: str) -> dict[str, Any] | None:
        return await self.recipients.get_by_email(normalize_email(email))

    async def update_recipient(self, recipient_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        if await self.recipients.get(recipient_id) is None:
            raise NotFoundError("Recipient not found", details={"recipient_id": recipient_id})

        updates = dict(updates)
        if "email" in updates:
            updates["email"] = normalize_email(updates["email"])
            existing = await self.recipients.get_by_email(updates["email"])
            if existing is not None and str(existing["id"]) != recipient_id:
                raise ConflictError(
                    "Recipient with this email already exists", details={"email": updates["email"]}
                )

        if updates:
            await self.recipients.update(recipient_id, updates)
        return await self.recipients.get(recipient_id)

    async def list_recipients(
        self,
        *,
        role: str | None = None,
        is_active: bool | None = None,
        email_verified: bool | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        page_size = _check_page(page, page_size)
        rows, total = await self.recipients.list_page(
            {"role": role, "is_active": is_active, "email_verified": email_verified},
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        result = _page(rows, total, page, page_size)
        result["statistics"] = await self.recipients.statistics()
        return result

    async def deactivate_recipient(self, recipient_id: str) -> bool:
        """Deactivate the recipient and every one of their subscriptions."""
        if not await self.recipients.update(recipient_id, {"is_active": False}):
            return False
        cancelled = await self.subscriptions.deactivate_for_recipient(recipient_id)
        logger.info("Recipient deactivated", recipient_id=recipient_id, subscriptions=cancelled)
        return True

    async def record_email_bounce(self, recipient_id: str, *, hard: bool = False) -> bool:
        """Count a bounce. Returns True when the recipient was deactivated because of it."""
        bounces = await self.recipients.increment_bounces(recipient_id)
        if bounces is None:
            return False
        if hard or bounces >= MAX_SOFT_BOUNCES:
            logger.warning("Deactivating recipient after bounces", recipient_id=recipient_id, bounces=bounces)
            return await self.deactivate_recipient(recipient_id)
        return False

    async def record_email_complaint(self, recipient_id: str) -> bool:
        logger.warning("Deactivating recipient after complaint", recipient_id=recipient_id)
        return await self.deactivate_recipient(recipient_id)

    async def cleanup_inactive_recipients(self, days_inactive: int = 90, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days_inactive)
        deleted = await self.recipients.delete_inactive_before(cutoff)
        logger.info("Inactive recipients removed", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        recipient_email: str,
        template_id: str,
        delivery_format: ReportFormat,
        delivery_channels: list[DeliveryChannel],
        *,
        custom_schedule: str | None = None,
        filters: dict[str, Any] | None = None,
    ) -> SubscriptionResult:
        """
        Subscribe an address to a template, creating the recipient if needed.

        An inactive subscription for the same template is reactivated with
        the new settings; an active one raises ConflictError.
        """
        if not delivery_channels:
            raise JobValidationError("At least one delivery channel is required")

        template = await self.subscriptions.get_template(template_id)
        if template is None:
            raise NotFoundError("Report template not found", details={"template_id": template_id})
        if not template["is_active"]:
            raise JobValidationError("Report template is not active", details={"template_id": template_id})

        recipient = await self.recipients.get_by_email(normalize_email(recipient_email))
        timezone = (recipient or {}).get("timezone") or self.default_timezone
        next_delivery_at = self.calculate_next_delivery(
            custom_schedule or template.get("schedule"), timezone
        )
        if recipient is None:
            recipient = await self.create_recipient(
                recipient_email,
                preferred_channels=delivery_channels,
                preferred_format=delivery_format,
            )

        recipient_id = str(recipient["id"])
        status = (
            SubscriptionStatus.ACTIVE
            if recipient.get("email_verified")
            else SubscriptionStatus.PENDING_VERIFICATION
        )
        settings = {
            "delivery_channels": delivery_channels,
            "delivery_format": delivery_format,
            "custom_schedule": custom_schedule,
            "filter_config": filters or {},
            "next_delivery_at": next_delivery_at,
        }

        existing = await self.subscriptions.find(recipient_id, template_id)
        if existing is not None:
            if existing["is_active"]:
                raise ConflictError(
                    "Subscription already exists and is active",
                    details={"subscription_id": str(existing["id"])},
                )
            subscription_id = str(existing["id"])
            await self.subscriptions.update(subscription_id, {**settings, "is_active": True})
            logger.info("Subscription reactivated", subscription_id=subscription_id)
            return SubscriptionResult(subscription_id, status, next_delivery_at, reactivated=True)

        subscription_id = await self.subscriptions.create(
            {"recipient_id": recipient_id, "template_id": template_id, **settings}
        )
        if subscription_id is None:
            raise InfrastructureError(
                "Subscription could not be stored", details={"template_id": template_id}
            )
        logger.info(
            "Subscription created",
            subscription_id=subscription_id,
            template_id=template_id,
            status=status.value,
        )
        return SubscriptionResult(subscription_id, status, next_delivery_at)

    def calculate_next_delivery(
        self, schedule: str | None, timezone: str | None = None, now: datetime | None = None
    ) -> datetime | None:
        """Next firing of the subscription's cron schedule, or None when it has none."""
        if not schedule:
            return None
        timezone = timezone or self.default_timezone
        validate_schedule(schedule, timezone)
        return next_fire_time(schedule, timezone, now or datetime.now(UTC))

    async def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return await self.subscriptions.get(subscription_id)

    async def update_subscription(
        self,
        subscription_id: str,
        updates: dict[str, Any],
        *,
        pause_until: datetime | None = None,
        resume: bool = False,
    ) -> dict[str, Any]:
        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", details={"subscription_id": subscription_id})

        updates = dict(updates)
        if updates.get("delivery_channels") == []:
            raise JobValidationError("At least one delivery channel is required")
        if updates.get("custom_schedule"):
            updates["next_delivery_at"] = self.calculate_next_delivery(updates["custom_schedule"])

        if resume:
            await self.resume_subscription(subscription_id)
        elif pause_until is not None:
            await self.pause_subscription(subscription_id, pause_until)
        if updates:
            await self.subscriptions.update(subscription_id, updates)
        return await self.subscriptions.get(subscription_id)

    async def pause_subscription(self, subscription_id: str, pause_until: datetime) -> bool:
        return await self.subscriptions.update(subscription_id, {"paused_until": pause_until})

    async def resume_subscription(self, subscription_id: str) -> bool:
        return await self.subscriptions.update(subscription_id, {"paused_until": None})

    async def unsubscribe(self, subscription_id: str) -> bool:
        unsubscribed = await self.subscriptions.update(subscription_id, {"is_active": False})
        if unsubscribed:
            logger.info("Unsubscribed", subscription_id=subscription_id)
        return unsubscribed

    async def unsubscribe_by_email(self, email: str, template_id: str | None = None) -> bool:
        """Cancel one template's subscription for an address, or all of them."""
        recipient = await self.get_recipient_by_email(email)
        if recipient is None:
            return False
        await self.subscriptions.deactivate_for_recipient(str(recipient["id"]), template_id)
        logger.info("Unsubscribed by email", recipient_id=str(recipient["id"]), template_id=template_id)
        return True

    async def list_subscriptions(
        self,
        *,
        recipient_id: str | None = None,
        recipient_email: str | None = None,
        template_id: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        page_size = _check_page(page, page_size)
        if recipient_email and not recipient_id:
            recipient = await self.get_recipient_by_email(recipient_email)
            if recipient is None:
                result = _page([], 0, page, page_size)
                result["statistics"] = await self.subscriptions.statistics()
                return result
            recipient_id = str(recipient["id"])

        rows, total = await self.subscriptions.list_page(
            {"recipient_id": recipient_id, "template_id": template_id, "is_active": is_active},
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        result = _page(rows, total, page, page_size)
        result["statistics"] = await self.subscriptions.statistics()
        return result

    # ------------------------------------------------------------------
    # Delivery scheduling
    # ------------------------------------------------------------------

    async def get_subscriptions_due_for_delivery(
        self, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        return await self.subscriptions.due_for_delivery(now or datetime.now(UTC))

    async def record_delivery(
        self, subscription: dict[str, Any], now: datetime | None = None
    ) -> datetime | None:
        """Stamp a delivery and move next_delivery_at to the following firing."""
        schedule = subscription.get("custom_schedule") or subscription.get("template_schedule")
        try:
            next_delivery_at = self.calculate_next_delivery(
                schedule, subscription.get("recipient_timezone"), now
            )
        except JobValidationError as e:
            logger.warning(
                "Subscription has an invalid schedule",
                subscription_id=str(subscription["id"]),
                error=e.message,
            )
            next_delivery_at = None
        await self.subscriptions.mark_delivered(str(subscription["id"]), next_delivery_at)
        return next_delivery_at
