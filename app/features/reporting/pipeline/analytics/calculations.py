"""
Shared numeric helpers for the report generators.

Percentage changes, trend classification, occupancy and the ordered
fallback resolver used for overview metrics all live here so the daily and
weekly generators cannot drift apart.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, date, datetime
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from app.features.reporting.domain.models import TrendDirection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TREND_DEAD_BAND = 5.0
DEFAULT_TABLE_COUNT = 16

# Friday, Saturday and Sunday club nights
_WEEKDAY_EVENT_NAMES = {
    4: "BELLA GENTE",
    5: "SHHH!",
    6: "NOSTALGIA",
}
REGULAR_NIGHT = "Regular Night"


def round2(value: float | None) -> float:
    if value is None:
        return 0.0
    return round(float(value), 2)


def calculate_percentage_change(old: float | None, new: float | None) -> float:
    """
    Percentage change from old to new, rounded to 2dp.

    0 -> 0 is 0%, 0 -> positive is reported as a 100% increase.
    """
    old_value = float(old or 0)
    new_value = float(new or 0)
    if old_value == 0:
        return 100.0 if new_value > 0 else 0.0
    return round((new_value - old_value) / old_value * 100, 2)


def get_trend_direction(change: float) -> TrendDirection:
    if change >= TREND_DEAD_BAND:
        return TrendDirection.UP
    if change <= -TREND_DEAD_BAND:
        return TrendDirection.DOWN
    return TrendDirection.STABLE


def occupancy_rate(tables_occupied: int, table_count: int = DEFAULT_TABLE_COUNT) -> float:
    if table_count <= 0:
        return 0.0
    return round2(tables_occupied / table_count * 100)


def safe_divide(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def local_date(value: datetime | None, tz: ZoneInfo) -> date | None:
    """Calendar day of an instant in the venue timezone. Naive values are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(tz).date()


def event_name_for_date(day: date) -> str:
    """Default night name for bookings that are not tied to an event row."""
    return _WEEKDAY_EVENT_NAMES.get(day.weekday(), REGULAR_NIGHT)


def is_special_occasion(special_requests: Any, occasion: str) -> bool:
    """True when a booking's special requests mention the given occasion."""
    if not special_requests:
        return False
    if isinstance(special_requests, dict):
        text = " ".join(str(value) for value in special_requests.values())
    else:
        text = str(special_requests)
    return occasion.lower() in text.lower()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


async def resolve_with_fallbacks(
    tiers: Sequence[tuple[str, Callable[[], Awaitable[T | None]]]],
    *,
    metric: str,
) -> tuple[T | None, str | None]:
    """
    Try each (name, loader) tier in order and return the first non-empty result.

    A tier that raises is logged and treated as empty so the next tier runs.
    Returns (value, tier_name), or (None, None) when every tier came back empty.
    """
    for tier_name, loader in tiers:
        try:
            value = await loader()
        except Exception as e:
            logger.warning(
                "Metric tier failed, falling back",
                metric=metric,
                tier=tier_name,
                error=str(e),
            )
            continue

        if not _is_empty(value):
            logger.debug("Metric resolved", metric=metric, tier=tier_name)
            return value, tier_name

    logger.info("No data in any metric tier", metric=metric)
    return None, None
