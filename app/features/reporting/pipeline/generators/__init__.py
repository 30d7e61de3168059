"""Daily and weekly report generators."""

from .daily_summary import DailySummaryGenerator
from .weekly_summary import WeeklySummaryGenerator

__all__ = ["DailySummaryGenerator", "WeeklySummaryGenerator"]
