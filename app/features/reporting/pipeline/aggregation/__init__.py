"""Nightly booking rollups."""

from .service import AggregationService

__all__ = ["AggregationService"]
