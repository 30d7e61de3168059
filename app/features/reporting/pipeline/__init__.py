"""
Pipeline components for reporting.

Contains the report generators, the shared analytics helpers and the
nightly aggregation. Subpackages expose the primary services that other
layers use.
"""

__all__ = ["aggregation", "analytics", "generators"]
