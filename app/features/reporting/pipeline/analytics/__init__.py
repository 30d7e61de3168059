"""Numeric helpers and booking breakdowns shared by generators and aggregation."""
