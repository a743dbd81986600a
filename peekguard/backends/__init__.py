"""Aggregate sources backing the monitoring scheduler."""
