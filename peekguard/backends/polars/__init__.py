"""Polars-backed in-memory aggregate provider."""
