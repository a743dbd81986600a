"""Tabular views over the audit ledger."""
