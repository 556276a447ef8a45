"""Accounting staging, error normalization and Xero sync services."""
