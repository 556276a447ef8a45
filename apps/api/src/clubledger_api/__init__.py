"""Accounting staging and Xero sync service."""
