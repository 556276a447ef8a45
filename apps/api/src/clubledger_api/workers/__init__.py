"""Background workers supporting async processing."""

from .xero_sync import XeroSyncWorker

__all__ = ["XeroSyncWorker"]
