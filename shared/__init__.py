"""Shared utilities and configuration."""
from shared.config import settings, get_db, SessionLocal
from shared.models import InvoiceRecord, OAuthCredential, SyncLog

__all__ = [
    "settings",
    "get_db",
    "SessionLocal",
    "InvoiceRecord",
    "OAuthCredential",
    "SyncLog",
]
