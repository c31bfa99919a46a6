"""Duplicate detection against the record store.

Two tiers:
1. doc_number present: duplicate iff any record has the same doc_number,
   ignoring case. Nothing else is compared.
2. doc_number absent: duplicate iff a record without doc_number has the same
   normalized supplier, date and amount, and the same trimmed,
   lower-cased summary. Two empty summaries are equal.

The summary comparison keeps distinct same-day, same-amount invoices apart,
at the cost of missing duplicates whose extracted summary text drifted.
"""
import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shared import InvoiceRecord
from shared.errors import DuplicateInvoiceError
from services.extractor.suppliers import normalize_supplier_name

logger = logging.getLogger(__name__)


def _get(candidate: Any, field: str) -> Any:
    if isinstance(candidate, dict):
        return candidate.get(field)
    return getattr(candidate, field, None)


def _normalize_summary(summary: Optional[str]) -> str:
    return (summary or "").strip().lower()


def _as_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class DuplicateDetector:
    """Decide whether an extracted candidate already exists."""

    def __init__(self, db: Session):
        self.db = db

    def find_duplicate(self, candidate: Any) -> Optional[InvoiceRecord]:
        doc_number = (_get(candidate, "doc_number") or "").strip()
        if doc_number:
            return self.db.query(InvoiceRecord).filter(
                func.lower(func.trim(InvoiceRecord.doc_number)) == doc_number.lower()
            ).first()

        supplier = normalize_supplier_name(_get(candidate, "supplier_name")) or ""
        doc_date = _as_date(_get(candidate, "doc_date"))
        amount = _get(candidate, "total_amount")

        matches = self.db.query(InvoiceRecord).filter(
            InvoiceRecord.doc_number.is_(None),
            InvoiceRecord.supplier_name == supplier,
            InvoiceRecord.doc_date == doc_date,
            InvoiceRecord.total_amount == amount,
        ).all()

        summary = _normalize_summary(_get(candidate, "summary"))
        for record in matches:
            if _normalize_summary(record.summary) == summary:
                return record
        return None

    def is_duplicate(self, candidate: Any) -> bool:
        return self.find_duplicate(candidate) is not None

    def check(self, candidate: Any) -> None:
        """Raise DuplicateInvoiceError when the candidate already exists."""
        existing = self.find_duplicate(candidate)
        if existing is None:
            return

        doc_number = _get(candidate, "doc_number")
        label = f"({doc_number})" if doc_number else "(no doc number)"
        logger.info(f"Duplicate of invoice {existing.id}: {_get(candidate, 'supplier_name')} {_get(candidate, 'doc_date')} {label}")
        raise DuplicateInvoiceError(
            f"Duplicate invoice: {_get(candidate, 'supplier_name')} - {_get(candidate, 'doc_date')} {label}"
        )
