"""Remove an invoice from the ledger, Drive and the record store.

Ledger and file removal are best-effort. The record delete decides the
outcome: leftover files or rows are tolerated debris, a record that survives
the delete is not.
"""
import logging
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared import InvoiceRecord
from services.storage.resolver import StorageResolver
from services.storage.sheets import month_tab
from services.sync.row_locator import find_row

logger = logging.getLogger(__name__)


class DeleteResult(BaseModel):
    success: bool
    deleted_from_ledger: bool = False
    deleted_file: bool = False
    deleted_from_store: bool = False
    message: str = ""
    error: Optional[str] = None


class InvoiceDeleter:
    """Delete orchestrator."""

    def __init__(self, db: Session, resolver: StorageResolver):
        self.db = db
        self.drive = resolver.drive
        self.ledger = resolver.ledger

    def delete(self, invoice_id: UUID) -> DeleteResult:
        record = self.db.get(InvoiceRecord, invoice_id)
        if record is None:
            return DeleteResult(success=False, message="Invoice not found", error=f"Invoice {invoice_id} not found")

        result = DeleteResult(success=False)

        if record.spreadsheet_id and record.doc_date:
            result.deleted_from_ledger = self._delete_ledger_row(record)

        if record.drive_file_id:
            try:
                result.deleted_file = self.drive.delete_file(record.drive_file_id)
            except Exception as e:
                logger.error(f"Could not delete file {record.drive_file_id} of invoice {invoice_id}: {e}")

        try:
            self.db.delete(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Record delete failed for invoice {invoice_id}: {e}", exc_info=True)
            result.error = str(e)
            result.message = "Record delete failed"
            return result

        result.success = True
        result.deleted_from_store = True
        result.message = "Invoice deleted"
        if not (result.deleted_from_ledger and result.deleted_file):
            logger.info(
                f"Invoice {invoice_id} deleted with leftovers "
                f"(ledger={result.deleted_from_ledger}, file={result.deleted_file})"
            )
        return result

    def _delete_ledger_row(self, record: InvoiceRecord) -> bool:
        tab = month_tab(record.doc_date)
        try:
            row_number = find_row(self.ledger, record.spreadsheet_id, tab, record.snapshot())
            if row_number is None:
                return False
            self.ledger.delete_row(record.spreadsheet_id, tab, row_number)
            return True
        except Exception as e:
            logger.error(f"Could not delete ledger row of invoice {record.id}: {e}")
            return False
