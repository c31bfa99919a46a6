"""Propagate an invoice edit from the record store to Drive and the ledger.

Only the record store write gates success. After it:

* a classification or year change reparents the stored file;
* a year change moves the ledger row to the other year's workbook;
* a month change moves the row between tabs of the same workbook;
* otherwise, or when no source row was found, the changed cells are
  rewritten in place.

Ledger misses are left as sync debt for the next edit.
"""
import logging
from datetime import date
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared import InvoiceRecord
from services.extractor.suppliers import normalize_supplier_name
from services.storage.resolver import StorageResolver, resolve_year
from services.storage.sheets import COLUMNS, merge_row, month_tab
from services.sync.row_locator import find_row

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "document_type",
    "cost_type",
    "doc_date",
    "doc_year",
    "supplier_name",
    "supplier_vat",
    "doc_number",
    "total_amount",
    "tax_amount",
    "summary",
    "status",
    "manual_review",
}


class UpdateResult(BaseModel):
    success: bool
    updated_in_store: bool = False
    updated_in_ledger: bool = False
    file_moved: bool = False
    message: str = ""
    error: Optional[str] = None


def _coerce(field: str, value: Any) -> Any:
    if field == "doc_date" and value is not None and not isinstance(value, date):
        return date.fromisoformat(str(value)[:10])
    if field == "supplier_name":
        return normalize_supplier_name(value)
    if field in ("total_amount", "tax_amount") and value is not None:
        return float(value)
    if field == "doc_year" and value is not None:
        return int(value)
    return value


class InvoiceUpdater:
    """Update orchestrator for one invoice at a time."""

    def __init__(self, db: Session, resolver: StorageResolver):
        self.db = db
        self.resolver = resolver
        self.drive = resolver.drive
        self.ledger = resolver.ledger

    def _diff(self, record: InvoiceRecord, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            logger.warning(f"Ignoring non-updatable fields: {', '.join(sorted(unknown))}")

        changed = {}
        for field, value in changes.items():
            if field not in UPDATABLE_FIELDS:
                continue
            value = _coerce(field, value)
            if getattr(record, field) != value:
                changed[field] = value

        new_date = changed.get("doc_date")
        if new_date is not None and "doc_year" not in changes and record.doc_year != new_date.year:
            changed["doc_year"] = new_date.year
        return changed

    def update(self, invoice_id: UUID, changes: Dict[str, Any]) -> UpdateResult:
        record = self.db.get(InvoiceRecord, invoice_id)
        if record is None:
            return UpdateResult(success=False, message="Invoice not found", error=f"Invoice {invoice_id} not found")

        old_snapshot = record.snapshot()
        old_date = record.doc_date
        old_year = resolve_year(record.doc_year, record.doc_date)
        old_workbook = record.spreadsheet_id

        changed = self._diff(record, changes)
        if not changed:
            return UpdateResult(success=True, message="No changes")

        # Step 1: authoritative write; nothing else runs if it fails
        for field, value in changed.items():
            setattr(record, field, value)
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Record update failed for invoice {invoice_id}: {e}", exc_info=True)
            return UpdateResult(success=False, message="Record update failed", error=str(e))

        result = UpdateResult(success=True, updated_in_store=True)
        new_year = resolve_year(record.doc_year, record.doc_date)
        year_changed = new_year != old_year
        logger.info(f"Updated invoice {invoice_id}: {', '.join(sorted(changed))}")

        # Step 2: file relocation
        if (year_changed or "cost_type" in changed) and record.drive_file_id:
            result.file_moved = self._move_file(record, new_year)

        # Step 3: ledger
        ledger_changes = {field: value for field, value in changed.items() if field in COLUMNS}
        old_tab = month_tab(old_date)
        new_tab = month_tab(record.doc_date)
        if ledger_changes or year_changed or old_tab != new_tab:
            try:
                result.updated_in_ledger = self._sync_ledger(
                    record, old_snapshot, old_workbook, old_year, old_tab,
                    new_year, new_tab, year_changed, ledger_changes,
                )
            except Exception as e:
                logger.error(f"Ledger sync failed for invoice {invoice_id}: {e}", exc_info=True)

        result.message = self._summary(result)
        return result

    def _move_file(self, record: InvoiceRecord, year: int) -> bool:
        try:
            folder_id = self.resolver.ensure_invoice_folder(year, record.cost_type)
            return self.drive.move_file(record.drive_file_id, folder_id)
        except Exception as e:
            logger.error(f"Could not relocate file {record.drive_file_id}: {e}")
            return False

    def _sync_ledger(
        self,
        record: InvoiceRecord,
        old_snapshot: Dict[str, Any],
        old_workbook: Optional[str],
        old_year: int,
        old_tab: str,
        new_year: int,
        new_tab: str,
        year_changed: bool,
        ledger_changes: Dict[str, Any],
    ) -> bool:
        source_workbook = old_workbook or self.resolver.ensure_yearly_ledger(old_year)
        target_workbook = source_workbook

        if year_changed:
            target_workbook = self.resolver.ensure_yearly_ledger(new_year)
            self.ledger.ensure_tab(target_workbook, new_tab)
            if self._relocate_row(source_workbook, old_tab, target_workbook, new_tab, old_snapshot, ledger_changes):
                self._save_ledger_reference(record, target_workbook)
                logger.info(f"Moved ledger row {old_year}/{old_tab} -> {new_year}/{new_tab}")
                return True
        elif old_tab != new_tab:
            self.ledger.ensure_tab(target_workbook, new_tab)
            if self._relocate_row(source_workbook, old_tab, target_workbook, new_tab, old_snapshot, ledger_changes):
                logger.info(f"Moved ledger row {old_tab} -> {new_tab}")
                return True

        return self._update_cells(record, target_workbook, new_tab, old_snapshot, ledger_changes)

    def _relocate_row(
        self,
        source_workbook: str,
        source_tab: str,
        target_workbook: str,
        target_tab: str,
        snapshot: Dict[str, Any],
        ledger_changes: Dict[str, Any],
    ) -> bool:
        """Read, delete, then append the row elsewhere. False when no row was found."""
        try:
            row_number = find_row(self.ledger, source_workbook, source_tab, snapshot)
            if row_number is None:
                return False
            existing = self.ledger.read_row(source_workbook, source_tab, row_number)
            if not existing:
                return False
            merged = merge_row(existing, ledger_changes)
            self.ledger.delete_row(source_workbook, source_tab, row_number)
            self.ledger.append_row(target_workbook, target_tab, merged)
            return True
        except Exception as e:
            logger.error(f"Ledger row relocation {source_tab} -> {target_tab} failed: {e}")
            return False

    def _update_cells(
        self,
        record: InvoiceRecord,
        workbook_id: str,
        tab: str,
        old_snapshot: Dict[str, Any],
        ledger_changes: Dict[str, Any],
    ) -> bool:
        if not ledger_changes:
            return False

        row_number = find_row(self.ledger, workbook_id, tab, old_snapshot)
        if row_number is None:
            row_number = find_row(self.ledger, workbook_id, tab, record.snapshot())
        if row_number is None:
            logger.warning(f"⚠️ Ledger row for invoice {record.id} not found in '{tab}', leaving it for the next update")
            return False

        written = self.ledger.batch_update_cells(workbook_id, tab, row_number, ledger_changes)
        return written > 0

    def _save_ledger_reference(self, record: InvoiceRecord, workbook_id: str) -> None:
        if record.spreadsheet_id == workbook_id:
            return
        record.spreadsheet_id = workbook_id
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Could not store new ledger reference for invoice {record.id}: {e}")

    @staticmethod
    def _summary(result: UpdateResult) -> str:
        parts = ["Invoice updated"]
        if result.file_moved:
            parts.append("file moved")
        parts.append("ledger updated" if result.updated_in_ledger else "ledger not updated")
        return ", ".join(parts)

