"""Unit tests for the update orchestrator."""
import uuid
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from shared.models import InvoiceRecord
from services.sync.update import InvoiceUpdater


@pytest.fixture
def placed_invoice(invoice_factory, resolver, fake_drive, fake_ledger):
    """Invoice for 2024-03-15 with its file and ledger row in place."""
    record = invoice_factory(resolver=resolver)
    fake_drive.calls.clear()
    fake_ledger.calls.clear()
    return record


@pytest.fixture
def updater(db_session, resolver):
    return InvoiceUpdater(db_session, resolver)


def workbook_for(resolver, year):
    return resolver.ensure_yearly_ledger(year)


def test_store_failure_short_circuits_everything(updater, placed_invoice, db_session, fake_drive, fake_ledger):
    with patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk full")):
        result = updater.update(placed_invoice.id, {"cost_type": "custo_fixo", "doc_year": 2025})

    assert result.success is False
    assert result.updated_in_store is False
    assert fake_drive.calls == []
    assert fake_ledger.calls == []


def test_classification_change_moves_file_and_updates_cell(updater, placed_invoice, resolver, fake_drive, fake_ledger):
    result = updater.update(placed_invoice.id, {"cost_type": "custo_fixo"})

    assert result.success and result.file_moved and result.updated_in_ledger
    assert fake_drive.path_of(placed_invoice.drive_file_id) == "FATURAS/2024/Custos Fixos/invoice.pdf"
    assert "batch_update_cells" in fake_ledger.calls
    assert "delete_row" not in fake_ledger.calls
    assert "append_row" not in fake_ledger.calls

    rows = fake_ledger.data_rows(placed_invoice.spreadsheet_id, "03_Março")
    assert len(rows) == 1
    assert rows[0][3] == "custo_fixo"


def test_date_change_within_month_only_updates_cell(updater, placed_invoice, fake_drive, fake_ledger):
    result = updater.update(placed_invoice.id, {"doc_date": "2024-03-20"})

    assert result.success and result.updated_in_ledger
    assert result.file_moved is False
    assert "move_file" not in fake_drive.calls
    assert "delete_row" not in fake_ledger.calls
    assert fake_ledger.data_rows(placed_invoice.spreadsheet_id, "03_Março")[0][0] == "2024-03-20"


def test_month_change_moves_row_between_tabs(updater, placed_invoice, fake_drive, fake_ledger):
    result = updater.update(placed_invoice.id, {"doc_date": date(2024, 5, 2), "total_amount": 50})

    assert result.success and result.updated_in_ledger
    assert "move_file" not in fake_drive.calls
    workbook = placed_invoice.spreadsheet_id
    assert fake_ledger.data_rows(workbook, "03_Março") == []
    moved = fake_ledger.data_rows(workbook, "05_Maio")
    assert len(moved) == 1
    assert moved[0][0] == "2024-05-02"
    assert moved[0][5] == 50.0
    assert moved[0][1] == "GALP"


def test_year_change_moves_row_across_workbooks_and_file(updater, placed_invoice, resolver, fake_drive, fake_ledger, db_session):
    old_workbook = placed_invoice.spreadsheet_id

    result = updater.update(placed_invoice.id, {"doc_year": 2025})

    assert result.success and result.file_moved and result.updated_in_ledger
    assert fake_drive.path_of(placed_invoice.drive_file_id) == "FATURAS/2025/Custos Variáveis/invoice.pdf"

    new_workbook = workbook_for(resolver, 2025)
    assert new_workbook != old_workbook
    assert fake_ledger.data_rows(old_workbook, "03_Março") == []
    moved = fake_ledger.data_rows(new_workbook, "03_Março")
    assert len(moved) == 1
    assert moved[0][4] == "FT 2024/118"

    db_session.expire_all()
    assert db_session.get(InvoiceRecord, placed_invoice.id).spreadsheet_id == new_workbook


def test_date_into_another_year_derives_doc_year(updater, placed_invoice, resolver, fake_ledger, db_session):
    result = updater.update(placed_invoice.id, {"doc_date": "2025-01-05"})

    assert result.success and result.file_moved and result.updated_in_ledger
    db_session.expire_all()
    stored = db_session.get(InvoiceRecord, placed_invoice.id)
    assert stored.doc_year == 2025
    assert fake_ledger.data_rows(workbook_for(resolver, 2025), "01_Janeiro")[0][0] == "2025-01-05"


def test_missing_source_row_is_sync_debt(updater, placed_invoice, fake_ledger):
    fake_ledger.workbooks[placed_invoice.spreadsheet_id]["03_Março"] = [fake_ledger.workbooks[placed_invoice.spreadsheet_id]["03_Março"][0]]

    result = updater.update(placed_invoice.id, {"doc_date": "2024-06-01"})

    assert result.success is True
    assert result.updated_in_store is True
    assert result.updated_in_ledger is False
    assert "delete_row" not in fake_ledger.calls


def test_ledger_failure_is_not_fatal(updater, placed_invoice, fake_ledger):
    fake_ledger.fail_on = {"batch_update_cells"}

    result = updater.update(placed_invoice.id, {"cost_type": "custo_fixo"})

    assert result.success is True
    assert result.file_moved is True
    assert result.updated_in_ledger is False


def test_file_move_failure_is_not_fatal(updater, placed_invoice, fake_drive):
    fake_drive.fail_on = {"move_file"}

    result = updater.update(placed_invoice.id, {"cost_type": "custo_fixo"})

    assert result.success is True
    assert result.file_moved is False
    assert result.updated_in_ledger is True


def test_no_changes_touches_nothing(updater, placed_invoice, fake_drive, fake_ledger):
    result = updater.update(placed_invoice.id, {"supplier_name": "galp", "total_amount": 42.5})

    assert result.success is True
    assert result.message == "No changes"
    assert fake_drive.calls == [] and fake_ledger.calls == []


def test_unknown_invoice_fails(updater):
    result = updater.update(uuid.uuid4(), {"cost_type": "custo_fixo"})

    assert result.success is False
    assert "not found" in result.message.lower()
