"""Unit tests for the ingestion pipeline and queue."""
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from shared import settings
from shared.errors import ExtractionError
from shared.models import InvoiceRecord
from services.extractor.gemini import ExtractedInvoice
from services.storage.drive import SPREADSHEET_MIME
from services.worker.ingestion import IncomingFile, IngestionResult, InvoiceIngestor, storage_file_name
from services.worker.queue import IngestionQueue


def extracted(**overrides):
    fields = dict(
        document_type="fatura",
        cost_type="custo_variavel",
        doc_date=date(2025, 1, 10),
        doc_year=2025,
        supplier_name="GALP",
        doc_number=None,
        total_amount=42.5,
        tax_amount=7.95,
        summary="Combustível",
        confidence_score=90,
    )
    fields.update(overrides)
    return ExtractedInvoice(**fields)


def pdf(name="fatura.pdf", data=b"%PDF-1.4 invoice"):
    return IncomingFile(data=data, filename=name, mime_type="application/pdf")


@pytest.fixture
def extractor():
    extractor = MagicMock()
    extractor.extract.return_value = extracted()
    return extractor


@pytest.fixture
def ingestor(db_session, resolver, storage_credential, extractor):
    return InvoiceIngestor(db_session, resolver, storage_credential, extractor=extractor)


def ledger_rows(resolver, year, tab):
    return resolver.ledger.data_rows(resolver.ensure_yearly_ledger(year), tab)


class TestIngestion:

    def test_low_confidence_invoice_lands_everywhere_flagged_for_review(self, ingestor, extractor, resolver, fake_drive, db_session):
        extractor.extract.return_value = extracted(confidence_score=50)

        result = ingestor.ingest(pdf())

        assert result.status == "review"
        assert result.ok
        record = db_session.get(InvoiceRecord, result.invoice_id)
        assert record.manual_review is True
        assert record.status == "review"
        assert fake_drive.path_of(record.drive_file_id) == "FATURAS/2025/Custos Variáveis/2025-01-10_GALP_42.50.pdf"

        assert result.ledger_appended
        rows = ledger_rows(resolver, 2025, "01_Janeiro")
        assert len(rows) == 1
        assert rows[0][:2] == ["2025-01-10", "GALP"]
        assert rows[0][8] == record.drive_link
        assert fake_drive.count("EXTRATO_2025", SPREADSHEET_MIME) == 1

    def test_missing_confidence_goes_to_review(self, ingestor, extractor, db_session):
        extractor.extract.return_value = extracted(confidence_score=None)

        result = ingestor.ingest(pdf())

        assert result.status == "review"
        assert db_session.get(InvoiceRecord, result.invoice_id).manual_review is True

    def test_confident_invoice_is_processed(self, ingestor, db_session):
        result = ingestor.ingest(pdf())

        assert result.status == "processed"
        assert db_session.get(InvoiceRecord, result.invoice_id).manual_review is False

    def test_same_document_twice_is_duplicate(self, ingestor, fake_drive, db_session):
        first = ingestor.ingest(pdf())
        second = ingestor.ingest(pdf())

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert second.stage == "duplicate_check"
        assert db_session.query(InvoiceRecord).count() == 1
        assert fake_drive.calls.count("upload_file") == 1

    def test_unclassified_invoice_goes_to_por_classificar(self, ingestor, extractor, fake_drive, db_session):
        extractor.extract.return_value = extracted(cost_type=None)

        result = ingestor.ingest(pdf())

        record = db_session.get(InvoiceRecord, result.invoice_id)
        assert fake_drive.path_of(record.drive_file_id).startswith("FATURAS/2025/Por Classificar/")

    def test_oversized_file_is_rejected(self, ingestor, extractor, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 4)

        result = ingestor.ingest(pdf())

        assert result.status == "failed"
        assert result.error_kind == "validation"
        extractor.extract.assert_not_called()

    def test_unsupported_type_is_rejected(self, ingestor, extractor):
        result = ingestor.ingest(IncomingFile(data=b"hello", filename="notes.txt", mime_type="text/plain"))

        assert result.error_kind == "validation"
        extractor.extract.assert_not_called()

    def test_missing_storage_account_is_rejected(self, db_session, resolver, extractor):
        ingestor = InvoiceIngestor(db_session, resolver, None, extractor=extractor)

        result = ingestor.ingest(pdf())

        assert result.status == "failed"
        assert result.error_kind == "validation"

    def test_missing_drive_scope_is_auth_failure(self, ingestor, storage_credential, extractor):
        storage_credential.scopes = ["https://www.googleapis.com/auth/gmail.readonly"]

        result = ingestor.ingest(pdf())

        assert result.error_kind == "auth"
        assert result.stage == "verify_scopes"
        extractor.extract.assert_not_called()

    def test_extraction_failure_stops_before_storage(self, ingestor, extractor, fake_drive):
        extractor.extract.side_effect = ExtractionError("Invalid document: nao_e_fatura")

        result = ingestor.ingest(pdf())

        assert result.stage == "extract"
        assert result.error_kind == "extraction"
        assert fake_drive.calls == []

    def test_upload_failure_fails_without_record(self, ingestor, fake_drive, db_session):
        fake_drive.fail_on = {"upload_file"}

        result = ingestor.ingest(pdf())

        assert result.status == "failed"
        assert result.stage == "upload_file"
        assert db_session.query(InvoiceRecord).count() == 0

    def test_ledger_resolution_failure_is_not_fatal(self, ingestor, fake_ledger, db_session):
        fake_ledger.fail_on = {"create_workbook"}

        result = ingestor.ingest(pdf())

        assert result.status == "processed"
        assert result.spreadsheet_id is None
        assert result.ledger_appended is False
        assert db_session.get(InvoiceRecord, result.invoice_id).spreadsheet_id is None

    def test_ledger_append_failure_is_not_fatal(self, ingestor, fake_ledger, db_session):
        fake_ledger.fail_on = {"append_row"}

        result = ingestor.ingest(pdf())

        assert result.ok
        assert result.ledger_appended is False
        assert db_session.query(InvoiceRecord).count() == 1

    def test_insert_failure_is_fatal_and_keeps_uploaded_file(self, ingestor, fake_drive, fake_ledger, db_session):
        with patch.object(db_session, "commit", side_effect=SQLAlchemyError("connection lost")):
            result = ingestor.ingest(pdf())

        assert result.status == "failed"
        assert result.fatal is True
        assert result.stage == "insert_record"
        assert result.drive_file_id in fake_drive.nodes
        assert "append_row" not in fake_ledger.calls


def test_storage_file_name_replaces_unsafe_characters():
    invoice = extracted(supplier_name="A/B: LDA", total_amount=3)

    assert storage_file_name(invoice, "image/png") == "2025-01-10_A_B_ LDA_3.00.png"


class TestIngestionQueue:

    def results(self, count):
        return [IngestionResult(status="processed", stage="done", filename=f"f{i}.pdf") for i in range(count)]

    def test_pauses_between_items_only(self):
        ingestor = MagicMock()
        ingestor.ingest.side_effect = self.results(3)
        sleeps = []
        queue = IngestionQueue(ingestor, delay_seconds=0.5, sleep=sleeps.append)

        results = queue.run([pdf(f"f{i}.pdf") for i in range(3)])

        assert len(results) == 3
        assert sleeps == [0.5, 0.5]

    def test_cancel_stops_before_next_item(self):
        ingestor = MagicMock()
        ingestor.ingest.side_effect = self.results(3)
        queue = IngestionQueue(ingestor, delay_seconds=0, sleep=lambda s: None)

        results = queue.run([pdf(f"f{i}.pdf") for i in range(3)], on_result=lambda r: queue.cancel())

        assert len(results) == 1
        assert queue.cancelled
        assert ingestor.ingest.call_count == 1
