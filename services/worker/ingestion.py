"""Ingestion pipeline: one document in, one invoice across all three stores.

validate -> verify_scopes -> extract -> duplicate_check -> resolve_folders
-> resolve_ledger -> upload_file -> insert_record -> append_ledger_row -> done

Nothing is rolled back. A file uploaded before a failed insert stays in
Drive; retrying the document is safe because the duplicate check runs first.
The ledger is a best-effort mirror, so its failures never fail the pipeline.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared import settings, InvoiceRecord, OAuthCredential
from shared.errors import AuthError, DuplicateInvoiceError, ExtractionError, ValidationError
from services.auth.accounts import has_scopes
from services.extractor.gemini import ExtractedInvoice, GeminiExtractor
from services.storage.resolver import StorageResolver, resolve_year
from services.storage.sheets import build_row, month_tab
from services.sync.duplicates import DuplicateDetector

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/jpg", "application/pdf"}
EXTENSIONS = {"application/pdf": ".pdf", "image/jpeg": ".jpg", "image/jpg": ".jpg", "image/png": ".png"}

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>]')


@dataclass
class IncomingFile:
    data: bytes
    filename: str
    mime_type: str
    source_message_id: Optional[str] = None
    user_id: Optional[UUID] = None


class IngestionResult(BaseModel):
    status: str  # processed | review | duplicate | failed
    stage: str
    filename: str
    invoice_id: Optional[UUID] = None
    drive_file_id: Optional[str] = None
    drive_link: Optional[str] = None
    spreadsheet_id: Optional[str] = None
    ledger_appended: bool = False
    fatal: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("processed", "review")


def storage_file_name(invoice: ExtractedInvoice, mime_type: str) -> str:
    """<date>_<SUPPLIER>_<amount>.<ext> with path-unsafe characters replaced."""
    amount = f"{invoice.total_amount or 0:.2f}"
    name = f"{invoice.doc_date}_{invoice.supplier_name}_{amount}{EXTENSIONS.get(mime_type, '.pdf')}"
    return _UNSAFE_CHARS.sub("_", name)


class InvoiceIngestor:
    """Runs the ingestion pipeline for documents stored under one primary storage account."""

    def __init__(
        self,
        db: Session,
        resolver: StorageResolver,
        storage_credential: Optional[OAuthCredential],
        extractor: Optional[GeminiExtractor] = None,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.drive = resolver.drive
        self.ledger = resolver.ledger
        self.storage_credential = storage_credential
        self.extractor = extractor or GeminiExtractor()
        self.detector = detector or DuplicateDetector(db)

    def validate(self, file: IncomingFile) -> None:
        if not file.data:
            raise ValidationError(f"{file.filename} is empty")
        if len(file.data) > settings.max_upload_bytes:
            raise ValidationError(
                f"{file.filename} is {len(file.data)} bytes, limit is {settings.max_upload_bytes}"
            )
        if file.mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(f"{file.filename}: unsupported file type {file.mime_type}")
        if self.storage_credential is None:
            raise ValidationError("No primary storage account connected")

    def verify_scopes(self) -> None:
        if not has_scopes(self.storage_credential):
            raise AuthError(
                f"Storage account {self.storage_credential.email} lacks Drive/Sheets access",
                needs_reauth=True,
            )

    def ingest(self, file: IncomingFile) -> IngestionResult:
        stage = "validate"

        def failed(error: Exception, kind: str, fatal: bool = False) -> IngestionResult:
            return IngestionResult(
                status="failed", stage=stage, filename=file.filename,
                error=str(error), error_kind=kind, fatal=fatal,
            )

        try:
            self.validate(file)
            stage = "verify_scopes"
            self.verify_scopes()
        except ValidationError as e:
            logger.warning(f"Rejected {file.filename}: {e}")
            return failed(e, "validation")
        except AuthError as e:
            logger.warning(f"Rejected {file.filename}: {e}")
            return failed(e, "auth")

        stage = "extract"
        try:
            invoice = self.extractor.extract(file.data, file.mime_type)
        except ExtractionError as e:
            logger.warning(f"Extraction failed for {file.filename}: {e}")
            return failed(e, "extraction")

        stage = "duplicate_check"
        try:
            self.detector.check(invoice)
        except DuplicateInvoiceError as e:
            return IngestionResult(status="duplicate", stage=stage, filename=file.filename, error=str(e), error_kind="duplicate")

        year = resolve_year(invoice.doc_year, invoice.doc_date)

        stage = "resolve_folders"
        try:
            year_folder_id, folder_id = self.resolver.ensure_invoice_folders(year, invoice.cost_type)
        except Exception as e:
            logger.error(f"Could not resolve folders for {file.filename}: {e}")
            return failed(e, "storage")

        stage = "resolve_ledger"
        workbook_id = None
        tab = month_tab(invoice.doc_date)
        try:
            workbook_id = self.resolver.ensure_yearly_ledger(year, year_folder_id)
            self.ledger.ensure_tab(workbook_id, tab)
        except Exception as e:
            logger.error(f"Could not resolve ledger {year} for {file.filename}, continuing without it: {e}")
            workbook_id = None

        stage = "upload_file"
        try:
            uploaded = self.drive.upload_file(file.data, storage_file_name(invoice, file.mime_type), folder_id, file.mime_type)
        except Exception as e:
            logger.error(f"Upload failed for {file.filename}: {e}")
            return failed(e, "storage")

        stage = "insert_record"
        needs_review = invoice.confidence_score < settings.confidence_threshold
        record = InvoiceRecord(
            user_id=file.user_id,
            document_type=invoice.document_type,
            cost_type=invoice.cost_type,
            doc_date=invoice.doc_date,
            doc_year=year,
            supplier_name=invoice.supplier_name,
            supplier_vat=invoice.supplier_vat,
            doc_number=invoice.doc_number,
            total_amount=invoice.total_amount,
            tax_amount=invoice.tax_amount,
            summary=invoice.summary,
            drive_file_id=uploaded["id"],
            drive_link=uploaded["webViewLink"],
            spreadsheet_id=workbook_id,
            status="review" if needs_review else "processed",
            manual_review=needs_review,
            source_message_id=file.source_message_id,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Record insert failed for {file.filename}, file {uploaded['id']} left in Drive: {e}", exc_info=True)
            result = failed(e, "store", fatal=True)
            result.drive_file_id = uploaded["id"]
            return result

        result = IngestionResult(
            status=record.status,
            stage="done",
            filename=file.filename,
            invoice_id=record.id,
            drive_file_id=record.drive_file_id,
            drive_link=record.drive_link,
            spreadsheet_id=workbook_id,
        )

        if workbook_id:
            try:
                row = build_row({
                    "doc_date": invoice.doc_date,
                    "supplier_name": invoice.supplier_name,
                    "supplier_vat": invoice.supplier_vat,
                    "cost_type": invoice.cost_type,
                    "doc_number": invoice.doc_number,
                    "total_amount": invoice.total_amount,
                    "tax_amount": invoice.tax_amount,
                    "summary": invoice.summary,
                    "drive_link": record.drive_link,
                })
                self.ledger.append_row(workbook_id, tab, row)
                result.ledger_appended = True
            except Exception as e:
                logger.error(f"Ledger append failed for invoice {record.id}: {e}")

        logger.info(f"✅ Ingested {file.filename} as invoice {record.id} ({record.status})")
        return result
