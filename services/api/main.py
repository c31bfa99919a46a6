"""FastAPI service - invoice upload, edit, delete and export across DB, Drive and Sheets."""
import os
import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import FastAPI, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db, settings, InvoiceRecord, OAuthCredential
from services.api.accounts import router as accounts_router
from services.api.dependencies import (
    verify_api_key,
    get_storage_credential,
    get_storage_resolver,
    get_storage_token,
)
from services.api.scheduler import start_scheduler, stop_scheduler, get_scheduler_status
from services.api.sync_inbox import router as sync_inbox_router
from services.export.zip_export import ZipExporter
from services.storage.drive import DriveClient
from services.storage.resolver import StorageResolver
from services.sync.delete import DeleteResult, InvoiceDeleter
from services.sync.update import InvoiceUpdater, UpdateResult
from services.worker.ingestion import IncomingFile, IngestionResult, InvoiceIngestor

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Invoice Sync API", version="1.0.0")

# Include routers
app.include_router(accounts_router)
app.include_router(sync_inbox_router)


class InvoiceUpdateRequest(BaseModel):
    document_type: Optional[str] = None
    cost_type: Optional[str] = None
    doc_date: Optional[date] = None
    doc_year: Optional[int] = None
    supplier_name: Optional[str] = None
    supplier_vat: Optional[str] = None
    doc_number: Optional[str] = None
    total_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    summary: Optional[str] = None
    status: Optional[str] = None
    manual_review: Optional[bool] = None


class ExportRequest(BaseModel):
    invoice_ids: Optional[List[UUID]] = None
    year: Optional[int] = None


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/invoices/upload", response_model=IngestionResult)
def upload_invoice(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    credential: OAuthCredential = Depends(get_storage_credential),
    resolver: StorageResolver = Depends(get_storage_resolver),
    api_key: str = Depends(verify_api_key)
):
    """Ingest one uploaded document into the record store, Drive and the ledger."""
    incoming = IncomingFile(
        data=file.file.read(),
        filename=file.filename or "upload",
        mime_type=file.content_type or "application/octet-stream",
    )
    result = InvoiceIngestor(db, resolver, credential).ingest(incoming)
    if result.fatal:
        raise HTTPException(status_code=500, detail=f"Could not save invoice: {result.error}")
    return result


@app.patch("/invoices/{invoice_id}", response_model=UpdateResult)
def update_invoice(
    invoice_id: UUID,
    request: InvoiceUpdateRequest,
    db: Session = Depends(get_db),
    resolver: StorageResolver = Depends(get_storage_resolver),
    api_key: str = Depends(verify_api_key)
):
    """Apply an edit and propagate it to Drive and the ledger."""
    if db.get(InvoiceRecord, invoice_id) is None:
        raise HTTPException(status_code=404, detail="Invoice not found")

    result = InvoiceUpdater(db, resolver).update(invoice_id, request.model_dump(exclude_unset=True))
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or result.message)
    return result


@app.delete("/invoices/{invoice_id}", response_model=DeleteResult)
def delete_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    resolver: StorageResolver = Depends(get_storage_resolver),
    api_key: str = Depends(verify_api_key)
):
    """Delete an invoice everywhere; only the record delete decides success."""
    if db.get(InvoiceRecord, invoice_id) is None:
        raise HTTPException(status_code=404, detail="Invoice not found")

    result = InvoiceDeleter(db, resolver).delete(invoice_id)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or result.message)
    return result


@app.post("/invoices/export")
def export_invoices(
    request: ExportRequest,
    db: Session = Depends(get_db),
    access_token: str = Depends(get_storage_token),
    api_key: str = Depends(verify_api_key)
):
    """Download the stored files of the selected invoices as one zip."""
    query = db.query(InvoiceRecord).filter(InvoiceRecord.drive_file_id.isnot(None))
    if request.invoice_ids:
        query = query.filter(InvoiceRecord.id.in_(request.invoice_ids))
    if request.year:
        query = query.filter(InvoiceRecord.doc_year == request.year)
    records = query.order_by(InvoiceRecord.doc_date).all()
    if not records:
        raise HTTPException(status_code=404, detail="No invoice files to export")

    result = ZipExporter(lambda: DriveClient.from_token(access_token)).export(records)
    return Response(
        content=result.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": 'attachment; filename="faturas.zip"',
            "X-Export-Success": str(result.success_count),
            "X-Export-Failed": str(result.failed_count),
        },
    )


@app.get("/scheduler/status")
def scheduler_status(api_key: str = Depends(verify_api_key)):
    return get_scheduler_status()


@app.on_event("startup")
def startup_event():
    """Start scheduler on API startup."""
    # Skip scheduler in test environment
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("TESTING"):
        logger.info("Skipping scheduler startup (test environment)")
        return

    try:
        start_scheduler()
        logger.info("✅ Mailbox sync scheduler started on API startup")
    except Exception as e:
        logger.error(f"❌ Failed to start scheduler: {e}", exc_info=True)


@app.on_event("shutdown")
def shutdown_event():
    """Stop scheduler on API shutdown."""
    stop_scheduler()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
