"""SQLAlchemy models for the invoice system.

Invoice records, stored files and ledger rows are independently keyed; the
record carries denormalized references (``drive_file_id``, ``spreadsheet_id``)
to the other two stores and nothing enforces them relationally.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, Date, DateTime, Numeric, JSON, Uuid
from sqlalchemy.sql import func
from shared.config import Base
import uuid


class InvoiceRecord(Base):
    __tablename__ = "invoices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, server_default=func.now())
    user_id = Column(Uuid, nullable=True)
    document_type = Column(String(32))
    cost_type = Column(String(32))
    doc_date = Column(Date)
    doc_year = Column(Integer)
    supplier_name = Column(Text)
    supplier_vat = Column(String(32))
    doc_number = Column(Text)
    total_amount = Column(Numeric(12, 2, asdecimal=False))
    tax_amount = Column(Numeric(12, 2, asdecimal=False))
    summary = Column(Text)
    drive_file_id = Column(Text)
    drive_link = Column(Text)
    spreadsheet_id = Column(Text)
    status = Column(String(16), default="processed")
    manual_review = Column(Boolean, default=False)
    source_message_id = Column(Text)

    def snapshot(self) -> dict:
        """Identifying fields used to locate this record's ledger row."""
        return {
            "doc_number": self.doc_number,
            "supplier_name": self.supplier_name,
            "total_amount": self.total_amount,
            "doc_date": self.doc_date.isoformat() if self.doc_date else None,
        }


class OAuthCredential(Base):
    __tablename__ = "user_oauth_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    provider = Column(String(32), default="google")
    email = Column(Text, nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expiry = Column(DateTime)
    scopes = Column(JSON, default=list)
    is_primary_storage = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id = Column(Uuid, nullable=True)
    started_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime)
    status = Column(String(16), default="running")
    processed_count = Column(Integer, default=0)
    duplicate_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    meta = Column(JSON)
