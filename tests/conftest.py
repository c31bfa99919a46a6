"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TESTING", "1")

import itertools
from datetime import date, timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config import Base
from shared.google_client import OAUTH_SCOPES
from shared.models import InvoiceRecord, OAuthCredential
from services.auth.token_manager import utcnow
from services.storage.drive import FOLDER_MIME, SPREADSHEET_MIME
from services.storage.resolver import StorageResolver
from services.storage.sheets import COLUMNS, HEADERS, MONTH_TABS, cell_value


class StoreFailure(Exception):
    """Raised by the fakes when a call is configured to fail."""


class FakeDrive:
    """In-memory Drive with the DriveClient interface."""

    def __init__(self):
        self.nodes: Dict[str, dict] = {}
        self.fail_on: set = set()
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    def _check(self, method):
        self.calls.append(method)
        if method in self.fail_on:
            raise StoreFailure(f"{method} failed")

    def add_node(self, name, parent_id=None, mime_type="application/pdf", data=b""):
        node_id = f"node{next(self._ids)}"
        self.nodes[node_id] = {
            "name": name,
            "parents": [parent_id] if parent_id else [],
            "mime": mime_type,
            "data": data,
        }
        return node_id

    def find_file(self, name, parent_id=None, mime_type=None):
        self._check("find_file")
        for node_id, node in self.nodes.items():
            if node["name"] != name or (mime_type and node["mime"] != mime_type):
                continue
            if parent_id and parent_id not in node["parents"]:
                continue
            return node_id
        return None

    def ensure_folder(self, name, parent_id=None):
        self._check("ensure_folder")
        return self.find_file(name, parent_id, FOLDER_MIME) or self.add_node(name, parent_id, FOLDER_MIME)

    def upload_file(self, data, name, parent_id, mime_type="application/pdf"):
        self._check("upload_file")
        node_id = self.add_node(name, parent_id, mime_type, data)
        return {"id": node_id, "webViewLink": f"https://drive.google.com/file/d/{node_id}/view"}

    def move_file(self, file_id, new_parent_id):
        self._check("move_file")
        self.nodes[file_id]["parents"] = [new_parent_id]
        return True

    def delete_file(self, file_id):
        self._check("delete_file")
        del self.nodes[file_id]
        return True

    def download_file(self, file_id):
        self._check("download_file")
        return self.nodes[file_id]["data"]

    def path_of(self, node_id) -> str:
        parts = []
        while node_id:
            node = self.nodes[node_id]
            parts.append(node["name"])
            node_id = node["parents"][0] if node["parents"] else None
        return "/".join(reversed(parts))

    def count(self, name, mime_type=None) -> int:
        return sum(1 for n in self.nodes.values() if n["name"] == name and (not mime_type or n["mime"] == mime_type))


class FakeLedger:
    """In-memory Sheets with the LedgerClient interface. Row 1 of every tab is the header."""

    def __init__(self, drive: FakeDrive):
        self.drive = drive
        self.workbooks: Dict[str, Dict[str, List[list]]] = {}
        self.fail_on: set = set()
        self.calls: List[str] = []

    def _check(self, method):
        self.calls.append(method)
        if method in self.fail_on:
            raise StoreFailure(f"{method} failed")

    def create_workbook(self, title):
        self._check("create_workbook")
        workbook_id = self.drive.add_node(title, None, SPREADSHEET_MIME)
        self.workbooks[workbook_id] = {tab: [list(HEADERS)] for tab in MONTH_TABS}
        return workbook_id

    def get_sheet_id(self, workbook_id, tab):
        tabs = list(self.workbooks[workbook_id])
        return tabs.index(tab) if tab in tabs else None

    def ensure_tab(self, workbook_id, tab):
        self._check("ensure_tab")
        if tab in self.workbooks[workbook_id]:
            return False
        self.workbooks[workbook_id][tab] = [list(HEADERS)]
        return True

    def append_row(self, workbook_id, tab, row):
        self._check("append_row")
        self.workbooks[workbook_id][tab].append(list(row))

    def read_rows(self, workbook_id, tab):
        self._check("read_rows")
        return [list(r) for r in self.workbooks[workbook_id][tab][1:]]

    def read_row(self, workbook_id, tab, row_number):
        self._check("read_row")
        rows = self.workbooks[workbook_id][tab]
        return list(rows[row_number - 1]) if row_number <= len(rows) else []

    def batch_update_cells(self, workbook_id, tab, row_number, changes):
        self._check("batch_update_cells")
        row = self.workbooks[workbook_id][tab][row_number - 1]
        written = 0
        for field, value in changes.items():
            if field in COLUMNS:
                row[COLUMNS[field]] = cell_value(value)
                written += 1
        return written

    def delete_row(self, workbook_id, tab, row_number):
        self._check("delete_row")
        del self.workbooks[workbook_id][tab][row_number - 1]

    def data_rows(self, workbook_id, tab) -> List[list]:
        return self.workbooks[workbook_id][tab][1:]


@pytest.fixture(scope="session")
def db_engine():
    """Create test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create test database session; tables are emptied afterwards."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def fake_ledger(fake_drive):
    return FakeLedger(fake_drive)


@pytest.fixture
def resolver(fake_drive, fake_ledger):
    return StorageResolver(fake_drive, fake_ledger, root_name="FATURAS")


@pytest.fixture
def storage_credential(db_session):
    """Primary storage account with Drive and Sheets scopes."""
    credential = OAuthCredential(
        email="storage@example.com",
        provider="google",
        access_token="storage-token",
        refresh_token="storage-refresh",
        token_expiry=utcnow() + timedelta(hours=1),
        scopes=list(OAUTH_SCOPES),
        is_primary_storage=True,
    )
    db_session.add(credential)
    db_session.commit()
    return credential


def make_invoice(db_session, resolver: Optional[StorageResolver] = None, **overrides) -> InvoiceRecord:
    """Insert an invoice; with a resolver, also place its file and ledger row like ingestion does."""
    fields = dict(
        document_type="fatura",
        cost_type="custo_variavel",
        doc_date=date(2024, 3, 15),
        doc_year=2024,
        supplier_name="GALP",
        supplier_vat="500697370",
        doc_number="FT 2024/118",
        total_amount=42.5,
        tax_amount=7.95,
        summary="Combustível",
        status="processed",
        manual_review=False,
    )
    fields.update(overrides)
    record = InvoiceRecord(**fields)

    if resolver is not None:
        from services.storage.sheets import build_row, month_tab

        folder_id = resolver.ensure_invoice_folder(record.doc_year, record.cost_type)
        uploaded = resolver.drive.upload_file(b"%PDF-1.4", "invoice.pdf", folder_id)
        record.drive_file_id = uploaded["id"]
        record.drive_link = uploaded["webViewLink"]
        workbook_id, tab = resolver.resolve_ledger(record.doc_year, record.doc_date)
        record.spreadsheet_id = workbook_id
        resolver.ledger.append_row(workbook_id, tab, build_row({
            "doc_date": record.doc_date,
            "supplier_name": record.supplier_name,
            "supplier_vat": record.supplier_vat,
            "cost_type": record.cost_type,
            "doc_number": record.doc_number,
            "total_amount": record.total_amount,
            "tax_amount": record.tax_amount,
            "summary": record.summary,
            "drive_link": record.drive_link,
        }))

    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture
def invoice_factory(db_session):
    def factory(resolver=None, **overrides):
        return make_invoice(db_session, resolver, **overrides)
    return factory
