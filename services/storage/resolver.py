"""Resolve where an invoice's file and ledger row live.

Files:  <root>/<year>/<classification folder>
Ledger: <root>/<year>/EXTRATO_<year>, tab by month.
"""
import logging
from datetime import date
from typing import Any, Optional, Tuple

from shared import settings
from services.storage.drive import DriveClient, SPREADSHEET_MIME
from services.storage.sheets import LedgerClient, workbook_name, month_tab

logger = logging.getLogger(__name__)

CLASSIFICATION_FOLDERS = {
    "custo_fixo": "Custos Fixos",
    "custo_variavel": "Custos Variáveis",
}
UNCLASSIFIED_FOLDER = "Por Classificar"


def classification_folder(cost_type: Optional[str]) -> str:
    return CLASSIFICATION_FOLDERS.get(cost_type or "", UNCLASSIFIED_FOLDER)


def resolve_year(doc_year: Optional[int], doc_date: Any = None) -> int:
    """doc_year, else the year of doc_date, else the current year."""
    if doc_year:
        return int(doc_year)
    if isinstance(doc_date, date):
        return doc_date.year
    if doc_date:
        try:
            return date.fromisoformat(str(doc_date)[:10]).year
        except ValueError:
            logger.warning(f"Unparseable document date {doc_date!r}, using current year")
    return date.today().year


class StorageResolver:
    """Idempotent get-or-create of the folder tree and yearly workbooks."""

    def __init__(self, drive: DriveClient, ledger: LedgerClient, root_name: Optional[str] = None):
        self.drive = drive
        self.ledger = ledger
        self.root_name = root_name or settings.drive_root_folder

    @classmethod
    def for_token(cls, access_token: str) -> "StorageResolver":
        """Resolver over the Drive and Sheets of the account owning ``access_token``."""
        return cls(DriveClient.from_token(access_token), LedgerClient.from_token(access_token))

    def ensure_year_folder(self, year: int) -> str:
        root_id = self.drive.ensure_folder(self.root_name)
        return self.drive.ensure_folder(str(year), root_id)

    def ensure_invoice_folders(self, year: int, cost_type: Optional[str]) -> Tuple[str, str]:
        """(year folder id, classification folder id), created as needed."""
        year_id = self.ensure_year_folder(year)
        return year_id, self.drive.ensure_folder(classification_folder(cost_type), year_id)

    def ensure_invoice_folder(self, year: int, cost_type: Optional[str]) -> str:
        """Folder id for <root>/<year>/<classification>."""
        return self.ensure_invoice_folders(year, cost_type)[1]

    def ensure_yearly_ledger(self, year: int, year_folder_id: Optional[str] = None) -> str:
        """Get or create EXTRATO_<year> inside the year folder."""
        year_folder_id = year_folder_id or self.ensure_year_folder(year)
        title = workbook_name(year)

        workbook_id = self.drive.find_file(title, year_folder_id, mime_type=SPREADSHEET_MIME)
        if workbook_id:
            return workbook_id

        workbook_id = self.ledger.create_workbook(title)
        self.drive.move_file(workbook_id, year_folder_id)
        logger.info(f"📊 Yearly ledger {title} ready in folder {year_folder_id}")
        return workbook_id

    def resolve_ledger(self, year: int, doc_date: Any) -> Tuple[str, str]:
        """(workbook id, tab) for a document, creating either if missing."""
        workbook_id = self.ensure_yearly_ledger(year)
        tab = month_tab(doc_date)
        self.ledger.ensure_tab(workbook_id, tab)
        return workbook_id, tab
