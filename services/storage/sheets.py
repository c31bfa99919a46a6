"""Yearly ledger workbooks in Google Sheets.

One workbook per year (``EXTRATO_<year>``), one tab per month, data rows from
row 2 with a fixed ten-column layout. Rows have no stored identity; callers
find them again with ``services.sync.row_locator``.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Union

from googleapiclient.errors import HttpError

from shared.google_client import build_service
from shared.rate_limiter import sheets_limiter, RateLimiter

logger = logging.getLogger(__name__)

MONTH_TABS = [
    "01_Janeiro", "02_Fevereiro", "03_Março", "04_Abril",
    "05_Maio", "06_Junho", "07_Julho", "08_Agosto",
    "09_Setembro", "10_Outubro", "11_Novembro", "12_Dezembro",
]

HEADERS = [
    "Data Doc.", "Fornecedor", "NIF Fornecedor", "Tipo Custo", "Nº Documento",
    "Valor Total (€)", "IVA (€)", "Resumo", "Link PDF", "Data Processamento",
]

COLUMNS = {
    "doc_date": 0,
    "supplier_name": 1,
    "supplier_vat": 2,
    "cost_type": 3,
    "doc_number": 4,
    "total_amount": 5,
    "tax_amount": 6,
    "summary": 7,
    "drive_link": 8,
    "processed_date": 9,
}

HEADER_COLOR = {"red": 0.71, "green": 0.82, "blue": 0.93}

Cell = Union[str, int, float]


def workbook_name(year: int) -> str:
    return f"EXTRATO_{year}"


def column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    letters = ""
    num = index + 1
    while num > 0:
        num, rem = divmod(num - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if value:
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            return None
    return None


def month_tab(doc_date: Any) -> str:
    """Tab name for a document date; January when the date is unusable."""
    parsed = _as_date(doc_date)
    return MONTH_TABS[parsed.month - 1] if parsed else MONTH_TABS[0]


def cell_value(value: Any) -> Cell:
    if value is None:
        return ""
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return value
    return str(value)


def build_row(fields: Dict[str, Any], processed_on: Optional[date] = None) -> List[Cell]:
    """Ledger row for an invoice, in column order A..J."""
    processed_on = processed_on or date.today()
    return [
        cell_value(fields.get("doc_date")),
        cell_value(fields.get("supplier_name")),
        cell_value(fields.get("supplier_vat")),
        cell_value(fields.get("cost_type")),
        cell_value(fields.get("doc_number")),
        fields.get("total_amount") or 0,
        fields.get("tax_amount") or 0,
        cell_value(fields.get("summary")),
        cell_value(fields.get("drive_link")),
        processed_on.isoformat(),
    ]


def merge_row(existing: Sequence[Cell], changes: Dict[str, Any]) -> List[Cell]:
    """Overlay changed fields onto a row read back from the ledger."""
    row = list(existing) + [""] * (len(HEADERS) - len(existing))
    row = row[:len(HEADERS)]
    for field, value in changes.items():
        if field in COLUMNS:
            row[COLUMNS[field]] = cell_value(value)
    return row


class LedgerClient:
    """Wrapper over the Sheets v4 spreadsheets resource."""

    def __init__(self, service: Any, limiter: RateLimiter = sheets_limiter):
        self.service = service
        self.limiter = limiter

    @classmethod
    def from_token(cls, access_token: str) -> "LedgerClient":
        return cls(build_service("sheets", "v4", access_token))

    def _tab_range(self, tab: str, cells: str) -> str:
        return f"'{tab}'!{cells}"

    def get_sheet_properties(self, workbook_id: str) -> List[Dict[str, Any]]:
        self.limiter.wait_for_slot()
        metadata = self.service.spreadsheets().get(
            spreadsheetId=workbook_id,
            fields="sheets.properties",
        ).execute()
        return [sheet["properties"] for sheet in metadata.get("sheets", [])]

    def get_sheet_id(self, workbook_id: str, tab: str) -> Optional[int]:
        for props in self.get_sheet_properties(workbook_id):
            if props.get("title") == tab:
                return props.get("sheetId")
        return None

    def _header_requests(self, sheet_id: int) -> List[Dict[str, Any]]:
        return [
            {
                "repeatCell": {
                    "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
                    "cell": {
                        "userEnteredFormat": {
                            "backgroundColor": HEADER_COLOR,
                            "textFormat": {"bold": True},
                        }
                    },
                    "fields": "userEnteredFormat(backgroundColor,textFormat)",
                }
            },
            {
                "updateSheetProperties": {
                    "properties": {"sheetId": sheet_id, "gridProperties": {"frozenRowCount": 1}},
                    "fields": "gridProperties.frozenRowCount",
                }
            },
        ]

    def write_header(self, workbook_id: str, tab: str, sheet_id: Optional[int] = None) -> None:
        self.limiter.wait_for_slot()
        self.service.spreadsheets().values().update(
            spreadsheetId=workbook_id,
            range=self._tab_range(tab, "A1:J1"),
            valueInputOption="RAW",
            body={"values": [HEADERS]},
        ).execute()
        if sheet_id is not None:
            self.limiter.wait_for_slot()
            self.service.spreadsheets().batchUpdate(
                spreadsheetId=workbook_id,
                body={"requests": self._header_requests(sheet_id)},
            ).execute()

    def create_workbook(self, title: str) -> str:
        """Create a workbook with all twelve month tabs and their headers."""
        self.limiter.wait_for_slot()
        try:
            created = self.service.spreadsheets().create(
                body={
                    "properties": {"title": title},
                    "sheets": [{"properties": {"title": tab}} for tab in MONTH_TABS],
                },
                fields="spreadsheetId,sheets.properties",
            ).execute()
        except HttpError as e:
            logger.error(f"Could not create workbook '{title}': {e}")
            raise

        workbook_id = created["spreadsheetId"]
        sheet_ids = [sheet["properties"]["sheetId"] for sheet in created.get("sheets", [])]

        self.limiter.wait_for_slot()
        self.service.spreadsheets().values().batchUpdate(
            spreadsheetId=workbook_id,
            body={
                "valueInputOption": "RAW",
                "data": [{"range": self._tab_range(tab, "A1:J1"), "values": [HEADERS]} for tab in MONTH_TABS],
            },
        ).execute()

        requests = []
        for sheet_id in sheet_ids:
            requests.extend(self._header_requests(sheet_id))
        if requests:
            self.limiter.wait_for_slot()
            self.service.spreadsheets().batchUpdate(
                spreadsheetId=workbook_id,
                body={"requests": requests},
            ).execute()

        logger.info(f"📊 Created workbook '{title}' ({workbook_id})")
        return workbook_id

    def ensure_tab(self, workbook_id: str, tab: str) -> bool:
        """Get or create a month tab.

        The header row is written only when the tab is created here.

        Returns:
            True if the tab was created.
        """
        if self.get_sheet_id(workbook_id, tab) is not None:
            return False

        self.limiter.wait_for_slot()
        try:
            reply = self.service.spreadsheets().batchUpdate(
                spreadsheetId=workbook_id,
                body={"requests": [{"addSheet": {"properties": {"title": tab}}}]},
            ).execute()
        except HttpError as e:
            logger.error(f"Could not add tab '{tab}' to {workbook_id}: {e}")
            raise

        sheet_id = reply["replies"][0]["addSheet"]["properties"]["sheetId"]
        self.write_header(workbook_id, tab, sheet_id)
        logger.info(f"Created tab '{tab}' in {workbook_id}")
        return True

    def append_row(self, workbook_id: str, tab: str, row: Sequence[Cell]) -> None:
        self.limiter.wait_for_slot()
        self.service.spreadsheets().values().append(
            spreadsheetId=workbook_id,
            range=self._tab_range(tab, "A2:J"),
            valueInputOption="USER_ENTERED",
            insertDataOption="INSERT_ROWS",
            body={"values": [list(row)]},
        ).execute()
        logger.info(f"Appended ledger row to '{tab}' in {workbook_id}")

    def read_rows(self, workbook_id: str, tab: str) -> List[List[Cell]]:
        """All data rows of a tab, header excluded. Row N of the sheet is index N-2."""
        self.limiter.wait_for_slot()
        response = self.service.spreadsheets().values().get(
            spreadsheetId=workbook_id,
            range=self._tab_range(tab, "A2:J"),
        ).execute()
        return response.get("values", [])

    def read_row(self, workbook_id: str, tab: str, row_number: int) -> List[Cell]:
        self.limiter.wait_for_slot()
        response = self.service.spreadsheets().values().get(
            spreadsheetId=workbook_id,
            range=self._tab_range(tab, f"A{row_number}:J{row_number}"),
        ).execute()
        values = response.get("values", [])
        return values[0] if values else []

    def batch_update_cells(self, workbook_id: str, tab: str, row_number: int, changes: Dict[str, Any]) -> int:
        """Write only the given fields of one row in a single batched call.

        Returns:
            Number of cells written.
        """
        data = [
            {
                "range": self._tab_range(tab, f"{column_letter(COLUMNS[field])}{row_number}"),
                "values": [[cell_value(value)]],
            }
            for field, value in changes.items()
            if field in COLUMNS
        ]
        if not data:
            return 0

        self.limiter.wait_for_slot()
        self.service.spreadsheets().values().batchUpdate(
            spreadsheetId=workbook_id,
            body={"valueInputOption": "USER_ENTERED", "data": data},
        ).execute()
        return len(data)

    def delete_row(self, workbook_id: str, tab: str, row_number: int) -> None:
        """Delete one row; rows below shift up."""
        sheet_id = self.get_sheet_id(workbook_id, tab)
        if sheet_id is None:
            raise LookupError(f"Tab '{tab}' not found in {workbook_id}")

        self.limiter.wait_for_slot()
        self.service.spreadsheets().batchUpdate(
            spreadsheetId=workbook_id,
            body={
                "requests": [{
                    "deleteDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": row_number - 1,
                            "endIndex": row_number,
                        }
                    }
                }]
            },
        ).execute()
        logger.info(f"Deleted row {row_number} from '{tab}' in {workbook_id}")
