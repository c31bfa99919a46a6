"""Find an invoice's row in a ledger tab by heuristic match.

Ledger rows carry no stored key, so each access rediscovers the row. A miss
(``None``) means the row was already moved, deleted by hand, or never
written; callers treat it as an expected outcome.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from services.storage.sheets import COLUMNS, LedgerClient

logger = logging.getLogger(__name__)

HEADER_OFFSET = 2
AMOUNT_TOLERANCE = 0.01

_AMOUNT_RE = re.compile(r"[^\d,.\-]")


def parse_amount(value: Any) -> Optional[float]:
    """Parse a ledger amount cell ("42.5", "42,50 €", 42.5)."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _AMOUNT_RE.sub("", str(value))
    if "," in text and "." in text:
        # thousands separator is whichever comes first
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def _cell(row: Sequence[Any], field: str) -> str:
    index = COLUMNS[field]
    return str(row[index]).strip() if index < len(row) and row[index] is not None else ""


def match_row(rows: List[Sequence[Any]], snapshot: Dict[str, Any]) -> Optional[int]:
    """Index into ``rows`` of the best match, trying strategies in priority order."""
    doc_number = str(snapshot.get("doc_number") or "").strip().lower()
    if doc_number:
        for i, row in enumerate(rows):
            if _cell(row, "doc_number").lower() == doc_number:
                return i

    supplier = str(snapshot.get("supplier_name") or "").strip().lower()
    if not supplier:
        return None

    amount = snapshot.get("total_amount")
    if amount is not None:
        for i, row in enumerate(rows):
            if _cell(row, "supplier_name").lower() != supplier:
                continue
            cell_amount = parse_amount(row[COLUMNS["total_amount"]] if len(row) > COLUMNS["total_amount"] else None)
            if cell_amount is not None and abs(cell_amount - float(amount)) < AMOUNT_TOLERANCE:
                return i

    doc_date = snapshot.get("doc_date")
    if doc_date:
        doc_date = str(doc_date).strip()
        for i, row in enumerate(rows):
            if _cell(row, "supplier_name").lower() == supplier and _cell(row, "doc_date") == doc_date:
                return i

    return None


def find_row(ledger: LedgerClient, workbook_id: str, tab: str, snapshot: Dict[str, Any]) -> Optional[int]:
    """1-indexed sheet row of the invoice described by ``snapshot``, or None.

    Args:
        snapshot: doc_number, supplier_name, total_amount and doc_date
            (ISO string) of the invoice as the ledger last saw it.
    """
    try:
        rows = ledger.read_rows(workbook_id, tab)
    except Exception as e:
        logger.warning(f"Could not read '{tab}' in {workbook_id}: {e}")
        return None

    index = match_row(rows, snapshot)
    if index is None:
        logger.info(f"No ledger row for {snapshot.get('supplier_name')} {snapshot.get('doc_date')} in '{tab}'")
        return None
    return index + HEADER_OFFSET
