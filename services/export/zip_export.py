"""Bulk export of stored invoice files as a zip archive.

Downloads run in batches of five concurrent requests. A failed download is
counted and skipped; it never aborts the export.
"""
import io
import logging
import re
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from shared import InvoiceRecord
from services.storage.drive import DriveClient

logger = logging.getLogger(__name__)

BATCH_SIZE = 5

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>]')


@dataclass
class ExportResult:
    archive: bytes
    success_count: int = 0
    failed_count: int = 0
    failed_ids: List[str] = field(default_factory=list)


def export_file_name(record: InvoiceRecord) -> str:
    doc_date = record.doc_date.isoformat() if record.doc_date else "sem-data"
    supplier = record.supplier_name or "desconhecido"
    name = f"{doc_date}_{supplier}_{record.total_amount or 0:.2f}.pdf"
    return _UNSAFE_CHARS.sub("_", name)


def _unique(name: str, used: set) -> str:
    if name not in used:
        used.add(name)
        return name
    stem, _, ext = name.rpartition(".")
    counter = 2
    while f"{stem}_{counter}.{ext}" in used:
        counter += 1
    unique = f"{stem}_{counter}.{ext}"
    used.add(unique)
    return unique


class ZipExporter:
    """Zip the stored files of a set of invoices.

    Google API clients are not thread-safe, so each worker thread builds its
    own DriveClient through ``drive_factory``.

    ``cancel`` is meant for callers that run ``export`` on a background
    thread. The HTTP export endpoint builds the archive inside the request
    and has nothing to cancel.
    """

    def __init__(self, drive_factory: Callable[[], DriveClient], batch_size: int = BATCH_SIZE):
        self.drive_factory = drive_factory
        self._local = threading.local()
        self.batch_size = batch_size
        self._abort = threading.Event()

    def cancel(self) -> None:
        self._abort.set()

    def _drive(self) -> DriveClient:
        if not hasattr(self._local, "drive"):
            self._local.drive = self.drive_factory()
        return self._local.drive

    def _download(self, record: InvoiceRecord) -> Tuple[InvoiceRecord, Optional[bytes]]:
        try:
            return record, self._drive().download_file(record.drive_file_id)
        except Exception as e:
            logger.warning(f"Could not download file of invoice {record.id}: {e}")
            return record, None

    def export(self, records: Sequence[InvoiceRecord]) -> ExportResult:
        records = [r for r in records if r.drive_file_id]
        buffer = io.BytesIO()
        result = ExportResult(archive=b"")
        used_names: set = set()

        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive, \
                ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(records), self.batch_size):
                if self._abort.is_set():
                    logger.info("Export cancelled")
                    break
                batch = records[start:start + self.batch_size]
                for record, data in pool.map(self._download, batch):
                    if data is None:
                        result.failed_count += 1
                        result.failed_ids.append(str(record.id))
                        continue
                    archive.writestr(_unique(export_file_name(record), used_names), data)
                    result.success_count += 1

        result.archive = buffer.getvalue()
        logger.info(f"Exported {result.success_count} file(s), {result.failed_count} failed")
        return result
