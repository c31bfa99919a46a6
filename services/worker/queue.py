"""Serial ingestion queue.

Files are processed one at a time with a short pause between them so the
extraction quota is spread out. Cancellation is checked between items only;
a document already in flight runs to completion.
"""
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

from shared import settings
from services.worker.ingestion import IncomingFile, IngestionResult, InvoiceIngestor

logger = logging.getLogger(__name__)


class IngestionQueue:

    def __init__(
        self,
        ingestor: InvoiceIngestor,
        delay_seconds: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
        abort: Optional[threading.Event] = None,
    ):
        self.ingestor = ingestor
        self.delay_seconds = settings.ingest_delay_seconds if delay_seconds is None else delay_seconds
        self._sleep = sleep or time.sleep
        self._abort = abort if abort is not None else threading.Event()

    def cancel(self) -> None:
        self._abort.set()

    @property
    def cancelled(self) -> bool:
        return self._abort.is_set()

    def run(
        self,
        files: Iterable[IncomingFile],
        on_result: Optional[Callable[[IngestionResult], None]] = None,
    ) -> List[IngestionResult]:
        results: List[IngestionResult] = []
        for index, file in enumerate(files):
            if self._abort.is_set():
                logger.info(f"Ingestion cancelled after {len(results)} file(s)")
                break
            if index and self.delay_seconds:
                self._sleep(self.delay_seconds)

            result = self.ingestor.ingest(file)
            results.append(result)
            if on_result:
                on_result(result)
        return results
