"""Error taxonomy shared by the orchestrators.

Partial synchronisation (record stored, file or ledger not) is never raised;
it is reported through the boolean flags on the orchestrator result models.
"""


class InvoiceSyncError(Exception):
    """Base class for invoice synchronisation errors."""


class ValidationError(InvoiceSyncError):
    """Input rejected before any network call (size, MIME type, credential)."""


class AuthError(InvoiceSyncError):
    """Credential could not be refreshed.

    ``needs_reauth`` is True when the refresh token was rejected and the
    account must be connected again; False for network or 5xx failures.
    """

    def __init__(self, message: str, needs_reauth: bool = False):
        super().__init__(message)
        self.needs_reauth = needs_reauth


class DuplicateInvoiceError(InvoiceSyncError):
    """Candidate already exists in the record store."""


class ExtractionError(InvoiceSyncError):
    """Extraction oracle output is unusable."""


class FatalStoreError(InvoiceSyncError):
    """The authoritative record store write failed."""
