"""Scheduled mailbox sync across every connected Google account.

Attachments found in any mailbox are stored under the primary storage
account's Drive and ledger. Each account gets a SyncLog row per run.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import settings, get_db, SessionLocal, OAuthCredential, SyncLog
from shared.errors import AuthError, FatalStoreError
from services.api.dependencies import verify_api_key
from services.auth.accounts import get_primary_storage, list_accounts
from services.auth.token_manager import TokenManager, utcnow
from services.ingestion.gmail_sync import (
    build_gmail_service,
    search_messages,
    list_pdf_attachments,
    download_attachment,
    mark_as_read,
)
from services.storage.resolver import StorageResolver
from services.worker.ingestion import IncomingFile, InvoiceIngestor
from services.worker.queue import IngestionQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync_inbox", tags=["sync"])

# Abort events of the syncs currently running
_active_runs: List[threading.Event] = []
_runs_lock = threading.Lock()


class AccountSyncResult(BaseModel):
    account: str
    processed: int = 0
    duplicates: int = 0
    errors: List[str] = []


class SyncResponse(BaseModel):
    """Response model for sync inbox endpoint."""
    success: bool
    accounts_processed: int
    total_processed: int
    total_duplicates: int
    total_errors: int
    details: List[AccountSyncResult] = []
    message: Optional[str] = None


def sync_status(processed: int, errors: List[str]) -> str:
    if not errors:
        return "success"
    return "partial" if processed > 0 else "failed"


def sync_account(
    db: Session,
    credential: OAuthCredential,
    tokens: TokenManager,
    ingestor: InvoiceIngestor,
    abort: Optional[threading.Event] = None,
) -> AccountSyncResult:
    """Ingest PDF attachments from the account's unread mail of the last 24h.

    All of the account's attachments go through one IngestionQueue, so the
    ingest delay applies between messages too. Setting ``abort`` stops the
    run after the document in flight.
    """
    result = AccountSyncResult(account=credential.email)
    log = SyncLog(credential_id=credential.id, status="running", errors=[], meta={"email": credential.email})
    db.add(log)
    db.commit()

    try:
        access_token = tokens.get_token_soft(credential)
        if not access_token:
            raise AuthError(f"No usable token for {credential.email}", needs_reauth=True)

        service = build_gmail_service(access_token)
        message_ids = search_messages(service, max_results=settings.mailbox_max_results)
        queue = IngestionQueue(ingestor, abort=abort)

        def incoming_files():
            for message_id in message_ids:
                if queue.cancelled:
                    return
                errors_before = len(result.errors)
                try:
                    attachments = list_pdf_attachments(service, message_id)
                except Exception as e:
                    result.errors.append(f"{message_id}: {e}")
                    continue

                for att in attachments:
                    try:
                        data = download_attachment(service, message_id, att["attachment_id"])
                    except Exception as e:
                        result.errors.append(f"{message_id}: {e}")
                        continue
                    yield IncomingFile(
                        data=data,
                        filename=att["filename"],
                        mime_type="application/pdf",
                        source_message_id=message_id,
                        user_id=credential.user_id,
                    )

                # Resumed only after the queue handled the message's last file.
                # Failed messages stay unread so the next run retries them
                if len(result.errors) == errors_before:
                    try:
                        mark_as_read(service, message_id)
                    except Exception as e:
                        logger.warning(f"Could not mark {message_id} as read: {e}")

        def tally(outcome):
            if outcome.status == "duplicate":
                result.duplicates += 1
            elif outcome.ok:
                result.processed += 1
            else:
                result.errors.append(f"{outcome.filename}: {outcome.error}")
                if outcome.fatal:
                    raise FatalStoreError(f"Record store unavailable, stopping sync of {credential.email}")

        queue.run(incoming_files(), on_result=tally)
        if queue.cancelled:
            logger.info(f"Sync of {credential.email} cancelled")

    except Exception as e:
        logger.error(f"❌ Sync failed for {credential.email}: {e}", exc_info=True)
        result.errors.append(str(e))

    log.completed_at = utcnow()
    log.status = sync_status(result.processed, result.errors)
    log.processed_count = result.processed
    log.duplicate_count = result.duplicates
    log.error_count = len(result.errors)
    log.errors = list(result.errors)
    db.commit()

    logger.info(
        f"Sync {log.status} for {credential.email}: processed={result.processed}, "
        f"duplicates={result.duplicates}, errors={len(result.errors)}"
    )
    return result


def notify_errors(details: List[AccountSyncResult]) -> None:
    """POST per-account errors to the configured webhook, if any."""
    failures = [{"account": d.account, "errors": d.errors} for d in details if d.errors]
    if not settings.error_webhook_url or not failures:
        return
    try:
        requests.post(
            settings.error_webhook_url,
            json={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "type": "sync_errors",
                "errors": failures,
            },
            timeout=10,
        ).raise_for_status()
        logger.info("Sync errors sent to webhook")
    except requests.RequestException as e:
        logger.warning(f"Could not send sync errors to webhook: {e}")


def sync_all_accounts(db: Optional[Session] = None) -> Dict[str, Any]:
    """Run one mailbox sync over every connected account.

    Raises:
        RuntimeError: no primary storage account is configured.
        AuthError: the primary storage account has no usable token.
    """
    owns_session = db is None
    db = db or SessionLocal()
    try:
        accounts = list_accounts(db)
        if not accounts:
            logger.info("No Google accounts connected, nothing to sync")
            return SyncResponse(
                success=True, accounts_processed=0, total_processed=0,
                total_duplicates=0, total_errors=0, message="No accounts connected",
            ).model_dump()

        primary = get_primary_storage(db)
        if primary is None:
            raise RuntimeError("No primary storage account configured")

        tokens = TokenManager(db)
        tokens.refresh_expired_once()
        storage_token = tokens.get_valid_token(primary)
        logger.info(f"Storage account: {primary.email}")

        ingestor = InvoiceIngestor(db, StorageResolver.for_token(storage_token), primary)

        logger.info(f"{len(accounts)} account(s) to sync")
        abort = threading.Event()
        with _runs_lock:
            _active_runs.append(abort)
        try:
            details = []
            for account in accounts:
                if abort.is_set():
                    logger.info(f"Sync cancelled, {len(accounts) - len(details)} account(s) skipped")
                    break
                details.append(sync_account(db, account, tokens, ingestor, abort=abort))
        finally:
            with _runs_lock:
                _active_runs.remove(abort)
        notify_errors(details)

        return SyncResponse(
            success=True,
            accounts_processed=len(details),
            total_processed=sum(d.processed for d in details),
            total_duplicates=sum(d.duplicates for d in details),
            total_errors=sum(len(d.errors) for d in details),
            details=details,
        ).model_dump()
    finally:
        if owns_session:
            db.close()


@router.post("", response_model=SyncResponse)
def sync_inbox(
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Run the mailbox sync now instead of waiting for the scheduler."""
    try:
        return SyncResponse(**sync_all_accounts(db))
    except Exception as e:
        logger.error(f"Sync inbox error: {e}")
        raise HTTPException(status_code=500, detail=f"Sync failed: {str(e)}")


def cancel_running_syncs() -> int:
    """Signal every running sync to stop after its document in flight."""
    with _runs_lock:
        for abort in _active_runs:
            abort.set()
        return len(_active_runs)


@router.post("/cancel")
def cancel_sync(api_key: str = Depends(verify_api_key)):
    """Stop a running mailbox sync. Unfinished messages stay unread."""
    cancelled = cancel_running_syncs()
    logger.info(f"Cancel requested for {cancelled} running sync(s)")
    return {"cancelled": cancelled}
