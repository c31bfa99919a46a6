"""Connected Google accounts API: OAuth flow and primary storage selection."""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db
from services.api.dependencies import verify_api_key
from services.auth import accounts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["accounts"])


class AccountResponse(BaseModel):
    id: UUID
    email: str
    is_primary_storage: bool
    token_expiry: Optional[datetime] = None
    scopes: List[str] = []

    @classmethod
    def from_credential(cls, credential) -> "AccountResponse":
        return cls(
            id=credential.id,
            email=credential.email,
            is_primary_storage=bool(credential.is_primary_storage),
            token_expiry=credential.token_expiry,
            scopes=credential.scopes or [],
        )


@router.get("/oauth/authorize")
def oauth_authorize(state: Optional[str] = None):
    """Redirect to Google's consent screen."""
    try:
        return RedirectResponse(accounts.authorization_url(state))
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/oauth/callback", response_model=AccountResponse)
def oauth_callback(code: str, state: Optional[str] = None, db: Session = Depends(get_db)):
    """Complete the OAuth flow and store the account's tokens."""
    try:
        credential = accounts.exchange_code(db, code, state=state)
    except Exception as e:
        logger.error(f"OAuth callback failed: {e}", exc_info=True)
        raise HTTPException(status_code=400, detail=f"OAuth exchange failed: {str(e)}")
    return AccountResponse.from_credential(credential)


@router.get("/accounts", response_model=List[AccountResponse])
def list_accounts(db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    return [AccountResponse.from_credential(c) for c in accounts.list_accounts(db)]


@router.post("/accounts/{account_id}/primary", response_model=AccountResponse)
def set_primary(account_id: UUID, db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    try:
        credential = accounts.set_primary_storage(db, account_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Account not found")
    return AccountResponse.from_credential(credential)


@router.delete("/accounts/{account_id}")
def remove_account(account_id: UUID, db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    if not accounts.remove_account(db, account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"deleted": True}
