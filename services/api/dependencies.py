"""Shared FastAPI dependencies."""
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from shared import settings, get_db, OAuthCredential
from shared.errors import AuthError
from services.auth.accounts import get_primary_storage
from services.auth.token_manager import TokenManager
from services.storage.resolver import StorageResolver

logger = logging.getLogger(__name__)

security = HTTPBearer()


def verify_api_key(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify API key from header."""
    if credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


def get_storage_credential(db: Session = Depends(get_db)) -> OAuthCredential:
    credential = get_primary_storage(db)
    if credential is None:
        raise HTTPException(status_code=400, detail="No primary storage account connected")
    return credential


def get_storage_token(
    credential: OAuthCredential = Depends(get_storage_credential),
    db: Session = Depends(get_db),
) -> str:
    try:
        return TokenManager(db).get_valid_token(credential)
    except AuthError as e:
        if e.needs_reauth:
            raise HTTPException(status_code=401, detail=f"Reconnect {credential.email}: {e}")
        logger.error(f"Transient token failure for {credential.email}: {e}")
        raise HTTPException(status_code=503, detail=f"Google token refresh failed: {e}")


def get_storage_resolver(access_token: str = Depends(get_storage_token)) -> StorageResolver:
    return StorageResolver.for_token(access_token)
