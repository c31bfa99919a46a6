"""Connected Google accounts: OAuth code exchange and primary-storage selection.

At most one credential carries ``is_primary_storage``. The flag is moved by
clearing the old holder and setting the new one in a single commit.
"""
import os
import logging
from typing import Iterable, List, Optional
from uuid import UUID

from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from sqlalchemy.orm import Session

from shared import settings, OAuthCredential
from shared.google_client import OAUTH_SCOPES, STORAGE_SCOPES

logger = logging.getLogger(__name__)

# Google may return a superset/subset of the requested scopes
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")


def _client_config() -> dict:
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set")
    return {
        "web": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": [settings.google_redirect_uri],
        }
    }


def build_flow(state: Optional[str] = None) -> Flow:
    flow = Flow.from_client_config(_client_config(), scopes=OAUTH_SCOPES, state=state)
    flow.redirect_uri = settings.google_redirect_uri
    return flow


def authorization_url(state: Optional[str] = None) -> str:
    """URL the user visits to connect an account (offline access, forced consent)."""
    url, _ = build_flow(state).authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
    )
    return url


def fetch_account_email(creds) -> str:
    service = build("oauth2", "v2", credentials=creds, cache_discovery=False)
    info = service.userinfo().get().execute()
    email = info.get("email")
    if not email:
        raise ValueError("Google did not return an email for the authorised account")
    return email


def upsert_credential(
    db: Session,
    email: str,
    access_token: str,
    refresh_token: Optional[str],
    expiry,
    scopes: Iterable[str],
    user_id: Optional[UUID] = None,
) -> OAuthCredential:
    """Insert or update the credential for ``email``.

    An existing refresh token is kept when Google does not send a new one.
    The first connected account becomes primary storage.
    """
    credential = db.query(OAuthCredential).filter(
        OAuthCredential.email == email,
        OAuthCredential.provider == "google",
    ).first()

    if credential is None:
        has_primary = db.query(OAuthCredential).filter(OAuthCredential.is_primary_storage.is_(True)).count() > 0
        credential = OAuthCredential(
            email=email,
            provider="google",
            user_id=user_id,
            is_primary_storage=not has_primary,
        )
        db.add(credential)
        logger.info(f"Connected new Google account {email} (primary={credential.is_primary_storage})")
    else:
        logger.info(f"Updated tokens for Google account {email}")

    credential.access_token = access_token
    if refresh_token:
        credential.refresh_token = refresh_token
    credential.token_expiry = expiry
    credential.scopes = sorted(set(scopes or []))
    db.commit()
    db.refresh(credential)
    return credential


def exchange_code(db: Session, code: str, state: Optional[str] = None, user_id: Optional[UUID] = None) -> OAuthCredential:
    """Exchange an OAuth authorization code and store the resulting credential."""
    flow = build_flow(state)
    flow.fetch_token(code=code)
    creds = flow.credentials

    email = fetch_account_email(creds)
    return upsert_credential(
        db,
        email=email,
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=creds.expiry,
        scopes=creds.scopes or OAUTH_SCOPES,
        user_id=user_id,
    )


def get_primary_storage(db: Session) -> Optional[OAuthCredential]:
    return db.query(OAuthCredential).filter(OAuthCredential.is_primary_storage.is_(True)).first()


def set_primary_storage(db: Session, credential_id: UUID) -> OAuthCredential:
    """Make ``credential_id`` the single primary storage account."""
    credential = db.query(OAuthCredential).filter(OAuthCredential.id == credential_id).first()
    if not credential:
        raise LookupError(f"Credential {credential_id} not found")

    db.query(OAuthCredential).filter(
        OAuthCredential.is_primary_storage.is_(True),
        OAuthCredential.id != credential_id,
    ).update({OAuthCredential.is_primary_storage: False}, synchronize_session="fetch")
    credential.is_primary_storage = True
    db.commit()

    logger.info(f"Primary storage account is now {credential.email}")
    return credential


def remove_account(db: Session, credential_id: UUID) -> bool:
    """Delete a connected account. Returns False when it did not exist."""
    credential = db.query(OAuthCredential).filter(OAuthCredential.id == credential_id).first()
    if not credential:
        return False
    if credential.is_primary_storage:
        logger.warning(f"Removing primary storage account {credential.email}; no primary is set until one is chosen")
    db.delete(credential)
    db.commit()
    return True


def list_accounts(db: Session) -> List[OAuthCredential]:
    return db.query(OAuthCredential).filter(OAuthCredential.provider == "google").all()


def has_scopes(credential: OAuthCredential, required: Iterable[str] = STORAGE_SCOPES) -> bool:
    granted = set(credential.scopes or [])
    return all(scope in granted for scope in required)
