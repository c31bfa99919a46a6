"""Access-token lifecycle for connected Google accounts.

Tokens are refreshed when they are within ``token_refresh_buffer_seconds`` of
expiry. Credential rows are read-modify-write with no version check; two
concurrent refreshes both yield usable tokens, so the last write wins.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from uuid import UUID

from google.auth import exceptions as google_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from sqlalchemy.orm import Session

from shared import settings, OAuthCredential
from shared.errors import AuthError

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


def utcnow() -> datetime:
    """Naive UTC now, matching google-auth's expiry convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TokenManager:
    """Hands out bearer tokens that stay valid for the configured buffer."""

    def __init__(
        self,
        db: Session,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        buffer_seconds: Optional[int] = None,
    ):
        self.db = db
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.buffer = timedelta(
            seconds=settings.token_refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        )
        self._expired_refreshed = False

    def _resolve(self, account: Union[OAuthCredential, UUID, str]) -> OAuthCredential:
        if isinstance(account, OAuthCredential):
            return account
        query = self.db.query(OAuthCredential)
        if isinstance(account, UUID):
            credential = query.filter(OAuthCredential.id == account).first()
        else:
            credential = query.filter(OAuthCredential.email == account).first()
        if not credential:
            raise AuthError(f"No credential stored for account {account}", needs_reauth=True)
        return credential

    def needs_refresh(self, credential: OAuthCredential) -> bool:
        if not credential.access_token or not credential.token_expiry:
            return True
        return credential.token_expiry - utcnow() < self.buffer

    def refresh(self, credential: OAuthCredential) -> str:
        """Exchange the refresh token and persist the new access token.

        Raises:
            AuthError: ``needs_reauth`` set when Google rejected the refresh token.
        """
        if not credential.refresh_token:
            raise AuthError(f"No refresh token for {credential.email}", needs_reauth=True)

        creds = Credentials(
            token=None,
            refresh_token=credential.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        try:
            creds.refresh(Request())
        except google_exceptions.RefreshError as e:
            retryable = getattr(e, "retryable", False)
            logger.error(f"Token refresh rejected for {credential.email}: {e}")
            raise AuthError(f"Token refresh failed for {credential.email}: {e}", needs_reauth=not retryable) from e
        except google_exceptions.TransportError as e:
            logger.error(f"Token refresh transport error for {credential.email}: {e}")
            raise AuthError(f"Token refresh failed for {credential.email}: {e}", needs_reauth=False) from e

        credential.access_token = creds.token
        credential.token_expiry = creds.expiry or utcnow() + timedelta(seconds=3600)
        if creds.refresh_token and creds.refresh_token != credential.refresh_token:
            logger.info(f"Refresh token rotated for {credential.email}")
            credential.refresh_token = creds.refresh_token
        self.db.commit()

        logger.info(f"Refreshed access token for {credential.email}, expires {credential.token_expiry}")
        return credential.access_token

    def get_valid_token(self, account: Union[OAuthCredential, UUID, str]) -> str:
        """Return an access token valid for at least the buffer window."""
        credential = self._resolve(account)
        if not self.needs_refresh(credential):
            return credential.access_token
        return self.refresh(credential)

    def get_token_soft(self, account: Union[OAuthCredential, UUID, str]) -> Optional[str]:
        """Like get_valid_token, but fall back to the stale token on failure."""
        try:
            credential = self._resolve(account)
        except AuthError as e:
            logger.warning(f"⚠️ {e}")
            return None
        try:
            return self.get_valid_token(credential)
        except AuthError as e:
            kind = "re-authentication required" if e.needs_reauth else "transient failure"
            logger.warning(f"⚠️ Using stale token for {credential.email} ({kind}): {e}")
            return credential.access_token

    def refresh_expired_once(self) -> int:
        """Refresh every expired credential; later calls on this manager are no-ops.

        Returns:
            Number of credentials refreshed.
        """
        if self._expired_refreshed:
            return 0
        self._expired_refreshed = True

        now = utcnow()
        expired = (
            self.db.query(OAuthCredential)
            .filter(OAuthCredential.refresh_token.isnot(None))
            .filter(OAuthCredential.token_expiry < now)
            .all()
        )
        refreshed = 0
        for credential in expired:
            try:
                self.refresh(credential)
                refreshed += 1
            except AuthError as e:
                logger.warning(f"Could not refresh expired token for {credential.email}: {e}")
        return refreshed
