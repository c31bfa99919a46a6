"""Google API service construction from a bearer token."""
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"

OAUTH_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    GMAIL_READONLY_SCOPE,
    GMAIL_MODIFY_SCOPE,
    DRIVE_SCOPE,
    SHEETS_SCOPE,
]

STORAGE_SCOPES = [DRIVE_SCOPE, SHEETS_SCOPE]


def build_service(api: str, version: str, access_token: str) -> Any:
    """Build an API client authorised with an already-fresh access token."""
    creds = Credentials(token=access_token)
    return build(api, version, credentials=creds, cache_discovery=False)
