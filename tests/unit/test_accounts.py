"""Unit tests for connected accounts and primary storage selection."""
import uuid
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from shared.google_client import DRIVE_SCOPE, OAUTH_SCOPES, SHEETS_SCOPE
from shared.models import OAuthCredential
from services.auth.accounts import (
    exchange_code,
    get_primary_storage,
    has_scopes,
    remove_account,
    set_primary_storage,
    upsert_credential,
)


EXPIRY = datetime(2030, 1, 1)


def connect(db_session, email, refresh_token="refresh", scopes=OAUTH_SCOPES):
    return upsert_credential(db_session, email, "access", refresh_token, EXPIRY, scopes)


def test_first_account_becomes_primary(db_session):
    first = connect(db_session, "a@example.com")
    second = connect(db_session, "b@example.com")

    assert first.is_primary_storage is True
    assert second.is_primary_storage is False
    assert get_primary_storage(db_session).email == "a@example.com"


def test_reconnect_keeps_refresh_token_when_none_returned(db_session):
    connect(db_session, "a@example.com", refresh_token="original")

    again = upsert_credential(db_session, "a@example.com", "new-access", None, EXPIRY, OAUTH_SCOPES)

    assert again.refresh_token == "original"
    assert again.access_token == "new-access"
    assert db_session.query(OAuthCredential).count() == 1


def test_set_primary_storage_moves_the_flag(db_session):
    connect(db_session, "a@example.com")
    second = connect(db_session, "b@example.com")

    set_primary_storage(db_session, second.id)

    primaries = db_session.query(OAuthCredential).filter(OAuthCredential.is_primary_storage.is_(True)).all()
    assert [c.email for c in primaries] == ["b@example.com"]


def test_set_primary_storage_unknown_account(db_session):
    with pytest.raises(LookupError):
        set_primary_storage(db_session, uuid.uuid4())


def test_remove_account(db_session):
    credential_id = connect(db_session, "a@example.com").id

    assert remove_account(db_session, credential_id) is True
    assert remove_account(db_session, credential_id) is False
    assert get_primary_storage(db_session) is None


def test_has_scopes():
    credential = OAuthCredential(email="a@example.com", scopes=[DRIVE_SCOPE])

    assert has_scopes(credential) is False
    credential.scopes = [DRIVE_SCOPE, SHEETS_SCOPE]
    assert has_scopes(credential) is True


@patch('services.auth.accounts.fetch_account_email', return_value="new@example.com")
@patch('services.auth.accounts.build_flow')
def test_exchange_code_stores_credential(mock_build_flow, mock_email, db_session):
    flow = mock_build_flow.return_value
    flow.credentials = MagicMock(token="tok", refresh_token="ref", expiry=EXPIRY, scopes=list(OAUTH_SCOPES))

    credential = exchange_code(db_session, code="auth-code", state="xyz")

    flow.fetch_token.assert_called_once_with(code="auth-code")
    assert credential.email == "new@example.com"
    assert credential.refresh_token == "ref"
    assert credential.is_primary_storage is True
