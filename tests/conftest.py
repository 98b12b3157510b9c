"""Shared fixtures for the authorization endpoint tests."""

from typing import Optional
from urllib.parse import urlencode

import pytest
from starlette.requests import Request

from authorization.oauth2_models import Client
from authorization.oauth2_storage import OAuth2EncryptedStorage

AUTHORIZE_PATH = "/oauth2/authorize"
REDIRECT_URI = "https://app.example.com/callback"


def make_request(
    method: str = "GET",
    query: Optional[dict] = None,
    form: Optional[dict] = None,
    path: str = AUTHORIZE_PATH,
) -> Request:
    """Build a real Starlette request, with an urlencoded body when form is given."""
    body = urlencode(form, doseq=True).encode() if form else b""
    headers = [(b"host", b"testserver")]
    if form:
        headers.append((b"content-type", b"application/x-www-form-urlencoded"))
        headers.append((b"content-length", str(len(body)).encode()))

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": urlencode(query or {}, doseq=True).encode(),
        "headers": headers,
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture
def registered_client():
    return Client(
        client_id="test-client",
        name="Test Client",
        redirect_uris=[REDIRECT_URI],
        scopes=["read", "write"],
    )


@pytest.fixture
def storage(tmp_path):
    """Encrypted storage on a temporary database, without the background sweeper."""
    store = OAuth2EncryptedStorage(
        db_path=str(tmp_path / "oauth2.db"),
        encryption_key="test-encryption-secret",
        cleanup_interval=0,
    )
    yield store
    store.shutdown()
