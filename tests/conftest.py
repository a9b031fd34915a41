"""Pytest configuration and fixtures."""

import os
import sys
import tempfile

import httpx
import pytest
from unittest.mock import AsyncMock, patch

# Keep log files out of the working tree
os.environ.setdefault("LOCALAPPDATA", tempfile.gettempdir())

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_SECRET = "test-secret-key-0123456789"


def json_response(status_code: int = 200, data=None) -> httpx.Response:
    """Real httpx response carrying a JSON body."""
    return httpx.Response(status_code, json=data if data is not None else {})


def html_response(html: str, status_code: int = 200, cookies: list[str] | None = None) -> httpx.Response:
    """Real httpx response carrying HTML and optional Set-Cookie headers."""
    headers = [("set-cookie", c) for c in (cookies or [])]
    return httpx.Response(status_code, text=html, headers=headers)


def login_ok(username: str = "10001234", token: str = "tok-1", user_id: int = 42) -> httpx.Response:
    return json_response(200, {"token": token, "userInfo": {"id": user_id, "username": username}})


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx client."""
    with patch('httpx.AsyncClient') as mock:
        client = AsyncMock()
        mock.return_value.__aenter__.return_value = client
        yield client


@pytest.fixture
def storage(tmp_path):
    """Empty encrypted store in a temp directory."""
    from domains.evs.storage import EncryptedStorage

    store = EncryptedStorage(TEST_SECRET, data_dir=tmp_path)
    store.load()
    return store
