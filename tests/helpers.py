"""Shared test helpers for kdrive_backup tests."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

VALID_ARGS = {
    "KDRIVE_API_TOKEN": "secret-token",
    "KDRIVE_ID": "123",
    "KDRIVE_FOLDER_ID": "456",
}


class MockBlob:
    """Mock google.cloud.storage blob."""

    def __init__(self, name: str, data: bytes = b"") -> None:
        self.name = name
        self.data = data
        self.size = len(data)
        self.downloads = 0

    def download_to_filename(self, filename: str) -> None:
        self.downloads += 1
        with open(filename, "wb") as f:
            f.write(self.data)


class MockBucket:
    """Mock google.cloud.storage bucket."""

    def __init__(self, name: str, blobs: list[MockBlob] | None = None) -> None:
        self.name = name
        self.blobs = blobs or []

    def list_blobs(self) -> list[MockBlob]:
        return list(self.blobs)


def make_request(args: dict[str, Any] | None = None, method: str = "GET") -> MagicMock:
    """Create a mock Flask request carrying query parameters."""
    request = MagicMock()
    request.method = method
    request.args = dict(args or {})
    return request


def make_response(status_code: int = 200, text: str = '{"result":"success"}') -> MagicMock:
    """Create a mock requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response
