"""Pytest fixtures for kdrive_backup tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from helpers import MockBlob, MockBucket, make_response

import kdrive_backup
from kdrive_client import KDriveClient


@pytest.fixture(autouse=True)
def backup_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Reset module configuration to a known state for every test."""
    scratch = tmp_path / "scratch"
    monkeypatch.setattr(kdrive_backup, "STORAGE_PROJECT", "test-project")
    monkeypatch.setattr(kdrive_backup, "BACKUP_SCOPE", "all")
    monkeypatch.setattr(kdrive_backup, "SOURCE_BUCKET", None)
    monkeypatch.setattr(kdrive_backup, "SOURCE_FILE", None)
    monkeypatch.setattr(kdrive_backup, "EXECUTION_MODE", "sync")
    monkeypatch.setattr(kdrive_backup, "SCRATCH_DIR", str(scratch))
    monkeypatch.setattr(kdrive_backup, "KEEP_SCRATCH_FILES", False)
    return scratch


@pytest.fixture
def transfer_request() -> kdrive_backup.TransferRequest:
    return kdrive_backup.TransferRequest("secret-token", "123", "456")


@pytest.fixture
def buckets() -> list[MockBucket]:
    """Two buckets, one holding a folder placeholder."""
    return [
        MockBucket(
            "bucket-a",
            [
                MockBlob("report.csv", b"a,b,c\n1,2,3\n"),
                MockBlob("images/", b""),
                MockBlob("images/logo one.png", b"\x89PNG data"),
            ],
        ),
        MockBucket("bucket-b", [MockBlob("notes.txt", b"hello")]),
    ]


@pytest.fixture
def mock_storage_client(buckets: list[MockBucket]) -> Any:
    """Patch the Cloud Storage client class."""
    with patch("kdrive_backup.storage.Client") as mock_class:
        client = MagicMock()
        client.list_buckets.return_value = buckets
        client.bucket.side_effect = lambda name: next(b for b in buckets if b.name == name)
        mock_class.return_value = client
        yield client


@pytest.fixture
def mock_upload() -> Any:
    """Patch KDriveClient.upload to answer 200 without touching the network."""
    with patch.object(KDriveClient, "upload") as upload:
        upload.return_value = make_response()
        yield upload


@pytest.fixture
def reset_executor(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Give the test its own background executor and wait for it afterwards."""
    monkeypatch.setattr(kdrive_backup, "_executor", None)
    yield
    if kdrive_backup._executor is not None:
        kdrive_backup._executor.shutdown(wait=True)
