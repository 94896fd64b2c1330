#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

import logging
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.infomaniak.com/3"


def build_upload_url(endpoint: str, destination_id: str, folder_id: str, file_name: str, total_size: int) -> str:
    """
    Build the kDrive upload URL for a single file.

    Args:
        endpoint (str): API base, e.g. https://api.infomaniak.com/3
        destination_id (str): The drive ID
        folder_id (str): The directory ID the file lands in
        file_name (str): Name of the file in the destination, may contain '/'
        total_size (int): Size of the upload body in bytes

    Returns:
        str: The fully escaped upload URL
    """
    return (
        f"{endpoint.rstrip('/')}/drive/{quote(str(destination_id), safe='')}/upload"
        f"?directory_id={quote(str(folder_id), safe='')}"
        f"&file_name={quote(file_name, safe='')}"
        f"&total_size={int(total_size)}"
    )


class KDriveClient:
    """Request-scoped client for the kDrive upload API.

    Each instance owns its own session, so nothing is shared between jobs.
    """

    def __init__(self, api_token: str, endpoint: str = DEFAULT_ENDPOINT, timeout: float = 300):
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = requests.Session()
        # Ignore HTTP(S)_PROXY and friends from the environment
        self._session.trust_env = False
        self._session.headers["Authorization"] = f"Bearer {api_token}"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self._session.close()

    def upload(self, destination_id: str, folder_id: str, file_name: str, data: bytes) -> requests.Response:
        """
        Upload raw bytes to a kDrive folder in a single request.

        Args:
            destination_id (str): The drive ID
            folder_id (str): The directory ID
            file_name (str): Destination file name
            data (bytes): The file content

        Returns:
            requests.Response: The raw response, whatever its status
        """
        url = build_upload_url(self.endpoint, destination_id, folder_id, file_name, len(data))
        logger.debug(f"POST {url} ({len(data)} bytes)")
        return self._session.post(
            url,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
            timeout=self.timeout,
        )
