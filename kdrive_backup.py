#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

import concurrent.futures
import dataclasses
import datetime
import functools
import hashlib
import logging
import os
import shutil
import tempfile
import threading
import uuid
from typing import Iterator, List, Optional
from urllib.parse import quote

import functions_framework
import pytz
import requests
from google.cloud import storage

from kdrive_client import DEFAULT_ENDPOINT, KDriveClient

# Configure logging for Cloud Functions
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)

# Query parameters, in the order they are checked
REQUIRED_PARAMETERS = ("KDRIVE_API_TOKEN", "KDRIVE_ID", "KDRIVE_FOLDER_ID")

SCOPES = ("all", "bucket", "file")
EXECUTION_MODES = ("sync", "deferred")

# Source store: project whose buckets are backed up
STORAGE_PROJECT = os.environ.get("STORAGE_PROJECT") or None

# all = every bucket of the project, bucket = SOURCE_BUCKET only, file = SOURCE_FILE only
BACKUP_SCOPE = os.environ.get("BACKUP_SCOPE", "all").lower()
SOURCE_BUCKET = os.environ.get("SOURCE_BUCKET") or None
SOURCE_FILE = os.environ.get("SOURCE_FILE") or None

# sync = respond when the backup is done, deferred = respond 202 and run in the background
EXECUTION_MODE = os.environ.get("EXECUTION_MODE", "sync").lower()
BACKGROUND_WORKERS = int(os.environ.get("BACKGROUND_WORKERS", "1"))

KDRIVE_API_ENDPOINT = os.environ.get("KDRIVE_API_ENDPOINT", DEFAULT_ENDPOINT)
UPLOAD_TIMEOUT = float(os.environ.get("UPLOAD_TIMEOUT", "300"))

SCRATCH_DIR = os.environ.get("SCRATCH_DIR") or tempfile.gettempdir()
KEEP_SCRATCH_FILES = os.environ.get("KEEP_SCRATCH_FILES", "false").lower() in ("1", "true", "yes")

if BACKUP_SCOPE not in SCOPES:
    raise ValueError(f"Invalid BACKUP_SCOPE '{BACKUP_SCOPE}', expected one of {', '.join(SCOPES)}")
if EXECUTION_MODE not in EXECUTION_MODES:
    raise ValueError(f"Invalid EXECUTION_MODE '{EXECUTION_MODE}', expected one of {', '.join(EXECUTION_MODES)}")

TEXT_HEADERS = {"Content-Type": "text/plain; charset=utf-8"}


class BackupError(Exception):
    """Base exception for all backup errors."""


class MissingParameter(BackupError):
    """Raised when a required query parameter is absent or empty."""

    def __init__(self, parameter: str):
        super().__init__(f"Mandatory parameter `{parameter}`.")
        self.parameter = parameter


class SourceUnavailable(BackupError):
    """Raised when the source store is not configured."""


class TransferFailure(BackupError):
    """Raised when a single object could not be uploaded to kDrive."""

    def __init__(self, object_id: str, destination_path: str, status_code: Optional[int], body: str):
        super().__init__(f"Failed uploading '{object_id}' ({status_code}): {body}")
        self.object_id = object_id
        self.destination_path = destination_path
        self.status_code = status_code
        self.body = body


@dataclasses.dataclass(frozen=True)
class TransferRequest:
    api_token: str
    destination_id: str
    folder_id: str


@dataclasses.dataclass
class SourceObject:
    """One object to back up, either a blob or a local file."""

    name: str
    size: Optional[int]
    destination_name: str
    container: Optional[str] = None
    blob: Optional[storage.Blob] = None
    local_path: Optional[str] = None

    @property
    def object_id(self) -> str:
        return f"{self.container}/{self.name}" if self.container else self.name


@dataclasses.dataclass
class UploadOutcome:
    object_id: str
    destination_path: str
    success: bool
    status_code: Optional[int]
    body: str = ""


@dataclasses.dataclass
class BackupSummary:
    job_id: str
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    outcomes: List[UploadOutcome] = dataclasses.field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.successful

    @property
    def message(self) -> str:
        if not self.outcomes:
            return "Backup completed: no objects to transfer."
        return f"Backed up {self.successful} of {len(self.outcomes)} object(s) to kDrive."

    def to_dict(self) -> dict:
        if not self.outcomes:
            status = "empty"
        elif not self.successful:
            status = "failed"
        elif self.failed:
            status = "partial_success"
        else:
            status = "success"
        end_time = self.end_time or self.start_time
        return {
            "status": status,
            "message": self.message,
            "job_id": self.job_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "objects_processed": len(self.outcomes),
            "objects_successful": self.successful,
            "objects_failed": self.failed,
            "failed_objects": [outcome.object_id for outcome in self.outcomes if not outcome.success],
        }


def validate_parameters(args) -> TransferRequest:
    """
    Extract the required parameters from a query string mapping.

    Args:
        args: Mapping of query keys to values (e.g. request.args)

    Returns:
        TransferRequest: The validated request

    Raises:
        MissingParameter: For the first absent or empty parameter
    """
    values = []
    for name in REQUIRED_PARAMETERS:
        value = args.get(name)
        if not value:
            raise MissingParameter(name)
        values.append(value)
    return TransferRequest(*values)


def new_job_id() -> str:
    return uuid.uuid4().hex


def job_directory(job_id: str, transfer_request: TransferRequest) -> str:
    """Scratch root of one job, namespaced by drive and job."""
    drive = quote(transfer_request.destination_id, safe="")
    return os.path.join(SCRATCH_DIR, f"kdrive_{drive}_{job_id}")


def scratch_path(directory: str, name: str) -> str:
    """Flat local path for an object name, unique per name within a directory."""
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
    parts = [part for part in name.split("/") if part not in ("", ".", "..")]
    return os.path.join(directory, f"{digest}_{parts[-1]}" if parts else digest)


def iter_source_objects() -> Iterator[SourceObject]:
    """
    Lazily list the objects to back up for the configured scope.

    Yields:
        SourceObject: Objects in the order the store reports them

    Raises:
        SourceUnavailable: If the source store is not configured
    """
    if BACKUP_SCOPE == "file":
        if not SOURCE_FILE or not os.path.isfile(SOURCE_FILE):
            raise SourceUnavailable(f"SOURCE_FILE '{SOURCE_FILE}' is not a file")
        name = os.path.basename(SOURCE_FILE)
        yield SourceObject(
            name=name,
            size=os.path.getsize(SOURCE_FILE),
            destination_name=name,
            local_path=SOURCE_FILE,
        )
        return

    if not STORAGE_PROJECT:
        raise SourceUnavailable("STORAGE_PROJECT is not set")
    if BACKUP_SCOPE == "bucket" and not SOURCE_BUCKET:
        raise SourceUnavailable("SOURCE_BUCKET is not set")

    storage_client = storage.Client(project=STORAGE_PROJECT)
    if BACKUP_SCOPE == "bucket":
        buckets = [storage_client.bucket(SOURCE_BUCKET)]
    else:
        buckets = storage_client.list_buckets()

    for bucket in buckets:
        logger.info(f"Listing blobs in bucket '{bucket.name}'")
        for blob in bucket.list_blobs():
            # Folder placeholders carry no data
            if blob.name.endswith("/"):
                continue
            destination_name = f"{bucket.name}/{blob.name}" if BACKUP_SCOPE == "all" else blob.name
            yield SourceObject(
                name=blob.name,
                size=blob.size,
                destination_name=destination_name,
                container=bucket.name,
                blob=blob,
            )


def download_object(source: SourceObject, directory: str) -> str:
    """
    Stage an object in scratch storage.

    Args:
        source (SourceObject): The object to stage
        directory (str): The scratch directory for the object's container

    Returns:
        str: Path of the staged copy
    """
    local_path = scratch_path(directory, source.name)
    os.makedirs(directory, exist_ok=True)
    if source.blob is not None:
        source.blob.download_to_filename(local_path)
    else:
        shutil.copyfile(source.local_path, local_path)
    logger.info(f"Downloaded '{source.object_id}' ({source.size} bytes) to {local_path}")
    return local_path


def transfer_object(source: SourceObject, transfer_request: TransferRequest, client: KDriveClient, directory: str) -> UploadOutcome:
    """
    Download one object and upload it to kDrive.

    Args:
        source (SourceObject): The object to transfer
        transfer_request (TransferRequest): Destination and credentials
        client (KDriveClient): The job's kDrive client
        directory (str): The scratch directory for the object's container

    Returns:
        UploadOutcome: The successful outcome

    Raises:
        TransferFailure: On a non-2xx response or a transport error
    """
    local_path = download_object(source, directory)
    try:
        with open(local_path, "rb") as f:
            data = f.read()
        if source.size is not None and source.size != len(data):
            logger.warning(f"Size of '{source.object_id}' changed: listed {source.size} bytes, staged {len(data)}")

        try:
            response = client.upload(
                transfer_request.destination_id,
                transfer_request.folder_id,
                source.destination_name,
                data,
            )
        except requests.RequestException as e:
            raise TransferFailure(source.object_id, source.destination_name, None, str(e)) from e

        logger.info(f"Uploaded '{source.object_id}' to kDrive: {response.status_code}")
        if not 200 <= response.status_code < 300:
            raise TransferFailure(source.object_id, source.destination_name, response.status_code, response.text)

        return UploadOutcome(
            object_id=source.object_id,
            destination_path=source.destination_name,
            success=True,
            status_code=response.status_code,
            body=response.text,
        )
    finally:
        if not KEEP_SCRATCH_FILES and os.path.exists(local_path):
            os.remove(local_path)


def run_backup(transfer_request: TransferRequest, job_id: Optional[str] = None) -> BackupSummary:
    """
    Back up every source object to kDrive, one after the other.

    Per-object upload failures are logged and recorded; anything else propagates.

    Args:
        transfer_request (TransferRequest): Destination and credentials
        job_id (str): Optional job ID, generated if missing

    Returns:
        BackupSummary: Outcome of every attempted object
    """
    job_id = job_id or new_job_id()
    summary = BackupSummary(job_id=job_id, start_time=datetime.datetime.now(pytz.utc))
    logger.info(
        f"Starting backup job {job_id} (scope: {BACKUP_SCOPE}, drive: {transfer_request.destination_id}, "
        f"folder: {transfer_request.folder_id})"
    )

    root = job_directory(job_id, transfer_request)
    try:
        with KDriveClient(transfer_request.api_token, KDRIVE_API_ENDPOINT, UPLOAD_TIMEOUT) as client:
            try:
                for source in iter_source_objects():
                    directory = os.path.join(root, source.container) if BACKUP_SCOPE == "all" else root
                    try:
                        outcome = transfer_object(source, transfer_request, client, directory)
                    except TransferFailure as e:
                        logger.error(f"Failed uploading '{e.object_id}' ({e.status_code}): {e.body}")
                        outcome = UploadOutcome(
                            object_id=e.object_id,
                            destination_path=e.destination_path,
                            success=False,
                            status_code=e.status_code,
                            body=e.body,
                        )
                    summary.outcomes.append(outcome)
            except SourceUnavailable as e:
                logger.warning(f"Source store unavailable, nothing to back up: {e}")
    finally:
        if not KEEP_SCRATCH_FILES:
            shutil.rmtree(root, ignore_errors=True)

    summary.end_time = datetime.datetime.now(pytz.utc)
    logger.info(
        f"Backup job {job_id} completed: {summary.successful} uploaded, {summary.failed} failed"
    )
    return summary


_executor = None
_executor_lock = threading.Lock()


def _get_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=BACKGROUND_WORKERS, thread_name_prefix="kdrive-backup"
            )
        return _executor


def _log_background_result(job_id: str, future: concurrent.futures.Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error(f"Background backup job {job_id} failed: {error}", exc_info=error)
        return
    logger.info(f"Background backup job {job_id} finished: {future.result().message}")


def submit_backup(transfer_request: TransferRequest, job_id: str) -> concurrent.futures.Future:
    """
    Queue a backup job on the background executor.

    Args:
        transfer_request (TransferRequest): Destination and credentials
        job_id (str): The job ID, logged by the job and on completion

    Returns:
        concurrent.futures.Future: Resolves to the job's BackupSummary
    """
    future = _get_executor().submit(run_backup, transfer_request, job_id)
    future.add_done_callback(functools.partial(_log_background_result, job_id))
    logger.info(f"Queued backup job {job_id}")
    return future


@functions_framework.http
def kdrive_backup_handler(request):
    """
    Cloud Function entry point for backing up storage to kDrive.

    Args:
        request: HTTP request object

    Returns:
        Response body, status code and headers
    """
    logger.info("=== Starting kDrive backup ===")

    if request.method not in ("GET", "POST"):
        return "Method not allowed.", 405, {**TEXT_HEADERS, "Allow": "GET, POST"}

    try:
        transfer_request = validate_parameters(request.args)
    except MissingParameter as e:
        logger.warning(f"Missing {e.parameter} in URL.")
        return str(e), 400, TEXT_HEADERS

    job_id = new_job_id()
    try:
        if EXECUTION_MODE == "deferred":
            submit_backup(transfer_request, job_id)
            return "Backup started...", 202, TEXT_HEADERS

        summary = run_backup(transfer_request, job_id)
    except Exception:
        logger.exception(f"Unexpected error during backup job {job_id}.")
        return "Unexpected error occurred.", 500, TEXT_HEADERS

    return summary.to_dict(), 200


def backup_from_environment() -> None:
    """
    Run one synchronous backup with the parameters taken from the environment.
    (For local testing)
    """
    summary = run_backup(validate_parameters(os.environ))
    logger.info(summary.message)


if __name__ == "__main__":
    backup_from_environment()
