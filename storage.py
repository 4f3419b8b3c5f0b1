"""
Google Cloud Storage archive for the statement file behind each revenue report.
Objects live at reports/<client id>/<epoch ms>_<filename>.
Without GCS_BUCKET the archive is disabled: uploads are refused by the API,
deletes and existence checks return False.
"""

import logging
import os
import time
from typing import BinaryIO

log = logging.getLogger('royalty')

_bucket = None

_CONTENT_TYPES = {
    '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    '.xls': 'application/vnd.ms-excel',
    '.csv': 'text/csv',
}


def init_gcs() -> bool:
    """Connect to the report bucket. Returns True on success."""
    global _bucket

    bucket_name = os.getenv('GCS_BUCKET', '')
    if not bucket_name:
        log.info("GCS_BUCKET not set, report archive disabled")
        return False

    try:
        from google.cloud import storage as gcs_storage

        creds_path = os.getenv('GOOGLE_APPLICATION_CREDENTIALS', '')
        if creds_path and os.path.isfile(creds_path):
            client = gcs_storage.Client.from_service_account_json(creds_path)
        else:
            client = gcs_storage.Client()
        bucket = client.bucket(bucket_name)
        bucket.reload()
    except Exception as e:
        log.warning("Report archive unavailable (bucket %s): %s", bucket_name, e)
        _bucket = None
        return False

    _bucket = bucket
    log.info("Report archive: gs://%s", bucket_name)
    return True


def is_available() -> bool:
    return _bucket is not None


def report_path(client_id, filename: str) -> str:
    """Archive key for an uploaded statement: reports/<client>/<epoch ms>_<filename>."""
    return f"reports/{client_id}/{int(time.time() * 1000)}_{os.path.basename(filename)}"


def upload_report_file(gcs_path: str, filename: str, source: BinaryIO) -> str:
    """Stream an uploaded statement to gcs_path. Returns the path."""
    if _bucket is None:
        raise RuntimeError("Report archive not initialised")
    _bucket.blob(gcs_path).upload_from_file(source, content_type=_guess_content_type(filename))
    log.info("Archived %s as %s", filename, gcs_path)
    return gcs_path


def download_to_bytes(gcs_path: str) -> bytes:
    if _bucket is None:
        raise RuntimeError("Report archive not initialised")
    return _bucket.blob(gcs_path).download_as_bytes()


def blob_exists(gcs_path: str) -> bool:
    return _bucket is not None and _bucket.blob(gcs_path).exists()


def delete_blob(gcs_path: str) -> bool:
    """Best-effort delete of an archived statement. Returns True if deleted."""
    if _bucket is None:
        return False
    try:
        _bucket.blob(gcs_path).delete()
    except Exception as e:
        log.warning("Archive delete failed for %s: %s", gcs_path, e)
        return False
    return True


def _guess_content_type(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return _CONTENT_TYPES.get(ext, 'application/octet-stream')
