"""Whole-file duplicate guard for uploads.

A file is a duplicate when the same user submits the same filename within
the same clock hour. The fingerprint is

    SHA256("{file_name}|{user_id}|{hour_bucket}")

where hour_bucket is the upload timestamp's epoch seconds floored to the
hour. Contents are not hashed: re-exporting a statement under the same name
an hour later is accepted as a new upload.

The pre-check here is advisory. The unique index on uploads.fingerprint is
what actually rejects a racing second upload, inside the same SQL
transaction as the bulk insert (see Repository.insert_upload_with_transactions).
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from src.database.repository import DuplicateFileError, Repository

__all__ = ["DuplicateFileError", "DuplicateGuard", "compute_file_fingerprint"]


def compute_file_fingerprint(file_name: str, user_id: str, uploaded_at: datetime) -> str:
    """SHA256 hex fingerprint of (file name, user, hour of upload)."""
    if uploaded_at.tzinfo is None:
        uploaded_at = uploaded_at.replace(tzinfo=timezone.utc)
    hour_bucket = int(uploaded_at.timestamp()) // 3600
    return hashlib.sha256(
        f"{file_name}|{user_id}|{hour_bucket}".encode()
    ).hexdigest()


class DuplicateGuard:
    """Pre-insert duplicate check against the uploads table."""

    def __init__(self, repo: Repository):
        self.repo = repo

    def check(self, file_name: str, user_id: str, uploaded_at: datetime) -> str:
        """Return the fingerprint for this upload.

        Raises:
            DuplicateFileError: If an upload with the same fingerprint exists.
        """
        fingerprint = compute_file_fingerprint(file_name, user_id, uploaded_at)
        existing = self.repo.get_upload_by_fingerprint(fingerprint)
        if existing is not None:
            raise DuplicateFileError(fingerprint, existing.id)
        return fingerprint
