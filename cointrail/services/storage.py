"""
Attachment Storage.

Uploads receipt files to the Supabase Storage bucket under the signed-in
user's prefix and links them to transactions.
"""

from __future__ import annotations

import mimetypes
import re
import time
from pathlib import Path
from typing import Any, Optional, Union

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.config import AppConfig
from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.service_models import ServiceResult
from cointrail.models.transaction import Transaction
from cointrail.services.base_service import UserScopedService
from cointrail.services.transactions import TransactionStore

_IMAGE_RE: re.Pattern[str] = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)
_UNSAFE_NAME_RE: re.Pattern[str] = re.compile(r"[^\w.\-]+")

OFFLINE_ERROR = "File storage is unavailable while offline."


def is_image(url: Optional[str]) -> bool:
    """``True`` when *url* ends in a common image extension."""
    if not url:
        return False
    return bool(_IMAGE_RE.search(url.split("?", 1)[0]))


def _is_not_found(exc: Exception) -> bool:
    text = str(exc).lower()
    return "not found" in text or "404" in text


class AttachmentService(UserScopedService):
    """Upload, link and delete transaction attachments."""

    def __init__(
        self,
        db: DatabaseManager,
        transactions: TransactionStore,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(session, logger)
        self._db: DatabaseManager = db
        self._transactions: TransactionStore = transactions
        self._bucket_name: str = config.STORAGE_BUCKET

    def _bucket(self) -> Any:
        return self._db.supabase.storage.from_(self._bucket_name)

    def object_path(self, user_id: str, filename: str, folder: str = "attachments") -> str:
        """``users/{uid}/{folder}/{epoch_ms}_{filename}``."""
        safe_name = _UNSAFE_NAME_RE.sub("_", Path(filename).name) or "file"
        return f"users/{user_id}/{folder}/{int(time.time() * 1000)}_{safe_name}"

    def path_from_url(self, url: str) -> str:
        """Object path inside the bucket for a public URL (or a bare path)."""
        marker = f"/{self._bucket_name}/"
        clean = url.split("?", 1)[0]
        return clean.split(marker, 1)[1] if marker in clean else clean

    def upload(
        self,
        source: Union[str, Path, bytes],
        filename: Optional[str] = None,
        folder: str = "attachments",
    ) -> ServiceResult[str]:
        """Upload a file and return its public URL."""
        try:
            user_id = self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)
        if not self._db.is_online:
            return ServiceResult(success=False, error=OFFLINE_ERROR, status_code=503)

        if isinstance(source, bytes):
            if not filename:
                return ServiceResult(
                    success=False, error="A filename is required.", status_code=400,
                )
            content = source
        else:
            path = Path(source)
            try:
                content = path.read_bytes()
            except OSError as exc:
                return ServiceResult(
                    success=False, error=f"Could not read {path}: {exc}", status_code=400,
                )
            filename = filename or path.name

        object_path = self.object_path(user_id, filename, folder)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            bucket = self._bucket()
            bucket.upload(object_path, content, {"content-type": content_type})
            url = bucket.get_public_url(object_path)
        except Exception as exc:
            self._logger.error("Upload of %s failed: %s", object_path, exc)
            return ServiceResult(
                success=False, error=f"Failed to upload file: {exc}", status_code=502,
            )

        self._logger.info(
            "Uploaded attachment.",
            extra={"path": object_path, "bytes": len(content)},
        )
        return ServiceResult(success=True, data=url, status_code=201)

    def delete(self, url: str) -> ServiceResult[None]:
        """Delete a stored file.  A file that no longer exists counts as deleted."""
        try:
            self._current_user_id()
        except AuthenticationError as exc:
            return self._unauthenticated(exc)
        if not self._db.is_online:
            return ServiceResult(success=False, error=OFFLINE_ERROR, status_code=503)

        object_path = self.path_from_url(url)
        try:
            self._bucket().remove([object_path])
        except Exception as exc:
            if _is_not_found(exc):
                self._logger.debug("Attachment %s already gone.", object_path)
                return ServiceResult(success=True)
            self._logger.error("Delete of %s failed: %s", object_path, exc)
            return ServiceResult(
                success=False, error=f"Failed to delete file: {exc}", status_code=502,
            )
        self._logger.info("Deleted attachment %s.", object_path)
        return ServiceResult(success=True)

    def attach_to_transaction(
        self, transaction_id: str, source: Union[str, Path, bytes], filename: Optional[str] = None,
    ) -> ServiceResult[Transaction]:
        """Upload *source* and store its URL on the transaction.

        The uploaded file is removed again when the transaction update fails.
        """
        if self._transactions.get(transaction_id) is None:
            return ServiceResult(success=False, error="Transaction not found.", status_code=404)

        uploaded = self.upload(source, filename)
        if not uploaded.success or uploaded.data is None:
            return ServiceResult(
                success=False, error=uploaded.error, status_code=uploaded.status_code,
            )

        result = self._transactions.update(transaction_id, {"attachment_url": uploaded.data})
        if not result.success:
            self.delete(uploaded.data)
        return result
