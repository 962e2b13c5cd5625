"""
Exceptions raised by the upload coordinator.

Every ``UploadError`` carries a machine-readable ``reason`` and the HTTP
status the API layer answers with, so clients can tell permanent rejections
(4xx) from retryable failures (5xx) and from the benign not-found case.
"""

from typing import Any, Dict, Optional


class UploadError(Exception):
    """Base class for errors surfaced to upload clients."""

    status_code = 500
    reason = "upload_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason}


class InvalidUploadRequest(UploadError):
    """Rejected client input: bad path, size, batch id or empty chunk."""

    status_code = 400
    reason = "invalid_request"


class FileTooLargeError(UploadError):
    status_code = 413
    reason = "file_too_large"

    def __init__(self, limit: int):
        super().__init__("File too large")
        self.limit = limit

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "limit": self.limit}


class FileTypeNotAllowedError(UploadError):
    status_code = 400
    reason = "file_type_not_allowed"

    def __init__(self, extension: str):
        super().__init__("File type not allowed")
        self.extension = extension

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "receivedExtension": self.extension}


class UploadNotFoundError(UploadError):
    """
    No session exists for the handle.

    Most often the upload already finished or was cancelled, so clients
    should treat this as completion rather than retrying.
    """

    status_code = 404
    reason = "upload_not_found"

    def __init__(self, upload_id: str):
        super().__init__("Upload session not found or already completed")
        self.upload_id = upload_id


class ChunkWriteError(UploadError):
    """Appending a chunk failed; the session was not advanced and the chunk may be retried."""

    status_code = 500
    reason = "chunk_write_failed"


class SessionExistsError(ValueError):
    """A session record with the same upload id is already stored."""


class StoredFileNotFoundError(UploadError):
    """The requested file is not a finished upload inside the upload root."""

    status_code = 404
    reason = "file_not_found"

    def __init__(self, filename: str):
        super().__init__("File not found")
        self.filename = filename
