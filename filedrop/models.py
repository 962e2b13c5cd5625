"""
Pydantic models for the filedrop upload service.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadState(str, Enum):
    INIT = "init"
    RECEIVING = "receiving"
    FINALIZING = "finalizing"
    DONE = "done"
    CANCELLED = "cancelled"


class UploadSession(BaseModel):
    """Durable record of one in-progress upload."""

    upload_id: str
    original_path: str = Field(..., description="Sanitized relative path as declared by the client")
    target_path: str = Field(..., description="Resolved absolute destination of the finished file")
    partial_path: str = Field(..., description="Staging file that accumulates chunks")
    expected_size: int = Field(..., ge=0)
    bytes_received: int = Field(default=0, ge=0)
    batch_id: str
    state: UploadState = UploadState.INIT
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_byte_counts(self) -> "UploadSession":
        if self.bytes_received > self.expected_size:
            raise ValueError(
                f"bytes_received ({self.bytes_received}) exceeds expected_size ({self.expected_size})"
            )
        return self

    @property
    def is_complete(self) -> bool:
        return self.bytes_received >= self.expected_size

    @property
    def progress(self) -> int:
        if self.expected_size == 0:
            return 100
        # half-up rounding in integer arithmetic
        percent = (self.bytes_received * 200 + self.expected_size) // (2 * self.expected_size)
        return min(percent, 100)


class InitUploadRequest(BaseModel):
    """Model for upload initiation request."""

    model_config = ConfigDict(populate_by_name=True)

    filename: Optional[str] = Field(default=None, description="Relative path of the file, may contain folders")
    file_size: Optional[Union[int, float, str]] = Field(
        default=None, alias="fileSize", description="Declared total size in bytes"
    )


class InitUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="uploadId")


class ChunkProgress(BaseModel):
    """Bytes accepted so far for an upload and the rounded percentage."""

    model_config = ConfigDict(populate_by_name=True)

    bytes_received: int = Field(..., alias="bytesReceived")
    progress: int


class CancelResponse(BaseModel):
    message: str = "Upload cancelled or already complete"


class StoredFile(BaseModel):
    """A finished upload as listed by the file browser."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(..., description="Path relative to the upload root")
    size: int
    formatted_size: str = Field(..., alias="formattedSize")
    upload_date: datetime = Field(..., alias="uploadDate")
    mimetype: str


class FileListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    files: List[StoredFile]
    total_files: int = Field(..., alias="totalFiles")
    total_size: int = Field(..., alias="totalSize")


class DeleteFileResponse(BaseModel):
    message: str = "File deleted successfully"
