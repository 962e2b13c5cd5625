"""
Browsing of finished uploads.

``FileCatalog`` lists, describes and deletes the files below the upload
root. Paths are always resolved inside the root; the metadata directory and
partial upload files are invisible here.
"""

import asyncio
import logging
import mimetypes
import os
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aiofiles.os

from filedrop.config import config
from filedrop.errors import StoredFileNotFoundError, UploadError
from filedrop.models import FileListResponse, StoredFile
from filedrop.notifications import format_file_size
from filedrop.paths import PARTIAL_SUFFIX

logger = logging.getLogger(__name__)


class FileCatalog:
    """Read and delete access to finished uploads."""

    def __init__(self, upload_dir: Path = config.upload_dir, metadata_dir: Optional[Path] = None):
        """
        Initialize the catalog.

        Args:
            upload_dir: Root of the uploaded files
            metadata_dir: Session record directory to hide (defaults to ``<upload_dir>/.metadata``)
        """
        self.upload_dir = Path(upload_dir).resolve()
        self.metadata_dir = Path(metadata_dir or self.upload_dir / ".metadata").resolve()

    def locate(self, filename: str) -> Path:
        """
        Map a client supplied name to an absolute path inside the upload root.

        Raises:
            StoredFileNotFoundError: If the name points outside the root, into
                the metadata directory or at a partial upload file
        """
        path = (self.upload_dir / filename).resolve()
        try:
            relative = path.relative_to(self.upload_dir)
        except ValueError:
            logger.warning(f"Rejected file request outside the upload directory: {filename!r}")
            raise StoredFileNotFoundError(filename)

        if not relative.parts or self._is_hidden(path):
            raise StoredFileNotFoundError(filename)
        return path

    async def resolve_file(self, filename: str) -> Path:
        """Like ``locate``, but the path must also be an existing regular file."""
        path = self.locate(filename)
        try:
            st = await aiofiles.os.stat(path)
        except FileNotFoundError:
            raise StoredFileNotFoundError(filename)
        if not stat.S_ISREG(st.st_mode):
            raise StoredFileNotFoundError(filename)
        return path

    async def file_info(self, filename: str) -> StoredFile:
        path = await self.resolve_file(filename)
        return self._describe(path, await aiofiles.os.stat(path))

    async def list_files(self) -> FileListResponse:
        """All finished uploads, newest first."""
        files = await asyncio.to_thread(self._collect)
        files.sort(key=lambda f: f.upload_date, reverse=True)
        return FileListResponse(
            files=files,
            total_files=len(files),
            total_size=sum(f.size for f in files),
        )

    async def delete_file(self, filename: str) -> None:
        path = await self.resolve_file(filename)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            raise StoredFileNotFoundError(filename)
        except OSError as e:
            logger.error(f"File deletion failed: {filename}: {e}")
            raise UploadError("Failed to delete file", reason="delete_failed")
        logger.info(f"File deleted: {self._relative(path)}")

    def _collect(self) -> List[StoredFile]:
        files = []
        for root, dirs, names in os.walk(self.upload_dir):
            root_path = Path(root)
            dirs[:] = [d for d in dirs if root_path / d != self.metadata_dir]
            for name in names:
                path = root_path / name
                if name.endswith(PARTIAL_SUFFIX):
                    continue
                try:
                    st = path.lstat()
                except OSError as e:
                    logger.error(f"Failed to get stats for file {path}: {e}")
                    continue
                if stat.S_ISREG(st.st_mode):
                    files.append(self._describe(path, st))
        return files

    def _describe(self, path: Path, st: os.stat_result) -> StoredFile:
        mimetype, _encoding = mimetypes.guess_type(path.name)
        return StoredFile(
            filename=self._relative(path),
            size=st.st_size,
            formatted_size=format_file_size(st.st_size),
            upload_date=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            mimetype=mimetype or "application/octet-stream",
        )

    def _is_hidden(self, path: Path) -> bool:
        return (
            path == self.metadata_dir
            or self.metadata_dir in path.parents
            or path.name.endswith(PARTIAL_SUFFIX)
        )

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.upload_dir).as_posix()
