"""
Chunk ingest engine for the filedrop upload service.

This module drives one upload from initiation to a finished file:

- ``init_upload`` validates the declaration, resolves a unique target and
  persists a session
- ``append_chunk`` appends byte ranges to the partial file, clamped to the
  declared size, and persists progress before finalizing
- finalizing renames the partial file onto the target, removes the session
  and hands the result to the notifier
- ``cancel_upload`` removes the partial file and the session

The session record is the only source of truth, so every step can be resumed
after a restart.
"""

import logging
import posixpath
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

from filedrop.batches import BatchTracker, is_valid_batch_id, new_batch_id
from filedrop.config import AppConfig, config
from filedrop.errors import (
    ChunkWriteError,
    FileTooLargeError,
    FileTypeNotAllowedError,
    InvalidUploadRequest,
    UploadNotFoundError,
)
from filedrop.models import ChunkProgress, UploadSession, UploadState, utcnow
from filedrop.notifications import Notifier
from filedrop.paths import PARTIAL_SUFFIX, PathResolver, normalize_relative_path
from filedrop.store import SessionStore, new_upload_id

logger = logging.getLogger(__name__)


def parse_declared_size(file_size: Union[int, float, str, None]) -> int:
    """
    Convert the client's declared size into a byte count.

    Raises:
        InvalidUploadRequest: If the size is missing, not a whole number or negative
    """
    if file_size is None or file_size == "":
        raise InvalidUploadRequest("Missing fileSize", reason="missing_file_size")
    if isinstance(file_size, bool):
        raise InvalidUploadRequest("Invalid file size", reason="invalid_file_size")
    if isinstance(file_size, int):
        if file_size < 0:
            raise InvalidUploadRequest("Invalid file size", reason="invalid_file_size")
        return file_size

    try:
        size = float(file_size)
    except (TypeError, ValueError):
        raise InvalidUploadRequest("Invalid file size", reason="invalid_file_size")

    if size != size or size < 0 or not size.is_integer():
        raise InvalidUploadRequest("Invalid file size", reason="invalid_file_size")
    return int(size)


class UploadEngine:
    """
    Coordinates path resolution, session storage and chunk ingestion.

    Chunks for one upload are expected one at a time, in order; uploads with
    different ids never wait on each other.
    """

    def __init__(
        self,
        store: SessionStore,
        resolver: PathResolver,
        batches: BatchTracker,
        notifier: Notifier,
        settings: AppConfig = config,
    ):
        self.store = store
        self.resolver = resolver
        self.batches = batches
        self.notifier = notifier
        self.max_file_size = settings.max_file_size
        self.allowed_extensions = settings.extension_allow_list
        self.upload_dir = Path(settings.upload_dir).resolve()

    async def init_upload(
        self,
        filename: Optional[str],
        file_size: Union[int, float, str, None],
        batch_id: Optional[str] = None,
    ) -> str:
        """
        Start a new upload.

        Args:
            filename: Relative path declared by the client, may contain folders
            file_size: Declared total size in bytes
            batch_id: Client batch token; a new one is synthesized when omitted

        Returns:
            The upload handle. Empty files are complete on return and have no session.

        Raises:
            InvalidUploadRequest: For a missing or malformed path, size or batch id
            FileTooLargeError: If the declared size exceeds the configured maximum
            FileTypeNotAllowedError: If the extension is not in the allow-list
        """
        if not filename:
            raise InvalidUploadRequest("Missing filename", reason="missing_filename")
        size = parse_declared_size(file_size)
        if size > self.max_file_size:
            raise FileTooLargeError(self.max_file_size)

        if batch_id:
            if not is_valid_batch_id(batch_id):
                raise InvalidUploadRequest("Invalid batch ID format", reason="invalid_batch_id")
        else:
            batch_id = new_batch_id()

        relative = normalize_relative_path(filename)
        logger.info(f"Upload init request for: {relative}")

        if self.allowed_extensions:
            extension = posixpath.splitext(relative)[1].lower()
            if extension and extension not in self.allowed_extensions:
                logger.warning(f"File type not allowed: {relative} (Extension: {extension})")
                raise FileTypeNotAllowedError(extension)

        self.batches.touch(batch_id)
        upload_id = new_upload_id()

        if size == 0:
            resolved = await self.resolver.resolve(relative, batch_id, suffix="")
            logger.info(f"Completed zero-byte file upload: {relative} as {resolved.target_path}")
            self.notifier.notify(resolved.relative_path, 0)
            return upload_id

        resolved = await self.resolver.resolve(relative, batch_id)
        session = UploadSession(
            upload_id=upload_id,
            original_path=resolved.original_path,
            target_path=str(resolved.target_path),
            partial_path=f"{resolved.target_path}{PARTIAL_SUFFIX}",
            expected_size=size,
            batch_id=batch_id,
            state=UploadState.INIT,
        )

        session.state = UploadState.RECEIVING
        try:
            await self.store.create(session)
        except Exception:
            await self._remove_partial(session)
            raise

        logger.info(f"Initialized upload {upload_id} for {relative} -> {session.target_path} ({size} bytes)")
        return upload_id

    async def append_chunk(self, upload_id: str, data: bytes) -> ChunkProgress:
        """
        Append the next byte range of an upload.

        Bytes beyond the declared size are dropped. Progress is persisted
        before the upload is finalized, so a crash while finalizing leaves a
        session that can be completed later.

        Returns:
            Bytes received so far and the rounded percentage

        Raises:
            InvalidUploadRequest: If the chunk is empty
            UploadNotFoundError: If no session exists for ``upload_id``
            ChunkWriteError: If the bytes could not be stored; the chunk may be retried
        """
        if not data:
            raise InvalidUploadRequest("Empty chunk received", reason="empty_chunk")

        session = await self.store.read(upload_id)
        if session is None:
            logger.warning(f"Upload session not found for chunk request: {upload_id}. May be complete or cancelled.")
            raise UploadNotFoundError(upload_id)

        if is_valid_batch_id(session.batch_id):
            self.batches.touch(session.batch_id)

        if session.is_complete:
            logger.warning(f"Received chunk for already completed upload {upload_id} ({session.original_path})")
            await self._finalize(session)
            return ChunkProgress(bytes_received=session.expected_size, progress=100)

        remaining = session.expected_size - session.bytes_received
        if len(data) > remaining:
            logger.warning(
                f"Chunk for {upload_id} exceeds expected file size "
                f"({session.bytes_received + len(data)} > {session.expected_size}), truncating to {remaining} bytes"
            )
            data = data[:remaining]

        await self._append(session, data)

        accepted = session.bytes_received
        session.bytes_received += len(data)
        session.last_activity = utcnow()
        if session.is_complete:
            session.state = UploadState.FINALIZING

        try:
            await self.store.update(session)
        except OSError as e:
            session.bytes_received = accepted
            await self._rollback(session)
            raise ChunkWriteError(f"Failed to record progress for {upload_id}: {e}") from e

        logger.debug(
            f"Chunk written for {upload_id}: {session.bytes_received}/{session.expected_size} ({session.progress}%)"
        )

        if session.is_complete:
            logger.info(f"Upload {upload_id} ({session.original_path}) received all {session.expected_size} bytes")
            await self._finalize(session)

        return ChunkProgress(bytes_received=session.bytes_received, progress=session.progress)

    async def cancel_upload(self, upload_id: str) -> None:
        """
        Cancel an upload, removing its partial file and session.

        Cancelling an unknown or finished upload is not an error.
        """
        logger.info(f"Received cancel request for upload: {upload_id}")
        session = await self.store.read(upload_id)

        if session is None:
            logger.warning(f"Cancel request for non-existent or already completed upload: {upload_id}")
        else:
            session.state = UploadState.CANCELLED
            await self._remove_partial(session)

        try:
            await self.store.delete(upload_id)
        except OSError as e:
            logger.error(f"Failed to delete session record on cancel for {upload_id}: {e}")
            return

        if session is not None:
            logger.info(f"Upload cancelled and cleaned up: {upload_id} ({session.original_path})")

    async def recover_sessions(self) -> int:
        """
        Resume sessions that were interrupted by a restart.

        Sessions that had received every byte are finalized again, sessions
        stuck in INIT are moved to RECEIVING.

        Returns:
            The number of sessions that were recovered
        """
        count = 0
        for session in await self.store.list_all():
            if session.state == UploadState.FINALIZING or session.is_complete:
                if await self._finalize(session):
                    count += 1
            elif session.state == UploadState.INIT:
                session.state = UploadState.RECEIVING
                await self.store.update(session)
                count += 1

        if count > 0:
            logger.info(f"Recovered {count} upload sessions interrupted by previous shutdown")
        return count

    async def _append(self, session: UploadSession, data: bytes) -> None:
        partial = session.partial_path
        try:
            # bytes left over from a crash between append and persist were never acknowledged
            try:
                stat = await aiofiles.os.stat(partial)
                if stat.st_size > session.bytes_received:
                    logger.warning(
                        f"Partial file {partial} has {stat.st_size - session.bytes_received} unrecorded bytes, "
                        f"trimming back to {session.bytes_received}"
                    )
                    await self._truncate(partial, session.bytes_received)
            except FileNotFoundError:
                pass

            async with aiofiles.open(partial, "ab") as f:
                written = await f.write(data)
            if written != len(data):
                raise OSError(f"short write, expected {len(data)} bytes, wrote {written}")
        except OSError as e:
            logger.error(f"Chunk upload failed for {session.upload_id}: {e}")
            await self._rollback(session)
            raise ChunkWriteError(f"Failed to write chunk for {session.upload_id}: {e}") from e

    async def _rollback(self, session: UploadSession) -> None:
        """Trim the partial file back to the bytes recorded in ``session``."""
        try:
            await self._truncate(session.partial_path, session.bytes_received)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not trim partial file {session.partial_path}: {e}")

    @staticmethod
    async def _truncate(path: str, size: int) -> None:
        async with aiofiles.open(path, "r+b") as f:
            await f.truncate(size)

    async def _finalize(self, session: UploadSession) -> bool:
        """
        Move the partial file onto the target and drop the session.

        If the rename fails for any reason other than the partial file being
        gone, the session and partial file are kept for manual recovery.

        Returns:
            True if the upload is finished, False if it had to be left in place
        """
        try:
            await aiofiles.os.rename(session.partial_path, session.target_path)
        except FileNotFoundError:
            logger.warning(
                f"Partial file {session.partial_path} not found while finalizing {session.upload_id}. "
                f"Assuming already finalized."
            )
            await self.store.delete(session.upload_id)
            return True
        except OSError as e:
            logger.error(
                f"CRITICAL: Failed to rename partial file {session.partial_path} to {session.target_path}: {e}. "
                f"Keeping session {session.upload_id} for manual recovery."
            )
            return False

        session.state = UploadState.DONE
        await self.store.delete(session.upload_id)
        logger.info(
            f"Upload completed and finalized: {session.original_path} as {session.target_path} "
            f"({session.expected_size} bytes)"
        )
        self.notifier.notify(self._relative_to_root(session.target_path), session.expected_size)
        return True

    async def _remove_partial(self, session: UploadSession) -> None:
        try:
            await aiofiles.os.remove(session.partial_path)
            logger.info(f"Deleted partial file: {session.partial_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete partial file {session.partial_path}: {e}")

    def _relative_to_root(self, target_path: str) -> str:
        try:
            return Path(target_path).relative_to(self.upload_dir).as_posix()
        except ValueError:
            return Path(target_path).name
