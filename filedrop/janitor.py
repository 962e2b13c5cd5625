"""
Background cleanup of abandoned uploads.

The janitor periodically removes sessions (and their partial files) that
have seen no activity for longer than the upload timeout, then prunes
directories that were left empty. Top-level folders still mapped by a live
batch are kept, even when empty. Finished files are never touched.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Set

import aiofiles.os

from filedrop.batches import BatchTracker
from filedrop.config import config
from filedrop.models import UploadState, utcnow
from filedrop.paths import PARTIAL_SUFFIX
from filedrop.store import SessionStore

logger = logging.getLogger(__name__)


class Janitor:
    """Sweeps stale sessions, orphaned session files and empty folders."""

    def __init__(
        self,
        store: SessionStore,
        upload_dir: Path = config.upload_dir,
        upload_timeout: int = config.upload_timeout,
        sweep_interval: int = config.cleanup_interval,
        batches: Optional[BatchTracker] = None,
    ):
        """
        Initialize the janitor.

        Args:
            store: Session store to sweep
            upload_dir: Root of the uploaded files
            upload_timeout: Seconds of inactivity after which a session is stale
            sweep_interval: Interval between sweeps in seconds
            batches: Tracker whose mapped folders must survive pruning while still empty
        """
        self.store = store
        self.upload_dir = Path(upload_dir).resolve()
        self.upload_timeout = upload_timeout
        self.sweep_interval = sweep_interval
        self.batches = batches
        self._running = False
        self._task = None

    async def start(self):
        """Start the periodic sweep."""
        if self._running:
            logger.warning("Janitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Janitor started")

    async def stop(self):
        """Stop the periodic sweep."""
        if not self._running:
            logger.warning("Janitor not running")
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Janitor stopped")

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in janitor sweep: {e}")

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Run one full cleanup pass.

        Returns:
            The number of stale sessions removed
        """
        removed = await self.cleanup_stale_sessions(now)
        await self.cleanup_orphaned_records(now)
        await self.cleanup_empty_folders()
        return removed

    async def cleanup_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """Delete sessions idle longer than ``upload_timeout`` together with their partial files."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.upload_timeout)
        sessions = await self.store.list_all()
        logger.debug(f"Checking {len(sessions)} upload sessions for staleness")

        removed = 0
        for session in sessions:
            if session.last_activity >= cutoff:
                continue
            if session.state == UploadState.FINALIZING:
                # every byte arrived but the rename failed, left for manual recovery
                logger.warning(
                    f"Skipping stale upload {session.upload_id}: finalize failed, "
                    f"complete data kept at {session.partial_path}"
                )
                continue

            try:
                await self._remove_partial(Path(session.partial_path))
                await self.store.delete(session.upload_id)
                removed += 1
                logger.info(
                    f"Cleaned up stale upload {session.upload_id} ({session.original_path}), "
                    f"last activity {session.last_activity.isoformat()}"
                )
            except Exception as e:
                logger.error(f"Error cleaning up upload {session.upload_id}: {e}")

        if removed > 0:
            logger.info(f"Cleaned up {removed} stale upload sessions")
        return removed

    async def cleanup_orphaned_records(self, now: Optional[datetime] = None) -> int:
        """Remove temp files of interrupted writes and unparseable session records once they are stale."""
        cutoff = (now or utcnow()).timestamp() - self.upload_timeout
        removed = 0
        for path in await self.store.list_temp_files() + await self.store.list_unreadable():
            try:
                stat = await aiofiles.os.stat(path)
                if stat.st_mtime < cutoff:
                    await aiofiles.os.remove(path)
                    removed += 1
                    logger.info(f"Removed orphaned session file {path.name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not remove orphaned session file {path}: {e}")
        return removed

    async def cleanup_empty_folders(self) -> int:
        """Remove empty directories below the upload root, deepest first."""
        try:
            reserved = self.batches.mapped_folders() if self.batches else set()
            return await self._prune_directory(self.upload_dir, reserved)
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.error(f"Failed to clean empty folders: {e}")
            return 0

    async def _prune_directory(self, directory: Path, reserved: Optional[Set[str]] = None) -> int:
        removed = 0
        for name in await aiofiles.os.listdir(directory):
            path = directory / name
            if path == self.store.metadata_dir.resolve():
                continue
            if await aiofiles.os.path.islink(path) or not await aiofiles.os.path.isdir(path):
                continue

            removed += await self._prune_directory(path)
            if reserved and directory == self.upload_dir and name in reserved:
                continue
            if not await aiofiles.os.listdir(path):
                try:
                    await aiofiles.os.rmdir(path)
                    removed += 1
                    logger.info(f"Removed empty directory: {path}")
                except OSError as e:
                    # something was written into it in the meantime
                    logger.debug(f"Keeping directory {path}: {e}")
        return removed

    async def _remove_partial(self, partial: Path) -> None:
        if not partial.name.endswith(PARTIAL_SUFFIX):
            logger.warning(f"Refusing to delete {partial}, it is not a partial upload file")
            return
        try:
            await aiofiles.os.remove(partial)
            logger.info(f"Deleted stale partial file: {partial}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete stale partial file {partial}: {e}")
