"""
Batch tracking for grouped uploads.

A batch is one client-side operation (e.g. a drag-and-drop of a folder) that
produces several uploads. The tracker remembers when each batch was last
active and which on-disk folder name was chosen for each top-level client
folder, so every file of that folder lands in the same place. Nothing here is
persisted; a restart only forgets the remappings.
"""

import asyncio
import logging
import re
import secrets
import string
import time
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from filedrop.config import config

logger = logging.getLogger(__name__)

BATCH_ID_PATTERN = re.compile(r"^\d+-[a-z0-9]{9}$")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def is_valid_batch_id(batch_id: Optional[str]) -> bool:
    return bool(batch_id) and BATCH_ID_PATTERN.match(batch_id) is not None


def new_batch_id() -> str:
    """Millisecond timestamp plus a 9 character random suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


class BatchTracker:
    """
    Owns the batch activity table and the per-batch folder remappings.

    Folder remappings are keyed by ``(original_folder_name, batch_id)`` and
    written with insert-if-absent semantics under a per-key lock, so two
    files of the same folder arriving concurrently never create two folders.
    """

    def __init__(self, batch_timeout: int = config.batch_timeout, sweep_interval: int = config.batch_cleanup_interval):
        self.batch_timeout = batch_timeout
        self.sweep_interval = sweep_interval
        self._activity: Dict[str, float] = {}
        self._folders: Dict[Tuple[str, str], str] = {}
        self._folder_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._running = False
        self._task = None

    def touch(self, batch_id: str) -> None:
        self._activity[batch_id] = time.time()

    def last_activity(self, batch_id: str) -> Optional[float]:
        return self._activity.get(batch_id)

    def folder_mapping(self, folder: str, batch_id: str) -> Optional[str]:
        return self._folders.get((folder, batch_id))

    def mapped_folders(self) -> Set[str]:
        """On-disk folder names still reserved by a live batch."""
        return set(self._folders.values())

    async def resolve_folder(self, folder: str, batch_id: str, create: Callable[[], Awaitable[str]]) -> str:
        """
        Return the on-disk folder name chosen for ``folder`` in this batch.

        The first caller for a key runs ``create`` and records its result;
        later callers (including ones that were waiting on the lock) reuse it.
        """
        key = (folder, batch_id)
        lock = self._folder_locks.setdefault(key, asyncio.Lock())
        async with lock:
            chosen = self._folders.get(key)
            if chosen is None:
                chosen = await create()
                self._folders[key] = chosen
                if chosen != folder:
                    logger.info(f"Folder '{folder}' exists, using '{chosen}' for batch {batch_id}")
            return chosen

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Forget batches idle for at least ``batch_timeout`` seconds.

        Returns:
            The number of batches dropped
        """
        now = time.time() if now is None else now
        logger.debug(f"Running batch cleanup, checking {len(self._activity)} active batch sessions")

        stale = [batch_id for batch_id, seen in self._activity.items() if now - seen >= self.batch_timeout]
        for batch_id in stale:
            logger.info(f"Cleaning up inactive batch session: {batch_id}")
            self._activity.pop(batch_id, None)
            for key in [key for key in self._folders if key[1] == batch_id]:
                self._folders.pop(key, None)
            for key in [key for key in self._folder_locks if key[1] == batch_id]:
                lock = self._folder_locks[key]
                if not lock.locked():
                    self._folder_locks.pop(key, None)

        if stale:
            logger.info(f"Cleaned up {len(stale)} inactive batch sessions")
        return len(stale)

    async def start(self):
        """Start the periodic batch sweep."""
        if self._running:
            logger.warning("Batch tracker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("Batch cleanup started")

    async def stop(self):
        """Stop the periodic batch sweep."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Batch cleanup stopped")

    async def _cleanup_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in batch cleanup: {e}")
