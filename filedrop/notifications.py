"""
Upload notifications through the Apprise command line tool.

Sending is fire-and-forget: ``Notifier.notify`` schedules a background task
and returns immediately. Delivery problems are logged here and never reach
the upload that triggered them.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Set

import humanfriendly

from filedrop.config import AppConfig, config
from filedrop.paths import sanitize_path_preserve_dirs

logger = logging.getLogger(__name__)

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_file_size(num_bytes: int, unit: Optional[str] = None) -> str:
    """Format a byte count, optionally forcing one of ``SIZE_UNITS``."""
    if unit and unit.upper() in SIZE_UNITS:
        unit = unit.upper()
        return f"{num_bytes / 1024 ** SIZE_UNITS.index(unit):.2f}{unit}"
    return humanfriendly.format_size(num_bytes, binary=True)


def directory_size(directory: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(directory):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                pass
    return total


class Notifier:
    """Announces finished uploads to an Apprise target."""

    def __init__(self, settings: AppConfig = config):
        self.apprise_url = settings.apprise_url
        self.message_template = settings.apprise_message
        self.size_unit = settings.apprise_size_unit
        self.upload_dir = settings.upload_dir
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.apprise_url)

    def notify(self, filename: str, file_size: int) -> Optional[asyncio.Task]:
        """Schedule a notification for a finished upload and return without waiting."""
        if not self.enabled:
            return None

        task = asyncio.create_task(self._send(filename, file_size))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for notifications still in flight, used on shutdown."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def build_message(self, filename: str, file_size: int) -> str:
        storage = await asyncio.to_thread(directory_size, self.upload_dir)
        return (
            self.message_template.replace("{filename}", sanitize_path_preserve_dirs(filename))
            .replace("{size}", format_file_size(file_size, self.size_unit))
            .replace("{storage}", format_file_size(storage))
        )

    async def _send(self, filename: str, file_size: int) -> None:
        try:
            message = await self.build_message(filename, file_size)
            process = await asyncio.create_subprocess_exec(
                "apprise",
                self.apprise_url,
                "-b",
                message,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()

            if stdout:
                logger.info(f"Apprise output: {stdout.decode(errors='replace').strip()}")
            if stderr:
                logger.error(f"Apprise error: {stderr.decode(errors='replace').strip()}")

            if process.returncode == 0:
                logger.info(f"Notification sent for: {filename} ({file_size} bytes)")
            else:
                logger.error(f"Apprise process exited with code {process.returncode}")
        except Exception as e:
            logger.error(f"Failed to send notification for {filename}: {e}")
