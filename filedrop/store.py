"""
Durable storage of upload sessions.

Each session is one small JSON file, ``<upload_id>.meta``, inside the
metadata directory of the upload root. Writes go to a uniquely named
temporary file that is then renamed over the record, so readers only ever
see a complete previous or complete new version.
"""

import logging
import re
import secrets
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from filedrop.config import config
from filedrop.errors import SessionExistsError
from filedrop.models import UploadSession

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta"
TEMP_SUFFIX = ".tmp"
UPLOAD_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_upload_id() -> str:
    return secrets.token_hex(16)


def is_valid_upload_id(upload_id: Optional[str]) -> bool:
    return bool(upload_id) and UPLOAD_ID_PATTERN.match(upload_id) is not None


class SessionStore:
    """File-per-session key/value store for ``UploadSession`` records."""

    def __init__(self, metadata_dir: Path = None):
        """
        Initialize the session store.

        Args:
            metadata_dir: Directory holding the session records (defaults to AppConfig value)
        """
        self.metadata_dir = Path(metadata_dir or config.metadata_dir)

    async def connect(self) -> None:
        """Make sure the metadata directory exists."""
        logger.info(f"Using session store at {self.metadata_dir}")
        try:
            await aiofiles.os.makedirs(self.metadata_dir, exist_ok=True)
        except Exception as e:
            logger.error(f"Failed to prepare session store: {e}")
            raise

    def _record_path(self, upload_id: str) -> Path:
        return self.metadata_dir / f"{upload_id}{META_SUFFIX}"

    async def create(self, session: UploadSession) -> str:
        """
        Persist a brand-new session.

        Returns:
            The upload_id of the stored session

        Raises:
            SessionExistsError: If a record with the same id already exists
        """
        self._check_id(session.upload_id)
        if await aiofiles.os.path.exists(self._record_path(session.upload_id)):
            logger.error(f"Upload session with ID {session.upload_id} already exists")
            raise SessionExistsError(f"Upload session with ID {session.upload_id} already exists")

        await self._write(session)
        logger.debug(f"Created upload session {session.upload_id}")
        return session.upload_id

    async def read(self, upload_id: str) -> Optional[UploadSession]:
        """
        Get a session by ID.

        Returns:
            The session, or None if there is no usable record for the id.
            Corrupt records are logged and reported as missing.
        """
        if not is_valid_upload_id(upload_id):
            logger.warning(f"Attempted to read session with invalid upload id: {upload_id!r}")
            return None

        try:
            async with aiofiles.open(self._record_path(upload_id), "r", encoding="utf-8") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        except Exception as e:
            logger.error(f"Error reading session {upload_id}: {e}")
            raise

        try:
            return UploadSession.model_validate_json(data)
        except ValidationError as e:
            logger.error(f"Session record {upload_id} is corrupt, treating it as missing: {e}")
            return None

    async def update(self, session: UploadSession) -> None:
        """Persist the current state of ``session`` over its previous record."""
        self._check_id(session.upload_id)
        await self._write(session)

    async def delete(self, upload_id: str) -> None:
        """Remove a session record. Missing records are not an error."""
        if not is_valid_upload_id(upload_id):
            logger.warning(f"Attempted to delete session with invalid upload id: {upload_id!r}")
            return

        try:
            await aiofiles.os.remove(self._record_path(upload_id))
            logger.debug(f"Deleted session record {upload_id}")
        except FileNotFoundError:
            pass
        except Exception as e:
            logger.error(f"Error deleting session {upload_id}: {e}")
            raise

    async def list_all(self) -> List[UploadSession]:
        """
        Get all stored sessions.

        Records that cannot be read or parsed are skipped with a warning.
        """
        sessions, _unreadable = await self._scan()
        return sessions

    async def list_unreadable(self) -> List[Path]:
        """Record files that exist but cannot be parsed into a session."""
        _sessions, unreadable = await self._scan()
        return unreadable

    async def _scan(self) -> Tuple[List[UploadSession], List[Path]]:
        try:
            names = await aiofiles.os.listdir(self.metadata_dir)
        except FileNotFoundError:
            return [], []

        sessions, unreadable = [], []
        for name in sorted(names):
            if not name.endswith(META_SUFFIX):
                continue
            path = self.metadata_dir / name
            try:
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    sessions.append(UploadSession.model_validate_json(await f.read()))
            except FileNotFoundError:
                # deleted between listdir and open
                continue
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable session record {name}: {e}")
                unreadable.append(path)

        return sessions, unreadable

    async def list_temp_files(self) -> List[Path]:
        """Temporary files left behind by interrupted writes."""
        try:
            names = await aiofiles.os.listdir(self.metadata_dir)
        except FileNotFoundError:
            return []
        return [self.metadata_dir / name for name in names if name.endswith(TEMP_SUFFIX)]

    async def _write(self, session: UploadSession) -> None:
        record_path = self._record_path(session.upload_id)
        temp_path = record_path.with_name(f"{record_path.name}.{secrets.token_hex(4)}{TEMP_SUFFIX}")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(session.model_dump_json(indent=2))
            await aiofiles.os.replace(temp_path, record_path)
        except Exception as e:
            logger.error(f"Error writing session {session.upload_id}: {e}")
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _check_id(upload_id: str) -> None:
        if not is_valid_upload_id(upload_id):
            raise ValueError(f"Invalid upload id: {upload_id!r}")
