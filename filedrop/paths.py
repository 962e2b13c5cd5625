"""
Resolution of client supplied paths into safe, collision-free locations.

Client paths are sanitized and confined to the upload root. Files inside a
folder share one on-disk folder per batch (see ``BatchTracker``); a folder
that already exists on disk gets a numbered variant (``name (1)``) for the
whole batch. File names are made unique the same way, before the extension.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

from filedrop.batches import BatchTracker
from filedrop.errors import InvalidUploadRequest

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"

_UNSAFE_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')


def sanitize_filename(name: str) -> str:
    """Strip characters that are unsafe in a single path segment, including separators."""
    return _UNSAFE_CHARS.sub("", name).replace("/", "").replace("\\", "").strip()


def sanitize_path_preserve_dirs(path: str) -> str:
    """Sanitize every segment of ``path`` while keeping ``/`` directory separators."""
    segments = path.replace("\\", "/").split("/")
    return "/".join(sanitize_filename(segment) for segment in segments)


def normalize_relative_path(raw_path: str) -> str:
    """
    Turn a client path into a normalized path relative to the upload root.

    Leading slashes and leading ``..`` segments are dropped, so the result can
    never escape the root.

    Raises:
        InvalidUploadRequest: If nothing usable is left of the path
    """
    path = sanitize_path_preserve_dirs(raw_path).lstrip("/")
    path = posixpath.normpath(path) if path else ""
    while path == ".." or path.startswith("../"):
        path = path[3:]
    path = path.lstrip("/")

    if path in ("", "."):
        raise InvalidUploadRequest(f"Invalid filename: {raw_path!r}", reason="invalid_filename")
    return path


@dataclass(frozen=True)
class ResolvedPath:
    original_path: str
    target_path: Path
    relative_path: str


class PathResolver:
    """Maps client paths to unique absolute paths under ``upload_dir``."""

    def __init__(self, upload_dir: Path, batches: BatchTracker):
        self.upload_dir = Path(upload_dir).resolve()
        self.batches = batches

    async def resolve(self, raw_path: str, batch_id: str, suffix: str = PARTIAL_SUFFIX) -> ResolvedPath:
        """
        Resolve ``raw_path`` for an upload belonging to ``batch_id``.

        The chosen name is claimed by exclusively creating ``target + suffix``
        (the staging file), so concurrent resolutions of the same path always
        end up on different targets. With an empty ``suffix`` the claim
        creates the target itself, which is how empty files are written.

        Args:
            raw_path: Path as sent by the client, may contain folders
            batch_id: Batch the upload belongs to
            suffix: Suffix of the staging file to claim

        Returns:
            The resolved path; ``target_path`` does not exist unless ``suffix`` is empty
        """
        relative = normalize_relative_path(raw_path)
        parts = relative.split("/")

        if len(parts) > 1:
            folder = parts[0]
            parts[0] = await self.batches.resolve_folder(
                folder, batch_id, lambda: self._create_unique_folder(folder)
            )

        target = self.upload_dir.joinpath(*parts)
        target = await self.claim_unique_file(target, suffix)
        if target.name != parts[-1]:
            logger.info(f"Using unique final path: {target}")

        return ResolvedPath(
            original_path=relative,
            target_path=target,
            relative_path=target.relative_to(self.upload_dir).as_posix(),
        )

    async def _create_unique_folder(self, folder: str) -> str:
        """Create ``folder`` under the root, probing ``folder (n)`` until a name is free."""
        await aiofiles.os.makedirs(self.upload_dir, exist_ok=True)

        counter = 0
        while True:
            name = folder if counter == 0 else f"{folder} ({counter})"
            try:
                await aiofiles.os.mkdir(self.upload_dir / name)
                return name
            except FileExistsError:
                counter += 1

    async def claim_unique_file(self, path: Path, suffix: str = PARTIAL_SUFFIX) -> Path:
        """
        Find the first free variant of ``path`` and claim it.

        A name is taken when the file itself, its partial upload file or the
        requested staging file exists. Variants are ``stem (1).ext``,
        ``stem (2).ext`` and so on.
        """
        stem, ext = path.stem, path.suffix
        counter = 0
        while True:
            candidate = path if counter == 0 else path.with_name(f"{stem} ({counter}){ext}")
            staging = candidate.with_name(candidate.name + suffix)
            counter += 1

            if await aiofiles.os.path.exists(candidate):
                continue
            if await aiofiles.os.path.exists(candidate.with_name(candidate.name + PARTIAL_SUFFIX)):
                continue
            if suffix and await aiofiles.os.path.exists(staging):
                continue

            # the janitor may prune an empty parent between probes
            await aiofiles.os.makedirs(candidate.parent, exist_ok=True)
            try:
                async with aiofiles.open(staging, "xb"):
                    pass
            except FileExistsError:
                continue
            except FileNotFoundError:
                counter -= 1
                continue
            return candidate
