"""Pytest configuration and fixtures for filedrop tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from filedrop.batches import BatchTracker, new_batch_id
from filedrop.config import AppConfig
from filedrop.engine import UploadEngine
from filedrop.models import UploadSession, UploadState
from filedrop.notifications import Notifier
from filedrop.paths import PARTIAL_SUFFIX, PathResolver
from filedrop.store import SessionStore, new_upload_id


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway upload root."""
    return AppConfig(
        _env_file=None,
        upload_dir=tmp_path / "uploads",
        max_file_size=1024 * 1024,
        upload_timeout=60,
        batch_timeout=60,
        disable_batch_cleanup=True,
    )


@pytest.fixture
def upload_root(settings):
    return settings.upload_dir.resolve()


@pytest.fixture
def batches():
    return BatchTracker(batch_timeout=60, sweep_interval=60)


@pytest.fixture
def notifier():
    """Notifier stand-in that records calls instead of running apprise."""
    return MagicMock(spec=Notifier)


@pytest_asyncio.fixture
async def store(settings):
    session_store = SessionStore(settings.metadata_dir)
    await session_store.connect()
    return session_store


@pytest.fixture
def resolver(settings, batches):
    return PathResolver(settings.upload_dir, batches)


@pytest.fixture
def engine(store, resolver, batches, notifier, settings):
    return UploadEngine(store, resolver, batches, notifier, settings)


@pytest.fixture
def make_session(upload_root):
    """Factory for sessions targeting a file directly under the upload root."""

    def _make(
        name: str = "file.bin",
        expected_size: int = 10,
        bytes_received: int = 0,
        state: UploadState = UploadState.RECEIVING,
        idle_for: timedelta = timedelta(0),
    ) -> UploadSession:
        target = upload_root / name
        last_activity = datetime.now(timezone.utc) - idle_for
        return UploadSession(
            upload_id=new_upload_id(),
            original_path=name,
            target_path=str(target),
            partial_path=f"{target}{PARTIAL_SUFFIX}",
            expected_size=expected_size,
            bytes_received=bytes_received,
            batch_id=new_batch_id(),
            state=state,
            created_at=last_activity,
            last_activity=last_activity,
        )

    return _make
