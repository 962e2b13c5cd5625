"""Tests for the chunk ingest engine."""

import os

import aiofiles.os
import pytest

from filedrop.batches import new_batch_id
from filedrop.config import AppConfig
from filedrop.engine import UploadEngine, parse_declared_size
from filedrop.errors import (
    ChunkWriteError,
    FileTooLargeError,
    FileTypeNotAllowedError,
    InvalidUploadRequest,
    UploadNotFoundError,
)
from filedrop.models import UploadState

PAYLOAD = bytes(range(256)) * 4


def chunks_of(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestParseDeclaredSize:
    @pytest.mark.parametrize("value, expected", [(0, 0), (10, 10), ("10", 10), (10.0, 10), ("1e3", 1000)])
    def test_accepts_whole_numbers(self, value, expected):
        assert parse_declared_size(value) == expected

    @pytest.mark.parametrize("value", [-1, "-1", "abc", 1.5, True, "nan", "inf"])
    def test_rejects_invalid(self, value):
        with pytest.raises(InvalidUploadRequest) as exc_info:
            parse_declared_size(value)
        assert exc_info.value.reason == "invalid_file_size"

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing(self, value):
        with pytest.raises(InvalidUploadRequest) as exc_info:
            parse_declared_size(value)
        assert exc_info.value.reason == "missing_file_size"


class TestInitUpload:
    @pytest.mark.asyncio
    async def test_persists_receiving_session(self, engine, store, upload_root):
        upload_id = await engine.init_upload("docs/report.pdf", 10)

        session = await store.read(upload_id)
        assert session.state == UploadState.RECEIVING
        assert session.bytes_received == 0
        assert session.expected_size == 10
        assert session.original_path == "docs/report.pdf"
        assert session.target_path == str(upload_root / "docs" / "report.pdf")
        assert session.partial_path.endswith(".partial")

    @pytest.mark.asyncio
    async def test_zero_byte_file_is_finished_immediately(self, engine, store, notifier, upload_root):
        upload_id = await engine.init_upload("empty.txt", 0)

        assert upload_id
        assert (upload_root / "empty.txt").read_bytes() == b""
        assert await store.list_all() == []
        notifier.notify.assert_called_once_with("empty.txt", 0)

    @pytest.mark.asyncio
    async def test_oversized_is_rejected_without_side_effects(self, engine, store, upload_root):
        with pytest.raises(FileTooLargeError) as exc_info:
            await engine.init_upload("big.iso", 1024 * 1024 + 1)

        assert exc_info.value.limit == 1024 * 1024
        assert exc_info.value.to_dict()["limit"] == 1024 * 1024
        assert sorted(os.listdir(upload_root)) == [".metadata"]
        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_missing_filename(self, engine):
        with pytest.raises(InvalidUploadRequest) as exc_info:
            await engine.init_upload("", 10)
        assert exc_info.value.reason == "missing_filename"

    @pytest.mark.asyncio
    async def test_invalid_batch_id(self, engine):
        with pytest.raises(InvalidUploadRequest) as exc_info:
            await engine.init_upload("a.txt", 10, batch_id="not-a-batch")
        assert exc_info.value.reason == "invalid_batch_id"

    @pytest.mark.asyncio
    async def test_touches_batch(self, engine, batches):
        batch_id = new_batch_id()
        await engine.init_upload("a.txt", 10, batch_id=batch_id)
        assert batches.last_activity(batch_id) is not None

    @pytest.mark.asyncio
    async def test_synthesizes_batch_when_missing(self, engine, store):
        upload_id = await engine.init_upload("a.txt", 10)
        session = await store.read(upload_id)
        assert session.batch_id

    @pytest.mark.asyncio
    async def test_extension_allow_list(self, store, resolver, batches, notifier, settings, upload_root):
        restricted = AppConfig(**{**settings.model_dump(), "allowed_extensions": ".txt, md"}, _env_file=None)
        engine = UploadEngine(store, resolver, batches, notifier, restricted)

        with pytest.raises(FileTypeNotAllowedError) as exc_info:
            await engine.init_upload("photo.PDF", 10)
        assert exc_info.value.extension == ".pdf"
        assert not (upload_root / "photo.PDF.partial").exists()

        assert await engine.init_upload("notes.TXT", 10)
        assert await engine.init_upload("readme.md", 10)
        assert await engine.init_upload("Makefile", 10)

    @pytest.mark.asyncio
    async def test_empty_file_never_replaced_by_running_upload(self, engine, upload_root):
        first = await engine.init_upload("same.txt", 4)
        await engine.init_upload("same.txt", 0)

        await engine.append_chunk(first, b"DATA")

        assert sorted(p.name for p in upload_root.iterdir() if p.is_file()) == ["same (1).txt", "same.txt"]
        assert (upload_root / "same.txt").read_bytes() == b"DATA"
        assert (upload_root / "same (1).txt").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_same_path_twice_produces_numbered_copy(self, engine, upload_root):
        first = await engine.init_upload("report.pdf", 3)
        second = await engine.init_upload("report.pdf", 3)

        await engine.append_chunk(first, b"one")
        await engine.append_chunk(second, b"two")

        assert (upload_root / "report.pdf").read_bytes() == b"one"
        assert (upload_root / "report (1).pdf").read_bytes() == b"two"

    @pytest.mark.asyncio
    async def test_folder_upload_into_existing_folder(self, engine, upload_root):
        (upload_root / "foo").mkdir()
        (upload_root / "foo" / "a.txt").write_bytes(b"old")
        batch_id = new_batch_id()

        a = await engine.init_upload("foo/a.txt", 1, batch_id=batch_id)
        b = await engine.init_upload("foo/b.txt", 1, batch_id=batch_id)
        await engine.append_chunk(a, b"a")
        await engine.append_chunk(b, b"b")

        assert (upload_root / "foo" / "a.txt").read_bytes() == b"old"
        assert (upload_root / "foo (1)" / "a.txt").read_bytes() == b"a"
        assert (upload_root / "foo (1)" / "b.txt").read_bytes() == b"b"


class TestAppendChunk:
    @pytest.mark.asyncio
    async def test_report_scenario(self, engine, store, notifier, upload_root):
        data = b"0123456789"
        upload_id = await engine.init_upload("docs/report.pdf", 10)

        first = await engine.append_chunk(upload_id, data[0:6])
        assert (first.bytes_received, first.progress) == (6, 60)

        second = await engine.append_chunk(upload_id, data[6:10])
        assert (second.bytes_received, second.progress) == (10, 100)

        assert (upload_root / "docs" / "report.pdf").read_bytes() == data
        assert not (upload_root / "docs" / "report.pdf.partial").exists()
        assert await store.read(upload_id) is None
        notifier.notify.assert_called_once_with("docs/report.pdf", 10)

        with pytest.raises(UploadNotFoundError):
            await engine.append_chunk(upload_id, data[6:10])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("chunk_size", [1, 7, 100, 1024])
    async def test_any_sequential_chunking(self, engine, store, upload_root, chunk_size):
        upload_id = await engine.init_upload("blob.bin", len(PAYLOAD))

        for chunk in chunks_of(PAYLOAD, chunk_size):
            result = await engine.append_chunk(upload_id, chunk)

        assert result.bytes_received == len(PAYLOAD)
        assert result.progress == 100
        assert (upload_root / "blob.bin").read_bytes() == PAYLOAD
        assert await store.read(upload_id) is None

    @pytest.mark.asyncio
    async def test_overlong_chunk_is_truncated(self, engine, upload_root):
        upload_id = await engine.init_upload("short.txt", 5)

        result = await engine.append_chunk(upload_id, b"abcdefgh")

        assert (result.bytes_received, result.progress) == (5, 100)
        assert (upload_root / "short.txt").read_bytes() == b"abcde"

    @pytest.mark.asyncio
    async def test_overflow_on_later_chunk(self, engine, upload_root):
        upload_id = await engine.init_upload("short.txt", 5)

        await engine.append_chunk(upload_id, b"abc")
        result = await engine.append_chunk(upload_id, b"defgh")

        assert result.bytes_received == 5
        assert (upload_root / "short.txt").read_bytes() == b"abcde"

    @pytest.mark.asyncio
    async def test_empty_chunk_rejected(self, engine):
        upload_id = await engine.init_upload("a.txt", 5)
        with pytest.raises(InvalidUploadRequest) as exc_info:
            await engine.append_chunk(upload_id, b"")
        assert exc_info.value.reason == "empty_chunk"

    @pytest.mark.asyncio
    async def test_unknown_upload(self, engine):
        with pytest.raises(UploadNotFoundError) as exc_info:
            await engine.append_chunk("0" * 32, b"data")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_progress_rounds_halves_up(self, engine):
        upload_id = await engine.init_upload("eight.bin", 8)

        first = await engine.append_chunk(upload_id, b"x")
        assert first.progress == 13

        second = await engine.append_chunk(upload_id, b"xxxx")
        assert (second.bytes_received, second.progress) == (5, 63)

    @pytest.mark.asyncio
    async def test_corrupt_record_reads_as_not_found(self, engine, store):
        upload_id = await engine.init_upload("a.bin", 8)
        (store.metadata_dir / f"{upload_id}.meta").write_text("{broken")

        with pytest.raises(UploadNotFoundError):
            await engine.append_chunk(upload_id, b"data")

    @pytest.mark.asyncio
    async def test_progress_persisted_between_chunks(self, engine, store):
        upload_id = await engine.init_upload("a.bin", 8)
        await engine.append_chunk(upload_id, b"1234")

        session = await store.read(upload_id)
        assert session.bytes_received == 4
        assert session.state == UploadState.RECEIVING

    @pytest.mark.asyncio
    async def test_failed_rename_keeps_session_and_partial(self, engine, store, notifier, upload_root, monkeypatch):
        upload_id = await engine.init_upload("keep.bin", 4)

        async def broken_rename(src, dst):
            raise PermissionError("read-only destination")

        monkeypatch.setattr(aiofiles.os, "rename", broken_rename)
        result = await engine.append_chunk(upload_id, b"data")

        assert (result.bytes_received, result.progress) == (4, 100)
        session = await store.read(upload_id)
        assert session.state == UploadState.FINALIZING
        assert (upload_root / "keep.bin.partial").read_bytes() == b"data"
        assert not (upload_root / "keep.bin").exists()
        notifier.notify.assert_not_called()

        monkeypatch.undo()
        replay = await engine.append_chunk(upload_id, b"data")

        assert (replay.bytes_received, replay.progress) == (4, 100)
        assert (upload_root / "keep.bin").read_bytes() == b"data"
        assert await store.read(upload_id) is None

    @pytest.mark.asyncio
    async def test_replay_when_partial_already_gone(self, engine, store, upload_root, make_session):
        session = make_session("done.bin", expected_size=4, bytes_received=4, state=UploadState.FINALIZING)
        (upload_root / "done.bin").write_bytes(b"data")
        await store.create(session)

        result = await engine.append_chunk(session.upload_id, b"data")

        assert result.progress == 100
        assert (upload_root / "done.bin").read_bytes() == b"data"
        assert await store.read(session.upload_id) is None

    @pytest.mark.asyncio
    async def test_write_failure_does_not_advance(self, engine, store, upload_root):
        upload_id = await engine.init_upload("broken.bin", 10)
        partial = upload_root / "broken.bin.partial"
        partial.unlink()
        partial.mkdir()

        with pytest.raises(ChunkWriteError):
            await engine.append_chunk(upload_id, b"12345")

        assert (await store.read(upload_id)).bytes_received == 0

    @pytest.mark.asyncio
    async def test_unrecorded_bytes_are_trimmed(self, engine, upload_root):
        upload_id = await engine.init_upload("resume.bin", 6)
        await engine.append_chunk(upload_id, b"abc")
        with open(upload_root / "resume.bin.partial", "ab") as f:
            f.write(b"zz")

        await engine.append_chunk(upload_id, b"def")

        assert (upload_root / "resume.bin").read_bytes() == b"abcdef"


class TestCancelUpload:
    @pytest.mark.asyncio
    async def test_cancel_after_partial_submission(self, engine, store, upload_root):
        upload_id = await engine.init_upload("movie.mp4", 10)
        await engine.append_chunk(upload_id, b"12345")

        await engine.cancel_upload(upload_id)

        assert not (upload_root / "movie.mp4.partial").exists()
        assert not (upload_root / "movie.mp4").exists()
        assert await store.read(upload_id) is None
        with pytest.raises(UploadNotFoundError):
            await engine.append_chunk(upload_id, b"678")

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_fine(self, engine):
        await engine.cancel_upload("0" * 32)
        await engine.cancel_upload("../../etc")

    @pytest.mark.asyncio
    async def test_cancel_twice(self, engine):
        upload_id = await engine.init_upload("a.txt", 3)
        await engine.cancel_upload(upload_id)
        await engine.cancel_upload(upload_id)


class TestRecoverSessions:
    @pytest.mark.asyncio
    async def test_finishes_interrupted_finalize(self, engine, store, upload_root, make_session):
        session = make_session("late.bin", expected_size=3, bytes_received=3, state=UploadState.FINALIZING)
        (upload_root / "late.bin.partial").write_bytes(b"xyz")
        await store.create(session)

        assert await engine.recover_sessions() == 1

        assert (upload_root / "late.bin").read_bytes() == b"xyz"
        assert await store.read(session.upload_id) is None

    @pytest.mark.asyncio
    async def test_moves_init_sessions_to_receiving(self, engine, store, make_session):
        session = make_session(state=UploadState.INIT)
        await store.create(session)

        assert await engine.recover_sessions() == 1
        assert (await store.read(session.upload_id)).state == UploadState.RECEIVING

    @pytest.mark.asyncio
    async def test_leaves_receiving_sessions_alone(self, engine, store, make_session):
        session = make_session(bytes_received=2)
        await store.create(session)

        assert await engine.recover_sessions() == 0
        assert await store.read(session.upload_id) == session
