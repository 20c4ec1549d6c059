import asyncio
import contextlib
import io
from functools import partial

import pytest

from conftest import FlakyFile
from vibecoder.models.download import DownloadAction, DownloadLog, DownloadSession, DownloadStatus
from vibecoder.routers.downloads import _record_completion
from vibecoder.services import downloads
from vibecoder.services.streaming import TrackedFileStream, TrackedStreamingResponse

CONTENT = bytes(range(250)) * 4  # 1000 bytes


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, success, nbytes):
        self.calls.append((success, nbytes))


def test_full_stream_reports_success_once():
    rec = Recorder()
    stream = TrackedFileStream(lambda: io.BytesIO(CONTENT), chunk_size=128, on_finish=rec)

    stream.prime()
    body = b"".join(stream)

    assert body == CONTENT
    assert rec.calls == [(True, 1000)]
    assert stream.finished


def test_empty_file_still_finishes():
    rec = Recorder()
    stream = TrackedFileStream(lambda: io.BytesIO(b""), chunk_size=64, on_finish=rec)
    assert list(stream) == []
    assert rec.calls == [(True, 0)]


def test_open_failure_surfaces_before_any_byte():
    rec = Recorder()

    def opener():
        raise FileNotFoundError("gone")

    stream = TrackedFileStream(opener, chunk_size=64, on_finish=rec)
    with pytest.raises(OSError):
        stream.prime()
    assert rec.calls == [(False, 0)]


def test_read_error_mid_body_reports_partial_bytes():
    rec = Recorder()
    stream = TrackedFileStream(
        lambda: FlakyFile(CONTENT, fail_at=400), chunk_size=100, on_finish=rec
    )
    stream.prime()

    received = []
    with pytest.raises(OSError):
        for chunk in stream:
            received.append(chunk)

    assert b"".join(received) == CONTENT[:400]
    assert rec.calls == [(False, 400)]


def test_consumer_going_away_reports_failure():
    rec = Recorder()
    stream = TrackedFileStream(lambda: io.BytesIO(CONTENT), chunk_size=100, on_finish=rec)
    body = iter(stream)

    for _ in range(4):
        next(body)
    body.close()

    # the fourth chunk was handed over but never acknowledged
    assert rec.calls == [(False, 300)]
    assert stream.bytes_transferred < len(CONTENT)


def test_closed_before_first_chunk_reports_failure():
    rec = Recorder()
    fh = io.BytesIO(CONTENT)
    stream = TrackedFileStream(lambda: fh, chunk_size=100, on_finish=rec)
    stream.prime()

    body = iter(stream)
    body.close()

    assert rec.calls == [(False, 0)]
    assert fh.closed
    # nothing left to pull, and a second close is a no-op
    assert list(stream) == []
    stream.close()
    assert rec.calls == [(False, 0)]


def test_close_after_completion_keeps_success():
    rec = Recorder()
    stream = TrackedFileStream(lambda: io.BytesIO(CONTENT), chunk_size=300, on_finish=rec)

    assert b"".join(stream) == CONTENT
    stream.close()

    assert rec.calls == [(True, 1000)]


def test_response_closes_stream_when_client_leaves_before_body():
    rec = Recorder()
    fh = io.BytesIO(CONTENT)
    stream = TrackedFileStream(lambda: fh, chunk_size=100, on_finish=rec)
    stream.prime()
    response = TrackedStreamingResponse(stream, media_type="application/zip")

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        raise OSError("client gone")

    async def serve():
        # the disconnect surfaces differently across Starlette releases
        with contextlib.suppress(Exception):
            await response({"type": "http", "asgi": {"spec_version": "2.4"}}, receive, send)

    asyncio.run(serve())

    assert rec.calls == [(False, 0)]
    assert fh.closed


def _started_session(db, seller, make_project):
    project = make_project(seller, content=CONTENT)
    s = downloads.create_download_session(db, seller, project.id)
    info = downloads.start_download(db, s.id)
    return s, info


def test_interrupted_download_is_recorded_as_failed(
    db, session_factory, seller, make_project
):
    s, info = _started_session(db, seller, make_project)
    stream = TrackedFileStream(
        lambda: FlakyFile(info.file_path.read_bytes(), fail_at=400),
        chunk_size=100,
        on_finish=partial(
            _record_completion, session_factory, s.id, info.file_size, "10.0.0.9", "pytest"
        ),
    )
    stream.prime()

    with pytest.raises(OSError):
        for _ in stream:
            pass

    fresh = session_factory()
    try:
        row = fresh.get(DownloadSession, s.id)
        assert row.status == DownloadStatus.FAILED
        assert row.bytes_transferred == 400
        log = (
            fresh.query(DownloadLog)
            .filter_by(download_session_id=s.id, action=DownloadAction.DOWNLOAD_FAILED.value)
            .one()
        )
        assert log.details["partial"] is True
        assert log.details["file_size"] == 1000
        assert log.ip_address == "10.0.0.9"
    finally:
        fresh.close()


def test_finished_download_is_recorded_as_completed(
    db, session_factory, seller, make_project
):
    s, info = _started_session(db, seller, make_project)
    stream = TrackedFileStream(
        partial(open, info.file_path, "rb"),
        chunk_size=256,
        on_finish=partial(
            _record_completion, session_factory, s.id, info.file_size, None, None
        ),
    )
    stream.prime()
    assert b"".join(stream) == CONTENT

    fresh = session_factory()
    try:
        row = fresh.get(DownloadSession, s.id)
        assert row.status == DownloadStatus.COMPLETED
        assert row.bytes_transferred == 1000
    finally:
        fresh.close()
