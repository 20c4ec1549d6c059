import logging
import threading
from collections.abc import Callable
from typing import BinaryIO

from fastapi.responses import StreamingResponse

logger = logging.getLogger("vibecoder.streaming")


class TrackedFileStream:
    """
    Chunked file body that reports how the transfer ended.

    ``prime()`` opens the file and reads the first chunk while the caller can
    still answer with a JSON error. Once iteration starts the response headers
    are gone, so any later failure only ends the body early. ``on_finish`` is
    called exactly once with (success, bytes handed to the sink), either at
    end of file, on a read error, or from ``close()`` when the consumer stops
    early or never pulls a chunk at all.
    """

    def __init__(
        self,
        opener: Callable[[], BinaryIO],
        *,
        chunk_size: int,
        on_finish: Callable[[bool, int], None],
    ):
        self._opener = opener
        self._fh: BinaryIO | None = None
        self._pending: bytes | None = None
        self._in_flight = 0
        # __next__ runs in a worker thread, close() may come from the event loop
        self._lock = threading.Lock()
        self.chunk_size = chunk_size
        self.on_finish = on_finish
        self.bytes_transferred = 0
        self.finished = False

    def _close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                logger.warning("Failed to close download file", exc_info=True)
            self._fh = None

    def _end(self, success: bool) -> None:
        self._close()
        if self.finished:
            return
        self.finished = True
        self.on_finish(success, self.bytes_transferred)

    def _open(self) -> None:
        self._fh = self._opener()
        self._pending = self._fh.read(self.chunk_size)

    def prime(self) -> None:
        with self._lock:
            if self._fh is not None or self.finished:
                return
            try:
                self._open()
            except OSError:
                self._end(False)
                raise

    def __iter__(self) -> "TrackedFileStream":
        return self

    def __next__(self) -> bytes:
        with self._lock:
            if self.finished:
                raise StopIteration
            try:
                if self._fh is None:
                    self._open()
                # asking for the next chunk means the sink took the last one
                self.bytes_transferred += self._in_flight
                self._in_flight = 0
                if self._pending is not None:
                    chunk, self._pending = self._pending, None
                else:
                    chunk = self._fh.read(self.chunk_size)
            except Exception:
                logger.exception(
                    "Download stream broke after %s bytes", self.bytes_transferred
                )
                self._end(False)
                raise
            if not chunk:
                self._end(True)
                raise StopIteration
            self._in_flight = len(chunk)
            return chunk

    def close(self) -> None:
        """Stop the transfer; a no-op once the stream has already finished."""
        with self._lock:
            self._end(False)


class TrackedStreamingResponse(StreamingResponse):
    """StreamingResponse that always closes its TrackedFileStream, even on disconnect."""

    def __init__(self, stream: TrackedFileStream, **kwargs):
        super().__init__(stream, **kwargs)
        self.stream = stream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.stream.close()
