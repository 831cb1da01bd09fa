"""Content negotiation, compression and the write side of one exchange."""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from pathlib import Path
from typing import BinaryIO

from config import READ_CHUNK_SIZE
from response import HTTPResponse, iter_chunked_encoded, prepare_head

logger = logging.getLogger(__name__)

# zlib window bits selecting the container format of each algorithm
_WBITS = {"gzip": 16 + zlib.MAX_WBITS, "deflate": zlib.MAX_WBITS}


def negotiate_encoding(accept_encoding: str, configured: str) -> str | None:
    """Return ``configured`` if the client accepts it, else None."""
    if configured not in _WBITS:
        return None
    wildcard_params: str | None = None
    for token in accept_encoding.split(","):
        name, _, params = token.partition(";")
        name = name.strip().lower()
        if name == configured:
            return None if _is_refused(params) else configured
        if name == "*" and wildcard_params is None:
            wildcard_params = params
    # "*" only covers encodings the client did not list explicitly
    if wildcard_params is None or _is_refused(wildcard_params):
        return None
    return configured


def _is_refused(params: str) -> bool:
    for param in params.split(";"):
        key, _, value = param.partition("=")
        if key.strip().lower() != "q":
            continue
        try:
            return float(value) <= 0
        except ValueError:
            return False
    return False


def _new_compressor(encoding: str):
    return zlib.compressobj(wbits=_WBITS[encoding])


def _compress(data: bytes, encoding: str) -> bytes:
    compressor = _new_compressor(encoding)
    return compressor.compress(data) + compressor.flush()


async def compress_body(data: bytes, encoding: str | None) -> bytes:
    if encoding is None:
        return data
    return await asyncio.to_thread(_compress, data, encoding)


async def compress_stream(
    chunks: AsyncIterator[bytes],
    encoding: str,
) -> AsyncIterator[bytes]:
    compressor = _new_compressor(encoding)
    async with aclosing(chunks):
        async for chunk in chunks:
            compressed = compressor.compress(chunk)
            if compressed:
                yield compressed
    yield compressor.flush()


class FileChunks:
    """Async iterator over an opened file; the file is closed at EOF or by ``close``."""

    def __init__(self, file_obj: BinaryIO, chunk_size: int = READ_CHUNK_SIZE) -> None:
        self._file = file_obj
        self._chunk_size = chunk_size

    def __aiter__(self) -> "FileChunks":
        return self

    async def __anext__(self) -> bytes:
        if self._file.closed:
            raise StopAsyncIteration
        chunk = await asyncio.to_thread(self._file.read, self._chunk_size)
        if not chunk:
            self.close()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        self.close()

    def close(self) -> None:
        self._file.close()


async def open_file_chunks(path: Path, chunk_size: int = READ_CHUNK_SIZE) -> FileChunks:
    """Open ``path`` now so open errors surface before any response is sent."""
    file_obj = await asyncio.to_thread(path.open, "rb")
    return FileChunks(file_obj, chunk_size)


def error_response(
    status_code: int,
    message: str,
    *,
    headers: Mapping[str, str] | None = None,
    diagnostic: str | None = None,
) -> HTTPResponse:
    """Plain text error whose details travel in the ``X-Error`` header only."""
    merged = dict(headers or {})
    merged["Content-Type"] = "text/plain; charset=utf-8"
    merged["X-Error"] = " ".join((diagnostic or message).split())
    return HTTPResponse(status_code=status_code, headers=merged, body=message)


class ResponseChannel:
    """Single-use write side of one request/response exchange.

    Exactly one of completion, timeout or abort finalizes the channel.
    Writes attempted after that are discarded.
    """

    def __init__(
        self,
        writer: asyncio.StreamWriter,
        *,
        headers: Mapping[str, str] | None = None,
        close_connection: bool = False,
    ) -> None:
        self._writer = writer
        self._headers = dict(headers or {})
        self._done = asyncio.Event()
        self.close_connection = close_connection
        self.headers_sent = False
        self.finalized = False
        self.timed_out = False
        self.status_code: int | None = None
        self.bytes_sent = 0

    async def wait(self) -> None:
        await self._done.wait()

    async def send(self, response: HTTPResponse) -> bool:
        """Write ``response``; return False if it was discarded or torn down."""
        if self.finalized:
            logger.debug("Discarding late %s response", response.status_code)
            return False

        if response.stream is not None and not response.chunked:
            self.close_connection = True
        response.headers.setdefault("Connection", "close" if self.close_connection else "keep-alive")
        self.status_code = response.status_code

        try:
            self._write(prepare_head(response))
            self.headers_sent = True
            if response.stream is None:
                self._write(response.body)
            else:
                chunks = (
                    iter_chunked_encoded(response.stream)
                    if response.chunked
                    else response.stream
                )
                async with aclosing(chunks):
                    async for chunk in chunks:
                        if self.finalized:
                            return False
                        self._write(chunk)
                        await self._writer.drain()
            await self._writer.drain()
        except (OSError, zlib.error) as exc:
            if not self.finalized:
                logger.error("Transport failure after %s bytes: %r", self.bytes_sent, exc)
                self.abort()
            return False

        if self.finalized:
            return False
        self._finish()
        return True

    def time_out(self, message: str) -> None:
        """Finalize with a 408, or tear down if headers already went out."""
        if self.finalized:
            return
        self.timed_out = True
        logger.warning(message)
        if self.headers_sent:
            self.abort()
            return

        response = error_response(408, "408 Request Timeout", headers=self._headers, diagnostic=message)
        response.headers["Connection"] = "close"
        self.status_code = 408
        self.close_connection = True
        self._write(prepare_head(response) + response.body)
        self._finish()
        self._writer.close()

    def abort(self) -> None:
        self.close_connection = True
        self._finish()
        self._writer.transport.abort()

    def _write(self, data: bytes) -> None:
        if not data:
            return
        self._writer.write(data)
        self.bytes_sent += len(data)

    def _finish(self) -> None:
        self.finalized = True
        self._done.set()
