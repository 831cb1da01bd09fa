"""Unit tests for HTTP response head serialization."""

import asyncio

import pytest

from config import SERVER_NAME
from response import HTTPResponse, iter_chunked_encoded, prepare_head


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


def test_head_sets_length_server_and_default_content_type() -> None:
    head = prepare_head(HTTPResponse(status_code=200, body="hello"))

    assert head.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Type: text/plain; charset=utf-8\r\n" in head
    assert b"Content-Length: 5\r\n" in head
    assert f"Server: {SERVER_NAME}\r\n".encode() in head
    assert b"Date: " in head
    assert head.endswith(b"\r\n\r\n")


def test_head_preserves_custom_headers() -> None:
    response = HTTPResponse(
        status_code=404,
        headers={"Content-Type": "text/html", "Access-Control-Allow-Origin": "*"},
        body=b"<h1>Not Found</h1>",
    )

    head = prepare_head(response)

    assert head.startswith(b"HTTP/1.1 404 Not Found\r\n")
    assert b"Content-Type: text/html\r\n" in head
    assert b"Access-Control-Allow-Origin: *\r\n" in head


def test_streamed_head_uses_chunked_transfer() -> None:
    head = prepare_head(HTTPResponse(status_code=200, stream=_chunks(b"a")))

    assert b"Transfer-Encoding: chunked\r\n" in head
    assert b"Content-Length" not in head


def test_unchunked_stream_closes_connection() -> None:
    head = prepare_head(HTTPResponse(status_code=200, stream=_chunks(b"a"), chunked=False))

    assert b"Transfer-Encoding" not in head
    assert b"Connection: close\r\n" in head


def test_body_and_stream_are_exclusive() -> None:
    with pytest.raises(ValueError):
        HTTPResponse(status_code=200, body=b"x", stream=_chunks(b"y"))


def test_chunked_encoding_frames_each_chunk() -> None:
    encoded = asyncio.run(_collect(iter_chunked_encoded(_chunks(b"hello", b"", b"chunk-one\n"))))

    assert encoded == b"5\r\nhello\r\nA\r\nchunk-one\n\r\n0\r\n\r\n"
