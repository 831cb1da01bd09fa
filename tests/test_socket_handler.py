"""Unit tests for framing requests read from asyncio streams."""

import asyncio

import pytest

from config import MAX_HEADER_BYTES
from socket_handler import (
    HeaderTooLargeError,
    MalformedRequestError,
    SocketTimeoutError,
    extract_http_request_message,
    read_http_request_message,
)


def test_extract_splits_pipelined_requests() -> None:
    first = b"GET /a HTTP/1.1\r\nHost: x\r\n\r\n"
    second = b"GET /b HTTP/1.1\r\nHost: x\r\n\r\n"

    extracted = extract_http_request_message(first + second)

    assert extracted == (first, second)


def test_extract_waits_for_declared_body() -> None:
    head = b"POST /a HTTP/1.1\r\nHost: x\r\nContent-Length: 4\r\n\r\n"

    assert extract_http_request_message(head + b"ab") is None
    assert extract_http_request_message(head + b"abcd") == (head + b"abcd", b"")


def test_extract_frames_chunked_body() -> None:
    message = (
        b"POST /a HTTP/1.1\r\nHost: x\r\nTransfer-Encoding: chunked\r\n\r\n"
        b"3\r\nabc\r\n0\r\n\r\n"
    )

    assert extract_http_request_message(message) == (message, b"")


def test_oversized_headers_are_rejected() -> None:
    raw = b"GET / HTTP/1.1\r\nX-Big: " + b"a" * MAX_HEADER_BYTES

    with pytest.raises(HeaderTooLargeError):
        extract_http_request_message(raw)


def test_content_length_with_chunked_is_malformed() -> None:
    raw = (
        b"POST /a HTTP/1.1\r\nHost: x\r\nContent-Length: 3\r\n"
        b"Transfer-Encoding: chunked\r\n\r\n"
    )

    with pytest.raises(MalformedRequestError):
        extract_http_request_message(raw)


def test_read_returns_request_and_carry() -> None:
    async def scenario() -> tuple[bytes, bytes, bytes]:
        reader = asyncio.StreamReader()
        reader.feed_data(b"GET /a HTTP/1.1\r\nHost: x\r\n\r\nGET /b HTTP/1.1\r\n")
        reader.feed_data(b"Host: x\r\n\r\n")
        reader.feed_eof()
        first, carry = await read_http_request_message(reader, timeout_secs=1)
        second, carry = await read_http_request_message(reader, carry, timeout_secs=1)
        return first, second, carry

    first, second, carry = asyncio.run(scenario())

    assert first.startswith(b"GET /a ")
    assert second.startswith(b"GET /b ")
    assert carry == b""


def test_read_returns_empty_on_clean_close() -> None:
    async def scenario() -> tuple[bytes, bytes]:
        reader = asyncio.StreamReader()
        reader.feed_eof()
        return await read_http_request_message(reader, timeout_secs=1)

    assert asyncio.run(scenario()) == (b"", b"")


def test_read_rejects_truncated_request() -> None:
    async def scenario() -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"GET / HTTP/1.1\r\nHost")
        reader.feed_eof()
        await read_http_request_message(reader, timeout_secs=1)

    with pytest.raises(MalformedRequestError):
        asyncio.run(scenario())


def test_read_times_out_on_stalled_client() -> None:
    async def scenario() -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"GET / HTTP/1.1\r\n")
        await read_http_request_message(reader, timeout_secs=0.05)

    with pytest.raises(SocketTimeoutError):
        asyncio.run(scenario())
