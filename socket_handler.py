"""Incremental reading of HTTP request messages from asyncio streams."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from config import MAX_BODY_BYTES, MAX_HEADER_BYTES, READ_CHUNK_SIZE


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the socket."""


class MalformedRequestError(HTTPReadError):
    """Raised when socket bytes do not form a complete HTTP request."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed configured maximum size."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


class SocketTimeoutError(HTTPReadError):
    """Raised when a client times out while sending request bytes."""


@dataclass(slots=True)
class RequestHeadInfo:
    header_end_index: int
    expected_body_length: int
    uses_chunked_transfer: bool


def _iter_header_lines(header_bytes: bytes):
    for line in header_bytes.decode("iso-8859-1").split("\r\n")[1:]:
        if not line:
            continue
        if ":" not in line:
            raise MalformedRequestError("Malformed header while reading request")
        name, value = line.split(":", 1)
        yield name.strip().lower(), value.strip()


def _extract_content_length(header_bytes: bytes) -> int | None:
    for name, value in _iter_header_lines(header_bytes):
        if name == "content-length":
            try:
                parsed_length = int(value)
            except ValueError as exc:
                raise MalformedRequestError("Invalid Content-Length header") from exc
            if parsed_length < 0:
                raise MalformedRequestError("Negative Content-Length header")
            return parsed_length
    return None


def _uses_chunked_transfer(header_bytes: bytes) -> bool:
    for name, value in _iter_header_lines(header_bytes):
        if name == "transfer-encoding":
            return "chunked" in value.lower()
    return False


def _chunked_body_complete_length(encoded_body: bytes) -> int | None:
    position = 0
    decoded_size = 0
    while True:
        line_end = encoded_body.find(b"\r\n", position)
        if line_end == -1:
            return None
        size_token = encoded_body[position:line_end].split(b";", 1)[0].strip()
        if not size_token:
            raise MalformedRequestError("Missing chunk size")
        try:
            chunk_size = int(size_token, 16)
        except ValueError as exc:
            raise MalformedRequestError("Malformed chunk size") from exc
        position = line_end + 2

        if chunk_size == 0:
            while True:
                trailer_end = encoded_body.find(b"\r\n", position)
                if trailer_end == -1:
                    return None
                if trailer_end == position:
                    return trailer_end + 2
                if b":" not in encoded_body[position:trailer_end]:
                    raise MalformedRequestError("Malformed chunked trailer")
                position = trailer_end + 2

        if len(encoded_body) < position + chunk_size + 2:
            return None
        decoded_size += chunk_size
        if decoded_size > MAX_BODY_BYTES:
            raise PayloadTooLargeError("Decoded chunked body exceeded MAX_BODY_BYTES")
        if encoded_body[position + chunk_size : position + chunk_size + 2] != b"\r\n":
            raise MalformedRequestError("Chunk missing CRLF terminator")
        position += chunk_size + 2


def inspect_http_request_head(buffer: bytes) -> RequestHeadInfo | None:
    """Inspect request headers from an in-memory buffer, if complete."""
    header_end_index = buffer.find(b"\r\n\r\n")
    if header_end_index == -1:
        if len(buffer) > MAX_HEADER_BYTES:
            raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")
        return None

    if header_end_index + 4 > MAX_HEADER_BYTES:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")

    header_bytes = bytes(buffer[:header_end_index])
    uses_chunked_transfer = _uses_chunked_transfer(header_bytes)
    content_length = _extract_content_length(header_bytes)
    if uses_chunked_transfer and content_length is not None:
        raise MalformedRequestError("Content-Length cannot be combined with chunked transfer")

    expected_body_length = content_length or 0
    if expected_body_length > MAX_BODY_BYTES:
        raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")

    return RequestHeadInfo(
        header_end_index=header_end_index,
        expected_body_length=expected_body_length,
        uses_chunked_transfer=uses_chunked_transfer,
    )


def extract_http_request_message(buffer: bytes) -> tuple[bytes, bytes] | None:
    """Extract one complete HTTP request from a bytes buffer."""
    head_info = inspect_http_request_head(buffer)
    if head_info is None:
        return None

    body_start = head_info.header_end_index + 4
    if head_info.uses_chunked_transfer:
        complete_body_length = _chunked_body_complete_length(buffer[body_start:])
        if complete_body_length is None:
            return None
        request_length = body_start + complete_body_length
    else:
        request_length = body_start + head_info.expected_body_length
        if len(buffer) < request_length:
            return None

    return buffer[:request_length], buffer[request_length:]


async def read_http_request_message(
    reader: asyncio.StreamReader,
    initial_buffer: bytes = b"",
    *,
    timeout_secs: float,
) -> tuple[bytes, bytes]:
    """Read one request and return (request_bytes, leftover_bytes).

    Returns two empty byte strings when the client closes the connection
    between requests.
    """
    buffer = bytearray(initial_buffer)

    while True:
        extracted = extract_http_request_message(bytes(buffer))
        if extracted is not None:
            return extracted

        try:
            chunk = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), timeout=timeout_secs)
        except asyncio.TimeoutError as exc:
            raise SocketTimeoutError("Timed out waiting for request bytes") from exc

        if not chunk:
            if not buffer:
                return b"", b""
            raise MalformedRequestError("Connection closed before request completed")

        buffer.extend(chunk)
