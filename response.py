"""HTTP response model and serializer."""

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from email.utils import formatdate

from config import SERVER_NAME

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    408: "Request Timeout",
    413: "Payload Too Large",
    414: "URI Too Long",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    505: "HTTP Version Not Supported",
}


@dataclass(slots=True)
class HTTPResponse:
    """A buffered ``body`` or a ``stream`` of byte chunks, never both."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""
    stream: AsyncIterable[bytes] | None = None
    chunked: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if self.stream is not None and self.body:
            raise ValueError("Response cannot set both body and stream")

    @property
    def reason_phrase(self) -> str:
        return REASON_PHRASES.get(self.status_code, "Unknown")


def prepare_head(response: HTTPResponse) -> bytes:
    """Serialize the status line and headers, including framing headers."""
    normalized_headers = dict(response.headers)
    normalized_headers.setdefault(
        "Date",
        formatdate(timeval=None, localtime=False, usegmt=True),
    )
    normalized_headers.setdefault("Server", SERVER_NAME)
    normalized_headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    if response.stream is not None:
        normalized_headers.pop("Content-Length", None)
        if response.chunked:
            normalized_headers["Transfer-Encoding"] = "chunked"
        else:
            normalized_headers["Connection"] = "close"
    else:
        normalized_headers["Content-Length"] = str(len(response.body))

    header_lines = [f"HTTP/1.1 {response.status_code} {response.reason_phrase}"]
    header_lines.extend(f"{key}: {value}" for key, value in normalized_headers.items())
    return "\r\n".join(header_lines).encode("iso-8859-1", errors="replace") + b"\r\n\r\n"


async def iter_chunked_encoded(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    async for chunk in chunks:
        if not chunk:
            continue
        yield f"{len(chunk):X}\r\n".encode("ascii") + chunk + b"\r\n"
    yield b"0\r\n\r\n"
