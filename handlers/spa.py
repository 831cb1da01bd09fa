"""Single page application handler: resolve, optionally render, transport."""

from __future__ import annotations

import asyncio
import logging
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from bots import should_render
from config import ServerConfig
from render import RenderError
from request import HTTPRequest
from resolver import HTML_CONTENT_TYPE, resolve, solve_file_extension
from response import HTTPResponse
from transport import (
    FileChunks,
    ResponseChannel,
    compress_body,
    compress_stream,
    error_response,
    negotiate_encoding,
    open_file_chunks,
)

logger = logging.getLogger(__name__)


class DocumentRenderer(Protocol):
    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def render(self, url: str, initial_html: str) -> str: ...


@dataclass(slots=True)
class RequestContext:
    url: str
    extension: str
    content_type: str
    file_path: Path | None
    accept_encoding: str
    user_agent: str | None
    page_url: str
    http_version: str = "HTTP/1.1"


class SPAHandler:
    def __init__(self, config: ServerConfig, renderer: DocumentRenderer | None = None) -> None:
        self.config = config
        self.renderer = renderer

    def build_context(self, request: HTTPRequest) -> RequestContext:
        url = request.path.strip()
        content_type, file_path = resolve(url, self.config)
        host = request.host or f"{self.config.host}:{self.config.port}"
        if self.config.debug:
            logger.debug(
                "requested URL=%s url_noquery=%s user_agent=%s",
                request.raw_target,
                url,
                request.user_agent,
            )
        return RequestContext(
            url=url,
            extension=solve_file_extension(url),
            content_type=content_type,
            file_path=file_path,
            accept_encoding=request.accept_encoding,
            user_agent=request.user_agent,
            page_url=f"http://{host}{request.raw_target}",
            http_version=request.http_version,
        )

    def wants_render(self, context: RequestContext) -> bool:
        return (
            self.renderer is not None
            and context.content_type == HTML_CONTENT_TYPE
            and should_render(self.config.render, context.user_agent)
        )

    async def __call__(self, request: HTTPRequest, channel: ResponseChannel) -> None:
        context = self.build_context(request)
        file_path = context.file_path

        if file_path is None or not await asyncio.to_thread(file_path.is_file):
            message = f'404 File Not Found: "{file_path or context.url}"'
            logger.warning(message)
            await channel.send(
                error_response(404, "404 File Not Found", headers=self.config.headers, diagnostic=message)
            )
            return

        source: FileChunks | None = None
        try:
            if context.content_type == HTML_CONTENT_TYPE:
                response = await self.build_document_response(context, file_path)
            else:
                source = await open_file_chunks(file_path)
                response = self.build_stream_response(context, source)
        except RenderError as exc:
            logger.error("Render failed for %s: %s", context.page_url, exc)
            await channel.send(
                error_response(
                    500,
                    "500 Internal Server Error",
                    headers=self.config.headers,
                    diagnostic=f"Render failed: {exc}",
                )
            )
            return
        except (OSError, zlib.error) as exc:
            logger.exception("Cannot prepare %s", file_path)
            await channel.send(
                error_response(
                    500,
                    "500 Internal Server Error",
                    headers=self.config.headers,
                    diagnostic=str(exc),
                )
            )
            return

        try:
            await channel.send(response)
        finally:
            # a timed out or aborted exchange may never iterate the file
            if source is not None:
                source.close()

    def response_headers(self, context: RequestContext) -> tuple[dict[str, str], str | None]:
        headers = dict(self.config.headers)
        headers["Content-Type"] = context.content_type
        encoding = negotiate_encoding(context.accept_encoding, self.config.accept_encoding)
        if encoding is not None:
            headers["Content-Encoding"] = encoding
        return headers, encoding

    async def build_document_response(self, context: RequestContext, file_path: Path) -> HTTPResponse:
        headers, encoding = self.response_headers(context)
        html = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
        if self.config.debug_html:
            logger.debug("initial HTML for %s:\n%s", context.page_url, html)

        renderer = self.renderer
        if renderer is not None and self.wants_render(context):
            html = await renderer.render(context.page_url, html)
            if self.config.debug_html:
                logger.debug("rendered HTML for %s:\n%s", context.page_url, html)

        body = await compress_body(html.encode("utf-8"), encoding)
        return HTTPResponse(status_code=200, headers=headers, body=body)

    def build_stream_response(self, context: RequestContext, source: FileChunks) -> HTTPResponse:
        headers, encoding = self.response_headers(context)
        stream = source if encoding is None else compress_stream(source, encoding)
        return HTTPResponse(
            status_code=200,
            headers=headers,
            stream=stream,
            chunked=context.http_version == "HTTP/1.1",
        )
