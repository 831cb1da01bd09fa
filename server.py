"""Main HTTP server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import asyncio
import errno
import importlib
import json
import logging
import os
import sys
import time

from config import (
    COMPRESSION_ALGORITHMS,
    HOST,
    INDEX_FILE,
    KEEPALIVE_TIMEOUT_SECS,
    LOG_FORMAT,
    MAX_KEEPALIVE_REQUESTS,
    SETTLE_MS,
    STATIC_DIR,
    TIMEOUT_MS,
    ConfigurationError,
    RenderPolicy,
    ServerConfig,
)
from handlers.spa import DocumentRenderer, SPAHandler
from render import RenderError, Renderer
from request import HTTPRequest, HTTPRequestParseError
from response import REASON_PHRASES
from socket_handler import (
    HeaderTooLargeError,
    HTTPReadError,
    PayloadTooLargeError,
    SocketTimeoutError,
    read_http_request_message,
)
from transport import ResponseChannel, error_response

logger = logging.getLogger(__name__)

READ_ERROR_STATUS: dict[type[HTTPReadError], int] = {
    HeaderTooLargeError: 431,
    PayloadTooLargeError: 413,
    SocketTimeoutError: 408,
}


class HTTPServer:
    """Owns the listening socket, the renderer and the current config.

    ``start_listening`` builds the listener, ``stop_listening`` releases it
    without waiting for in-flight requests, ``restart`` does both.
    """

    def __init__(self, config: ServerConfig, *, renderer: DocumentRenderer | None = None) -> None:
        self._renderer_override = renderer
        self._configure(config)
        self._server: asyncio.AbstractServer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._next_connection_id = 0

    def _configure(self, config: ServerConfig) -> None:
        self.config = config
        self.host = config.host
        self.port = config.port
        self.renderer: DocumentRenderer | None = self._renderer_override
        if self.renderer is None and config.render is not RenderPolicy.NONE:
            self.renderer = Renderer(config)
        self.handler = SPAHandler(config, self.renderer)

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    def start(self) -> None:
        """Listen until ``stop()`` is called, blocking the calling thread."""
        asyncio.run(self.serve_forever())

    async def serve_forever(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        await self.start_listening()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop_listening()

    def stop(self) -> None:
        """Ask a running ``start()`` loop to shut down; safe from any thread."""
        loop, stop_event = self._loop, self._stop_event
        if loop is None or stop_event is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(stop_event.set)

    async def start_listening(self) -> None:
        if self._server is not None:
            return
        if self.renderer is not None:
            await self.renderer.start()
        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.config.host,
                self.config.port,
            )
        except OSError as exc:
            if exc.errno == errno.EACCES:
                logger.error("%s permission denied", self.config.port)
            elif exc.errno == errno.EADDRINUSE:
                logger.error("%s already used", self.config.port)
            if self.renderer is not None:
                await self.renderer.close()
            raise

        address = self._server.sockets[0].getsockname()
        self.port = address[1]
        ip = "127.0.0.1" if address[0] in {"0.0.0.0", "::"} else address[0]
        logger.info("HTTP Server is started on http://%s:%s", ip, self.port)

    async def stop_listening(self) -> None:
        if self._server is None:
            return
        self._server.close()
        self._server = None
        if self.renderer is not None:
            await self.renderer.close()
        logger.info("HTTP Server is stopped.")

    async def restart(self, config: ServerConfig | None = None) -> None:
        await self.stop_listening()
        if config is not None:
            self._configure(config)
        await self.start_listening()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._next_connection_id += 1
        connection_id = self._next_connection_id
        address = writer.get_extra_info("peername") or ("-", 0)
        request_count = 0
        carry = b""
        try:
            while request_count < MAX_KEEPALIVE_REQUESTS:
                started_at = time.perf_counter()
                try:
                    raw_request, carry = await read_http_request_message(
                        reader,
                        carry,
                        timeout_secs=KEEPALIVE_TIMEOUT_SECS,
                    )
                except HTTPReadError as exc:
                    status_code = READ_ERROR_STATUS.get(type(exc), 400)
                    await self._reject(writer, address, status_code, started_at, connection_id)
                    return
                except OSError:
                    return

                if not raw_request:
                    return

                try:
                    request = HTTPRequest.from_bytes(raw_request)
                except HTTPRequestParseError as exc:
                    await self._reject(writer, address, exc.status_code, started_at, connection_id)
                    return

                request_count += 1
                channel = ResponseChannel(
                    writer,
                    headers=self.config.headers,
                    close_connection=(
                        not request.keep_alive or request_count >= MAX_KEEPALIVE_REQUESTS
                    ),
                )
                await self._exchange(request, channel)
                self._record_and_log(
                    address=address,
                    method=request.method,
                    path=request.path,
                    channel=channel,
                    started_at=started_at,
                    connection_id=connection_id,
                    request_id=request_count,
                )
                if channel.close_connection:
                    return
        finally:
            if not writer.is_closing():
                writer.close()

    async def _exchange(self, request: HTTPRequest, channel: ResponseChannel) -> None:
        """Run the handler and wait for completion or the request timeout."""
        timer: asyncio.TimerHandle | None = None
        if self.config.timeout_ms > 0:
            timer = asyncio.get_running_loop().call_later(
                self.config.timeout_ms / 1000,
                channel.time_out,
                f"408 Request Timeout: {request.raw_target}",
            )
        # A timeout stops the wait, not the handler; its late writes are discarded.
        task = asyncio.create_task(self._run_handler(request, channel))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            await channel.wait()
        finally:
            if timer is not None:
                timer.cancel()

    async def _run_handler(self, request: HTTPRequest, channel: ResponseChannel) -> None:
        try:
            await self.handler(request, channel)
        except Exception as exc:
            logger.exception("Unhandled error while handling %s", request.path)
            if not channel.headers_sent:
                await channel.send(
                    error_response(
                        500,
                        "500 Internal Server Error",
                        headers=self.config.headers,
                        diagnostic=str(exc),
                    )
                )
        finally:
            if not channel.finalized:
                channel.abort()

    async def _reject(
        self,
        writer: asyncio.StreamWriter,
        address: tuple[str, int],
        status_code: int,
        started_at: float,
        connection_id: int,
    ) -> None:
        channel = ResponseChannel(writer, headers=self.config.headers, close_connection=True)
        await channel.send(
            error_response(
                status_code,
                REASON_PHRASES.get(status_code, "Bad Request"),
                headers=self.config.headers,
            )
        )
        self._record_and_log(
            address=address,
            method="-",
            path="-",
            channel=channel,
            started_at=started_at,
            connection_id=connection_id,
            request_id=0,
        )

    def _record_and_log(
        self,
        *,
        address: tuple[str, int],
        method: str,
        path: str,
        channel: ResponseChannel,
        started_at: float,
        connection_id: int,
        request_id: int,
    ) -> None:
        duration_ms = (time.perf_counter() - started_at) * 1000
        event = {
            "client": address[0],
            "method": method,
            "path": path,
            "status": channel.status_code,
            "timed_out": channel.timed_out,
            "connection_id": connection_id,
            "request_id": request_id,
            "bytes_out": channel.bytes_sent,
            "latency_ms": round(duration_ms, 3),
        }
        if self.config.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s path=%s status=%s timed_out=%s "
                "connection_id=%s request_id=%s bytes_out=%s duration_ms=%.2f"
            ),
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["timed_out"],
            event["connection_id"],
            event["request_id"],
            event["bytes_out"],
            duration_ms,
        )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve a single page application")
    env_port = os.environ.get("PORT")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=int(env_port) if env_port else None)
    parser.add_argument("--static-dir", default=STATIC_DIR)
    parser.add_argument("--index-file", default=INDEX_FILE)
    parser.add_argument("--root-dir", default=None, help="Process root, defaults to cwd")
    parser.add_argument(
        "--rewrite",
        action="append",
        default=[],
        metavar="PATTERN=TARGET",
        help="URL rewrite rule, first match wins (repeatable)",
    )
    parser.add_argument("--timeout", type=int, default=TIMEOUT_MS, help="Milliseconds, 0 disables")
    parser.add_argument("--accept-encoding", choices=COMPRESSION_ALGORITHMS, default="none")
    parser.add_argument(
        "--header",
        action="append",
        default=[],
        metavar="NAME: VALUE",
        help="Custom response header (repeatable)",
    )
    parser.add_argument(
        "--render",
        default="none",
        metavar="{none,all,bots-only}",
        help="When to pre-render HTML in the headless browser",
    )
    parser.add_argument("--render-modifier", default=None, metavar="MODULE:FUNCTION")
    parser.add_argument("--render-console", action="store_true")
    parser.add_argument("--settle-ms", type=int, default=SETTLE_MS)
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--debug-html", action="store_true")
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    return parser.parse_args(argv)


def _split_option(value: str, separator: str, option: str) -> tuple[str, str]:
    key, found, rest = value.partition(separator)
    if not found or not key.strip():
        raise ConfigurationError(f"Invalid {option} value: {value!r}")
    return key.strip(), rest.strip()


def _load_modifier(reference: str | None):
    if reference is None:
        return None
    module_name, attribute = _split_option(reference, ":", "--render-modifier")
    try:
        return getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load render modifier {reference!r}: {exc}") from exc


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig.from_options(
        port=args.port,
        host=args.host,
        static_dir=args.static_dir,
        index_file=args.index_file,
        root_dir=args.root_dir,
        rewrite_rules=[_split_option(rule, "=", "--rewrite") for rule in args.rewrite],
        timeout_ms=args.timeout,
        accept_encoding=args.accept_encoding,
        headers=dict(_split_option(header, ":", "--header") for header in args.header),
        render=args.render,
        render_modifier=_load_modifier(args.render_modifier),
        render_console=args.render_console,
        settle_ms=args.settle_ms,
        debug=args.debug,
        debug_html=args.debug_html,
        log_format=args.log_format,
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug or args.debug_html else logging.INFO)
    try:
        config = config_from_args(args)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1

    server = HTTPServer(config)
    try:
        server.start()
    except KeyboardInterrupt:
        logger.info("HTTP Server is killed")
    except (OSError, RenderError) as exc:
        logger.error("HTTP Server failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
