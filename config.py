"""Configuration constants and the immutable server configuration."""

from __future__ import annotations

import enum
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

HOST: str = "127.0.0.1"
STATIC_DIR: str = "dist"
INDEX_FILE: str = "index.html"
TIMEOUT_MS: int = 5 * 60 * 1000
SETTLE_MS: int = 100
SERVER_NAME: str = "spa-prerender-server"
LOG_FORMAT: str = "plain"
KEEPALIVE_TIMEOUT_SECS: int = 5
MAX_KEEPALIVE_REQUESTS: int = 100
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 524_288
MAX_TARGET_LENGTH: int = 8_192
READ_CHUNK_SIZE: int = 65_536
COMPRESSION_ALGORITHMS = ("none", "gzip", "deflate")


class ConfigurationError(ValueError):
    """Raised when server options are missing or invalid."""


class RenderPolicy(str, enum.Enum):
    NONE = "none"
    ALL = "all"
    BOTS_ONLY = "botsonly"

    @classmethod
    def parse(cls, value: "str | RenderPolicy | None") -> "RenderPolicy":
        if isinstance(value, cls):
            return value
        normalized = (value or "none").strip().lower().replace("-", "").replace("_", "")
        for policy in cls:
            if policy.value == normalized:
                return policy
        raise ConfigurationError(f"Unknown render policy: {value!r}")


@dataclass(frozen=True, slots=True)
class RewriteRule:
    """Regex pattern whose first match in a URL is replaced by ``target``."""

    pattern: re.Pattern[str]
    target: str

    @classmethod
    def compile(cls, pattern: str, target: str) -> "RewriteRule":
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            raise ConfigurationError(f"Invalid rewrite pattern {pattern!r}: {exc}") from exc
        return cls(pattern=compiled, target=target)

    def apply(self, url: str) -> str | None:
        """Return the rewritten URL, or None when the pattern does not match."""
        if self.pattern.search(url) is None:
            return None
        return self.pattern.sub(self.target, url, count=1)


DocumentModifier = Callable[[Any], None]


@dataclass(frozen=True, slots=True)
class ServerConfig:
    port: int
    host: str = HOST
    static_dir: str = STATIC_DIR
    index_file: str = INDEX_FILE
    rewrite_rules: tuple[RewriteRule, ...] = ()
    timeout_ms: int = TIMEOUT_MS
    accept_encoding: str = "none"
    headers: Mapping[str, str] = field(default_factory=dict)
    render: RenderPolicy = RenderPolicy.NONE
    render_modifier: DocumentModifier | None = None
    render_console: bool = False
    settle_ms: int = SETTLE_MS
    debug: bool = False
    debug_html: bool = False
    log_format: str = LOG_FORMAT
    root_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_options(
        cls,
        *,
        port: int | None = None,
        rewrite_rules: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
        accept_encoding: str | None = None,
        render: str | RenderPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        root_dir: str | Path | None = None,
        **options: Any,
    ) -> "ServerConfig":
        """Build a validated config, filling defaults for omitted options."""
        if port is None:
            raise ConfigurationError("The server port is not defined.")
        if port < 0 or port > 65535:
            raise ConfigurationError(f"Invalid port: {port}")

        if timeout_ms is None:
            timeout_ms = TIMEOUT_MS
        if timeout_ms < 0:
            raise ConfigurationError("timeout_ms cannot be negative")

        encoding = (accept_encoding or "none").strip().lower()
        if encoding not in COMPRESSION_ALGORITHMS:
            raise ConfigurationError(f"Unsupported compression algorithm: {accept_encoding!r}")

        modifier = options.get("render_modifier")
        if modifier is not None and not callable(modifier):
            raise ConfigurationError("render_modifier must be callable")

        settle_ms = options.get("settle_ms", SETTLE_MS)
        if settle_ms < 0:
            raise ConfigurationError("settle_ms cannot be negative")

        log_format = options.get("log_format", LOG_FORMAT)
        if log_format not in {"plain", "json"}:
            raise ConfigurationError(f"Unsupported log format: {log_format!r}")

        unknown = set(options) - {
            "host",
            "static_dir",
            "index_file",
            "render_modifier",
            "render_console",
            "settle_ms",
            "debug",
            "debug_html",
            "log_format",
        }
        if unknown:
            raise ConfigurationError(f"Unknown options: {', '.join(sorted(unknown))}")

        return cls(
            port=port,
            rewrite_rules=parse_rewrite_rules(rewrite_rules),
            timeout_ms=timeout_ms,
            accept_encoding=encoding,
            headers=dict(headers or {}),
            render=RenderPolicy.parse(render),
            root_dir=Path(root_dir).resolve() if root_dir is not None else Path.cwd(),
            **options,
        )

    @property
    def static_root(self) -> Path:
        return (self.root_dir / self.static_dir).resolve()

    @property
    def index_path(self) -> Path:
        return self.static_root / self.index_file


def parse_rewrite_rules(
    rules: Mapping[str, str] | Iterable[tuple[str, str]] | None,
) -> tuple[RewriteRule, ...]:
    """Compile rewrite rules, keeping their configured order."""
    if not rules:
        return ()
    pairs = rules.items() if isinstance(rules, Mapping) else rules
    return tuple(RewriteRule.compile(pattern, target) for pattern, target in pairs)
