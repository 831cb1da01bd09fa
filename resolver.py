"""Map request URLs to content types and files under the static root."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple
from urllib.parse import unquote

from config import ServerConfig

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPE = "text/html"


class MimeType(NamedTuple):
    content_type: str
    is_text: bool


# https://www.iana.org/assignments/media-types/media-types.xhtml
MIME_TABLE: dict[str, MimeType] = {
    "html": MimeType(HTML_CONTENT_TYPE, True),
    "htm": MimeType(HTML_CONTENT_TYPE, True),
    "txt": MimeType("text/plain", True),
    "css": MimeType("text/css", True),
    "gif": MimeType("image/gif", False),
    "jpg": MimeType("image/jpeg", False),
    "jpeg": MimeType("image/jpeg", False),
    "png": MimeType("image/png", False),
    "webp": MimeType("image/webp", False),
    "ico": MimeType("image/x-icon", False),
    "svg": MimeType("image/svg+xml", False),
    "js": MimeType("application/javascript", True),
    "mjs": MimeType("application/javascript", True),
    "json": MimeType("application/json", True),
    "mp4": MimeType("video/mp4", False),
    "woff": MimeType("font/woff", False),
    "woff2": MimeType("font/woff2", False),
    "ttf": MimeType("font/ttf", False),
    "js.map": MimeType("application/json", True),
    "css.map": MimeType("application/json", True),
}
DEFAULT_MIME_TYPE = MIME_TABLE["html"]


class Resolution(NamedTuple):
    content_type: str
    file_path: Path | None


def solve_file_extension(url: str) -> str:
    """Return ``html``, ``js``, ``js.map``... for the last URL segment, or ``""``."""
    filename = url.split("/")[-1]
    parts = filename.split(".")
    if len(parts) == 1:
        return ""
    if len(parts) > 2:
        return ".".join(parts[-2:])
    return parts[-1]


def get_mime_type(extension: str) -> MimeType:
    normalized = extension.lower()
    mime = MIME_TABLE.get(normalized)
    if mime is None and "." in normalized:
        mime = MIME_TABLE.get(normalized.rsplit(".", 1)[-1])
    return mime or DEFAULT_MIME_TYPE


def get_content_type(url: str) -> str:
    return get_mime_type(solve_file_extension(url)).content_type


def resolve_file_path(url: str, config: ServerConfig) -> Path | None:
    """Resolve the file for ``url``, or None when it escapes its base directory.

    Extension-less URLs are application routes and always map to the index
    document. Files are looked up in the static directory unless a rewrite
    rule matches, in which case the rewritten URL is rooted at the process
    root directory.
    """
    if not solve_file_extension(url):
        return config.index_path

    base_dir = config.static_root
    relative_url = url
    for rule in config.rewrite_rules:
        rewritten = rule.apply(url)
        if rewritten is not None:
            base_dir = config.root_dir.resolve()
            relative_url = rewritten
            break

    return join_within(base_dir, relative_url)


def resolve(url: str, config: ServerConfig) -> Resolution:
    extension = solve_file_extension(url)
    mime = get_mime_type(extension)
    file_path = resolve_file_path(url, config)
    if config.debug:
        logger.debug(
            "url=%s extension=%s content_type=%s text=%s file_path=%s",
            url,
            extension,
            mime.content_type,
            mime.is_text,
            file_path,
        )
    return Resolution(content_type=mime.content_type, file_path=file_path)


def join_within(base_dir: Path, url: str) -> Path | None:
    decoded = unquote(url).lstrip("/")
    candidate = (base_dir / decoded).resolve()
    try:
        candidate.relative_to(base_dir)
    except ValueError:
        return None
    return candidate
