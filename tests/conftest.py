"""Shared fixtures: a small SPA build laid out under a temporary process root."""

from pathlib import Path

import pytest

from config import ServerConfig

INDEX_HTML = (
    "<!DOCTYPE html>\n"
    "<html><head><title>App</title></head>"
    '<body><div id="app"></div><script src="/assets/app.js"></script></body></html>\n'
)
APP_JS = "document.getElementById('app').textContent = 'rendered by app.js';\n"
STYLE_CSS = "body { color: #333; }\n" * 200
WEBP_BYTES = b"RIFF\x24\x00\x00\x00WEBPVP8 " + bytes(range(32))


@pytest.fixture
def static_site(tmp_path: Path) -> Path:
    dist = tmp_path / "dist"
    (dist / "assets").mkdir(parents=True)
    (dist / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (dist / "assets" / "app.js").write_text(APP_JS, encoding="utf-8")
    (dist / "assets" / "app.js.map").write_text('{"version": 3}', encoding="utf-8")
    (dist / "assets" / "style.css").write_text(STYLE_CSS, encoding="utf-8")

    images = tmp_path / "public" / "img"
    images.mkdir(parents=True)
    (images / "balls.webp").write_bytes(WEBP_BYTES)
    (tmp_path / "secret.txt").write_text("not public", encoding="utf-8")
    return tmp_path


@pytest.fixture
def make_config(static_site: Path):
    def factory(**options) -> ServerConfig:
        options.setdefault("port", 0)
        return ServerConfig.from_options(root_dir=static_site, **options)

    return factory
