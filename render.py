"""Server side rendering of HTML documents in a headless browser page.

The initial HTML is parsed with BeautifulSoup so an optional modifier can
change the document before any script runs. Executable ``<script>`` elements
are then made inert and the markup is loaded into an isolated Playwright
page rooted at the requested URL. Scripts run one by one in document order:

- external scripts from the same host are read from the static directory;
- external scripts from other hosts are never fetched nor executed;
- inline scripts run their own text.

After the last script a MutationObserver watches the document for a short
settle window, the original script types are restored and the page is
serialized back to HTML.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Protocol
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from playwright.async_api import (
    Browser,
    ConsoleMessage,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    async_playwright,
)

from config import ServerConfig
from resolver import join_within, resolve

logger = logging.getLogger(__name__)
console_logger = logging.getLogger("render.console")

INERT_SCRIPT_TYPE = "text/x-prerender-inert"
ORIGINAL_TYPE_ATTR = "data-prerender-type"
CLASSIC_SCRIPT_TYPES = frozenset(
    {
        "",
        "text/javascript",
        "application/javascript",
        "application/ecmascript",
        "application/x-javascript",
        "text/ecmascript",
        "text/jscript",
    }
)
CONSOLE_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "log": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_EVAL_CLASSIC_JS = "source => { (0, eval)(source); }"
_IMPORT_MODULE_JS = """
async ({ source, url }) => {
  if (url) {
    await import(url);
    return;
  }
  const blobUrl = URL.createObjectURL(new Blob([source], { type: 'text/javascript' }));
  try {
    await import(blobUrl);
  } finally {
    URL.revokeObjectURL(blobUrl);
  }
}
"""
_SETTLE_JS = """
ms => new Promise(resolve => {
  const observer = new MutationObserver(() => {});
  observer.observe(document, { childList: true, subtree: true });
  setTimeout(() => {
    observer.disconnect();
    resolve();
  }, ms);
})
"""
_RESTORE_JS = """
attr => {
  for (const script of document.querySelectorAll(`script[${attr}]`)) {
    const original = script.getAttribute(attr);
    if (original) {
      script.setAttribute('type', original);
    } else {
      script.removeAttribute('type');
    }
    script.removeAttribute(attr);
  }
}
"""


class RenderError(Exception):
    """Raised when a document cannot be rendered completely."""


@dataclass(frozen=True, slots=True)
class ScriptSource:
    code: str
    url: str | None = None
    module: bool = False
    same_origin: bool = True

    @property
    def label(self) -> str:
        return self.url or "inline script"


class ScriptSandbox(Protocol):
    async def execute(self, script: ScriptSource, origin: str) -> None:
        """Run one script, raising RenderError if it throws."""


class PageSandbox:
    """Executes scripts in the main world of a Playwright page."""

    def __init__(self, page: Page) -> None:
        self._page = page

    async def execute(self, script: ScriptSource, origin: str) -> None:
        try:
            if script.module:
                # Modules are imported by URL so their relative imports resolve.
                await self._page.evaluate(
                    _IMPORT_MODULE_JS,
                    {"source": script.code, "url": script.url},
                )
            else:
                await self._page.evaluate(_EVAL_CLASSIC_JS, script.code)
        except PlaywrightError as exc:
            raise RenderError(f"Script error in {script.label} ({origin}): {exc}") from exc


def parse_document(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def collect_scripts(soup: BeautifulSoup, page_url: str) -> list[ScriptSource]:
    """Return executable scripts in document order and make them inert in ``soup``."""
    page_host = urlsplit(page_url).hostname
    scripts: list[ScriptSource] = []
    for element in soup.find_all("script"):
        script_type = (element.get("type") or "").strip().lower()
        module = script_type == "module"
        if not module and script_type not in CLASSIC_SCRIPT_TYPES:
            continue

        element[ORIGINAL_TYPE_ATTR] = element.get("type") or ""
        element["type"] = INERT_SCRIPT_TYPE

        src = (element.get("src") or "").strip()
        if src:
            url = urljoin(page_url, src)
            scripts.append(
                ScriptSource(
                    code="",
                    url=url,
                    module=module,
                    same_origin=urlsplit(url).hostname == page_host,
                )
            )
        else:
            scripts.append(ScriptSource(code=element.string or "", module=module))
    return scripts


async def execute_scripts(
    sandbox: ScriptSandbox,
    scripts: list[ScriptSource],
    origin: str,
    *,
    debug: bool = False,
) -> int:
    """Run same-origin scripts through ``sandbox`` and return how many ran."""
    executed = 0
    for script in scripts:
        if not script.same_origin:
            if debug:
                logger.debug("skipping cross-origin script src=%s", script.url)
            continue
        if debug:
            logger.debug("executing %s", script.label)
        await sandbox.execute(script, origin)
        executed += 1
    return executed


class Renderer:
    """Owns the headless browser and renders documents with it."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(headless=True)
        except PlaywrightError as exc:
            await self._playwright.stop()
            self._playwright = None
            raise RenderError(f"Cannot launch the headless browser: {exc}") from exc
        logger.info("Headless browser started for server side rendering")

    async def _ensure_browser(self) -> Browser:
        await self.start()
        if self._browser is None:
            raise RenderError("The headless browser is not running")
        return self._browser

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def render(self, url: str, initial_html: str) -> str:
        soup = parse_document(initial_html)
        if self.config.render_modifier is not None:
            try:
                self.config.render_modifier(soup)
            except Exception as exc:
                raise RenderError(f"Document modifier failed: {exc}") from exc

        scripts = [
            await self._load_source(script) if script.same_origin else script
            for script in collect_scripts(soup, url)
        ]

        page_errors: list[str] = []
        try:
            browser = await self._ensure_browser()
            # page CSP would otherwise block evaluating the collected scripts
            context = await browser.new_context(bypass_csp=True)
        except PlaywrightError as exc:
            raise RenderError(f"Cannot open a browser context: {exc}") from exc
        try:
            page = await context.new_page()
            await page.route("**/*", self._route_handler(url, str(soup)))
            if self.config.render_console:
                page.on("console", _forward_console)
            page.on("pageerror", lambda error: page_errors.append(str(error)))

            await page.goto(url, wait_until="domcontentloaded")
            origin = _origin_of(url)
            await execute_scripts(PageSandbox(page), scripts, origin, debug=self.config.debug)
            await page.evaluate(_SETTLE_JS, self.config.settle_ms)
            if page_errors:
                raise RenderError(f"Uncaught error while rendering {url}: {page_errors[0]}")
            await page.evaluate(_RESTORE_JS, ORIGINAL_TYPE_ATTR)
            return await page.content()
        except PlaywrightError as exc:
            raise RenderError(f"Rendering {url} failed: {exc}") from exc
        finally:
            await context.close()

    async def _load_source(self, script: ScriptSource) -> ScriptSource:
        if script.url is None:
            return script
        path = join_within(self.config.static_root, urlsplit(script.url).path)
        if path is None:
            raise RenderError(f"Script {script.url} is outside the static directory")
        try:
            code = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as exc:
            raise RenderError(f"Cannot read script {script.url}: {exc}") from exc
        return replace(script, code=code)

    def _route_handler(self, page_url: str, markup: str):
        page_host = urlsplit(page_url).hostname
        document_served = False

        async def handle(route: Route) -> None:
            nonlocal document_served
            request = route.request
            if request.is_navigation_request() and request.frame.parent_frame is None:
                if document_served:
                    await route.abort()
                    return
                document_served = True
                await route.fulfill(status=200, content_type="text/html", body=markup)
                return

            target = urlsplit(request.url)
            if target.hostname != page_host:
                await route.abort()
                return

            content_type, file_path = resolve(target.path, self.config)
            if file_path is None or not file_path.is_file():
                await route.fulfill(status=404, content_type="text/plain", body="Not Found")
                return
            await route.fulfill(status=200, content_type=content_type, path=file_path)

        return handle


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _forward_console(message: ConsoleMessage) -> None:
    console_logger.log(CONSOLE_LEVELS.get(message.type, logging.INFO), "%s", message.text)
