from __future__ import annotations

"""Browser driver contract and its Playwright implementation.

The orchestrator is the only component holding a driver. One driver drives one
tab and runs one operation at a time.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import logging

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import ActionError, DriverFatalError, NavigationError
from .knowledge import InteractiveElement, PageSnapshot
from .urls import canonicalize_url

logger = logging.getLogger(__name__)


class BrowserDriver(ABC):
    """Primitives the exploration engine consumes."""

    @abstractmethod
    async def navigate(self, url: str) -> PageSnapshot:
        """Load `url` and return its snapshot. Raises NavigationError or DriverFatalError."""

    @abstractmethod
    async def snapshot(self) -> PageSnapshot:
        """Snapshot of whatever the tab currently shows."""

    @abstractmethod
    async def screenshot(self) -> Optional[bytes]:
        """PNG bytes of the viewport, or None when unavailable."""

    @abstractmethod
    async def click(self, element_ref: str) -> None:
        """Raises ActionError when the element cannot be clicked."""

    @abstractmethod
    async def type(self, element_ref: str, text: str) -> None:
        """Raises ActionError when the element cannot be filled."""

    async def close(self) -> None:
        return None

    def extract_links_and_elements(
        self, snapshot: PageSnapshot
    ) -> Tuple[List[Tuple[str, str]], List[InteractiveElement]]:
        """Absolute, de-duplicated `(url, text)` links and the labelled elements of `snapshot`."""
        links: Dict[str, str] = {}
        for href, text in snapshot.links:
            if not href or href.startswith("#"):
                continue
            url = canonicalize_url(href, snapshot.url)
            if url not in links or (not links[url] and text):
                links[url] = " ".join((text or "").split())[:100]
        elements: Dict[str, InteractiveElement] = {}
        for el in snapshot.elements:
            if el.ref not in elements:
                elements[el.ref] = el
        return list(links.items()), list(elements.values())


# Collects a DOM skeleton, links and interactive elements in one round-trip.
_CAPTURE_JS = """
(maxNodes) => {
  const KEEP = ['href', 'role', 'type', 'name', 'aria-label', 'alt', 'placeholder', 'id', 'class'];
  const SKIP = new Set(['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE', 'SVG', 'IFRAME']);
  let count = 0;

  function cssPath(el) {
    const parts = [];
    while (el && el.nodeType === 1 && el !== document.documentElement) {
      let part = el.tagName.toLowerCase();
      if (el.id && /^[A-Za-z][\\w-]*$/.test(el.id)) {
        parts.unshift('#' + el.id);
        break;
      }
      const parent = el.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter(c => c.tagName === el.tagName);
        if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(el) + 1) + ')';
      }
      parts.unshift(part);
      el = parent;
    }
    return parts.join(' > ');
  }

  function directText(el) {
    let out = '';
    for (const node of el.childNodes) {
      if (node.nodeType === 3) out += node.textContent;
    }
    return out.trim().slice(0, 200);
  }

  function walk(el) {
    if (count >= maxNodes || SKIP.has(el.tagName)) return null;
    count++;
    const attrs = {};
    for (const name of KEEP) {
      const v = el.getAttribute(name);
      if (v !== null) attrs[name] = v;
    }
    const children = [];
    for (const child of el.children) {
      const c = walk(child);
      if (c) children.push(c);
    }
    return { tag: el.tagName.toLowerCase(), text: directText(el), attrs, children };
  }

  const links = Array.from(document.querySelectorAll('a[href]')).map(a => [
    a.href, (a.innerText || a.getAttribute('aria-label') || a.title || '').trim().slice(0, 100)
  ]);

  const elements = [];
  const selector = 'button, input:not([type=hidden]), textarea, select, [role=button], [role=textbox], [role=searchbox]';
  for (const el of document.querySelectorAll(selector)) {
    if (el.offsetParent === null) continue;
    const tag = el.tagName.toLowerCase();
    const type = (el.getAttribute('type') || '').toLowerCase();
    let role = el.getAttribute('role') || (tag === 'textarea' ? 'textbox' : 'button');
    if (tag === 'input' && !['button', 'submit', 'reset', 'checkbox', 'radio', 'image'].includes(type)) role = 'textbox';
    const label = (el.innerText || el.getAttribute('aria-label') || el.getAttribute('placeholder')
                   || el.getAttribute('value') || el.getAttribute('name') || '').trim().slice(0, 80);
    elements.push({ ref: cssPath(el), label, role, input_type: type });
  }

  return { title: document.title, tree: document.body ? walk(document.body) : null, links, elements };
}
"""


class PlaywrightDriver(BrowserDriver):
    """Single-tab Chromium driver built on `playwright.async_api`."""

    def __init__(
        self,
        headless: bool = True,
        navigation_timeout_ms: int = 30_000,
        action_timeout_ms: int = 10_000,
        max_nodes: int = 2000,
    ) -> None:
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.action_timeout_ms = action_timeout_ms
        self.max_nodes = max_nodes
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def __aenter__(self) -> "PlaywrightDriver":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context()
        self._page = await self._context.new_page()

    async def close(self) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._page = self._context = self._browser = self._playwright = None

    # ------------------------------------------------------------------
    @property
    def page(self) -> Page:
        if self._page is None or self._page.is_closed():
            raise DriverFatalError("browser page is not available")
        if self._browser is not None and not self._browser.is_connected():
            raise DriverFatalError("browser process disconnected")
        return self._page

    async def navigate(self, url: str) -> PageSnapshot:
        page = self.page
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationError(url, f"page load timed out after {self.navigation_timeout_ms}ms") from exc
        except PlaywrightError as exc:
            self._raise_if_fatal(exc)
            raise NavigationError(url, str(exc)) from exc
        return await self.snapshot()

    async def snapshot(self) -> PageSnapshot:
        page = self.page
        try:
            data = await page.evaluate(_CAPTURE_JS, self.max_nodes)
        except PlaywrightError as exc:
            self._raise_if_fatal(exc)
            raise NavigationError(page.url, f"snapshot failed: {exc}") from exc
        return PageSnapshot(
            url=page.url,
            title=data.get("title") or "",
            tree=data.get("tree"),
            links=[(str(h), str(t)) for h, t in data.get("links", [])],
            elements=[InteractiveElement.from_dict(e) for e in data.get("elements", [])],
        )

    async def screenshot(self) -> Optional[bytes]:
        try:
            return await self.page.screenshot(type="png", full_page=False)
        except PlaywrightError as exc:
            self._raise_if_fatal(exc)
            logger.warning("Screenshot unavailable: %s", exc)
            return None

    async def click(self, element_ref: str) -> None:
        page = self.page
        try:
            await page.click(element_ref, timeout=self.action_timeout_ms)
            await page.wait_for_load_state("domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightError as exc:
            self._raise_if_fatal(exc)
            raise ActionError(element_ref, str(exc)) from exc
        await self._ensure_single_tab()

    async def type(self, element_ref: str, text: str) -> None:
        page = self.page
        try:
            await page.fill(element_ref, text, timeout=self.action_timeout_ms)
        except PlaywrightError as exc:
            self._raise_if_fatal(exc)
            raise ActionError(element_ref, str(exc)) from exc

    # ------------------------------------------------------------------
    async def _ensure_single_tab(self) -> None:
        """Close popups so the session keeps driving exactly one tab."""
        if self._context is None:
            return
        for extra in self._context.pages[1:]:
            try:
                await extra.close()
            except PlaywrightError:
                logger.debug("Could not close extra tab %s", extra.url)

    def _raise_if_fatal(self, exc: Exception) -> None:
        closed = self._page is None or self._page.is_closed()
        disconnected = self._browser is not None and not self._browser.is_connected()
        if closed or disconnected or "Target closed" in str(exc) or "has been closed" in str(exc):
            raise DriverFatalError(str(exc)) from exc
