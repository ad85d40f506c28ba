"""Shared fixtures: a scripted in-process browser driver and small test sites.

The Playwright driver is not exercised here (it needs a browser install); the
orchestrator is tested end-to-end against ``FakeDriver`` instead.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from site_explorer.config import ExplorerConfig
from site_explorer.driver import BrowserDriver
from site_explorer.errors import ActionError, DriverFatalError, NavigationError
from site_explorer.guardrails import GuardrailPolicy
from site_explorer.knowledge import InteractiveElement, PageSnapshot

BASE = "https://example.test"

# url -> (title, [(href, text)], [elements])
Site = Dict[str, Tuple[str, List[Tuple[str, str]], List[InteractiveElement]]]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDriver(BrowserDriver):
    """Serves pages from a dict instead of a browser."""

    def __init__(
        self,
        pages: Site,
        clicks: Optional[Dict[Tuple[str, str], str]] = None,
        fail_urls: Sequence[str] = (),
        fatal_after: Optional[int] = None,
        clock: Optional[FakeClock] = None,
        nav_cost: float = 0.0,
    ) -> None:
        self.pages = pages
        self.clicks = clicks or {}
        self.fail_urls = set(fail_urls)
        self.fatal_after = fatal_after
        self.clock = clock
        self.nav_cost = nav_cost
        self.current: Optional[str] = None
        self.visits: List[str] = []
        self.typed: List[Tuple[str, str]] = []
        self.closed = False

    async def navigate(self, url: str) -> PageSnapshot:
        if self.fatal_after is not None and len(self.visits) >= self.fatal_after:
            raise DriverFatalError("browser process crashed")
        if self.clock is not None:
            self.clock.advance(self.nav_cost)
        self.visits.append(url)
        if url in self.fail_urls or url not in self.pages:
            raise NavigationError(url, "net::ERR_CONNECTION_REFUSED")
        self.current = url
        return await self.snapshot()

    async def snapshot(self) -> PageSnapshot:
        title, links, elements = self.pages[self.current]
        children = [{"tag": "h1", "text": title}]
        children += [{"tag": "a", "attrs": {"href": href}, "text": text} for href, text in links]
        children += [{"tag": "button", "attrs": {"aria-label": e.label}} for e in elements]
        return PageSnapshot(
            url=self.current,
            title=title,
            tree={"tag": "body", "children": children},
            links=list(links),
            elements=list(elements),
        )

    async def screenshot(self) -> Optional[bytes]:
        return b"\x89PNG fake"

    async def click(self, element_ref: str) -> None:
        target = self.clicks.get((self.current, element_ref))
        if target is None:
            raise ActionError(element_ref, "element not found")
        self.current = target

    async def type(self, element_ref: str, text: str) -> None:
        self.typed.append((element_ref, text))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def small_site() -> Site:
    """Home -> About, Contact; About -> Team. Four pages, three levels."""
    return {
        f"{BASE}/": ("Home", [("/about", "About us"), ("/contact", "Contact")], []),
        f"{BASE}/about": ("About", [("/team", "Our team"), ("/", "Home")], []),
        f"{BASE}/contact": ("Contact", [("/", "Home")], []),
        f"{BASE}/team": ("Team", [("/about", "About us")], []),
    }


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> ExplorerConfig:
        policy = overrides.pop("guardrails", None) or GuardrailPolicy(requests_per_second=1000.0, burst_size=100)
        values = dict(
            start_url=f"{BASE}/",
            max_depth=5,
            max_pages=20,
            timeout_ms=60_000,
            page_load_timeout_ms=5_000,
            take_screenshots=False,
            memory_dir=str(tmp_path / "memory"),
            report_dir=str(tmp_path / "reports"),
            guardrails=policy,
        )
        values.update(overrides)
        return ExplorerConfig(**values)

    return _make
