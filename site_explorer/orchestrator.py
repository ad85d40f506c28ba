from __future__ import annotations

"""The exploration loop: the only place that drives the browser.

Each step asks the frontier for the next candidate, filters it through the
guardrails until one is approved, executes it, records the resulting page and
feeds the page's links back into the frontier. The loop ends when the frontier
is exhausted, a page/depth limit is hit, the deadline elapses or the driver
dies; a report is produced in every case.
"""

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .config import ExplorerConfig
from .driver import BrowserDriver
from .errors import ActionError, DriverFatalError, NavigationError, SessionTimeout, StorageError
from .frontier import FrontierPlanner
from .guardrails import ActionHistory, GuardrailEngine
from .input_generator import InputTextGenerator
from .knowledge import (
    ActionKind,
    ActionLog,
    CrawlSession,
    FrontierEntry,
    PageSnapshot,
    PageState,
    SessionStatus,
)
from .memory import InMemoryBackend, LocalFileBackend, MemoryStore
from .report import CrawlReport, ReportGenerator
from .urls import canonicalize_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PACE_SLACK = 0.002


class SessionOrchestrator:
    """Runs one exploration session against one exclusively owned driver."""

    def __init__(
        self,
        config: ExplorerConfig,
        driver: BrowserDriver,
        memory: MemoryStore | None = None,
        guardrails: GuardrailEngine | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config.validate()
        self.config = config
        self._driver = driver
        self._clock = clock
        self.session = CrawlSession(start_url=config.start_url, goal=config.goal, config=config)

        if memory is None:
            if config.memory_enabled:
                backend = LocalFileBackend(config.memory_dir, max_states=config.max_stored_states)
            else:
                backend = InMemoryBackend()
            memory = MemoryStore(self.session.session_id, backend, enabled=config.memory_enabled)
        self.memory = memory
        self.planner = FrontierPlanner(
            memory,
            allowed_domains=config.allowed_domains,
            scoring=config.scoring,
            include_elements=config.include_elements,
        )
        self.guardrails = guardrails or GuardrailEngine(config.guardrails, clock=clock)
        self.history = ActionHistory(config.guardrails.loop_window)
        self.action_log = ActionLog()
        self._input_gen = InputTextGenerator()

        self._deadline: float = 0.0
        self._current: Optional[PageState] = None
        self._current_url: str = ""
        self._stop_requested = False
        self.report: Optional[CrawlReport] = None
        self.report_paths: Dict[str, str] = {}

    # ------------------------------------------------------------------
    async def run(self) -> CrawlReport:
        """Entry-point: explore until a termination condition holds, then report."""
        self.session.start()
        self._deadline = self._clock() + self.config.timeout_ms / 1000.0
        logger.info("Session %s started at %s", self.session.session_id, self.config.start_url)

        try:
            if self.planner.seed(self.config.start_url) is None:
                logger.warning("Start URL %s is outside the allowed domains", self.config.start_url)
            status, reason = await self._loop()
        except SessionTimeout as exc:
            status, reason = SessionStatus.TIMED_OUT, str(exc)
        except DriverFatalError as exc:
            logger.error("Browser driver failed, aborting: %s", exc)
            status, reason = SessionStatus.ABORTED, f"browser driver failed: {exc}"
        except StorageError as exc:
            logger.error("Memory store unusable, aborting: %s", exc)
            status, reason = SessionStatus.ABORTED, f"storage failure: {exc}"
        except Exception as exc:
            logger.exception("Unexpected error in exploration loop")
            status, reason = SessionStatus.ABORTED, f"unexpected error: {exc!r}"

        self.session.finish(status, reason)
        logger.info(
            "Session %s %s (%s): %d pages, %d errors, %d blocked",
            self.session.session_id,
            status.value,
            reason,
            self.session.counters.pages_visited,
            self.session.counters.errors,
            self.session.counters.actions_blocked,
        )
        self.report = ReportGenerator().generate(self.session, self.memory, self.action_log)
        if self.config.generate_report:
            directory = os.path.join(self.config.report_dir, self.session.session_id)
            try:
                self.report_paths = ReportGenerator.write(self.report, directory)
            except OSError as exc:
                logger.error("Could not write report to %s: %s", directory, exc)
        return self.report

    def stop(self) -> None:
        """Ask the loop to end after the current step."""
        self._stop_requested = True

    # ------------------------------------------------------------------
    async def _loop(self) -> Tuple[SessionStatus, str]:
        while True:
            if self._stop_requested:
                return SessionStatus.ABORTED, "cancelled"
            if self._clock() >= self._deadline:
                return SessionStatus.TIMED_OUT, "session deadline elapsed"
            if self.session.counters.pages_visited >= self.config.max_pages:
                return SessionStatus.COMPLETED, f"reached max_pages ({self.config.max_pages})"

            entry = await self._select_next()
            if entry is None:
                return SessionStatus.COMPLETED, "frontier exhausted"
            if entry.depth > self.config.max_depth:
                return SessionStatus.COMPLETED, f"max_depth ({self.config.max_depth}) exceeded"

            await self._execute(entry)

    async def _select_next(self) -> Optional[FrontierEntry]:
        """Next approved entry. Denied entries are logged and skipped, never retried."""
        while True:
            if self._clock() >= self._deadline:
                raise SessionTimeout("session deadline elapsed")
            entry = self.planner.next()
            if entry is None or entry.depth > self.config.max_depth:
                return entry
            if entry.kind == ActionKind.TYPE:
                entry.text = self._input_gen.generate(entry)

            await self._pace()
            verdict = self.guardrails.evaluate(entry, self.history)
            if verdict.allowed:
                return entry
            self.action_log.blocked(entry, verdict)
            self.session.bump("actions_blocked")

    async def _pace(self) -> None:
        """Wait for the rate limiter instead of burning candidates on it.

        Raises `SessionTimeout` when the next token would only arrive after
        the deadline.
        """
        wait = self.guardrails.rate_limiter.wait_time()
        if wait <= 0:
            return
        # small slack so float rounding cannot leave the bucket just short of a token
        wait += _PACE_SLACK
        if self._clock() + wait >= self._deadline:
            raise SessionTimeout("session deadline elapsed waiting for the rate limiter")
        await asyncio.sleep(wait)

    # ------------------------------------------------------------------
    async def _execute(self, entry: FrontierEntry) -> None:
        try:
            if entry.kind == ActionKind.NAVIGATE:
                from_fp = self._current.fingerprint if self._current else ""
                snapshot = await self._navigate(entry.target)
            else:
                await self._ensure_on(entry.source_url)
                from_fp = self._current.fingerprint if self._current else ""
                if entry.kind == ActionKind.CLICK:
                    await self._bounded(self._driver.click(entry.target), entry.source_url)
                else:
                    await self._bounded(self._driver.type(entry.target, entry.text), entry.source_url)
                snapshot = await self._bounded(self._driver.snapshot(), entry.source_url)
                self._current_url = canonicalize_url(snapshot.url)
        except (NavigationError, ActionError) as exc:
            logger.warning("Failed to %s: %s", entry.describe(), exc)
            self.action_log.error(entry, str(exc))
            self.session.bump("errors")
            return

        self.session.bump("actions_executed")
        self.history.record(entry)
        page = await self._observe(snapshot, entry)
        self.action_log.executed(entry, from_fp, page.fingerprint)

    async def _navigate(self, url: str) -> PageSnapshot:
        if self._clock() >= self._deadline:
            raise SessionTimeout("session deadline elapsed")
        logger.debug("Navigating to %s", url)
        self.session.bump("navigations")
        snapshot = await self._bounded(self._driver.navigate(url), url)
        self._current_url = canonicalize_url(snapshot.url)
        return snapshot

    async def _ensure_on(self, url: str) -> None:
        """Bring the tab back to the page exposing an element before interacting."""
        if self._current_url == canonicalize_url(url):
            return
        await self._navigate(url)
        self._current = self.memory.lookup_url(url) or self._current

    async def _bounded(self, op: Awaitable[T], url: str) -> T:
        """Apply the page-load timeout to one driver operation."""
        timeout = self.config.page_load_timeout_ms / 1000.0
        try:
            return await asyncio.wait_for(op, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise NavigationError(url, f"timed out after {self.config.page_load_timeout_ms}ms") from exc

    async def _observe(self, snapshot: PageSnapshot, entry: FrontierEntry) -> PageState:
        links, elements = self._driver.extract_links_and_elements(snapshot)
        screenshot = await self._driver.screenshot() if self.config.take_screenshots else None
        args = (snapshot, entry.depth, [url for url, _ in links], elements, screenshot, links)
        try:
            page, novel = self.memory.record(*args)
        except StorageError as exc:
            logger.error("Could not persist %s: %s", snapshot.url, exc)
            self.action_log.error(entry, f"storage: {exc}")
            self.session.bump("errors")
            self.memory.detach_backend()
            page, novel = self.memory.record(*args)

        self._current = page
        if novel:
            self.session.bump("pages_visited")
            self.planner.enqueue(page)
            logger.info("[%d/%d] depth %d %s", self.session.counters.pages_visited,
                        self.config.max_pages, page.depth, page.url)
        else:
            logger.debug("Revisited known state %s", page.url)
        return page
