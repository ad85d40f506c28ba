"""Site Explorer: autonomous, guarded breadth-first exploration of websites.

A session starts from one URL, visits pages level by level, deduplicates what it
sees by content fingerprint and writes a report of everything it did.

Key sub-modules:

knowledge.py        – Core data models: page states, frontier entries, session, action log, link graph.
state_matcher.py    – Structural fingerprinting with volatile content scrubbed out.
memory.py           – Content-addressed memory store and its local-file / in-memory backends.
frontier.py         – Breadth-first frontier with a data-driven scoring table.
guardrails.py       – Rate limit, URL, destructive-action and loop checks run before every action.
input_generator.py  – Plausible text for input boxes.
driver.py           – Browser driver contract and the Playwright implementation.
orchestrator.py     – The exploration loop tying everything together.
report.py           – JSON / Markdown / HTML / GraphML session reports.
config.py           – Session configuration loaded from dicts, JSON files or the environment.
"""

from .config import ExplorerConfig
from .driver import BrowserDriver, PlaywrightDriver
from .errors import (
    ActionError,
    DriverFatalError,
    ExplorerError,
    GuardrailViolation,
    NavigationError,
    SessionTimeout,
    StorageError,
)
from .frontier import FrontierPlanner, ScoringTable, TokenCategory
from .guardrails import GuardrailEngine, GuardrailPolicy
from .knowledge import CrawlSession, FrontierEntry, PageSnapshot, PageState, SessionStatus
from .memory import InMemoryBackend, LocalFileBackend, MemoryBackend, MemoryStore
from .orchestrator import SessionOrchestrator
from .report import CrawlReport, ReportGenerator

__all__ = [
    "ActionError",
    "BrowserDriver",
    "CrawlReport",
    "CrawlSession",
    "DriverFatalError",
    "ExplorerConfig",
    "ExplorerError",
    "FrontierEntry",
    "FrontierPlanner",
    "GuardrailEngine",
    "GuardrailPolicy",
    "GuardrailViolation",
    "InMemoryBackend",
    "LocalFileBackend",
    "MemoryBackend",
    "MemoryStore",
    "NavigationError",
    "PageSnapshot",
    "PageState",
    "PlaywrightDriver",
    "ReportGenerator",
    "ScoringTable",
    "SessionOrchestrator",
    "SessionStatus",
    "SessionTimeout",
    "StorageError",
    "TokenCategory",
]
