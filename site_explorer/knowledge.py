from __future__ import annotations

"""Data structures that form the *knowledge* backbone of the explorer.

Page states are append-only records owned by the memory store, frontier
entries are the candidate actions the planner hands out, and the session and
action log capture everything the orchestrator did so that the report can be
rebuilt from them alone.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
import time
import uuid

import networkx as nx


class SessionStatus(str, Enum):
    """Lifecycle of one exploration run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ABORTED, SessionStatus.TIMED_OUT)


class ActionKind(str, Enum):
    """Interaction primitives the orchestrator can execute."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"


class Rule(str, Enum):
    """Identifiers of the guardrail checks, as they appear in reports."""

    RATE_LIMIT = "rate-limit"
    UNSAFE_PROTOCOL = "unsafe-protocol"
    BLOCKED_DOMAIN = "blocked-domain"
    BLOCKED_PATTERN = "blocked-pattern"
    DOMAIN_CAP = "domain-cap"
    DESTRUCTIVE_ACTION = "destructive-action"
    SENSITIVE_INPUT = "sensitive-input"
    LOOP_DETECTED = "loop-detected"


@dataclass(frozen=True)
class InteractiveElement:
    """A clickable or typeable element exposed by a page.

    `ref` is whatever the driver needs to resolve the element again (a CSS
    selector for the Playwright driver); `label` is the human-readable text.
    """

    ref: str
    label: str
    role: str = "button"
    input_type: str = ""

    @property
    def is_text_input(self) -> bool:
        return self.role in ("textbox", "searchbox", "input", "textarea")

    def to_dict(self) -> Dict[str, str]:
        return {"ref": self.ref, "label": self.label, "role": self.role, "input_type": self.input_type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractiveElement":
        return cls(
            ref=str(data["ref"]),
            label=str(data.get("label", "")),
            role=str(data.get("role", "button")),
            input_type=str(data.get("input_type", "")),
        )


@dataclass
class PageSnapshot:
    """Raw observation handed over by the browser driver.

    `tree` is a structural representation of the page: nested dicts with
    `tag` (or `role`), optional `text`/`name`, `attrs` and `children` keys.
    The fingerprint is computed from it, never from `html`.
    """

    url: str
    title: str = ""
    tree: Any = None
    html: str = ""
    links: List[Tuple[str, str]] = field(default_factory=list)  # (href, text) as found on the page
    elements: List[InteractiveElement] = field(default_factory=list)


@dataclass(frozen=True)
class PageState:
    """One observed page. Never mutated after creation."""

    url: str
    fingerprint: str
    title: str
    depth: int
    links: Tuple[str, ...] = ()
    elements: Tuple[InteractiveElement, ...] = ()
    screenshot_path: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    # anchor text per link, kept for scoring; not part of the persisted layout
    link_labels: Tuple[Tuple[str, str], ...] = field(default=(), compare=False, repr=False)

    def label_for(self, url: str) -> str:
        for href, text in self.link_labels:
            if href == url:
                return text
        return ""

    def to_record(self) -> Dict[str, Any]:
        """Serialise into the content-addressed persistence layout."""
        return {
            "fingerprint": self.fingerprint,
            "url": self.url,
            "title": self.title,
            "depth": self.depth,
            "links": list(self.links),
            "link_labels": [list(pair) for pair in self.link_labels],
            "elements": [e.to_dict() for e in self.elements],
            "screenshotPath": self.screenshot_path,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "PageState":
        return cls(
            url=data["url"],
            fingerprint=data["fingerprint"],
            title=data.get("title", ""),
            depth=int(data.get("depth", 0)),
            links=tuple(data.get("links", [])),
            elements=tuple(InteractiveElement.from_dict(e) for e in data.get("elements", [])),
            screenshot_path=data.get("screenshotPath"),
            timestamp=float(data.get("timestamp", 0.0)),
            link_labels=tuple((str(h), str(t)) for h, t in data.get("link_labels", [])),
        )


@dataclass
class FrontierEntry:
    """A candidate action that has not been executed yet.

    For NAVIGATE entries `target` is the absolute URL. For CLICK/TYPE entries
    it is the element reference and `source_url` is the page exposing it.
    """

    kind: ActionKind
    target: str
    depth: int
    label: str = ""
    source_url: str = ""
    source_fingerprint: str = ""
    role: str = ""
    input_type: str = ""
    score: float = 0.0
    order: int = 0
    text: str = ""  # filled in for TYPE entries before execution

    @property
    def url(self) -> str:
        """URL the action is evaluated against by the guardrails."""
        return self.target if self.kind == ActionKind.NAVIGATE else self.source_url

    @property
    def key(self) -> Tuple[str, str, str]:
        """Identity used for dedup and loop detection."""
        if self.kind == ActionKind.NAVIGATE:
            return (self.kind.value, self.target, "")
        return (self.kind.value, self.source_url, self.target)

    def sort_key(self) -> Tuple[float, int]:
        return (-self.score, self.order)

    def describe(self) -> str:
        if self.kind == ActionKind.NAVIGATE:
            return f"navigate {self.target}"
        label = f" '{self.label}'" if self.label else ""
        return f"{self.kind.value} {self.target}{label} on {self.source_url}"


@dataclass(frozen=True)
class GuardrailVerdict:
    allowed: bool
    rule: Optional[Rule] = None
    reason: str = ""

    @classmethod
    def allow(cls) -> "GuardrailVerdict":
        return cls(allowed=True)

    @classmethod
    def deny(cls, rule: Rule, reason: str) -> "GuardrailVerdict":
        return cls(allowed=False, rule=rule, reason=reason)


# ---------------------------------------------------------------------------
# session -------------------------------------------------------------------

def new_session_id() -> str:
    return f"crawl_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class SessionCounters:
    pages_visited: int = 0
    navigations: int = 0
    actions_executed: int = 0
    errors: int = 0
    actions_blocked: int = 0


@dataclass
class CrawlSession:
    """One exploration run. Only the orchestrator mutates it."""

    start_url: str
    goal: Optional[str] = None
    config: Any = None
    session_id: str = field(default_factory=new_session_id)
    status: SessionStatus = SessionStatus.IDLE
    counters: SessionCounters = field(default_factory=SessionCounters)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    termination_reason: str = ""

    def _ensure_mutable(self) -> None:
        if self.status.is_terminal:
            raise RuntimeError(f"session {self.session_id} is {self.status.value} and can no longer change")

    def start(self) -> None:
        self._ensure_mutable()
        if self.status != SessionStatus.IDLE:
            raise RuntimeError(f"session {self.session_id} already started")
        self.status = SessionStatus.RUNNING
        self.started_at = time.time()

    def bump(self, counter: str, amount: int = 1) -> None:
        """Increase a counter. Counters never go down."""
        self._ensure_mutable()
        if amount < 0:
            raise ValueError("counters are monotonically non-decreasing")
        setattr(self.counters, counter, getattr(self.counters, counter) + amount)

    def finish(self, status: SessionStatus, reason: str = "") -> None:
        self._ensure_mutable()
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.termination_reason = reason
        self.ended_at = time.time()

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.started_at)


# ---------------------------------------------------------------------------
# action log ----------------------------------------------------------------

class LogKind(str, Enum):
    EXECUTED = "executed"
    BLOCKED = "blocked"
    ERROR = "error"


@dataclass(frozen=True)
class ActionLogEntry:
    kind: LogKind
    action: ActionKind
    target: str
    url: str
    depth: int
    label: str = ""
    rule: Optional[Rule] = None
    reason: str = ""
    from_fingerprint: str = ""
    to_fingerprint: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "action": self.action.value,
            "target": self.target,
            "url": self.url,
            "depth": self.depth,
            "label": self.label,
            "rule": self.rule.value if self.rule else None,
            "reason": self.reason,
            "from": self.from_fingerprint or None,
            "to": self.to_fingerprint or None,
            "timestamp": self.timestamp,
        }


class ActionLog:
    """Append-only record of what the orchestrator did, denied or failed at."""

    def __init__(self) -> None:
        self._entries: List[ActionLogEntry] = []

    def __iter__(self) -> Iterator[ActionLogEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def executed(self, entry: FrontierEntry, from_fp: str = "", to_fp: str = "") -> ActionLogEntry:
        return self._append(LogKind.EXECUTED, entry, from_fingerprint=from_fp, to_fingerprint=to_fp)

    def blocked(self, entry: FrontierEntry, verdict: GuardrailVerdict) -> ActionLogEntry:
        return self._append(LogKind.BLOCKED, entry, rule=verdict.rule, reason=verdict.reason)

    def error(self, entry: FrontierEntry, reason: str) -> ActionLogEntry:
        return self._append(LogKind.ERROR, entry, reason=reason)

    def entries(self, kind: Optional[LogKind] = None) -> List[ActionLogEntry]:
        if kind is None:
            return list(self._entries)
        return [e for e in self._entries if e.kind == kind]

    def _append(self, kind: LogKind, entry: FrontierEntry, **extra: Any) -> ActionLogEntry:
        item = ActionLogEntry(
            kind=kind,
            action=entry.kind,
            target=entry.target,
            url=entry.url,
            depth=entry.depth,
            label=entry.label,
            **extra,
        )
        self._entries.append(item)
        return item


# ---------------------------------------------------------------------------
# link graph ----------------------------------------------------------------

class SiteGraph:
    """Directed graph of recorded pages keyed by fingerprint."""

    def __init__(self) -> None:
        self._g: nx.DiGraph = nx.DiGraph()

    # --- page helpers -----------------------------------------------------
    def add_page(self, page: PageState) -> None:
        if page.fingerprint not in self._g:
            self._g.add_node(page.fingerprint, url=page.url, title=page.title, depth=page.depth)

    # --- edge helpers -----------------------------------------------------
    def add_edge(self, src: PageState, dst: PageState, via: str = "link") -> None:
        if src.fingerprint == dst.fingerprint:
            return
        self.add_page(src)
        self.add_page(dst)
        if not self._g.has_edge(src.fingerprint, dst.fingerprint):
            self._g.add_edge(src.fingerprint, dst.fingerprint, via=via)

    def edges(self) -> List[Tuple[str, str, str]]:
        return [(u, v, data.get("via", "link")) for u, v, data in self._g.edges(data=True)]

