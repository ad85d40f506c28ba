from __future__ import annotations

"""Breadth-first frontier with heuristic ranking inside each depth level.

A depth level is drained completely, best score first, before the next level
is touched. Scores come from a table of token categories so that the weights
are data that can be tuned without touching the control flow.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import unquote, urlparse
import heapq
import itertools
import logging
import re

from .knowledge import ActionKind, FrontierEntry, PageState
from .memory import MemoryStore
from .urls import canonicalize_url, domain_matches, host_of

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if t]


@dataclass(frozen=True)
class TokenCategory:
    """A named group of tokens sharing one weight."""

    name: str
    weight: float
    tokens: Tuple[str, ...]


@dataclass(frozen=True)
class ScoringTable:
    categories: Tuple[TokenCategory, ...] = ()

    def score(self, text: str) -> float:
        """Sum of the weights of every category with at least one token in `text`.

        Multi-word tokens ("sign in") must appear as consecutive words.
        """
        haystack = " " + " ".join(tokenize(text)) + " "
        total = 0.0
        for category in self.categories:
            for token in category.tokens:
                needle = " " + " ".join(tokenize(token)) + " "
                if needle.strip() and needle in haystack:
                    total += category.weight
                    break
        return total

    def matched(self, text: str) -> List[str]:
        haystack = " " + " ".join(tokenize(text)) + " "
        return [
            c.name for c in self.categories
            if any((" " + " ".join(tokenize(t)) + " ") in haystack for t in c.tokens)
        ]

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, object]]) -> "ScoringTable":
        """Build from `{"category": {"weight": 2.0, "tokens": [...]}}`."""
        return cls(tuple(
            TokenCategory(name=name, weight=float(item["weight"]), tokens=tuple(item["tokens"]))  # type: ignore[arg-type]
            for name, item in data.items()
        ))


DEFAULT_SCORING = ScoringTable((
    TokenCategory("pagination", 3.0, ("next", "page", "more", "older", "newer", "load more", "continue")),
    TokenCategory("content", 2.0, ("article", "articles", "post", "posts", "blog", "news", "story", "docs",
                                   "documentation", "guide", "tutorial")),
    TokenCategory("detail", 1.5, ("detail", "details", "product", "products", "item", "items", "view", "read more")),
    TokenCategory("utility", -1.0, ("privacy", "terms", "cookie", "cookies", "legal", "sitemap")),
    TokenCategory("account", -10.0, ("login", "log in", "logout", "log out", "signin", "sign in", "signout",
                                     "sign out", "register", "signup", "sign up", "account", "password")),
    TokenCategory("admin", -10.0, ("admin", "wp admin", "dashboard", "settings")),
    TokenCategory("destructive", -20.0, ("delete", "remove", "unsubscribe", "deactivate", "purchase", "checkout")),
))


def _url_text(url: str) -> str:
    parts = urlparse(url)
    return unquote(f"{parts.path} {parts.query}")


class FrontierPlanner:
    """Per-depth priority queues of not-yet-executed actions."""

    def __init__(
        self,
        memory: MemoryStore,
        allowed_domains: Sequence[str] = (),
        scoring: ScoringTable | None = None,
        include_elements: bool = True,
    ) -> None:
        self._memory = memory
        self._allowed = [d.strip().lower() for d in allowed_domains if d.strip()]
        self._scoring = scoring or DEFAULT_SCORING
        self._include_elements = include_elements
        self._levels: Dict[int, List[Tuple[float, int, FrontierEntry]]] = {}
        self._queued: Set[Tuple[str, str, str]] = set()
        self._dequeued: Set[Tuple[str, str, str]] = set()
        self._order = itertools.count()
        self.filtered_out: int = 0

    def __len__(self) -> int:
        return sum(len(level) for level in self._levels.values())

    # ------------------------------------------------------------------
    def seed(self, url: str) -> Optional[FrontierEntry]:
        """Queue the start URL at depth 0."""
        url = canonicalize_url(url)
        entry = FrontierEntry(kind=ActionKind.NAVIGATE, target=url, depth=0, label="start")
        return entry if self._push(entry) else None

    def enqueue(self, page: PageState) -> List[FrontierEntry]:
        """Wrap the page's unknown links and labelled elements as entries at depth+1."""
        depth = page.depth + 1
        added: List[FrontierEntry] = []

        for href in page.links:
            url = canonicalize_url(href, page.url)
            entry = FrontierEntry(
                kind=ActionKind.NAVIGATE,
                target=url,
                depth=depth,
                label=page.label_for(href),
                source_url=page.url,
                source_fingerprint=page.fingerprint,
            )
            if self._push(entry):
                added.append(entry)

        if self._include_elements:
            for element in page.elements:
                if not element.label.strip():
                    continue
                entry = FrontierEntry(
                    kind=ActionKind.TYPE if element.is_text_input else ActionKind.CLICK,
                    target=element.ref,
                    depth=depth,
                    label=element.label,
                    source_url=page.url,
                    source_fingerprint=page.fingerprint,
                    role=element.role,
                    input_type=element.input_type,
                )
                if self._push(entry):
                    added.append(entry)

        logger.debug("Enqueued %d candidates from %s at depth %d", len(added), page.url, depth)
        return added

    def next(self) -> Optional[FrontierEntry]:
        """Best entry of the lowest non-empty depth, or None when exhausted."""
        for depth in sorted(self._levels):
            level = self._levels[depth]
            if not level:
                del self._levels[depth]
                continue
            _, _, entry = heapq.heappop(level)
            if not level:
                del self._levels[depth]
            self._queued.discard(entry.key)
            if self._memory.enabled:
                self._dequeued.add(entry.key)
            return entry
        return None

    def pending(self) -> List[FrontierEntry]:
        """Snapshot of queued entries in the order `next()` would return them."""
        out: List[FrontierEntry] = []
        for depth in sorted(self._levels):
            out.extend(e for _, _, e in sorted(self._levels[depth], key=lambda item: item[:2]))
        return out

    # ------------------------------------------------------------------
    def score_candidate(self, entry: FrontierEntry) -> float:
        """Deterministic usefulness score; higher is explored first."""
        if entry.kind == ActionKind.NAVIGATE:
            text = f"{entry.label} {_url_text(entry.target)}"
        else:
            text = f"{entry.label} {entry.role}"
        return self._scoring.score(text)

    def is_allowed(self, url: str) -> bool:
        if not self._allowed:
            return True
        return domain_matches(host_of(url), self._allowed)

    # ------------------------------------------------------------------
    def _push(self, entry: FrontierEntry) -> bool:
        key = entry.key
        if key in self._queued or key in self._dequeued:
            return False
        if entry.kind == ActionKind.NAVIGATE:
            if not self.is_allowed(entry.target):
                self.filtered_out += 1
                logger.debug("Filtered out %s (domain not allowed)", entry.target)
                return False
            if self._memory.has_url(entry.target):
                return False
        entry.score = self.score_candidate(entry)
        entry.order = next(self._order)
        heapq.heappush(self._levels.setdefault(entry.depth, []), (*entry.sort_key(), entry))
        self._queued.add(key)
        return True


def drain(planner: FrontierPlanner) -> Iterable[FrontierEntry]:
    """Yield entries until the frontier is exhausted."""
    while True:
        entry = planner.next()
        if entry is None:
            return
        yield entry
