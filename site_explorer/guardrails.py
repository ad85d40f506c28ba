from __future__ import annotations

"""Safety policy evaluated on every proposed action right before execution.

The engine knows nothing about how the planner ranked an entry. Checks run in
a fixed order and the first failing one decides the verdict:

1. rate limit (token bucket)
2. protocol, blocked domains, blocked URL patterns, per-domain page cap
3. destructive clicks and sensitive typing
4. loop detection over the recent action history
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Pattern, Tuple
from urllib.parse import unquote, urlparse
import logging
import re
import time

from .knowledge import ActionKind, FrontierEntry, GuardrailVerdict, Rule
from .urls import domain_matches, host_of, scheme_of

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_DOMAINS = [
    "facebook.com", "twitter.com", "x.com", "linkedin.com", "instagram.com", "tiktok.com",
    "youtube.com", "pinterest.com", "reddit.com",
    "gmail.com", "mail.google.com", "outlook.com", "outlook.live.com", "mail.yahoo.com",
]

DEFAULT_BLOCKED_PATTERNS = [
    # authentication pages
    r"/(login|log-in|signin|sign-in|register|signup|sign-up|logout|log-out|signout|sign-out)/?(\?|$)",
    r"/(oauth2?|sso|auth)/",
    r"/(wp-)?admin(/|\?|$)",
    # direct downloads
    r"\.(exe|dmg|msi|pkg|deb|rpm|apk|iso|bin|zip|rar|7z|tar|gz|tgz|bz2)(\?|$)",
    r"\.(pdf|docx?|xlsx?|pptx?|csv|mp3|mp4|avi|mov)(\?|$)",
    r"[?&](download|attachment)=",
    r"/download/?(\?|$)",
]

DEFAULT_DESTRUCTIVE = [
    r"\bdelete\b", r"\bremove\b", r"\bunsubscribe\b", r"\bdeactivate\b", r"\bdestroy\b", r"\berase\b",
    r"close\s*(my\s*)?account", r"cancel\s*(my\s*)?(subscription|account|order)",
    r"confirm\s*(purchase|order|payment)", r"\bpurchase\b", r"buy\s*now", r"order\s*now", r"place\s*order",
    r"(submit|make)\s*payment", r"pay\s*now", r"\blog\s*out\b", r"\bsign\s*out\b",
]

DEFAULT_SENSITIVE = [
    r"password", r"passcode", r"\bpin\b", r"credit\s*card", r"card\s*number", r"cc-?(number|num|csc|exp)", r"\bcvv\b",
    r"\bcvc\b", r"social\s*security", r"\bssn\b", r"bank\s*account", r"\biban\b", r"routing\s*number",
    r"api\s*key", r"\bsecret\b", r"\btoken\b",
]


@dataclass
class GuardrailPolicy:
    """Tunable data behind the guardrail checks."""

    requests_per_second: float = 2.0
    burst_size: int = 5
    allowed_protocols: Tuple[str, ...] = ("http", "https")
    blocked_domains: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_DOMAINS))
    blocked_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))
    max_pages_per_domain: int = 50
    prevent_destructive_actions: bool = True
    destructive_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_DESTRUCTIVE))
    sensitive_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE))
    prevent_loops: bool = True
    loop_window: int = 20
    loop_max_repeats: int = 2

    def validate(self) -> None:
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        if self.burst_size < 1:
            raise ValueError("burst_size must be >= 1")
        if self.loop_window < 1 or self.loop_max_repeats < 1:
            raise ValueError("loop_window and loop_max_repeats must be >= 1")
        if self.max_pages_per_domain < 1:
            raise ValueError("max_pages_per_domain must be >= 1")
        for pattern in self.blocked_patterns + self.destructive_patterns + self.sensitive_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid guardrail pattern {pattern!r}: {exc}") from exc

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardrailPolicy":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "allowed_protocols" in known:
            known["allowed_protocols"] = tuple(known["allowed_protocols"])
        return cls(**known)


class TokenBucket:
    """Grants `burst` immediate actions, then refills at `rate` tokens/second.

    `available()`, `can_consume()` and `wait_time()` never change state; only
    `consume()` does.
    """

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def available(self) -> float:
        elapsed = max(0.0, self._clock() - self._last)
        return min(float(self.burst), self._tokens + elapsed * self.rate)

    def can_consume(self) -> bool:
        return self.available() >= 1.0

    def wait_time(self) -> float:
        """Seconds until one token is available."""
        missing = 1.0 - self.available()
        return 0.0 if missing <= 0 else missing / self.rate

    def consume(self) -> bool:
        now = self._clock()
        self._tokens = min(float(self.burst), self._tokens + max(0.0, now - self._last) * self.rate)
        self._last = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    def reset(self) -> None:
        self._tokens = float(self.burst)
        self._last = self._clock()

    def status(self) -> Dict[str, float]:
        return {"tokens": self.available(), "burst": self.burst, "rate": self.rate}


class ActionHistory:
    """Bounded window of recently executed actions."""

    def __init__(self, window: int = 20) -> None:
        self._items: Deque[Tuple[str, str, str]] = deque(maxlen=window)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Tuple[str, str, str]]:
        return iter(list(self._items))

    def record(self, entry: FrontierEntry) -> None:
        self._items.append(entry.key)

    def count(self, key: Tuple[str, str, str]) -> int:
        return sum(1 for item in self._items if item == key)

    def recent_navigations(self, n: int) -> List[str]:
        urls = [target for kind, target, _ in self._items if kind == ActionKind.NAVIGATE.value]
        return urls[-n:]


def _compile(patterns: List[str]) -> List[Pattern[str]]:
    return [re.compile(p, re.I) for p in patterns]


def _words(text: str) -> str:
    return " ".join(re.split(r"[^a-zA-Z0-9]+", unquote(text)))


class GuardrailEngine:
    """Evaluates one frontier entry at a time against the policy."""

    def __init__(self, policy: GuardrailPolicy | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.policy = policy or GuardrailPolicy()
        self.policy.validate()
        self.rate_limiter = TokenBucket(self.policy.requests_per_second, self.policy.burst_size, clock)
        self._blocked = _compile(self.policy.blocked_patterns)
        self._destructive = _compile(self.policy.destructive_patterns)
        self._sensitive = _compile(self.policy.sensitive_patterns)
        self._domain_counts: Counter[str] = Counter()
        self._denials: Counter[str] = Counter()
        self._approved = 0

    # ------------------------------------------------------------------
    def evaluate(self, entry: FrontierEntry, history: ActionHistory) -> GuardrailVerdict:
        """Return the verdict for `entry`; consumes a rate token only on approval."""
        verdict = (
            self._check_rate()
            or self._check_url(entry)
            or self._check_action(entry)
            or self._check_loop(entry, history)
        )
        if verdict is not None:
            self._denials[verdict.rule.value] += 1  # type: ignore[union-attr]
            logger.info("Blocked %s: [%s] %s", entry.describe(), verdict.rule.value, verdict.reason)  # type: ignore[union-attr]
            return verdict

        if not self.rate_limiter.consume():
            # the bucket drained between the check and the consumption
            self._denials[Rule.RATE_LIMIT.value] += 1
            return GuardrailVerdict.deny(Rule.RATE_LIMIT, "Rate limit exceeded")
        if entry.kind == ActionKind.NAVIGATE:
            self._domain_counts[host_of(entry.target)] += 1
        self._approved += 1
        return GuardrailVerdict.allow()

    # --- 1. rate ----------------------------------------------------------
    def _check_rate(self) -> Optional[GuardrailVerdict]:
        if self.rate_limiter.can_consume():
            return None
        return GuardrailVerdict.deny(
            Rule.RATE_LIMIT,
            f"Rate limit exceeded ({self.policy.requests_per_second}/s, burst {self.policy.burst_size})",
        )

    # --- 2. url -----------------------------------------------------------
    def _check_url(self, entry: FrontierEntry) -> Optional[GuardrailVerdict]:
        url = entry.url
        if not url:
            return None
        scheme = scheme_of(url)
        if scheme not in self.policy.allowed_protocols:
            return GuardrailVerdict.deny(Rule.UNSAFE_PROTOCOL, f"Unsafe protocol: {scheme or 'none'}:")

        host = host_of(url)
        if domain_matches(host, self.policy.blocked_domains):
            return GuardrailVerdict.deny(Rule.BLOCKED_DOMAIN, f"Domain is blocked: {host}")

        for pattern in self._blocked:
            if pattern.search(url):
                return GuardrailVerdict.deny(Rule.BLOCKED_PATTERN, f"URL matches blocked pattern: {pattern.pattern}")

        if entry.kind == ActionKind.NAVIGATE and self._domain_counts[host] >= self.policy.max_pages_per_domain:
            return GuardrailVerdict.deny(
                Rule.DOMAIN_CAP,
                f"Maximum pages per domain exceeded for {host} ({self.policy.max_pages_per_domain})",
            )
        return None

    # --- 3. destructive / sensitive ---------------------------------------
    def _check_action(self, entry: FrontierEntry) -> Optional[GuardrailVerdict]:
        if not self.policy.prevent_destructive_actions:
            return None

        if entry.kind == ActionKind.TYPE:
            haystack = " ".join((entry.label, entry.input_type, _words(entry.target), entry.text))
            for pattern in self._sensitive:
                if pattern.search(haystack):
                    return GuardrailVerdict.deny(
                        Rule.SENSITIVE_INPUT, f"Typing into '{entry.label or entry.target}' looks like sensitive input"
                    )
            return None

        if entry.kind == ActionKind.NAVIGATE:
            haystack = " ".join((entry.label, _words(urlparse(entry.target).path)))
        else:
            haystack = " ".join((entry.label, entry.role, _words(entry.target)))
        for pattern in self._destructive:
            if pattern.search(haystack):
                return GuardrailVerdict.deny(
                    Rule.DESTRUCTIVE_ACTION,
                    f"'{entry.label or entry.target}' appears to trigger an irreversible change",
                )
        return None

    # --- 4. loops ---------------------------------------------------------
    def _check_loop(self, entry: FrontierEntry, history: ActionHistory) -> Optional[GuardrailVerdict]:
        if not self.policy.prevent_loops:
            return None
        seen = history.count(entry.key)
        if seen >= self.policy.loop_max_repeats:
            return GuardrailVerdict.deny(
                Rule.LOOP_DETECTED,
                f"Potential loop: {entry.describe()} already executed {seen} times in the last {len(history)} actions",
            )
        if entry.kind == ActionKind.NAVIGATE:
            recent = history.recent_navigations(4)
            if (
                len(recent) == 4
                and recent[0] == recent[2] == entry.target
                and recent[1] == recent[3]
                and recent[1] != entry.target
            ):
                return GuardrailVerdict.deny(
                    Rule.LOOP_DETECTED, f"Navigation loop between {entry.target} and {recent[1]}"
                )
        return None

    # ------------------------------------------------------------------
    def stats(self) -> Dict[str, Any]:
        return {
            "approved": self._approved,
            "denials": dict(self._denials),
            "domain_counts": dict(self._domain_counts),
            "rate_limiter": self.rate_limiter.status(),
        }

    def reset(self) -> None:
        self._domain_counts.clear()
        self._denials.clear()
        self._approved = 0
        self.rate_limiter.reset()
