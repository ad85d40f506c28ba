from __future__ import annotations

"""Utilities for deciding whether two observed pages are the same state.

The fingerprint is a SHA-256 over a canonical rendering of the page's
structural snapshot. Volatile content (timestamps, dates, session tokens,
UUIDs, ad slots) is stripped before hashing so that cosmetic differences do not
defeat deduplication.
"""

import hashlib
import re
from typing import Any, List
from urllib.parse import urlparse

from .knowledge import PageSnapshot
from .urls import canonicalize_url

_SKIPPED_TAGS = {"script", "style", "noscript", "template", "meta", "link"}
_KEPT_ATTRS = ("href", "role", "type", "name", "aria-label", "alt", "placeholder")
_AD_MARKERS = re.compile(r"(^|[-_ ])(ad|ads|adslot|ad-slot|advert|advertisement|sponsor|gpt-ad|google_ads)([-_ 0-9]|$)", re.I)

# order matters: the broad digit rule must run last
_VOLATILE_TEXT = [
    re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I),  # uuid
    re.compile(r"\b\d{4}-\d{2}-\d{2}(?:[t ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:z|[+-]\d{2}:?\d{2})?)?\b", re.I),  # iso date/time
    re.compile(r"\b\d{1,2}[/.]\d{1,2}[/.]\d{2,4}\b"),  # 01/02/2024
    re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?\b", re.I),  # 10:42, 9:05 pm
    re.compile(
        r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?(?:,?\s+\d{4})?\b",
        re.I,
    ),
    re.compile(r"\b\d+\s+(?:second|minute|hour|day|week|month|year)s?\s+ago\b", re.I),
    re.compile(r"\b[0-9a-f]{16,}\b", re.I),  # hex tokens, session ids
    re.compile(r"\b(?=[a-z_\-]*\d)[a-z0-9_\-]{24,}\b", re.I),  # opaque tokens
    re.compile(r"\b\d{5,}\b"),  # epoch stamps, counters
]


def scrub(text: str) -> str:
    """Replace volatile fragments of `text` with a placeholder and collapse whitespace."""
    for pattern in _VOLATILE_TEXT:
        text = pattern.sub("#", text)
    return " ".join(text.split())


class StateMatcher:
    """Rule-based fingerprinting over the structural snapshot of a page."""

    def __init__(self, max_nodes: int = 2048) -> None:
        self.max_nodes = max_nodes

    # ------------------------------------------------------------------
    def signature(self, snapshot: PageSnapshot) -> str:
        """Return a stable fingerprint for `snapshot`."""
        canon = self.canonicalize(snapshot)
        return hashlib.sha256(canon.encode("utf-8")).hexdigest()

    def same_state(self, a: PageSnapshot, b: PageSnapshot) -> bool:
        return self.signature(a) == self.signature(b)

    # ------------------------------------------------------------------
    def canonicalize(self, snapshot: PageSnapshot) -> str:
        """Canonical string the fingerprint is computed from."""
        tokens: List[str] = []
        self._walk(snapshot.tree, tokens, snapshot.url)
        if not tokens:
            # nothing structural to go on: fall back to the page's path
            tokens.append("path=" + (urlparse(snapshot.url).path or "/"))
        return "title=" + scrub(snapshot.title or "") + "|" + "|".join(tokens)

    def _walk(self, node: Any, acc: List[str], base: str) -> None:
        if len(acc) >= self.max_nodes:
            return
        if isinstance(node, list):
            for child in node:
                self._walk(child, acc, base)
            return
        if isinstance(node, str):
            text = scrub(node)
            if text:
                acc.append(f"'{text}'")
            return
        if not isinstance(node, dict):
            return

        tag = str(node.get("tag") or node.get("role") or "").lower()
        attrs = node.get("attrs") or {}
        if tag in _SKIPPED_TAGS or self._is_ad_slot(attrs):
            return

        parts = [tag] if tag else []
        for name in _KEPT_ATTRS:
            value = attrs.get(name)
            if value is None:
                continue
            value = canonicalize_url(str(value), base) if name == "href" else scrub(str(value))
            parts.append(f"{name}={value}")
        text = scrub(str(node.get("text") or node.get("name") or ""))
        if text:
            parts.append(f"'{text}'")
        if parts:
            acc.append("<" + " ".join(parts) + ">")
        for child in node.get("children") or []:
            self._walk(child, acc, base)
        if tag:
            acc.append(f"</{tag}>")

    @staticmethod
    def _is_ad_slot(attrs: Any) -> bool:
        if not isinstance(attrs, dict):
            return False
        ident = " ".join(str(attrs.get(k, "")) for k in ("id", "class"))
        if _AD_MARKERS.search(ident):
            return True
        return any(str(k).startswith("data-ad") for k in attrs)
