from __future__ import annotations

"""Content-aware input text for `type` actions."""

from typing import Sequence, Tuple

from .knowledge import FrontierEntry

# (hint fragments, value) – first match wins
_HINTS: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("email", "e-mail"), "test@example.com"),
    (("phone", "tel", "mobile"), "123-456-7890"),
    (("url", "website", "homepage"), "https://example.com"),
    (("zip", "postal", "postcode"), "12345"),
    (("first name", "firstname", "given"), "Jane"),
    (("last name", "lastname", "surname", "family"), "Doe"),
    (("name",), "Jane Doe"),
    (("city", "town"), "Springfield"),
    (("date",), "2024-01-01"),
    (("number", "quantity", "qty", "amount", "age"), "1"),
    (("search", "query", "find", "keyword"), "documentation"),
)


class InputTextGenerator:
    """Picks a short plausible value from the element's label and type."""

    def __init__(self, default: str = "sample text") -> None:
        self.default = default

    def generate(self, entry: FrontierEntry) -> str:
        hint = f"{entry.input_type} {entry.label} {entry.target}".lower()
        for fragments, value in _HINTS:
            if any(f in hint for f in fragments):
                return value
        return self.default
