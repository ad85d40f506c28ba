from __future__ import annotations

import pytest

from site_explorer.urls import canonicalize_url, domain_matches, host_of


@pytest.mark.parametrize("raw,expected", [
    ("HTTPS://Example.TEST", "https://example.test/"),
    ("https://example.test:443/a", "https://example.test/a"),
    ("http://example.test:8080/a", "http://example.test:8080/a"),
    ("https://example.test/a#section", "https://example.test/a"),
    ("https://example.test/a?b=2&a=1", "https://example.test/a?a=1&b=2"),
    ("https://example.test/a?utm_source=x&id=3&fbclid=y", "https://example.test/a?id=3"),
    ("https://example.test/a?PHPSESSID=abc", "https://example.test/a"),
    ("mailto:someone@example.test", "mailto:someone@example.test"),
])
def test_canonicalize(raw, expected) -> None:
    assert canonicalize_url(raw) == expected


def test_relative_urls_resolve_against_base() -> None:
    assert canonicalize_url("../b?x=1", "https://example.test/a/c") == "https://example.test/b?x=1"


def test_domain_matching() -> None:
    assert domain_matches("example.test", ["example.test"])
    assert domain_matches("docs.example.test", [".example.test"])
    assert not domain_matches("badexample.test", ["example.test"])
    assert host_of("https://Docs.Example.test/x") == "docs.example.test"
