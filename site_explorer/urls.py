from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse
import re

# query parameters that carry per-visit state rather than page identity
_VOLATILE_PARAMS = re.compile(
    r"^(utm_[a-z]+|fbclid|gclid|msclkid|sid|sessionid|session_id|phpsessid|jsessionid|_ga|_gl|ts|timestamp|cb|cachebuster)$",
    re.I,
)
_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_url(url: str, base: Optional[str] = None) -> str:
    """
    Resolve `url` against `base` and normalise it: lowercase scheme and host,
    no fragment, no default port, no tracking/session query parameters,
    remaining parameters sorted.
    """
    if base:
        url = urljoin(base, url)
    parts = urlparse(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return url.strip()

    host = (parts.hostname or "").lower()
    netloc = host
    if parts.port and parts.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"

    path = parts.path or "/"
    query = urlencode(sorted((k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                             if not _VOLATILE_PARAMS.match(k)))
    return urlunparse((scheme, netloc, path, "", query, ""))


def host_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def scheme_of(url: str) -> str:
    return urlparse(url).scheme.lower()


def domain_matches(host: str, domains: Iterable[str]) -> bool:
    """True when `host` equals one of `domains` or is a sub-domain of it."""
    host = host.lower()
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False
