"""
Input normalisers for client-supplied event metadata — pure functions.

Nothing here raises: bad metadata is dropped to None so that a sloppy client
never costs an analytics event.
"""

from __future__ import annotations

import re
from typing import Optional

import tldextract
import validators as _validators

# Bundled public-suffix snapshot only; no disk cache, no network fetch
tld_extractor = tldextract.TLDExtract(cache_dir=None, suffix_list_urls=())

_UNSAFE_CHARS = re.compile(r"[$\x00-\x1F\x7F-\x9F]")
_IDENTIFIER = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")

MAX_URL_LENGTH = 2048
MAX_USER_AGENT_LENGTH = 512


def sanitize_referrer(referrer: Optional[str]) -> Optional[str]:
    """Reduce a referrer URL to its registrable domain (``news.example.co.uk``
    → ``example.co.uk``). Returns None when nothing usable remains."""
    if not referrer or not referrer.strip():
        return None
    raw = tld_extractor(referrer.strip())
    if not raw.domain:
        return None
    domain = f"{raw.domain}.{raw.suffix}" if raw.suffix else raw.domain
    sanitized = _UNSAFE_CHARS.sub("", domain).lower()
    return sanitized or None


def normalize_page_url(url: Optional[str]) -> Optional[str]:
    """Keep *url* only if it is a well-formed URL or an absolute path."""
    if not url:
        return None
    url = url.strip()[:MAX_URL_LENGTH]
    if url.startswith("/") and not url.startswith("//"):
        return _UNSAFE_CHARS.sub("", url)
    if _validators.url(url, simple_host=True):
        return url
    return None


def normalize_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    cleaned = _UNSAFE_CHARS.sub("", user_agent).strip()
    return cleaned[:MAX_USER_AGENT_LENGTH] or None


def is_valid_identifier(value: Optional[str]) -> bool:
    """Tag, subject and tenant ids: short, URL-safe tokens."""
    return bool(value) and bool(_IDENTIFIER.match(value))


def is_valid_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(_validators.ipv4(value) or _validators.ipv6(value))
