"""
Site identifiers derived from URLs.

Every component that stores or looks up a source by site goes through
``extract_domain`` so that a site is spelled the same way everywhere.
"""

from __future__ import annotations

import ipaddress
from urllib.parse import urlparse

import tldextract

# Offline public-suffix snapshot; never fetches the list at runtime.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def extract_domain(url: str | None) -> str | None:
    """Normalize a URL to its site identifier.

    Lowercases the host and strips ``www.``; hosts with three or more labels
    lose their leading label, without going below the registered domain
    (``sub.news.example.com`` -> ``news.example.com``, ``portal.pucrs.br`` ->
    ``pucrs.br``, ``www.bbc.co.uk`` -> ``bbc.co.uk``).
    """
    if not url:
        return None
    try:
        hostname = urlparse(url if "://" in url else f"http://{url}").hostname
    except ValueError:
        return None
    if not hostname:
        return None
    hostname = hostname.lower()
    if hostname.startswith("www."):
        hostname = hostname[4:]
    labels = hostname.split(".")
    if len(labels) < 3 or _is_ip(hostname):
        return hostname
    reduced = ".".join(labels[1:])
    parts = _extract(hostname)
    registered = f"{parts.domain}.{parts.suffix}" if parts.domain and parts.suffix else None
    if registered and len(reduced) < len(registered):
        return registered
    return reduced


def _is_ip(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True
