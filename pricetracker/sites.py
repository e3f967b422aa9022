"""Supported e-commerce sites and URL classification."""

from __future__ import annotations

from enum import Enum
from typing import Tuple
from urllib.parse import urlparse

from .errors import UnsupportedSiteError


class Site(str, Enum):
    SHOPEE = "Shopee"
    TOKOPEDIA = "Tokopedia"
    BLIBLI = "Blibli"


_HOSTS = {
    "shopee.co.id": Site.SHOPEE,
    "www.tokopedia.com": Site.TOKOPEDIA,
    "tokopedia.com": Site.TOKOPEDIA,
    "www.blibli.com": Site.BLIBLI,
    "blibli.com": Site.BLIBLI,
}


def parse_site(name: str) -> Site:
    """Case-insensitive lookup of a site by its display name."""
    for site in Site:
        if site.value.lower() == (name or "").strip().lower():
            return site
    raise UnsupportedSiteError(f"unknown site: {name!r}")


def classify_url(url: str) -> Tuple[Site, str]:
    """Return (site, canonical_url) for a product URL.

    The canonical URL drops the query string and fragment and always uses
    https, so the same listing shared with tracking parameters maps to one
    Item.
    """
    parsed = urlparse((url or "").strip())
    host = (parsed.hostname or "").lower()
    site = _HOSTS.get(host)
    if site is None or parsed.scheme not in ("http", "https"):
        raise UnsupportedSiteError(f"invalid site url: {url}")
    path = parsed.path.rstrip("/") or "/"
    return site, f"https://{host}{path}"


__all__ = ["Site", "parse_site", "classify_url"]
