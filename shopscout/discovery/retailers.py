"""Supported retailers: search allow-list, display names and URL shapes."""

from __future__ import annotations

import re
import urllib.parse

RETAILER_ALLOWLIST: tuple[str, ...] = (
    "amazon.com",
    "walmart.com",
    "nike.com",
    "nordstrom.com",
    "macys.com",
    "dickssportinggoods.com",
    "rei.com",
    "target.com",
    "zappos.com",
    "bestbuy.com",
    "adidas.com",
    "underarmour.com",
)

_RETAILER_NAMES: dict[str, str] = {
    "amazon.com": "Amazon",
    "walmart.com": "Walmart",
    "nike.com": "Nike",
    "nordstrom.com": "Nordstrom",
    "macys.com": "Macy's",
    "dickssportinggoods.com": "Dick's Sporting Goods",
    "rei.com": "REI",
    "target.com": "Target",
    "zappos.com": "Zappos",
    "bestbuy.com": "Best Buy",
    "adidas.com": "Adidas",
    "underarmour.com": "Under Armour",
}

# Ordered per domain; first match wins.
PRODUCT_URL_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "amazon.com": [re.compile(r"/dp/"), re.compile(r"/gp/product/")],
    "walmart.com": [re.compile(r"/ip/")],
    "nike.com": [re.compile(r"/t/")],
    "nordstrom.com": [re.compile(r"/s/")],
    "macys.com": [re.compile(r"/product/")],
    "dickssportinggoods.com": [re.compile(r"/p/")],
    "rei.com": [re.compile(r"/product/")],
    "target.com": [re.compile(r"/p/")],
    "zappos.com": [re.compile(r"/p/")],
    "bestbuy.com": [re.compile(r"/site/[^/]+/\d+\.p")],
    "adidas.com": [re.compile(r"/[A-Z0-9]{6,}\.html")],
    "underarmour.com": [re.compile(r"/p/")],
}

CATALOG_URL_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "amazon.com": [re.compile(r"/s\?"), re.compile(r"/s/")],
    "walmart.com": [re.compile(r"/search"), re.compile(r"/browse/")],
    "nike.com": [re.compile(r"/w/")],
    "nordstrom.com": [re.compile(r"/sr\?"), re.compile(r"/c/")],
    "macys.com": [re.compile(r"/shop/")],
    "dickssportinggoods.com": [re.compile(r"/c/")],
    "rei.com": [re.compile(r"/c/"), re.compile(r"/search")],
    "target.com": [re.compile(r"/s\?"), re.compile(r"/c/")],
    "zappos.com": [re.compile(r"/search"), re.compile(r"/filters/")],
    "bestbuy.com": [re.compile(r"/searchpage"), re.compile(r"/site/searchpage")],
    "adidas.com": [re.compile(r"/search"), re.compile(r"/[a-z-]+$")],
    "underarmour.com": [re.compile(r"/c/")],
}


def extract_domain(url: str) -> str:
    """Return the lowercased host without a leading ``www.``, or "" if unparsable."""
    try:
        host = urllib.parse.urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host.lower().removeprefix("www.")


def retailer_name(domain: str) -> str:
    """Display name for a retailer domain.

    Known domains use the lookup table; anything else falls back to the
    capitalized first DNS label (``shop.example.com`` -> ``Shop``).
    """
    if not domain:
        return "Unknown"
    known = _RETAILER_NAMES.get(domain)
    if known:
        return known
    return domain.split(".")[0].capitalize()
