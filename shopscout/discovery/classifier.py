"""URL classification and catalog-page link expansion.

Pure functions, no I/O. ``classify_url`` routes a search hit to direct
extraction or to catalog expansion. ``looks_like_catalog`` keeps listing pages
out of the heuristic extractor and reclassifies an ``unknown`` URL whose
single-product extraction failed.
"""

from __future__ import annotations

import re
import urllib.parse

from bs4 import BeautifulSoup

from shopscout.discovery.retailers import (
    CATALOG_URL_PATTERNS,
    PRODUCT_URL_PATTERNS,
    extract_domain,
)
from shopscout.models.contracts import CatalogLink, UrlKind

MAX_LINKS_PER_CATALOG = 3

_CATALOG_SIGNALS: tuple[re.Pattern[str], ...] = (
    re.compile(r"search results", re.IGNORECASE),
    re.compile(r"showing \d[\d,]* results", re.IGNORECASE),
    re.compile(r"\d[\d,]* (?:items?|results?) found", re.IGNORECASE),
    re.compile(r"sort by", re.IGNORECASE),
    re.compile(r"filter by", re.IGNORECASE),
    re.compile(r"refine your search", re.IGNORECASE),
)

_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_HTML_HINT_RE = re.compile(r"<a\s", re.IGNORECASE)


def classify_url(url: str, content: str | None = None) -> UrlKind:
    """Classify a URL as a single product page, a listing page, or unknown.

    ``content`` is accepted for interface symmetry but never overrides the
    URL shape; see ``looks_like_catalog`` for the content heuristic.
    """
    domain = extract_domain(url)

    if any(p.search(url) for p in PRODUCT_URL_PATTERNS.get(domain, ())):
        return UrlKind.PRODUCT
    if any(p.search(url) for p in CATALOG_URL_PATTERNS.get(domain, ())):
        return UrlKind.CATALOG
    return UrlKind.UNKNOWN


def looks_like_catalog(content: str) -> bool:
    """True when at least two listing-page signal phrases appear in the text."""
    if not content:
        return False
    matches = sum(1 for signal in _CATALOG_SIGNALS if signal.search(content))
    return matches >= 2


def _iter_links(content: str, source_url: str) -> list[tuple[str, str]]:
    """All (url, title) pairs in markdown and HTML anchor form, in page order."""
    links: list[tuple[str, str]] = [
        (m.group(2), m.group(1).strip()) for m in _MD_LINK_RE.finditer(content)
    ]
    if _HTML_HINT_RE.search(content):
        soup = BeautifulSoup(content, "html.parser")
        for anchor in soup.find_all("a", href=True):
            href = str(anchor["href"]).strip()
            if not href or href.startswith(("#", "javascript:", "mailto:")):
                continue
            absolute = urllib.parse.urljoin(source_url, href)
            links.append((absolute, anchor.get_text(" ", strip=True)))
    return links


def _path_depth(url: str) -> int:
    path = urllib.parse.urlparse(url).path
    return len([part for part in path.split("/") if part])


def links_from_catalog(
    content: str,
    source_url: str,
    seen: set[str] | None = None,
) -> list[CatalogLink]:
    """Pull up to three likely product links out of a listing page.

    Only same-domain links qualify, never ones that themselves classify as
    ``catalog``. ``product`` links come first; ``unknown`` links are kept
    only when their path has at least two segments. URLs already in ``seen``
    are skipped; ``seen`` is not modified.
    """
    source_domain = extract_domain(source_url)
    if not content or not source_domain:
        return []
    skip = set(seen or ())

    products: list[CatalogLink] = []
    deep_unknowns: list[CatalogLink] = []
    local_seen: set[str] = set()
    for url, title in _iter_links(content, source_url):
        url = url.split("#", 1)[0]
        if url in local_seen or url in skip or url == source_url:
            continue
        if extract_domain(url) != source_domain:
            continue
        kind = classify_url(url)
        if kind is UrlKind.CATALOG:
            continue
        if kind is UrlKind.PRODUCT:
            products.append(CatalogLink(url=url, title=title))
        elif _path_depth(url) >= 2:
            deep_unknowns.append(CatalogLink(url=url, title=title))
        else:
            continue
        local_seen.add(url)

    return (products + deep_unknowns)[:MAX_LINKS_PER_CATALOG]
