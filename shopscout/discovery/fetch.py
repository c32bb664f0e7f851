"""URL selection and page content acquisition."""

from __future__ import annotations

import httpx
import structlog

from shopscout.config import settings
from shopscout.models.contracts import SearchHit

log = structlog.get_logger("shopscout.fetch")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


def select_hits(hits: list[SearchHit], max_count: int) -> list[SearchHit]:
    """Pick up to ``max_count`` hits, one per retailer domain first.

    The first pass takes the first-seen hit of each distinct domain; the
    second fills any remaining slots from the rest in original order.
    """
    selected: list[SearchHit] = []
    chosen: set[int] = set()
    domains_seen: set[str] = set()

    for idx, hit in enumerate(hits):
        if len(selected) >= max_count:
            break
        if hit.retailer_domain not in domains_seen:
            domains_seen.add(hit.retailer_domain)
            selected.append(hit)
            chosen.add(idx)

    for idx, hit in enumerate(hits):
        if len(selected) >= max_count:
            break
        if idx not in chosen:
            selected.append(hit)
            chosen.add(idx)

    return selected


class PageFetcher:
    """Fetches raw page content; every failure is reported as ``None``."""

    def __init__(self, http_client: httpx.AsyncClient, timeout: float | None = None) -> None:
        self._http = http_client
        self._timeout = timeout or settings.fetch_timeout_seconds

    async def fetch(self, url: str) -> str | None:
        try:
            resp = await self._http.get(
                url,
                headers=BROWSER_HEADERS,
                timeout=self._timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            log.info("page_fetch_timeout", url=url[:120])
            return None
        except httpx.HTTPError as exc:
            log.info("page_fetch_error", url=url[:120], error_type=type(exc).__name__)
            return None

        if not resp.is_success:
            log.info("page_fetch_bad_status", url=url[:120], status=resp.status_code)
            return None
        return resp.text
