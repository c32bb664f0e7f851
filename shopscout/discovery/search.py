"""Search provider adapter: one item in, a deduplicated hit list out.

Backed by Exa's /search endpoint. Hits carry the page text inline when raw
content is requested, so most pages never need a second fetch.

Retry policy: only throttling (HTTP 429) is retried, once, after the
provider's Retry-After / X-RateLimit-Reset interval or the default backoff.
Any other failure of the primary query raises ``SearchError``; failures of
the supplementary diversity queries are logged and skipped.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from shopscout.config import settings
from shopscout.discovery.retailers import RETAILER_ALLOWLIST, extract_domain
from shopscout.errors import SearchError, SearchRateLimitedError
from shopscout.models.contracts import LineItem, SearchHit
from shopscout.utils.tracing import traceable

log = structlog.get_logger("shopscout.search")

MIN_DISTINCT_RETAILERS = 3
MAX_TARGETED_QUERIES = 3
SUPPLEMENTARY_NUM_RESULTS = 6
EXA_TIMEOUT = 15.0
_DESCRIPTION_CHARS = 300


class SearchCapability(Protocol):
    async def search(
        self,
        query: str,
        *,
        include_domains: list[str],
        num_results: int,
        want_raw_content: bool,
    ) -> list[SearchHit]: ...


class _ExaResult(BaseModel):
    """Boundary schema for one Exa result; unknown keys are ignored."""

    url: str
    title: str | None = None
    text: str | None = None
    summary: str | None = None
    score: float | None = None


def _to_hit(raw: _ExaResult) -> SearchHit:
    text = raw.text or None
    description = raw.summary or (text[:_DESCRIPTION_CHARS] if text else "")
    return SearchHit(
        title=(raw.title or "").strip(),
        url=raw.url,
        description=description.strip(),
        retailer_domain=extract_domain(raw.url),
        raw_content=text,
        score=raw.score or 0.0,
    )


def parse_exa_results(data: Any) -> list[SearchHit]:
    """Validate an Exa response body into SearchHits, dropping malformed entries."""
    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        return []
    hits: list[SearchHit] = []
    for entry in results:
        try:
            raw = _ExaResult.model_validate(entry)
        except ValidationError:
            log.warning("exa_result_dropped", reason="schema")
            continue
        if not raw.url.startswith(("http://", "https://")):
            continue
        hits.append(_to_hit(raw))
    return hits


def _retry_after_seconds(response: httpx.Response) -> float | None:
    """Seconds to wait according to the provider's throttling headers."""
    for header in ("retry-after", "x-ratelimit-reset"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            seconds = float(value)
        except ValueError:
            continue
        # Some providers send an epoch timestamp instead of a delta.
        if seconds > 1_000_000_000:
            seconds -= time.time()
        return max(0.0, seconds)
    return None


class ExaSearchClient:
    """The external search capability over httpx."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        *,
        base_url: str | None = None,
        raw_content_chars: int | None = None,
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self._base_url = (base_url or settings.exa_base_url).rstrip("/")
        self._raw_content_chars = raw_content_chars or settings.search_raw_content_chars

    @traceable(name="exa_search", run_type="retriever")
    async def search(
        self,
        query: str,
        *,
        include_domains: list[str],
        num_results: int,
        want_raw_content: bool,
    ) -> list[SearchHit]:
        payload: dict[str, Any] = {
            "query": query,
            "type": "auto",
            "numResults": num_results,
            "includeDomains": include_domains,
        }
        if want_raw_content:
            payload["contents"] = {"text": {"maxCharacters": self._raw_content_chars}}

        try:
            resp = await self._http.post(
                f"{self._base_url}/search",
                headers={"x-api-key": self._api_key},
                json=payload,
                timeout=EXA_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            raise SearchError(f"Exa request failed: {type(exc).__name__}") from exc

        if resp.status_code == 429:
            raise SearchRateLimitedError("Exa rate limited", retry_after=_retry_after_seconds(resp))
        if resp.status_code != 200:
            raise SearchError(f"Exa search failed with HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise SearchError("Exa returned a non-JSON body") from exc
        return parse_exa_results(data)


def build_query(item: LineItem) -> str:
    """Keywords (or the item name), narrowed by first brand, first color and size."""
    c = item.constraints
    parts = [" ".join(c.keywords) if c.keywords else item.name]
    if c.brand:
        parts.append(c.brand[0])
    if c.color:
        parts.append(c.color[0])
    if c.size:
        parts.append(f"size {c.size}")
    return " ".join(" ".join(parts).split())


def dedupe_hits(hits: list[SearchHit]) -> list[SearchHit]:
    """Drop repeated URLs, keeping the first occurrence and input order."""
    seen: set[str] = set()
    deduped: list[SearchHit] = []
    for hit in hits:
        if hit.url and hit.url not in seen:
            seen.add(hit.url)
            deduped.append(hit)
    return deduped


class SearchProvider:
    """Runs the per-item search strategy on top of a SearchCapability."""

    def __init__(
        self,
        client: SearchCapability,
        *,
        allowlist: tuple[str, ...] = RETAILER_ALLOWLIST,
        num_results: int | None = None,
        default_backoff: float | None = None,
        want_raw_content: bool = True,
    ) -> None:
        self._client = client
        self._allowlist = list(allowlist)
        self._num_results = num_results or settings.search_num_results
        self._default_backoff = (
            settings.search_default_backoff_seconds if default_backoff is None else default_backoff
        )
        self._want_raw_content = want_raw_content

    async def _query(self, query: str, domains: list[str], num_results: int) -> list[SearchHit]:
        """One provider call, retried once if throttled."""
        try:
            return await self._client.search(
                query,
                include_domains=domains,
                num_results=num_results,
                want_raw_content=self._want_raw_content,
            )
        except SearchRateLimitedError as exc:
            delay = exc.retry_after if exc.retry_after is not None else self._default_backoff
            log.warning("search_rate_limited", query=query[:80], retry_in=delay)
            await asyncio.sleep(delay)

        return await self._client.search(
            query,
            include_domains=domains,
            num_results=num_results,
            want_raw_content=self._want_raw_content,
        )

    async def _supplement(self, query: str, hits: list[SearchHit]) -> list[SearchHit]:
        """Extra queries to widen retailer coverage; failures are swallowed."""
        present = {h.retailer_domain for h in hits}
        if not hits:
            plans = [(f"{query} buy online", self._allowlist)]
        else:
            missing = [d for d in self._allowlist if d not in present]
            plans = [(query, [domain]) for domain in missing[:MAX_TARGETED_QUERIES]]

        extra: list[SearchHit] = []
        for sub_query, domains in plans:
            try:
                extra.extend(await self._query(sub_query, domains, SUPPLEMENTARY_NUM_RESULTS))
            except SearchError as exc:
                log.warning(
                    "search_supplementary_failed",
                    query=sub_query[:80],
                    domains=domains,
                    error=str(exc),
                )
        return extra

    async def search(self, item: LineItem) -> list[SearchHit]:
        """Search for one item; raises SearchError if the primary query fails."""
        query = build_query(item)
        hits = await self._query(query, self._allowlist, self._num_results)
        log.info("search_primary_complete", item=item.name, query=query, results=len(hits))

        retailers = {h.retailer_domain for h in hits}
        if len(retailers) < MIN_DISTINCT_RETAILERS:
            extra = await self._supplement(query, hits)
            log.info(
                "search_supplementary_complete",
                item=item.name,
                retailers_before=len(retailers),
                extra_results=len(extra),
            )
            hits = hits + extra

        deduped = dedupe_hits(hits)
        log.info(
            "search_complete",
            item=item.name,
            results=len(deduped),
            retailers=len({h.retailer_domain for h in deduped}),
        )
        return deduped
