"""Discovery pipeline orchestrator.

Per item: search -> select -> classify -> fetch/extract (plus catalog
expansion) -> score -> persist. Items run strictly one after another, with a
minimum spacing between search calls; pages within an item are fetched and
extracted concurrently. After the last item, one coherence pass adjusts every
item's top pick against the others.

Run states: idle -> searching -> selecting -> fetching -> scoring ->
coherence -> completed | failed.

Progress goes to a caller-supplied sink as item-step / item-complete / done /
error events. The sink is called synchronously and must not block; exceptions
it raises are logged and ignored.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

import httpx
import structlog

from shopscout.config import settings
from shopscout.discovery.classifier import classify_url, links_from_catalog, looks_like_catalog
from shopscout.discovery.extract import CandidateExtractor
from shopscout.discovery.fetch import PageFetcher, select_hits
from shopscout.discovery.scoring import ScoringEngine, TopPick
from shopscout.discovery.search import ExaSearchClient, SearchProvider, build_query
from shopscout.errors import PipelineError, SearchError
from shopscout.models.contracts import (
    CatalogLink,
    DiscoveryEvent,
    DoneEvent,
    ErrorEvent,
    ItemCompleteEvent,
    ItemRunResult,
    ItemStepEvent,
    LineItem,
    ProductCandidate,
    SearchHit,
    ShoppingSpec,
    UrlKind,
)
from shopscout.services.run_store import RunStore
from shopscout.utils.llm import ModelClient

log = structlog.get_logger("shopscout.pipeline")

ProgressSink = Callable[[DiscoveryEvent], object]

_STEPS = ("search", "extract", "rank")


class RunState(StrEnum):
    IDLE = "idle"
    SEARCHING = "searching"
    SELECTING = "selecting"
    FETCHING = "fetching"
    SCORING = "scoring"
    COHERENCE = "coherence"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class _RunContext:
    """State owned by a single ``run`` call; never shared between runs."""

    sink: ProgressSink | None
    top_picks: list[TopPick] = field(default_factory=list)
    pick_runs: list[tuple[str, list[ProductCandidate]]] = field(default_factory=list)
    last_search_at: float | None = None
    current_item: LineItem | None = None
    current_step: str | None = None

    def emit(self, event: DiscoveryEvent) -> None:
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as exc:
            log.warning("progress_sink_failed", event_type=event.type, error=str(exc))

    def step(self, item: LineItem, step: str, status: str) -> None:
        self.current_item = item
        self.current_step = step
        self.emit(
            ItemStepEvent(item_id=item.id, item_name=item.name, step=step, status=status)  # type: ignore[arg-type]
        )


class DiscoveryPipeline:
    def __init__(
        self,
        *,
        search: SearchProvider,
        fetcher: PageFetcher,
        extractor: CandidateExtractor,
        scorer: ScoringEngine,
        store: RunStore,
        max_urls: int | None = None,
        max_catalog_links: int | None = None,
        search_interval: float | None = None,
        default_max_items: int | None = None,
    ) -> None:
        self._search = search
        self._fetcher = fetcher
        self._extractor = extractor
        self._scorer = scorer
        self._store = store
        self._max_urls = max_urls or settings.max_urls_per_item
        self._max_catalog_links = max_catalog_links or settings.max_catalog_links
        self._search_interval = (
            settings.search_min_interval_seconds if search_interval is None else search_interval
        )
        self._default_max_items = default_max_items or settings.default_max_items
        self.state = RunState.IDLE

    def _transition(self, state: RunState) -> None:
        log.debug("pipeline_state", previous=self.state.value, state=state.value)
        self.state = state

    async def _space_searches(self, ctx: _RunContext) -> None:
        if ctx.last_search_at is not None:
            wait = self._search_interval - (time.monotonic() - ctx.last_search_at)
            if wait > 0:
                await asyncio.sleep(wait)
        ctx.last_search_at = time.monotonic()

    # --- fetch / extract ---

    async def _content_for(self, hit: SearchHit) -> str | None:
        return hit.raw_content or await self._fetcher.fetch(hit.url)

    async def _extract_direct(
        self, hit: SearchHit, item: LineItem
    ) -> tuple[ProductCandidate | None, str | None]:
        content = await self._content_for(hit)
        if not content:
            return None, None
        return await self._extractor.extract(content, hit.url, item), content

    async def _extract_link(self, link: CatalogLink, item: LineItem) -> ProductCandidate | None:
        content = await self._fetcher.fetch(link.url)
        if not content:
            return None
        return await self._extractor.extract(content, link.url, item)

    def _expand_catalogs(
        self,
        pages: list[tuple[SearchHit, str]],
        seen: set[str],
    ) -> list[CatalogLink]:
        """Product links from every catalog page, deduplicated and capped."""
        links: list[CatalogLink] = []
        for hit, content in pages:
            page_links = links_from_catalog(content, hit.url, seen)
            if page_links:
                log.info("catalog_links_found", url=hit.url[:120], links=len(page_links))
            for link in page_links:
                if link.url not in seen:
                    seen.add(link.url)
                    links.append(link)
        return links[: self._max_catalog_links]

    async def _gather_candidates(
        self, item: LineItem, selected: list[SearchHit]
    ) -> tuple[list[ProductCandidate], dict[str, int]]:
        direct: list[SearchHit] = []
        catalogs: list[SearchHit] = []
        for hit in selected:
            if classify_url(hit.url) is UrlKind.CATALOG:
                catalogs.append(hit)
            else:
                direct.append(hit)

        self._transition(RunState.FETCHING)
        direct_results, catalog_contents = await asyncio.gather(
            asyncio.gather(*(self._extract_direct(h, item) for h in direct), return_exceptions=True),
            asyncio.gather(*(self._content_for(h) for h in catalogs), return_exceptions=True),
        )

        candidates: list[ProductCandidate] = []
        catalog_pages: list[tuple[SearchHit, str]] = []
        for hit, content in zip(catalogs, catalog_contents, strict=True):
            if isinstance(content, str) and content:
                catalog_pages.append((hit, content))

        reclassified = 0
        for hit, result in zip(direct, direct_results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.warning("extract_task_failed", url=hit.url[:120], error=str(result))
                continue
            candidate, content = result
            if candidate is not None:
                candidates.append(candidate)
            elif (
                content
                and classify_url(hit.url) is UrlKind.UNKNOWN
                and looks_like_catalog(content)
            ):
                log.info("reclassified_as_catalog", url=hit.url[:120])
                catalog_pages.append((hit, content))
                reclassified += 1

        seen = {c.product_url for c in candidates} | {h.url for h in selected}
        links = self._expand_catalogs(catalog_pages, seen)
        if links:
            link_results = await asyncio.gather(
                *(self._extract_link(link, item) for link in links), return_exceptions=True
            )
            for link, result in zip(links, link_results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    log.warning("extract_task_failed", url=link.url[:120], error=str(result))
                elif result is not None:
                    candidates.append(result)

        counts = {
            "direct": len(direct),
            "catalog": len(catalogs) + reclassified,
            "expanded": len(links),
        }
        return candidates, counts

    # --- per item ---

    async def _process_item(
        self, item: LineItem, spec: ShoppingSpec, ctx: _RunContext
    ) -> ItemRunResult:
        query = build_query(item)

        self._transition(RunState.SEARCHING)
        ctx.step(item, "search", "in_progress")
        await self._space_searches(ctx)
        try:
            hits = await self._search.search(item)
        except SearchError as exc:
            log.warning("item_search_failed", item=item.name, error=str(exc))
            ctx.step(item, "search", "error")
            hits = []
        else:
            ctx.step(item, "search", "complete")

        ctx.step(item, "extract", "in_progress")
        self._transition(RunState.SELECTING)
        selected = select_hits(hits, self._max_urls)
        candidates, counts = await self._gather_candidates(item, selected)
        ctx.step(item, "extract", "complete")

        self._transition(RunState.SCORING)
        ctx.step(item, "rank", "in_progress")
        ranked = await self._scorer.score(
            item,
            candidates,
            spec.delivery_deadline,
            [p.candidate for p in ctx.top_picks],
            preferences=spec.preferences,
        )
        ctx.step(item, "rank", "complete")

        trace = (
            f'Searched for "{query}", found {len(hits)} results, selected {len(selected)} '
            f"({counts['direct']} direct, {counts['catalog']} catalog), expanded "
            f"{counts['expanded']} catalog links, extracted {len(candidates)} candidates, "
            f"ranked top {len(ranked)}"
        )
        ctx.current_step = "rank"
        run = await self._store.append_run(item.id, query, hits, ranked, trace)
        ctx.current_item = None

        if ranked:
            ctx.top_picks.append(TopPick(item_name=item.name, candidate=ranked[0]))
            ctx.pick_runs.append((run.id, ranked))

        log.info(
            "discovery_item_complete",
            item=item.name,
            version=run.version,
            search=len(hits),
            selected=len(selected),
            extracted=len(candidates),
            ranked=len(ranked),
        )
        ctx.emit(
            ItemCompleteEvent(item_id=item.id, item_name=item.name, candidates=ranked, query=query)
        )
        return ItemRunResult(item_id=item.id, item_name=item.name, candidates=ranked, query=query)

    async def _coherence(self, ctx: _RunContext) -> None:
        self._transition(RunState.COHERENCE)
        if len(ctx.top_picks) < 2:
            return
        before = {p.candidate.id: p.candidate.scores.coherence for p in ctx.top_picks}
        await self._scorer.adjust_coherence(ctx.top_picks)
        for run_id, ranked in ctx.pick_runs:
            top = ranked[0]
            if top.scores.coherence != before[top.id]:
                await self._store.replace_ranked(run_id, ranked)

    async def run(
        self,
        spec: ShoppingSpec,
        max_items: int | None = None,
        sink: ProgressSink | None = None,
    ) -> list[ItemRunResult]:
        """Run discovery for up to ``max_items`` items of the spec.

        Raises PipelineError (after emitting an ``error`` event) on a
        batch-fatal failure; completed items are on ``exc.results``.
        """
        ctx = _RunContext(sink=sink)
        limit = max_items or self._default_max_items
        items = spec.items[:limit]
        skipped = spec.items[limit:]
        results: list[ItemRunResult] = []
        self._transition(RunState.IDLE)

        log.info("discovery_start", spec_id=spec.id, items=len(items))
        if skipped:
            log.warning(
                "discovery_items_skipped",
                spec_id=spec.id,
                limit=limit,
                skipped=len(skipped),
            )
        for item in items:
            for step in _STEPS:
                ctx.emit(
                    ItemStepEvent(item_id=item.id, item_name=item.name, step=step, status="pending")  # type: ignore[arg-type]
                )

        try:
            for item in items:
                results.append(await self._process_item(item, spec, ctx))
            await self._coherence(ctx)
        except asyncio.CancelledError:
            self._transition(RunState.FAILED)
            log.warning("discovery_cancelled", spec_id=spec.id, completed=len(results))
            raise
        except Exception as exc:
            self._transition(RunState.FAILED)
            message = str(exc) or type(exc).__name__
            if ctx.current_item is not None and ctx.current_step is not None:
                ctx.step(ctx.current_item, ctx.current_step, "error")
            ctx.emit(ErrorEvent(message=message))
            log.error(
                "discovery_failed",
                spec_id=spec.id,
                completed=len(results),
                error_type=type(exc).__name__,
                error=message,
            )
            raise PipelineError(message, results=results) from exc

        self._transition(RunState.COMPLETED)
        ctx.emit(DoneEvent(skipped_item_ids=[item.id for item in skipped]))
        log.info("discovery_complete", spec_id=spec.id, items=len(results))
        return results


def create_pipeline(
    http_client: httpx.AsyncClient,
    store: RunStore,
    model: ModelClient,
) -> DiscoveryPipeline:
    """Wire the production pipeline from settings."""
    if not settings.exa_api_key:
        raise SearchError("EXA_API_KEY not set")
    return DiscoveryPipeline(
        search=SearchProvider(ExaSearchClient(http_client, settings.exa_api_key)),
        fetcher=PageFetcher(http_client),
        extractor=CandidateExtractor(model),
        scorer=ScoringEngine(model),
        store=store,
    )
