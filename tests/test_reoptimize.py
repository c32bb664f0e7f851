"""Tests for cheaper-alternative suggestions over the latest runs."""

from __future__ import annotations

import asyncio

from shopscout.models.contracts import CartLine, ProductCandidate
from shopscout.services.reoptimize import suggest_cheaper_alternatives
from shopscout.services.run_store import InMemoryRunStore


def _candidate(title: str, price: float) -> ProductCandidate:
    return ProductCandidate(
        title=title,
        price=price,
        retailer_name="Target",
        retailer_domain="target.com",
        product_url=f"https://www.target.com/p/{title}",
    )


def _store_with(runs: dict[str, list[ProductCandidate]]) -> InMemoryRunStore:
    store = InMemoryRunStore()

    async def fill():
        for item_id, ranked in runs.items():
            await store.append_run(item_id, "q", [], ranked, "")

    asyncio.run(fill())
    return store


class TestSuggestCheaperAlternatives:
    def test_within_budget_no_suggestions(self):
        lines = [CartLine(item_id="a", candidate=_candidate("lamp", 40))]
        store = _store_with({"a": [_candidate("cheap lamp", 10)]})
        assert asyncio.run(suggest_cheaper_alternatives(lines, 50, store)) == []

    def test_suggests_first_cheaper_candidate(self):
        current = _candidate("lamp", 80)
        store = _store_with(
            {"a": [current, _candidate("pricier", 90), _candidate("cheaper", 60)]}
        )
        lines = [CartLine(item_id="a", candidate=current)]
        [suggestion] = asyncio.run(suggest_cheaper_alternatives(lines, 50, store))
        assert suggestion.item_id == "a"
        assert suggestion.current_price == 80
        assert suggestion.suggested_candidate.title == "cheaper"

    def test_locked_lines_skipped_and_most_expensive_first(self):
        store = _store_with(
            {
                "rug": [_candidate("small rug", 50)],
                "sofa": [_candidate("loveseat", 300)],
                "lamp": [_candidate("bulb", 5)],
            }
        )
        lines = [
            CartLine(item_id="rug", candidate=_candidate("rug", 100)),
            CartLine(item_id="sofa", candidate=_candidate("sofa", 900)),
            CartLine(item_id="lamp", candidate=_candidate("lamp", 60), locked=True),
        ]
        suggestions = asyncio.run(suggest_cheaper_alternatives(lines, 500, store))
        assert [s.item_id for s in suggestions] == ["sofa", "rug"]

    def test_item_without_runs_skipped(self):
        lines = [CartLine(item_id="ghost", candidate=_candidate("x", 100))]
        assert asyncio.run(suggest_cheaper_alternatives(lines, 10, InMemoryRunStore())) == []
