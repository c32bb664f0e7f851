"""Scoring engine and cross-item coherence pass.

Four dimensions per candidate, each in [0, 1]:

- cost and delivery are deterministic (budget allocation, deadline)
- preference and coherence come from one batched model call per item

The composite ``total`` is a computed field on ScoreSet, so reassigning any
dimension (the coherence pass does) keeps the total consistent.

Model failures never fail an item: missing scores default to 0.5 and a
failed explanation call leaves the explanation empty.
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from shopscout.config import settings
from shopscout.errors import ModelError
from shopscout.models.contracts import (
    TOP_K,
    LineItem,
    ProductCandidate,
    ShopperPreferences,
)
from shopscout.utils.llm import ModelClient, load_prompt

log = structlog.get_logger("shopscout.scoring")

NEUTRAL_SCORE = 0.5
NO_DEADLINE_DELIVERY_SCORE = 0.8
DELIVERY_GRACE_DAYS = 5
EXPLANATION_MAX_TOKENS = 150


@dataclass
class TopPick:
    """An item's current best candidate, carried forward for coherence scoring."""

    item_name: str
    candidate: ProductCandidate


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def cost_score(price: float, budget_allocation: float) -> float:
    """1 at free, 0 at or above the allocation; neutral when there is no allocation."""
    if budget_allocation <= 0:
        return NEUTRAL_SCORE
    return clamp01(1 - price / budget_allocation)


def delivery_score(delivery_days: int | None, deadline_days: int | None) -> float:
    if delivery_days is None:
        return NEUTRAL_SCORE
    if deadline_days is None:
        return NO_DEADLINE_DELIVERY_SCORE
    if delivery_days <= deadline_days:
        return 1.0
    overage = delivery_days - deadline_days
    return max(0.0, 1 - overage / DELIVERY_GRACE_DAYS)


def days_until(deadline: datetime | None, now: datetime | None = None) -> int | None:
    """Whole days until the deadline, rounded up; naive datetimes are taken as UTC."""
    if deadline is None:
        return None
    now = now or datetime.now(UTC)
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return math.ceil((deadline - now).total_seconds() / 86400)


def _as_score(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return clamp01(float(value))
    except (TypeError, ValueError):
        return None


def _reply_entries(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    entries = data.get(key)
    if not isinstance(entries, list):
        return []
    return [e for e in entries if isinstance(e, dict)]


def _describe(candidate: ProductCandidate) -> str:
    variants = ", ".join(candidate.variants) or "none listed"
    return (
        f"{candidate.title} (${candidate.price:.2f}) from {candidate.retailer_name}, "
        f"Variants: {variants}"
    )


class ScoringEngine:
    def __init__(
        self,
        model: ModelClient,
        *,
        ranking_model: str | None = None,
        explanation_model: str | None = None,
    ) -> None:
        self._model = model
        self._ranking_model = ranking_model or settings.ranking_model
        self._explanation_model = explanation_model or settings.explanation_model

    async def _model_scores(
        self,
        item: LineItem,
        candidates: list[ProductCandidate],
        other_top_picks: list[ProductCandidate],
        preferences: ShopperPreferences | None,
    ) -> dict[str, tuple[float | None, float | None]]:
        """Batched preference/coherence scores keyed by candidate id."""
        lines = [f"- ID: {c.id}, {_describe(c)}" for c in candidates]
        if other_top_picks:
            others = "Other items in the shopping list (for coherence scoring):\n" + "\n".join(
                f"- {p.title} (${p.price:.2f}) from {p.retailer_name}" for p in other_top_picks
            )
        else:
            others = "No other items selected yet."
        prefs = preferences.model_dump(exclude_none=True) if preferences else {}
        user = (
            f"Item: {item.name}\n"
            f"Constraints: {item.constraints.model_dump_json(exclude_defaults=True)}\n"
            f"Shopper preferences: {json.dumps(prefs)}\n\n"
            f"Candidates:\n" + "\n".join(lines) + f"\n\n{others}"
        )

        try:
            data = await self._model.complete_json(
                load_prompt("candidate_scoring"), user, model=self._ranking_model
            )
        except ModelError as exc:
            log.warning("scoring_model_failed", item=item.name, error=str(exc))
            return {}

        scores: dict[str, tuple[float | None, float | None]] = {}
        for entry in _reply_entries(data, "scores"):
            candidate_id = entry.get("candidateId") or entry.get("candidate_id")
            if isinstance(candidate_id, str):
                scores[candidate_id] = (
                    _as_score(entry.get("preference")),
                    _as_score(entry.get("coherence")),
                )
        return scores

    async def _explain(self, item: LineItem, candidate: ProductCandidate) -> str:
        s = candidate.scores
        user = (
            f"Item: {item.name}\n"
            f"Product: {candidate.title} (${candidate.price:.2f}) from {candidate.retailer_name}\n"
            f"Scores: Cost {s.cost:.2f}, Delivery {s.delivery:.2f}, "
            f"Preference {s.preference:.2f}, Coherence {s.coherence:.2f}, Total {s.total:.2f}"
        )
        try:
            return await self._model.complete_text(
                load_prompt("ranking_explanation"),
                user,
                model=self._explanation_model,
                max_tokens=EXPLANATION_MAX_TOKENS,
            )
        except ModelError as exc:
            log.info("explanation_failed", candidate_id=candidate.id, error=str(exc))
            return ""

    async def score(
        self,
        item: LineItem,
        candidates: list[ProductCandidate],
        deadline: datetime | None,
        other_top_picks: list[ProductCandidate] | None = None,
        *,
        preferences: ShopperPreferences | None = None,
        now: datetime | None = None,
    ) -> list[ProductCandidate]:
        """Score candidates in place and return the top three, best first."""
        if not candidates:
            return []

        deadline_days = days_until(deadline, now)
        for candidate in candidates:
            candidate.scores.cost = cost_score(candidate.price, item.budget_allocation)
            candidate.scores.delivery = delivery_score(candidate.delivery_days, deadline_days)

        model_scores = await self._model_scores(
            item, candidates, other_top_picks or [], preferences
        )
        missing = 0
        for candidate in candidates:
            preference, coherence = model_scores.get(candidate.id, (None, None))
            if candidate.id not in model_scores:
                missing += 1
            candidate.scores.preference = NEUTRAL_SCORE if preference is None else preference
            candidate.scores.coherence = NEUTRAL_SCORE if coherence is None else coherence
        if missing:
            log.info("scoring_defaults_applied", item=item.name, missing=missing)

        ranked = sorted(candidates, key=lambda c: c.scores.total, reverse=True)[:TOP_K]

        explanations = await asyncio.gather(*(self._explain(item, c) for c in ranked))
        for candidate, explanation in zip(ranked, explanations, strict=True):
            candidate.explanation = explanation

        log.info(
            "scoring_complete",
            item=item.name,
            scored=len(candidates),
            top_total=round(ranked[0].scores.total, 3),
        )
        return ranked

    async def adjust_coherence(self, top_picks: list[TopPick]) -> list[TopPick]:
        """Re-score each pick's coherence against the whole set, in place.

        Picks without an override in the reply are left untouched; a failed
        model call leaves every pick untouched.
        """
        if len(top_picks) < 2:
            return top_picks

        user = "Selected items:\n" + "\n".join(
            f"- candidateId {p.candidate.id} | {p.item_name}: {_describe(p.candidate)}"
            for p in top_picks
        )
        try:
            data = await self._model.complete_json(
                load_prompt("coherence_pass"), user, model=self._ranking_model
            )
        except ModelError as exc:
            log.warning("coherence_pass_failed", picks=len(top_picks), error=str(exc))
            return top_picks

        overrides: dict[str, float] = {}
        for entry in _reply_entries(data, "adjustments"):
            candidate_id = entry.get("candidateId") or entry.get("candidate_id")
            value = _as_score(entry.get("coherence"))
            if isinstance(candidate_id, str) and value is not None:
                overrides[candidate_id] = value

        adjusted = 0
        for pick in top_picks:
            if pick.candidate.id in overrides:
                pick.candidate.scores.coherence = overrides[pick.candidate.id]
                adjusted += 1
        log.info("coherence_pass_complete", picks=len(top_picks), adjusted=adjusted)
        return top_picks
