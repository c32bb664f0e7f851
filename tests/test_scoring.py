"""Tests for the scoring engine and the coherence pass."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from shopscout.discovery.scoring import (
    NEUTRAL_SCORE,
    ScoringEngine,
    TopPick,
    cost_score,
    days_until,
    delivery_score,
)
from shopscout.errors import ModelError
from shopscout.models.contracts import SCORE_WEIGHTS, LineItem, ProductCandidate, ScoreSet

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _candidate(title: str, price: float, retailer: str = "Nike", days: int | None = None):
    return ProductCandidate(
        title=title,
        price=price,
        delivery_days=days,
        retailer_name=retailer,
        retailer_domain=f"{retailer.lower()}.com",
        product_url=f"https://www.{retailer.lower()}.com/t/{title.replace(' ', '-')}",
    )


def _model(json_reply=None, text_reply: str = "Strong value for the price.") -> MagicMock:
    model = MagicMock()
    if isinstance(json_reply, Exception):
        model.complete_json = AsyncMock(side_effect=json_reply)
    else:
        model.complete_json = AsyncMock(return_value=json_reply or {})
    if isinstance(text_reply, Exception):
        model.complete_text = AsyncMock(side_effect=text_reply)
    else:
        model.complete_text = AsyncMock(return_value=text_reply)
    return model


def _engine(model: MagicMock) -> ScoringEngine:
    return ScoringEngine(model, ranking_model="rank", explanation_model="explain")


class TestScoreSet:
    def test_total_is_weighted_sum(self):
        s = ScoreSet(cost=0.5, delivery=1.0, preference=0.2, coherence=0.4)
        assert s.total == pytest.approx(0.30 * 0.5 + 0.25 * 1.0 + 0.30 * 0.2 + 0.15 * 0.4)

    def test_total_follows_reassignment(self):
        s = ScoreSet(cost=1, delivery=1, preference=1, coherence=0)
        before = s.total
        s.coherence = 1.0
        assert s.total == pytest.approx(before + SCORE_WEIGHTS["coherence"])

    def test_dimensions_bounded(self):
        with pytest.raises(ValidationError):
            ScoreSet(cost=1.2)
        s = ScoreSet()
        with pytest.raises(ValidationError):
            s.delivery = -0.1

    def test_total_serialized(self):
        assert "total" in ScoreSet(cost=1).model_dump()


class TestCostScore:
    def test_half_budget(self):
        assert cost_score(50, 100) == 0.5

    def test_over_budget_clamped(self):
        assert cost_score(120, 100) == 0.0

    def test_no_allocation_is_neutral(self):
        assert cost_score(50, 0) == NEUTRAL_SCORE
        assert cost_score(50, -10) == NEUTRAL_SCORE


class TestDeliveryScore:
    def test_within_deadline(self):
        assert delivery_score(3, 5) == 1.0

    def test_linear_decay(self):
        assert delivery_score(8, 5) == pytest.approx(0.4)

    def test_decay_floors_at_zero(self):
        assert delivery_score(20, 5) == 0.0

    def test_unknown_days_is_neutral_regardless_of_deadline(self):
        assert delivery_score(None, 5) == 0.5
        assert delivery_score(None, None) == 0.5

    def test_no_deadline(self):
        assert delivery_score(2, None) == 0.8


class TestDaysUntil:
    def test_rounds_up(self):
        assert days_until(NOW + timedelta(days=4, hours=1), NOW) == 5

    def test_exact_days(self):
        assert days_until(NOW + timedelta(days=5), NOW) == 5

    def test_naive_deadline_taken_as_utc(self):
        assert days_until(datetime(2026, 3, 6, 12, 0), NOW) == 5

    def test_none(self):
        assert days_until(None, NOW) is None


class TestScore:
    ITEM = LineItem(name="running shoes", budget_allocation=80)

    def test_running_shoes_scenario(self):
        """$60 vs $95 against an $80 allocation with no deadline."""
        x = _candidate("Pegasus", 60, "Nike", days=2)
        y = _candidate("Ghost", 95, "Zappos", days=10)
        ranked = asyncio.run(_engine(_model()).score(self.ITEM, [x, y], None, now=NOW))

        assert x.scores.cost == pytest.approx(0.25)
        assert x.scores.delivery == 0.8
        assert y.scores.cost == 0.0
        assert y.scores.delivery == 0.8
        # Model reply had no scores, so both soft dimensions default to neutral.
        assert x.scores.preference == y.scores.preference == 0.5
        assert ranked == [x, y]

    def test_model_scores_applied_and_clamped(self):
        x = _candidate("A", 60)
        y = _candidate("B", 60)
        reply = {
            "scores": [
                {"candidateId": x.id, "preference": 1.7, "coherence": 0.2},
                {"candidate_id": y.id, "preference": "0.9", "coherence": -1},
            ]
        }
        asyncio.run(_engine(_model(reply)).score(self.ITEM, [x, y], None, now=NOW))
        assert x.scores.preference == 1.0
        assert x.scores.coherence == 0.2
        assert y.scores.preference == 0.9
        assert y.scores.coherence == 0.0

    def test_missing_candidate_defaults_to_neutral(self):
        x = _candidate("A", 60)
        y = _candidate("B", 60)
        reply = {"scores": [{"candidateId": x.id, "preference": 0.9, "coherence": 0.9}]}
        asyncio.run(_engine(_model(reply)).score(self.ITEM, [x, y], None, now=NOW))
        assert (y.scores.preference, y.scores.coherence) == (0.5, 0.5)

    def test_model_failure_defaults_everyone(self):
        x = _candidate("A", 60)
        ranked = asyncio.run(
            _engine(_model(ModelError("down"))).score(self.ITEM, [x], None, now=NOW)
        )
        assert ranked[0].scores.preference == 0.5
        assert ranked[0].scores.coherence == 0.5

    def test_top_three_sorted_subset(self):
        candidates = [_candidate(f"C{i}", price) for i, price in enumerate([70, 20, 50, 10, 40])]
        ranked = asyncio.run(_engine(_model()).score(self.ITEM, candidates, None, now=NOW))
        assert len(ranked) == 3
        totals = [c.scores.total for c in ranked]
        assert totals == sorted(totals, reverse=True)
        assert all(any(c is r for c in candidates) for r in ranked)
        assert [c.price for c in ranked] == [10, 20, 40]

    def test_ties_keep_input_order(self):
        a = _candidate("A", 40)
        b = _candidate("B", 40)
        ranked = asyncio.run(_engine(_model()).score(self.ITEM, [a, b], None, now=NOW))
        assert ranked == [a, b]

    def test_explanations_only_for_top_three(self):
        model = _model()
        candidates = [_candidate(f"C{i}", 10 + i) for i in range(5)]
        ranked = asyncio.run(_engine(model).score(self.ITEM, candidates, None, now=NOW))
        assert model.complete_text.await_count == 3
        assert all(c.explanation == "Strong value for the price." for c in ranked)
        prompt = model.complete_text.await_args.args[1]
        assert "Cost" in prompt and "Total" in prompt

    def test_explanation_failure_is_empty_string(self):
        model = _model(text_reply=ModelError("timeout"))
        ranked = asyncio.run(
            _engine(model).score(self.ITEM, [_candidate("A", 10)], None, now=NOW)
        )
        assert ranked[0].explanation == ""

    def test_other_top_picks_sent_to_model(self):
        model = _model()
        other = _candidate("Rain Shell", 120, "REI")
        asyncio.run(
            _engine(model).score(self.ITEM, [_candidate("A", 10)], None, [other], now=NOW)
        )
        prompt = model.complete_json.await_args.args[1]
        assert "Rain Shell" in prompt

    def test_deadline_feeds_delivery(self):
        x = _candidate("A", 60, days=8)
        asyncio.run(
            _engine(_model()).score(self.ITEM, [x], NOW + timedelta(days=5), now=NOW)
        )
        assert x.scores.delivery == pytest.approx(0.4)

    def test_no_candidates(self):
        model = _model()
        assert asyncio.run(_engine(model).score(self.ITEM, [], None)) == []
        model.complete_json.assert_not_awaited()


def _picks() -> list[TopPick]:
    picks = []
    for name, title in [("running shoes", "Pegasus"), ("rain jacket", "Shell")]:
        c = _candidate(title, 60)
        c.scores = ScoreSet(cost=0.5, delivery=0.8, preference=0.5, coherence=0.5)
        picks.append(TopPick(item_name=name, candidate=c))
    return picks


class TestAdjustCoherence:
    def test_override_only_where_returned(self):
        picks = _picks()
        totals_before = [p.candidate.scores.total for p in picks]
        reply = {"adjustments": [{"candidateId": picks[0].candidate.id, "coherence": 0.9}]}
        model = _model(reply)

        asyncio.run(_engine(model).adjust_coherence(picks))

        assert picks[0].candidate.scores.coherence == 0.9
        assert picks[0].candidate.scores.total == pytest.approx(
            totals_before[0] + 0.15 * (0.9 - 0.5)
        )
        assert picks[1].candidate.scores.coherence == 0.5
        assert picks[1].candidate.scores.total == totals_before[1]

    def test_prompt_lists_every_pick(self):
        picks = _picks()
        model = _model({"adjustments": []})
        asyncio.run(_engine(model).adjust_coherence(picks))
        prompt = model.complete_json.await_args.args[1]
        ids = re.findall(r"candidateId (\S+)", prompt)
        assert ids == [p.candidate.id for p in picks]
        assert "running shoes" in prompt and "rain jacket" in prompt

    def test_single_pick_is_skipped(self):
        model = _model()
        picks = _picks()[:1]
        assert asyncio.run(_engine(model).adjust_coherence(picks)) is picks
        model.complete_json.assert_not_awaited()

    def test_model_failure_leaves_picks_untouched(self):
        picks = _picks()
        asyncio.run(_engine(_model(ModelError("down"))).adjust_coherence(picks))
        assert [p.candidate.scores.coherence for p in picks] == [0.5, 0.5]
