"""Cart reoptimization: cheaper alternatives from each item's latest run."""

from __future__ import annotations

import structlog

from shopscout.models.contracts import CartLine, Suggestion
from shopscout.services.run_store import RunStore

logger = structlog.get_logger("shopscout.reoptimize")


async def suggest_cheaper_alternatives(
    lines: list[CartLine],
    budget: float,
    store: RunStore,
) -> list[Suggestion]:
    """Suggest a cheaper candidate for each unlocked line when over budget.

    Lines are visited most expensive first. The suggestion for a line is the
    first candidate (in ranked order) of the item's latest run that costs less
    than the current one and is not the current one.
    """
    total = sum(line.candidate.price for line in lines)
    if total <= budget:
        return []

    unlocked = sorted(
        (line for line in lines if not line.locked),
        key=lambda line: line.candidate.price,
        reverse=True,
    )

    suggestions: list[Suggestion] = []
    for line in unlocked:
        ranked = await store.latest_run(line.item_id)
        if not ranked:
            continue
        current = line.candidate
        cheaper = next(
            (c for c in ranked if c.price < current.price and c.id != current.id),
            None,
        )
        if cheaper is not None:
            suggestions.append(
                Suggestion(
                    item_id=line.item_id,
                    current_price=current.price,
                    suggested_candidate=cheaper,
                )
            )

    logger.info(
        "reoptimize_complete",
        over_budget_by=round(total - budget, 2),
        unlocked=len(unlocked),
        suggestions=len(suggestions),
    )
    return suggestions
