"""ShopScout contract models.

Everything that crosses a module or process boundary is one of these. Loosely
typed provider payloads are validated into them at the edge (see
discovery/search.py and discovery/extract.py) and never travel further as
plain dicts.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

# Fixed weight vector for the composite score.
SCORE_WEIGHTS: dict[str, float] = {
    "cost": 0.30,
    "delivery": 0.25,
    "preference": 0.30,
    "coherence": 0.15,
}

TOP_K = 3


def _new_id() -> str:
    return str(uuid.uuid4())


# === Shopping specification (produced by intake, read-only here) ===


class ItemConstraints(BaseModel):
    category: str | None = None
    brand: list[str] = []
    color: list[str] = []
    size: str | None = None
    style: str | None = None
    must_haves: list[str] = []
    nice_to_haves: list[str] = []
    keywords: list[str] = []


class LineItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    constraints: ItemConstraints = ItemConstraints()
    budget_allocation: float = 0.0
    locked: bool = False


class ShopperPreferences(BaseModel):
    style: str | None = None
    occasion: str | None = None
    gender: str | None = None
    age_group: str | None = None


class ShoppingSpec(BaseModel):
    id: str = Field(default_factory=_new_id)
    budget: float = Field(ge=0, default=0.0)
    delivery_deadline: datetime | None = None
    preferences: ShopperPreferences = ShopperPreferences()
    must_haves: list[str] = []
    nice_to_haves: list[str] = []
    items: list[LineItem] = []


# === Search ===


class SearchHit(BaseModel):
    title: str = ""
    url: str
    description: str = ""
    retailer_domain: str = ""
    raw_content: str | None = None
    score: float = 0.0


class UrlKind(StrEnum):
    PRODUCT = "product"
    CATALOG = "catalog"
    UNKNOWN = "unknown"


class CatalogLink(BaseModel):
    url: str
    title: str = ""


# === Candidates & scoring ===


class ScoreSet(BaseModel):
    """Four dimension scores; ``total`` is always derived from them."""

    model_config = ConfigDict(validate_assignment=True)

    cost: float = Field(default=0.0, ge=0, le=1)
    delivery: float = Field(default=0.0, ge=0, le=1)
    preference: float = Field(default=0.0, ge=0, le=1)
    coherence: float = Field(default=0.0, ge=0, le=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> float:
        return sum(weight * getattr(self, name) for name, weight in SCORE_WEIGHTS.items())


class ProductCandidate(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = Field(min_length=1)
    price: float = Field(gt=0)
    currency: str = "USD"
    delivery_estimate: str | None = None
    delivery_days: int | None = Field(default=None, ge=0)
    variants: list[str] = []
    retailer_name: str
    retailer_domain: str
    product_url: str
    image_url: str | None = None
    in_stock: bool = True
    scores: ScoreSet = Field(default_factory=ScoreSet)
    explanation: str = ""


class ItemRun(BaseModel):
    """Append-only audit record of one pipeline attempt for one item."""

    id: str = Field(default_factory=_new_id)
    item_id: str
    version: int = Field(ge=1)
    query: str
    hits: list[SearchHit] = []
    ranked: list[ProductCandidate] = []
    trace: str = ""
    created_at: datetime | None = None


class ItemRunResult(BaseModel):
    item_id: str
    item_name: str
    candidates: list[ProductCandidate] = []
    query: str


# === Progress events ===

DiscoveryStep = Literal["search", "extract", "rank"]
DiscoveryStepStatus = Literal["pending", "in_progress", "complete", "error"]


class ItemStepEvent(BaseModel):
    type: Literal["item-step"] = "item-step"
    item_id: str
    item_name: str
    step: DiscoveryStep
    status: DiscoveryStepStatus


class ItemCompleteEvent(BaseModel):
    type: Literal["item-complete"] = "item-complete"
    item_id: str
    item_name: str
    candidates: list[ProductCandidate] = []
    query: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    # Items beyond the batch limit, in spec order; they were never searched.
    skipped_item_ids: list[str] = []


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


DiscoveryEvent = Annotated[
    ItemStepEvent | ItemCompleteEvent | DoneEvent | ErrorEvent,
    Field(discriminator="type"),
]


# === API Request/Response Models ===


class RunPipelineRequest(BaseModel):
    spec: ShoppingSpec
    max_items: int | None = Field(default=None, ge=1)


class CartLine(BaseModel):
    item_id: str
    candidate: ProductCandidate
    locked: bool = False


class ReoptimizeRequest(BaseModel):
    budget: float = Field(ge=0)
    lines: list[CartLine] = []


class Suggestion(BaseModel):
    item_id: str
    current_price: float
    suggested_candidate: ProductCandidate


class ReoptimizeResponse(BaseModel):
    suggestions: list[Suggestion] = []


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    detail: str | None = None
