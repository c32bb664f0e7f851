"""Candidate extractor: raw page content -> ProductCandidate.

Strategies are tried in order and the first usable result wins:

1. structured data (JSON-LD ``Product`` blocks)
2. heuristics (price-bearing HTML markup with an OpenGraph or heading title;
   listing pages and plain-text pages are left to the model)
3. model-assisted extraction over a truncated text rendering of the page

A result is usable only with a non-empty title and a positive price.
Extraction failure yields ``None`` and never raises to the caller.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shopscout.config import settings
from shopscout.discovery.classifier import looks_like_catalog
from shopscout.discovery.retailers import extract_domain, retailer_name
from shopscout.errors import ModelError
from shopscout.models.contracts import LineItem, ProductCandidate, ScoreSet
from shopscout.utils import llm_cache
from shopscout.utils.llm import ModelClient, load_prompt
from shopscout.utils.tracing import traceable

log = structlog.get_logger("shopscout.extract")

MODEL_CONTENT_CHARS = 15000

_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
_HTML_RE = re.compile(r"<(?:html|head|body|div|meta|script|span|h1)\b", re.IGNORECASE)

PRICE_SELECTORS = (
    '[itemprop="price"]',
    "[data-price]",
    ".a-price .a-offscreen",
    ".product-price",
    ".price-current",
    "#price",
    ".price",
)


def parse_price(value: Any) -> float | None:
    """Read a price out of a number or a string like ``"$1,299.00"``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) if value > 0 else None
    if not isinstance(value, str):
        return None
    match = _NUMBER_RE.search(value)
    if not match:
        return None
    try:
        price = float(match.group(0).replace(",", ""))
    except ValueError:
        return None
    return price if price > 0 else None


class ExtractedProduct(BaseModel):
    """Intermediate extraction result; also the model-reply boundary schema."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = ""
    price: float | None = None
    currency: str = "USD"
    delivery_estimate: str | None = Field(default=None, alias="deliveryEstimate")
    delivery_days: int | None = Field(default=None, alias="deliveryDays")
    variants: list[str] = []
    image_url: str | None = Field(default=None, alias="imageUrl")
    in_stock: bool = Field(default=True, alias="inStock")

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> float | None:
        return parse_price(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v: Any) -> str:
        return v.strip().upper() if isinstance(v, str) and v.strip() else "USD"

    @field_validator("delivery_days", mode="before")
    @classmethod
    def _days(cls, v: Any) -> int | None:
        if isinstance(v, bool) or v is None:
            return None
        try:
            days = int(float(v))
        except (TypeError, ValueError):
            return None
        return days if days >= 0 else None

    @field_validator("variants", mode="before")
    @classmethod
    def _variants(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(x).strip() for x in v if x is not None and str(x).strip()]

    @field_validator("in_stock", mode="before")
    @classmethod
    def _in_stock(cls, v: Any) -> bool:
        return v if isinstance(v, bool) else True


def is_usable(extracted: ExtractedProduct | None) -> bool:
    return bool(extracted and extracted.title and extracted.price and extracted.price > 0)


def _looks_like_html(content: str) -> bool:
    return bool(_HTML_RE.search(content[:5000]))


# === Strategy 1: structured data ===


def _is_product_node(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    kind = node.get("@type")
    if isinstance(kind, list):
        return "Product" in kind
    return kind == "Product"


def _find_product_node(data: Any) -> dict[str, Any] | None:
    if isinstance(data, list):
        for entry in data:
            found = _find_product_node(entry)
            if found:
                return found
        return None
    if not isinstance(data, dict):
        return None
    if _is_product_node(data):
        return data
    if "@graph" in data:
        return _find_product_node(data["@graph"])
    return None


def _first_image(image: Any) -> str | None:
    if isinstance(image, str):
        return image
    if isinstance(image, list) and image:
        return _first_image(image[0])
    if isinstance(image, dict):
        url = image.get("url") or image.get("contentUrl")
        return url if isinstance(url, str) else None
    return None


def parse_structured_data(content: str) -> ExtractedProduct | None:
    """Read the first JSON-LD Product block on the page."""
    if "application/ld+json" not in content:
        return None
    soup = BeautifulSoup(content, "html.parser")
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            continue
        product = _find_product_node(data)
        if product is None:
            continue

        offers = product.get("offers") or product.get("offer") or {}
        if isinstance(offers, list):
            offers = next((o for o in offers if isinstance(o, dict)), {})
        if not isinstance(offers, dict):
            offers = {}
        price = offers.get("price") or offers.get("lowPrice")
        availability = str(offers.get("availability") or "")

        return ExtractedProduct(
            title=product.get("name") or "",
            price=price,
            currency=offers.get("priceCurrency") or "USD",
            image_url=_first_image(product.get("image")),
            in_stock="OutOfStock" not in availability,
        )
    return None


# === Strategy 2: heuristics ===


def _meta(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    value = tag.get("content")
    return value.strip() if isinstance(value, str) and value.strip() else None


def _html_heuristics(content: str) -> ExtractedProduct | None:
    soup = BeautifulSoup(content, "html.parser")
    # A listing page has a heading and many prices but is not one product.
    if looks_like_catalog(soup.get_text(" ", strip=True)):
        return None

    title = _meta(soup, property="og:title") or _meta(soup, name="title")
    if not title:
        h1 = soup.find("h1")
        title = h1.get_text(" ", strip=True) if h1 else None
    if not title and soup.title:
        title = soup.title.get_text(strip=True)

    price = parse_price(_meta(soup, property="product:price:amount"))
    if price is None:
        for selector in PRICE_SELECTORS:
            el = soup.select_one(selector)
            if el is None:
                continue
            text = el.get("content") or el.get("data-price") or el.get_text(" ", strip=True)
            price = parse_price(text)
            if price is not None:
                break

    if not title and price is None:
        return None
    return ExtractedProduct(
        title=title or "",
        price=price,
        currency=_meta(soup, property="product:price:currency") or "USD",
        image_url=_meta(soup, property="og:image"),
    )


def parse_heuristics(content: str) -> ExtractedProduct | None:
    """Known price markup plus a title from metadata or headings.

    Plain-text and markdown pages have no markup to anchor a price and are
    left to the model strategy.
    """
    if not _looks_like_html(content):
        return None
    return _html_heuristics(content)


# === Strategy 3: model-assisted ===


def render_for_model(content: str, limit: int = MODEL_CONTENT_CHARS) -> str:
    """Visible text of an HTML page (or the text as-is), truncated to ``limit``."""
    if _looks_like_html(content):
        soup = BeautifulSoup(content, "html.parser")
        for tag in soup(["script", "style", "noscript", "svg"]):
            tag.decompose()
        content = soup.get_text("\n", strip=True)
    return content[:limit]


class ModelExtraction:
    def __init__(self, model: ModelClient, model_name: str | None = None) -> None:
        self._model = model
        self._model_name = model_name or settings.extraction_model

    @traceable(name="model_extraction", run_type="llm")
    async def attempt(self, content: str, url: str, item: LineItem) -> ExtractedProduct | None:
        page = render_for_model(content)
        cache_key = [self._model_name, url, item.name, page]
        data = llm_cache.get_cached("extraction", cache_key)
        if data is None:
            system = load_prompt("product_extraction").format(item_name=item.name)
            data = await self._model.complete_json(
                system,
                f"URL: {url}\n\nPage content:\n{page}",
                model=self._model_name,
                max_tokens=1024,
            )
            llm_cache.set_cached("extraction", cache_key, data)
        try:
            return ExtractedProduct.model_validate(data)
        except ValidationError:
            log.info("model_extraction_invalid", url=url[:120])
            return None


# === Extractor ===

Attempt = Callable[[str, str, LineItem], Awaitable[ExtractedProduct | None]]


async def _structured_attempt(content: str, url: str, item: LineItem) -> ExtractedProduct | None:
    return parse_structured_data(content)


async def _heuristic_attempt(content: str, url: str, item: LineItem) -> ExtractedProduct | None:
    return parse_heuristics(content)


def build_candidate(extracted: ExtractedProduct, url: str) -> ProductCandidate:
    domain = extract_domain(url)
    return ProductCandidate(
        title=extracted.title,
        price=extracted.price,
        currency=extracted.currency,
        delivery_estimate=extracted.delivery_estimate,
        delivery_days=extracted.delivery_days,
        variants=extracted.variants,
        retailer_name=retailer_name(domain),
        retailer_domain=domain,
        product_url=url,
        image_url=extracted.image_url,
        in_stock=extracted.in_stock,
        scores=ScoreSet(),
        explanation="",
    )


class CandidateExtractor:
    """Runs the ordered strategy list against one page."""

    def __init__(self, model: ModelClient | None = None, model_name: str | None = None) -> None:
        self.strategies: list[tuple[str, Attempt]] = [
            ("structured", _structured_attempt),
            ("heuristic", _heuristic_attempt),
        ]
        if model is not None:
            self.strategies.append(("model", ModelExtraction(model, model_name).attempt))

    async def extract(self, content: str, url: str, item: LineItem) -> ProductCandidate | None:
        if not content:
            return None
        for name, attempt in self.strategies:
            try:
                extracted = await attempt(content, url, item)
            except ModelError as exc:
                log.info("extraction_strategy_failed", strategy=name, url=url[:120], error=str(exc))
                continue
            if is_usable(extracted):
                assert extracted is not None
                log.debug("extraction_succeeded", strategy=name, url=url[:120])
                return build_candidate(extracted, url)

        log.info("extraction_failed", url=url[:120])
        return None
