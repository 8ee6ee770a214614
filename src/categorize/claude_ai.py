"""Claude AI categorization for transactions with no merchant rule.

Asks Claude for a probability distribution over every configured category,
using the claude_fn(system, prompt) -> str callback so tests can stub the
model. Distributions are cached per merchant on the pipeline context.

Failures never propagate: an API error, timeout, unparsable response, or a
response with no usable probability mass falls back to the uniform
distribution. Fallbacks are not cached, so the next upload retries.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from src.categorize.cache import CategorizationCache, LRUCache, cache_key
from src.database.models import Category

logger = logging.getLogger(__name__)

ClaudeFn = Callable[[str, str], str]

PROBABILITY_TOLERANCE = 1e-6

SYSTEM_PROMPT = (
    "You are a personal finance categorizer. Given a card transaction, "
    "estimate how likely it belongs to each of the spending categories "
    "provided. Return ONLY a JSON array of objects with these fields:\n"
    '  - "category_name": a category name exactly as listed\n'
    '  - "probability": a number from 0.0 to 1.0\n'
    "Include every category. Probabilities must sum to 1.0.\n"
    "Return ONLY the JSON array, no other text."
)


@dataclass(frozen=True)
class CategoryProbability:
    category_id: str
    category_name: str
    probability: float


@dataclass
class AIOutcome:
    """Distribution plus where it came from."""
    probabilities: list[CategoryProbability]
    fallback: bool = False
    cached: bool = False


class ResponseParseError(ValueError):
    """Raised when a model response has no usable distribution."""


def uniform_distribution(categories: list[Category]) -> list[CategoryProbability]:
    if not categories:
        return []
    p = 1.0 / len(categories)
    return [CategoryProbability(c.id, c.name, p) for c in categories]


def normalize_probabilities(
    raw: dict[str, float], categories: list[Category]
) -> list[CategoryProbability]:
    """Clamp to [0, 1] and rescale so the distribution sums to 1.0.

    Args:
        raw: category id → model probability; ids absent here get 0.
        categories: Full category list, defines output order.

    Raises:
        ResponseParseError: If the total probability mass is zero.
    """
    clamped = {c.id: max(0.0, min(1.0, raw.get(c.id, 0.0))) for c in categories}
    total = sum(clamped.values())
    if total <= 0:
        raise ResponseParseError("Response assigned no probability to any known category")
    return [CategoryProbability(c.id, c.name, clamped[c.id] / total) for c in categories]


def build_prompt(
    merchant: str, amount: Decimal, date: dt.date | str | None,
    categories: list[Category], is_credit: bool | None = None,
) -> str:
    """Prompt for one transaction.

    When is_credit is None the sign decides: negative amounts are charges.
    """
    names = "\n".join(f"- {c.name}" for c in categories)
    date_text = date.isoformat() if isinstance(date, dt.date) else (date or "unknown")
    if is_credit is None:
        is_credit = amount >= 0
    kind = "(credit/refund)" if is_credit else "(charge)"
    return (
        f"Merchant: {merchant}\n"
        f"Amount: ${abs(amount):.2f} {kind}\n"
        f"Date: {date_text}\n\n"
        f"Categories:\n{names}"
    )


def _parse_response(response: str, categories: list[Category]) -> list[CategoryProbability]:
    """Parse Claude's JSON array into a normalized distribution.

    Raises:
        ResponseParseError: On malformed JSON or no usable probability mass.
    """
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Response is not valid JSON: {text[:200]}") from e

    if not isinstance(data, list):
        raise ResponseParseError(f"Response is not a JSON array: {type(data).__name__}")

    by_name = {c.name.lower(): c for c in categories}
    raw: dict[str, float] = {}
    for item in data:
        if not isinstance(item, dict):
            continue
        name = str(item.get("category_name", "")).strip().lower()
        category = by_name.get(name)
        if category is None:
            logger.debug("Ignoring unknown category in response: %r", name)
            continue
        try:
            probability = float(item.get("probability", 0.0))
        except (TypeError, ValueError):
            continue
        if probability != probability:  # NaN
            continue
        raw[category.id] = raw.get(category.id, 0.0) + probability

    return normalize_probabilities(raw, categories)


class AICategorizer:
    """Merchant → category distribution via Claude, with a per-merchant cache.

    Args:
        claude_fn: Callable (system: str, prompt: str) -> str.
        categories: Categories the model chooses among.
        cache: Shared cache; a fresh LRUCache if omitted.
    """

    def __init__(
        self,
        claude_fn: ClaudeFn,
        categories: list[Category],
        cache: CategorizationCache | None = None,
    ):
        if not categories:
            raise ValueError("AICategorizer needs at least one category")
        self.claude_fn = claude_fn
        self.categories = list(categories)
        self.cache = cache if cache is not None else LRUCache()

    def categorize(
        self, merchant: str, amount: Decimal, date: dt.date | str | None = None,
        is_credit: bool | None = None,
    ) -> list[CategoryProbability]:
        return self.categorize_detailed(merchant, amount, date, is_credit).probabilities

    def categorize_detailed(
        self, merchant: str, amount: Decimal, date: dt.date | str | None = None,
        is_credit: bool | None = None,
    ) -> AIOutcome:
        key = cache_key(merchant)
        cached = self.cache.get(key)
        if cached is not None:
            return AIOutcome(probabilities=cached, cached=True)

        prompt = build_prompt(merchant, amount, date, self.categories, is_credit)
        try:
            response = self.claude_fn(SYSTEM_PROMPT, prompt)
            probabilities = _parse_response(response, self.categories)
        except ResponseParseError as e:
            logger.warning("Unusable categorization response for '%s': %s", merchant, e)
            return AIOutcome(uniform_distribution(self.categories), fallback=True)
        except Exception:
            logger.exception("Claude categorization failed for '%s'", merchant)
            return AIOutcome(uniform_distribution(self.categories), fallback=True)

        self.cache.put(key, probabilities)
        return AIOutcome(probabilities=probabilities)
