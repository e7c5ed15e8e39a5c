from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional

from .countries import continent_for_country, normalize_country
from .models import Product
from .sizes import extract_size, size_to_grams


@dataclass(frozen=True)
class ProductAttributes:
    """Normalized view of one product offer, as seen by the scoring engine."""

    product_id: Optional[int] = None
    group_id: Optional[str] = None
    roastery: Optional[str] = None
    country: Optional[str] = None
    continent: Optional[str] = None
    process: Optional[str] = None
    roast: Optional[str] = None
    organic: bool = False
    decaf: bool = False
    fairtrade: bool = False
    size_grams: Optional[int] = None
    price_per_kg: Optional[float] = None

    def get(self, name: str) -> Any:
        if name not in KNOWN_DIMENSIONS:
            raise KeyError(f"Unknown product attribute: {name}")
        return getattr(self, name)


KNOWN_DIMENSIONS = frozenset(item.name for item in fields(ProductAttributes))


@dataclass(frozen=True)
class ConstraintRule:
    when: Mapping[str, Any] = field(default_factory=dict)
    require: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PreferenceConfig:
    enabled: bool = False
    dimensions: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    constraints: tuple[ConstraintRule, ...] = ()
    min_score: float = 0


@dataclass(frozen=True)
class ScoreResult:
    score: float
    accepted: bool
    reasons: tuple[str, ...] = ()


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def normalize_product_attributes(product: Product) -> ProductAttributes:
    tags = product.tags
    country_raw = tags.country_of_origin if tags else None

    size = product.size_extracted or extract_size(product.name)
    size_grams = product.size_grams or size_to_grams(size)

    price = product.current_price if product.current_price is not None else product.price
    price_per_kg = None
    if size_grams and price:
        price_per_kg = float(price) * 1000 / size_grams

    return ProductAttributes(
        product_id=product.id,
        group_id=product.product_group_id,
        roastery=_clean(product.roastery_name),
        country=normalize_country(country_raw),
        continent=continent_for_country(country_raw),
        process=_clean(tags.process_method if tags else None),
        roast=_clean(tags.roast_level if tags else None),
        organic=bool(product.organic or (tags and tags.is_organic)),
        decaf=bool(tags and tags.is_decaf),
        fairtrade=bool(tags and tags.is_fair_trade),
        size_grams=size_grams,
        price_per_kg=price_per_kg,
    )


def _as_key(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def matches_all(attrs: ProductAttributes, pattern: Optional[Mapping[str, Any]]) -> bool:
    if not pattern:
        return True
    for key, expected in pattern.items():
        value = attrs.get(key)
        if expected is None:
            if value is not None:
                return False
            continue
        if isinstance(expected, bool):
            if bool(value) != expected:
                return False
            continue
        actual = _as_key(value) if value is not None else ""
        if actual != _as_key(expected):
            return False
    return True


def _format_weight(weight: float) -> str:
    if isinstance(weight, float) and weight.is_integer():
        weight = int(weight)
    return f"+{weight}" if weight >= 0 else str(weight)


def score_product(
    attrs: Optional[ProductAttributes], config: Optional[PreferenceConfig]
) -> ScoreResult:
    if attrs is None or config is None or not config.enabled:
        return ScoreResult(0, False, ("preferences_disabled",))

    for rule in config.constraints:
        if matches_all(attrs, rule.when) and not matches_all(attrs, rule.require):
            return ScoreResult(0, False, ("constraint_failed",))

    score: float = 0
    reasons: list[str] = []
    for dimension, weights in config.dimensions.items():
        raw_value = attrs.get(dimension)
        if raw_value is None:
            continue
        key = _as_key(raw_value)
        weight = weights.get(key, 0)
        if not weight:
            continue
        score += weight
        reasons.append(f"{dimension}:{key}{_format_weight(weight)}")

    return ScoreResult(score, score >= config.min_score, tuple(reasons))
