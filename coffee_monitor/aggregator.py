from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from .models import RawObservation
from .sizes import base_product_name, extract_size, sort_sizes

FAVORITE_AVAILABLE = "favorite_available"
PREFERENCE_MATCH = "preference_match"

GroupKey = Union[str, tuple[str, str, str]]


@dataclass(frozen=True)
class MatchInfo:
    notification_type: str
    label: str
    matched_terms: tuple[str, ...] = ()
    score: Optional[float] = None
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class SizeOffer:
    price: Optional[float]
    observation: RawObservation
    product_id: int


@dataclass
class NotificationCandidate:
    product: RawObservation
    product_id: int
    match: MatchInfo
    base_name: str
    group_id: Optional[str] = None
    available_sizes: list[str] = field(default_factory=list)
    size_data: dict[str, SizeOffer] = field(default_factory=dict)
    product_ids: list[int] = field(default_factory=list)

    @property
    def notification_type(self) -> str:
        return self.match.notification_type


def should_replace(
    current: RawObservation,
    new: RawObservation,
    current_size: Optional[str],
    new_size: Optional[str],
) -> bool:
    if new.organic and not current.organic:
        return True
    if current.organic and not new.organic:
        return False
    return new_size == "1kg" and current_size == "250g"


def group_key(
    observation: RawObservation, group_id: Optional[str], match: MatchInfo
) -> GroupKey:
    if group_id:
        return group_id
    return (observation.roastery_name, base_product_name(observation.name), match.label)


class VariantAggregator:
    """Collapses size variants seen in one check into one candidate per coffee."""

    def __init__(self) -> None:
        self._candidates: dict[GroupKey, NotificationCandidate] = {}

    def __len__(self) -> int:
        return len(self._candidates)

    def add(
        self,
        observation: RawObservation,
        product_id: int,
        match: MatchInfo,
        group_id: Optional[str] = None,
    ) -> NotificationCandidate:
        key = group_key(observation, group_id, match)
        size = extract_size(observation.name)
        candidate = self._candidates.get(key)
        if candidate is None:
            candidate = NotificationCandidate(
                product=observation,
                product_id=product_id,
                match=match,
                base_name=base_product_name(observation.name),
                group_id=group_id,
            )
            self._candidates[key] = candidate
        elif should_replace(
            candidate.product, observation, extract_size(candidate.product.name), size
        ):
            candidate.product = observation
            candidate.product_id = product_id
            candidate.match = match

        if product_id not in candidate.product_ids:
            candidate.product_ids.append(product_id)
        if size:
            if size not in candidate.available_sizes:
                candidate.available_sizes = sort_sizes(candidate.available_sizes + [size])
            candidate.size_data[size] = SizeOffer(
                price=observation.price, observation=observation, product_id=product_id
            )
        return candidate

    def candidates(self) -> list[NotificationCandidate]:
        return list(self._candidates.values())
