from __future__ import annotations

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .aggregator import (
    FAVORITE_AVAILABLE,
    PREFERENCE_MATCH,
    MatchInfo,
    NotificationCandidate,
    VariantAggregator,
)
from .availability import Transition, TransitionPolicy, classify_transition
from .favorites import match_favorite
from .gate import NotificationGate
from .grouping import product_group_id
from .models import EnrichedObservation, Favorite, Product, RawObservation
from .preferences import PreferenceConfig, normalize_product_attributes, score_product
from .sizes import extract_size, size_to_grams
from .store import CoffeeStore, utc_now


@dataclass(frozen=True)
class ProcessedProduct:
    observation: RawObservation
    product_id: int
    transition: Transition


@dataclass
class CheckResults:
    new_products: list[ProcessedProduct] = field(default_factory=list)
    newly_available: list[ProcessedProduct] = field(default_factory=list)
    newly_unavailable: list[ProcessedProduct] = field(default_factory=list)
    candidates: list[NotificationCandidate] = field(default_factory=list)
    total_checked: int = 0
    errors: int = 0

    def counts(self) -> dict[str, int]:
        return {
            "products_checked": self.total_checked,
            "new_products": len(self.new_products),
            "newly_available": len(self.newly_available),
            "newly_unavailable": len(self.newly_unavailable),
            "errors": self.errors,
        }


def observation_from_product(product: Product, available: bool) -> RawObservation:
    return RawObservation(
        name=product.name,
        url=product.url,
        price=product.current_price if product.current_price is not None else product.price,
        available=available,
        roastery_name=product.roastery_name,
        description=product.description,
        organic=product.organic,
    )


class ProductProcessor:
    """Turns one cycle's observations into history rows and notification candidates.

    Matching uses the preference model when it is enabled and favorite terms
    otherwise, never both in the same cycle.
    """

    def __init__(
        self,
        store: CoffeeStore,
        gate: NotificationGate,
        logger: logging.Logger,
        favorites: Sequence[Favorite] = (),
        preferences: Optional[PreferenceConfig] = None,
        policy: TransitionPolicy = TransitionPolicy(),
    ) -> None:
        self._store = store
        self._gate = gate
        self._logger = logger
        self._favorites = list(favorites)
        self._preferences = preferences
        self._policy = policy

    @property
    def uses_preferences(self) -> bool:
        return bool(self._preferences and self._preferences.enabled)

    def process(
        self,
        items: Sequence[EnrichedObservation],
        scraped_roasteries: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> CheckResults:
        checked_at = now or utc_now()
        results = CheckResults(total_checked=len(items))
        aggregator = VariantAggregator()
        for item in items:
            observation = item.observation
            try:
                self._process_one(item, checked_at, results, aggregator)
            except sqlite3.Error:
                raise
            except Exception as exc:
                results.errors += 1
                self._logger.error(
                    "Error processing product %s (%s): %s",
                    observation.name,
                    observation.roastery_name,
                    exc,
                )
        observed = {item.observation.key for item in items}
        for roastery_name in dict.fromkeys(scraped_roasteries):
            self._mark_missing(roastery_name, observed, checked_at, results)
        results.candidates = aggregator.candidates()
        return results

    def _process_one(
        self,
        item: EnrichedObservation,
        checked_at: datetime,
        results: CheckResults,
        aggregator: VariantAggregator,
    ) -> None:
        observation = item.observation
        size = extract_size(observation.name)
        product_id, _ = self._store.upsert_product(
            observation, size, size_to_grams(size), checked_at
        )
        if item.tags is not None and item.tags.tagged_at:
            self._store.save_tags(
                product_id,
                item.tags,
                product_group_id(item.tags, observation.roastery_name),
            )
        self._store.record_availability(
            product_id, observation.available, observation.price, checked_at
        )
        transition = classify_transition(
            self._store.last_availability_records(product_id, 2), self._policy
        )
        processed = ProcessedProduct(observation, product_id, transition)
        if transition.is_new:
            results.new_products.append(processed)
        if transition.is_newly_available:
            results.newly_available.append(processed)
        if transition.is_newly_unavailable:
            results.newly_unavailable.append(processed)

        if not observation.available:
            return
        product = self._store.get_product(product_id)
        if product is None:
            return
        match = self._match(observation, product)
        if match is None:
            return
        if self._gate.was_notified_recently(
            product_id, match.notification_type, now=checked_at
        ):
            self._logger.debug(
                "Skipping %s for %s; notified recently",
                match.notification_type,
                observation.name,
            )
            return
        aggregator.add(observation, product_id, match, product.product_group_id)

    def _match(self, observation: RawObservation, product: Product) -> Optional[MatchInfo]:
        if self.uses_preferences:
            attrs = normalize_product_attributes(
                dataclasses.replace(
                    product, current_price=observation.price, available=True
                )
            )
            result = score_product(attrs, self._preferences)
            if not result.accepted:
                self._logger.debug(
                    "Product %s rejected by preferences: %s",
                    observation.name,
                    ", ".join(result.reasons) or "no matching dimensions",
                )
                return None
            return MatchInfo(
                notification_type=PREFERENCE_MATCH,
                label="preferences",
                score=result.score,
                reasons=result.reasons,
            )
        favorite_match = match_favorite(observation, self._favorites, self._logger)
        if favorite_match is None:
            return None
        return MatchInfo(
            notification_type=FAVORITE_AVAILABLE,
            label=favorite_match.favorite.name,
            matched_terms=favorite_match.matched_terms,
        )

    def _mark_missing(
        self,
        roastery_name: str,
        observed: set[tuple[str, str]],
        checked_at: datetime,
        results: CheckResults,
    ) -> None:
        for product in self._store.latest_available_for_roastery(roastery_name):
            if (product.name, product.roastery_name) in observed:
                continue
            self._store.record_availability(
                product.id, False, product.current_price, checked_at
            )
            transition = classify_transition(
                self._store.last_availability_records(product.id, 2), self._policy
            )
            self._logger.info(
                "Product %s (%s) missing from listing; marked unavailable",
                product.name,
                roastery_name,
            )
            if transition.is_newly_unavailable:
                results.newly_unavailable.append(
                    ProcessedProduct(
                        observation_from_product(product, available=False),
                        product.id,
                        transition,
                    )
                )
