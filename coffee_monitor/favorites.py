from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import Favorite, RawObservation
from .sizes import extract_size

SIZE_PREFERENCES = ("250g", "1kg", "both")


@dataclass(frozen=True)
class FavoriteMatch:
    favorite: Favorite
    matched_terms: tuple[str, ...]


def matched_terms(favorite: Favorite, name: str) -> tuple[str, ...]:
    lowered = name.lower()
    return tuple(term for term in favorite.terms if term and term.lower() in lowered)


def meets_preferences(favorite: Favorite, observation: RawObservation) -> bool:
    if favorite.organic_only and not observation.organic:
        return False
    if favorite.size_preference and favorite.size_preference != "both":
        size = extract_size(observation.name)
        if size and size != favorite.size_preference:
            return False
    return True


def match_favorite(
    observation: RawObservation,
    favorites: Iterable[Favorite],
    logger: Optional[logging.Logger] = None,
) -> Optional[FavoriteMatch]:
    """Return the first favorite whose terms appear in the product name.

    Only the first matching favorite is considered; a product that matches it
    but fails its organic or size preference is not offered to later favorites.
    """
    for favorite in favorites:
        terms = matched_terms(favorite, observation.name)
        if not terms:
            continue
        if not meets_preferences(favorite, observation):
            if logger:
                logger.debug(
                    "Product %s matches favorite %s but not its preferences",
                    observation.name,
                    favorite.name,
                )
            return None
        return FavoriteMatch(favorite=favorite, matched_terms=terms)
    return None


def parse_terms(raw: Optional[str], fallback: str) -> list[str]:
    if not raw:
        return [fallback.strip()]
    terms = [term.strip() for term in raw.split(",")]
    return [term for term in terms if term] or [fallback.strip()]
