from __future__ import annotations

import re
from typing import Optional

COUNTRY_TO_CONTINENT = {
    # Africa
    "ethiopia": "africa",
    "kenya": "africa",
    "rwanda": "africa",
    "burundi": "africa",
    "uganda": "africa",
    "tanzania": "africa",
    "malawi": "africa",
    "zambia": "africa",
    "democratic republic of the congo": "africa",
    "congo": "africa",
    "ivory coast": "africa",
    "côte d'ivoire": "africa",
    # Central and South America
    "colombia": "south_america",
    "brazil": "south_america",
    "brasil": "south_america",
    "peru": "south_america",
    "ecuador": "south_america",
    "bolivia": "south_america",
    "guatemala": "central_america",
    "honduras": "central_america",
    "el salvador": "central_america",
    "nicaragua": "central_america",
    "panama": "central_america",
    "costa_rica": "central_america",
    "costa rica": "central_america",
    "mexico": "central_america",
    # Asia and Oceania
    "india": "asia",
    "indonesia": "asia",
    "sumatra": "asia",
    "java": "asia",
    "yemen": "asia",
    "china": "asia",
    "vietnam": "asia",
    "papua new guinea": "oceania",
    # Caribbean
    "jamaica": "caribbean",
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_country(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    value = str(raw).strip().lower()
    return value or None


def continent_for_country(raw: Optional[str]) -> Optional[str]:
    key = normalize_country(raw)
    if not key:
        return None
    direct = COUNTRY_TO_CONTINENT.get(key)
    if direct:
        return direct
    return COUNTRY_TO_CONTINENT.get(_WHITESPACE_RE.sub("_", key))
