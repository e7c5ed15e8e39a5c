from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx

from .config import Settings
from .models import RawObservation, RoasterySource
from .text_utils import looks_organic, sanitize_html_to_text
from .url_utils import build_url_with_params, product_page_url

USER_AGENT = "CoffeeMonitor/1.0 (+availability monitor; polite crawler)"
DESCRIPTION_MAX_CHARS = 2000
DEFAULT_VARIANT_TITLE = "default title"
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
MAX_RETRIES = 2


@dataclass(frozen=True)
class ScrapeResult:
    observations: list[RawObservation] = field(default_factory=list)
    # False when a cap stopped the crawl, so absence proves nothing.
    complete: bool = True


def _page_size(params: Mapping[str, str]) -> int:
    try:
        return max(0, int(params.get("limit") or 0))
    except ValueError:
        return 0


def _listed_count(data: Any) -> int:
    products = data.get("products") if isinstance(data, dict) else None
    return len(products) if isinstance(products, list) else 0


def backoff_delay(
    attempt: int, settings: Settings, multiplier: float, retry_after: Optional[str] = None
) -> float:
    """Seconds to wait before retry ``attempt``; a numeric Retry-After wins."""
    floor = settings.jitter_min_s * multiplier
    if retry_after:
        try:
            return max(float(retry_after), floor)
        except ValueError:
            pass
    base = max(0.5, floor)
    return min(max(base, settings.jitter_max_s * multiplier * 3), base * 2**attempt)


def request_headers(roastery: RoasterySource, logger: logging.Logger) -> dict[str, str]:
    headers = {"User-Agent": USER_AGENT}
    for key, value in roastery.products_headers.items():
        if key.lower() == "user-agent":
            logger.warning("Ignoring custom User-Agent for %s", roastery.name)
        else:
            headers[key] = value
    return headers


def _parse_price(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return None


def _tag_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return []


def product_matches_filters(item: dict[str, Any], roastery: RoasterySource) -> bool:
    product_type = str(item.get("product_type") or "").strip().lower()
    title = str(item.get("title") or "").strip().lower()
    include_types = {value.lower() for value in roastery.include_product_types}
    exclude_types = {value.lower() for value in roastery.exclude_product_types}
    if include_types and product_type not in include_types:
        return False
    if exclude_types and product_type in exclude_types:
        return False
    return not any(
        keyword.lower() in title for keyword in roastery.exclude_title_keywords if keyword
    )


def variant_name(title: str, variant_title: str) -> str:
    if not variant_title or variant_title.strip().lower() == DEFAULT_VARIANT_TITLE:
        return title
    return f"{title} {variant_title.strip()}"


def parse_products_json(
    data: Any,
    roastery: RoasterySource,
    source_url: str,
    max_count: int,
) -> list[RawObservation]:
    """Turn a Shopify-style ``products.json`` payload into observations.

    Each purchasable variant becomes its own observation.
    """
    items = data.get("products") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    observations: list[RawObservation] = []
    for item in items:
        if not isinstance(item, dict) or not product_matches_filters(item, roastery):
            continue
        title = str(item.get("title") or "").strip()
        if not title:
            continue
        handle = str(item.get("handle") or "").strip()
        tags = _tag_list(item.get("tags"))
        description = sanitize_html_to_text(
            str(item.get("body_html") or ""), DESCRIPTION_MAX_CHARS
        )
        category = roastery.category or str(item.get("product_type") or "").strip()
        variants = [v for v in item.get("variants") or [] if isinstance(v, dict)]
        if not variants:
            variants = [{"title": "", "available": item.get("available", False)}]
        for variant in variants:
            name = variant_name(title, str(variant.get("title") or ""))
            variant_id = str(variant.get("id") or "") if len(variants) > 1 else ""
            observations.append(
                RawObservation(
                    name=name,
                    url=product_page_url(roastery.base_url, handle, variant_id),
                    price=_parse_price(variant.get("price")),
                    available=bool(variant.get("available", False)),
                    roastery_name=roastery.name,
                    description=description,
                    organic=roastery.organic or looks_organic(name, *tags),
                    source_url=source_url,
                    category=category,
                )
            )
            if len(observations) >= max_count:
                return observations
    return observations


class ScrapeSession:
    """HTTP client and robots.txt cache shared by one check cycle."""

    def __init__(
        self,
        settings: Settings,
        logger: logging.Logger,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._logger = logger
        self._client = client
        self._owns_client = client is None
        self._robots: dict[str, RobotFileParser] = {}

    async def __aenter__(self) -> "ScrapeSession":
        if self._client is None:
            self._client = httpx.AsyncClient(
                http2=True,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=httpx.Timeout(self._settings.http_timeout_s),
            )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._robots.clear()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("ScrapeSession used outside its context")
        return self._client

    async def _pause(self, multiplier: float) -> None:
        low = self._settings.jitter_min_s * multiplier
        high = self._settings.jitter_max_s * multiplier
        if high > 0:
            await asyncio.sleep(random.uniform(min(low, high), max(low, high)))

    async def _get(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        multiplier: float = 1.0,
    ) -> Optional[httpx.Response]:
        """GET ``url`` politely, retrying transport errors and 429/5xx responses.

        Returns the last response (possibly an error status), or ``None`` when
        every attempt failed at the transport level.
        """
        response: Optional[httpx.Response] = None
        for attempt in range(MAX_RETRIES + 1):
            await self._pause(multiplier)
            try:
                response = await self.client.get(url, headers=headers)
            except httpx.RequestError as exc:
                self._logger.warning("HTTP request failed for %s: %s", url, exc)
                response = None
            else:
                self._logger.debug("HTTP %s %s", response.status_code, url)
                if response.status_code not in RETRY_STATUSES:
                    return response
            if attempt == MAX_RETRIES:
                break
            retry_after = response.headers.get("retry-after") if response is not None else None
            delay = random.uniform(
                0, backoff_delay(attempt, self._settings, multiplier, retry_after)
            )
            self._logger.warning(
                "Retrying %s in %.2fs (status %s)",
                url,
                delay,
                response.status_code if response is not None else "n/a",
            )
            await asyncio.sleep(delay)
        return response

    async def robots_allows(self, url: str, multiplier: float = 1.0) -> bool:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            return False
        origin = f"{parts.scheme}://{parts.netloc}"
        rules = self._robots.get(origin)
        if rules is None:
            rules = RobotFileParser()
            response = await self._get(f"{origin}/robots.txt", multiplier=multiplier)
            if response is not None and response.status_code < 400:
                rules.parse(response.text.splitlines())
            else:
                self._logger.info("No robots.txt for %s; assuming allowed", origin)
                rules.parse([])
            self._robots[origin] = rules
        return rules.can_fetch(USER_AGENT, url)

    async def _fetch_page(
        self, roastery: RoasterySource, url: str, headers: Mapping[str, str]
    ) -> Optional[Any]:
        if not await self.robots_allows(url, roastery.jitter_multiplier):
            self._logger.warning("Robots.txt disallows %s for %s", url, roastery.name)
            return None
        response = await self._get(url, headers, roastery.jitter_multiplier)
        if response is None or response.status_code >= 400:
            self._logger.error(
                "Could not fetch %s for %s (status %s)",
                url,
                roastery.name,
                response.status_code if response is not None else "n/a",
            )
            return None
        try:
            return json.loads(response.text)
        except json.JSONDecodeError as exc:
            self._logger.error(
                "Failed to parse products JSON for %s: %s", roastery.name, exc
            )
            return None

    async def scrape_roastery(self, roastery: RoasterySource) -> Optional[ScrapeResult]:
        """Fetch every listed variant of ``roastery``.

        Returns ``None`` when the roastery could not be read, so callers can
        tell a failed scrape from a roastery that lists nothing. The result is
        marked incomplete when the product cap or the page limit cut the
        listing short.
        """
        max_products = roastery.max_products or self._settings.max_products_per_roastery
        headers = request_headers(roastery, self._logger)
        paginated = roastery.max_pages > 1
        page_size = _page_size(roastery.products_params)
        observations: list[RawObservation] = []
        complete = False
        for page in range(1, max(1, roastery.max_pages) + 1):
            params = dict(roastery.products_params)
            if paginated:
                params[roastery.page_param] = str(page)
            url = build_url_with_params(roastery.base_url, roastery.products_path, params)
            data = await self._fetch_page(roastery, url, headers)
            if data is None:
                return None
            listed = _listed_count(data)
            observations.extend(
                parse_products_json(data, roastery, url, max_products - len(observations))
            )
            if len(observations) >= max_products:
                self._logger.info(
                    "Product cap %d reached at %s; listing may be truncated",
                    max_products,
                    roastery.name,
                )
                break
            if not paginated or listed == 0 or (page_size and listed < page_size):
                complete = True
                break
        else:
            self._logger.info(
                "Page limit %d reached at %s; listing may be truncated",
                roastery.max_pages,
                roastery.name,
            )
        self._logger.info(
            "Found %d product variants at %s", len(observations), roastery.name
        )
        return ScrapeResult(observations, complete)
