from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .favorites import matched_terms
from .models import AvailabilityRecord, CoffeeTags, Favorite, Product
from .store import CoffeeStore

REPORT_PRODUCT_LIMIT = 20


@dataclass(frozen=True)
class AvailabilityTrends:
    total_checks: int = 0
    available_checks: int = 0
    availability_rate: float = 0.0
    available_streaks: tuple[int, ...] = ()
    unavailable_streaks: tuple[int, ...] = ()

    @property
    def average_in_stock(self) -> float:
        return _average(self.available_streaks)

    @property
    def average_out_of_stock(self) -> float:
        return _average(self.unavailable_streaks)

    @property
    def longest_available(self) -> int:
        return max(self.available_streaks, default=0)

    @property
    def longest_unavailable(self) -> int:
        return max(self.unavailable_streaks, default=0)


@dataclass(frozen=True)
class PriceSummary:
    current: float
    minimum: float
    maximum: float
    average: float


@dataclass(frozen=True)
class FavoriteHit:
    product: Product
    favorite: Favorite
    terms: tuple[str, ...]


@dataclass
class Report:
    total_available: int
    total_favorites: int
    products: list[Product] = field(default_factory=list)
    favorites: list[FavoriteHit] = field(default_factory=list)


def _average(values: Sequence[int]) -> float:
    return sum(values) / len(values) if values else 0.0


def _chronological(history: Sequence[AvailabilityRecord]) -> list[AvailabilityRecord]:
    return sorted(history, key=lambda record: (record.checked_at, record.id))


def availability_trends(history: Sequence[AvailabilityRecord]) -> AvailabilityTrends:
    """Summarise a product's history as availability rate and stock streaks.

    Streak lengths are counted in checks, not time.
    """
    if not history:
        return AvailabilityTrends()
    records = _chronological(history)
    available_checks = sum(1 for record in records if record.available)
    streaks: dict[bool, list[int]] = {True: [], False: []}
    state = records[0].available
    length = 1
    for record in records[1:]:
        if record.available == state:
            length += 1
            continue
        streaks[state].append(length)
        state = record.available
        length = 1
    streaks[state].append(length)
    return AvailabilityTrends(
        total_checks=len(records),
        available_checks=available_checks,
        availability_rate=available_checks * 100 / len(records),
        available_streaks=tuple(streaks[True]),
        unavailable_streaks=tuple(streaks[False]),
    )


def price_summary(history: Sequence[AvailabilityRecord]) -> Optional[PriceSummary]:
    priced = [record for record in _chronological(history) if record.price is not None]
    if not priced:
        return None
    prices = [float(record.price) for record in priced]  # type: ignore[arg-type]
    return PriceSummary(
        current=prices[-1],
        minimum=min(prices),
        maximum=max(prices),
        average=sum(prices) / len(prices),
    )


def build_report(
    store: CoffeeStore, favorites: Sequence[Favorite], limit: int = REPORT_PRODUCT_LIMIT
) -> Report:
    available = store.available_products()
    hits: list[FavoriteHit] = []
    for product in available:
        for favorite in favorites:
            terms = matched_terms(favorite, product.name)
            if terms:
                hits.append(FavoriteHit(product, favorite, terms))
                break
    return Report(
        total_available=len(available),
        total_favorites=len(favorites),
        products=available[:limit],
        favorites=hits,
    )


def _price(product: Product) -> str:
    price = product.current_price if product.current_price is not None else product.price
    return f"{price:g} kr" if price is not None else "no price"


def render_report(report: Report) -> str:
    lines = [
        "Coffee availability report",
        f"Available products: {report.total_available}",
        f"Favorites: {report.total_favorites}",
        f"Favorites available: {len(report.favorites)}",
        "",
    ]
    if report.favorites:
        lines.append("Favorites available now:")
        for hit in report.favorites:
            lines.append(
                f"  * {hit.product.name} ({hit.product.roastery_name}) - {_price(hit.product)}"
                f" [{hit.favorite.name}: {', '.join(hit.terms)}]"
            )
        lines.append("")
    if report.products:
        shown = len(report.products)
        lines.append(f"Available products (showing {shown} of {report.total_available}):")
        for product in report.products:
            lines.append(
                f"  - {product.name} ({product.roastery_name}) - {_price(product)}"
            )
    else:
        lines.append("No products currently available.")
    return "\n".join(lines)


def render_status(status: dict[str, Any]) -> str:
    last_run = status.get("last_run") or {}
    stats = status.get("stats") or {}
    lines = [
        "Coffee monitor status",
        f"Schedule: {status['scheduled_pattern']} ({status['timezone']})",
        f"Matching: {status['matching']}",
        f"AI tagging: {status['tagging']}",
        f"Channels: {', '.join(status['channels']) or 'none'}",
        f"Favorites: {status['total_favorites']}",
        f"Available products: {status['available_products']}",
        f"Products tracked: {stats.get('total_products', 0)}"
        f" ({stats.get('tagged_products', 0)} tagged,"
        f" {stats.get('product_groups', 0)} groups)",
    ]
    if last_run:
        lines.append(
            f"Last check: {last_run.get('started_at')} [{last_run.get('status')}]"
            f" checked={last_run.get('products_checked', 0)}"
            f" new={last_run.get('new_products', 0)}"
            f" notifications={last_run.get('notifications_sent', 0)}"
            f" errors={last_run.get('errors', 0)}"
        )
    else:
        lines.append("Last check: never")
    recent = status.get("recent_notifications") or []
    if recent:
        lines.append("Recent notifications:")
        for record in recent:
            lines.append(
                f"  {record.sent_at}  {record.notification_type}  product {record.product_id}"
            )
    return "\n".join(lines)


def render_favorites(favorites: Sequence[Favorite]) -> str:
    if not favorites:
        return "No favorites configured."
    lines = ["Favorites:"]
    for favorite in favorites:
        flags = []
        if favorite.size_preference:
            flags.append(f"size={favorite.size_preference}")
        if favorite.organic_only:
            flags.append("organic only")
        if not favorite.notification_enabled:
            flags.append("muted")
        suffix = f" ({', '.join(flags)})" if flags else ""
        lines.append(f"  * {favorite.name}{suffix}: {', '.join(favorite.terms)}")
        if favorite.description:
            lines.append(f"      {favorite.description}")
    return "\n".join(lines)


def render_tags(tags: CoffeeTags) -> str:
    origin = tags.country_of_origin or "Unknown"
    if tags.region:
        origin = f"{origin} ({tags.region})"
    lines = [
        f"Origin: {origin}",
        f"Process: {tags.process_method or 'Unknown'}",
        f"Roast: {tags.roast_level or 'Unknown'}",
        f"Variety: {tags.variety or 'Unknown'}",
        f"Organic: {'Yes' if tags.is_organic else 'No'}",
        f"Fair Trade: {'Yes' if tags.is_fair_trade else 'No'}",
        f"Decaf: {'Yes' if tags.is_decaf else 'No'}",
    ]
    if tags.flavor_notes:
        lines.append(f"Flavor notes: {', '.join(tags.flavor_notes)}")
    if tags.certifications:
        lines.append(f"Certifications: {', '.join(tags.certifications)}")
    lines.append(f"Confidence: {tags.confidence:g}%")
    return "\n".join(lines)


def render_history(
    product: Product, history: Sequence[AvailabilityRecord], days: int
) -> str:
    trends = availability_trends(history)
    lines = [f"{product.name} ({product.roastery_name}), last {days} days"]
    if not trends.total_checks:
        lines.append("No availability records.")
        return "\n".join(lines)
    lines.extend(
        [
            f"Checks: {trends.total_checks}, available {trends.available_checks}"
            f" ({trends.availability_rate:.1f}%)",
            f"Average in stock: {trends.average_in_stock:.1f} checks,"
            f" longest {trends.longest_available}",
            f"Average out of stock: {trends.average_out_of_stock:.1f} checks,"
            f" longest {trends.longest_unavailable}",
        ]
    )
    prices = price_summary(history)
    if prices:
        lines.append(
            f"Price: now {prices.current:g}, min {prices.minimum:g},"
            f" max {prices.maximum:g}, avg {prices.average:.2f}"
        )
    lines.append("")
    for record in _chronological(history)[::-1][:REPORT_PRODUCT_LIMIT]:
        state = "available" if record.available else "unavailable"
        price = f" {record.price:g}" if record.price is not None else ""
        lines.append(f"  {record.checked_at}  {state}{price}")
    return "\n".join(lines)
