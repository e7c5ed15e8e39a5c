from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field, confloat


@dataclass(frozen=True)
class RoasterySource:
    name: str
    base_url: str
    products_path: str = "/products.json"
    enabled: bool = True
    jitter_multiplier: float = 1.0
    products_headers: dict[str, str] = field(default_factory=dict)
    products_params: dict[str, str] = field(default_factory=dict)
    max_pages: int = 1
    page_param: str = "page"
    max_products: Optional[int] = None
    include_product_types: tuple[str, ...] = ()
    exclude_product_types: tuple[str, ...] = ()
    exclude_title_keywords: tuple[str, ...] = ()
    # Applies to every product listed by this roastery.
    organic: bool = False
    category: str = ""


@dataclass(frozen=True)
class RawObservation:
    """One sighting of one listing during a check."""

    name: str
    url: str
    price: Optional[float]
    available: bool
    roastery_name: str
    description: str = ""
    organic: bool = False
    source_url: str = ""
    category: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.roastery_name)


class CoffeeTags(BaseModel):
    country_of_origin: Optional[str] = None
    region: Optional[str] = None
    process_method: Optional[str] = None
    roast_level: Optional[str] = None
    variety: Optional[str] = None
    is_organic: bool = False
    is_fair_trade: bool = False
    is_decaf: bool = False
    flavor_notes: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    confidence: confloat(ge=0, le=100) = 0
    tagged_at: Optional[str] = None

    @staticmethod
    def empty() -> "CoffeeTags":
        return CoffeeTags()

    @property
    def has_identity(self) -> bool:
        return bool(
            self.country_of_origin
            or self.region
            or self.variety
            or self.process_method
            or self.roast_level
            or self.is_decaf
        )


class TagsBatchResult(BaseModel):
    products: list[dict[str, Any]] = Field(default_factory=list)


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    roastery_name: str
    url: str = ""
    price: Optional[float] = None
    description: str = ""
    organic: bool = False
    tags: Optional[CoffeeTags] = None
    size_extracted: Optional[str] = None
    size_grams: Optional[int] = None
    product_group_id: Optional[str] = None
    first_seen_at: str = ""
    updated_at: str = ""
    current_price: Optional[float] = None
    available: Optional[bool] = None
    checked_at: str = ""


@dataclass(frozen=True)
class AvailabilityRecord:
    id: int
    product_id: int
    available: bool
    price: Optional[float]
    checked_at: str


@dataclass(frozen=True)
class Favorite:
    id: int
    name: str
    terms: tuple[str, ...]
    description: str = ""
    size_preference: Optional[str] = None
    organic_only: bool = False
    notification_enabled: bool = True


@dataclass(frozen=True)
class NotificationRecord:
    product_id: int
    notification_type: str
    sent_at: str


@dataclass(frozen=True)
class EnrichedObservation:
    observation: RawObservation
    tags: Optional[CoffeeTags] = None
