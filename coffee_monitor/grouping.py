from __future__ import annotations

import hashlib
from typing import Optional

from .models import CoffeeTags, Product
from .sizes import base_product_name

GROUP_ID_LENGTH = 16


def product_group_id(tags: Optional[CoffeeTags], roastery_name: str) -> Optional[str]:
    """Content-derived identity shared by every size variant of one coffee.

    Products whose tags agree on roastery, origin, region, variety, process,
    roast and decaf flag are the same coffee, even if they were listed as
    separate products. Untagged products (or products whose tagging produced
    nothing) get no group id and are never merged.
    """
    if tags is None or not tags.has_identity:
        return None
    parts = [
        roastery_name or "",
        tags.country_of_origin or "unknown",
        tags.region or "",
        tags.variety or "",
        tags.process_method or "",
        tags.roast_level or "",
        "decaf" if tags.is_decaf else "",
    ]
    payload = ":".join(part for part in parts if part).lower()
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:GROUP_ID_LENGTH]


def is_same_product_group(first: Product, second: Product) -> bool:
    if first.product_group_id and second.product_group_id:
        return first.product_group_id == second.product_group_id
    if first.product_group_id or second.product_group_id:
        return False
    return base_product_name(first.name) == base_product_name(second.name)
