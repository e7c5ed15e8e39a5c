from __future__ import annotations

import functools
import re
from typing import Iterable, Optional

SIZE_PATTERNS = (
    (re.compile(r"(\d+)\s*g\b", re.IGNORECASE), 1),
    (re.compile(r"(\d+)\s*kg\b", re.IGNORECASE), 1000),
    (re.compile(r"(\d+)\s*gram\b", re.IGNORECASE), 1),
)

# Trailing or comma-delimited size clauses, applied in order.
BASE_NAME_PATTERNS = (
    re.compile(r"\s*,\s*\d+kg.*$", re.IGNORECASE),
    re.compile(r"\s*,\s*\d+g.*$", re.IGNORECASE),
    re.compile(r"\s+\d+kg\s+.*$", re.IGNORECASE),
    re.compile(r"\s+\d+g\s+.*$", re.IGNORECASE),
    re.compile(r"\s*\d+kg$", re.IGNORECASE),
    re.compile(r"\s*\d+g$", re.IGNORECASE),
)

SIZE_TOKEN_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(kg|g)\b")

SIZE_ORDER = ("250g", "1kg")


def format_grams(grams: int) -> str:
    if grams >= 1000:
        return f"{grams / 1000:g}kg"
    return f"{grams}g"


def extract_size(name: str) -> Optional[str]:
    """Return a normalized size token ("250g", "1kg", "1.5kg") found in a product name."""
    if not name:
        return None
    for pattern, multiplier in SIZE_PATTERNS:
        match = pattern.search(name)
        if match:
            return format_grams(int(match.group(1)) * multiplier)
    return None


def base_product_name(name: str) -> str:
    base = name or ""
    for pattern in BASE_NAME_PATTERNS:
        base = pattern.sub("", base)
    return base.strip()


def size_to_grams(size: Optional[str]) -> Optional[int]:
    if not size:
        return None
    match = SIZE_TOKEN_RE.search(str(size).strip().lower())
    if not match:
        return None
    amount = float(match.group(1))
    if match.group(2) == "kg":
        amount *= 1000
    return int(round(amount))


def compare_sizes(a: str, b: str) -> int:
    if a == SIZE_ORDER[0] and b == SIZE_ORDER[1]:
        return -1
    if a == SIZE_ORDER[1] and b == SIZE_ORDER[0]:
        return 1
    return 0


def sort_sizes(sizes: Iterable[str]) -> list[str]:
    return sorted(sizes, key=functools.cmp_to_key(compare_sizes))
