from __future__ import annotations

from typing import Sequence

from .text_utils import sanitize_prompt_field

NAME_MAX_CHARS = 200
DESCRIPTION_MAX_CHARS = 1500

TAG_FIELDS_SCHEMA = """{
  "country_of_origin": "Country name or null",
  "region": "Specific region/area or null",
  "process_method": "One of: washed, natural, honey, anaerobic, experimental, or null",
  "roast_level": "One of: light, medium, dark, or null",
  "variety": "Coffee variety (e.g., Bourbon, Typica, Geisha) or null",
  "is_organic": true/false (true only if explicitly mentioned),
  "is_fair_trade": true/false (true only if explicitly mentioned),
  "is_decaf": true/false (true if decaffeinated/koffeinfri),
  "flavor_notes": ["note1", "note2"] (array of flavor descriptors),
  "certifications": ["cert1"] (e.g., Organic, Fair Trade, Rainforest Alliance),
  "confidence": 0-100 (your confidence in the extraction)
}"""


def format_product_entry(index: int, name: str, description: str) -> str:
    clean_name = sanitize_prompt_field(name, NAME_MAX_CHARS)
    clean_description = sanitize_prompt_field(description, DESCRIPTION_MAX_CHARS)
    return (
        f"{index}. Name: {clean_name}\n"
        f"   Description: {clean_description or 'N/A'}"
    )


def build_tagging_prompt(name: str, description: str) -> str:
    return (
        "Extract coffee attributes from this product:\n\n"
        f"Name: {sanitize_prompt_field(name, NAME_MAX_CHARS)}\n"
        "Description: "
        f"{sanitize_prompt_field(description, DESCRIPTION_MAX_CHARS) or 'N/A'}\n\n"
        "Return a JSON object with these fields:\n"
        f"{TAG_FIELDS_SCHEMA}\n\n"
        "Only extract information that is clearly stated. Use null for uncertain values."
    )


def build_batch_tagging_prompt(products: Sequence[tuple[str, str]]) -> str:
    entries = "\n\n".join(
        format_product_entry(index, name, description)
        for index, (name, description) in enumerate(products, start=1)
    )
    return (
        "Extract coffee attributes from these products:\n\n"
        f"{entries}\n\n"
        'Return a JSON object with a "products" array where each item has these fields:\n'
        f"{TAG_FIELDS_SCHEMA}\n\n"
        f"Return {len(products)} products in the same order. "
        "Only extract clearly stated information."
    )
