import re

from coffee_monitor.grouping import is_same_product_group, product_group_id
from coffee_monitor.models import CoffeeTags, Product


def make_tags(**overrides):
    values = {
        "country_of_origin": "Ethiopia",
        "region": "Guji",
        "variety": "Heirloom",
        "process_method": "Washed",
        "roast_level": "Light",
        "tagged_at": "2024-05-01T09:00:00+00:00",
    }
    values.update(overrides)
    return CoffeeTags(**values)


def test_group_id_is_deterministic_and_short_hex():
    first = product_group_id(make_tags(), "Tim Wendelboe")
    second = product_group_id(make_tags(), "Tim Wendelboe")
    assert first == second
    assert re.fullmatch(r"[0-9a-f]{16}", first)


def test_group_id_ignores_case():
    upper = make_tags(country_of_origin="ETHIOPIA", region="GUJI")
    assert product_group_id(upper, "TIM WENDELBOE") == product_group_id(
        make_tags(), "Tim Wendelboe"
    )


def test_group_id_changes_with_any_attribute():
    base = product_group_id(make_tags(), "Tim Wendelboe")
    variants = [
        make_tags(region="Sidamo"),
        make_tags(variety="74110"),
        make_tags(process_method="Natural"),
        make_tags(roast_level="Medium"),
        make_tags(is_decaf=True),
        make_tags(country_of_origin="Kenya"),
    ]
    for tags in variants:
        assert product_group_id(tags, "Tim Wendelboe") != base
    assert product_group_id(make_tags(), "Kaffebrenneriet") != base


def test_group_id_is_none_without_identity():
    assert product_group_id(None, "Tim Wendelboe") is None
    assert product_group_id(CoffeeTags.empty(), "Tim Wendelboe") is None
    assert product_group_id(CoffeeTags(flavor_notes=["citrus"]), "Tim Wendelboe") is None


def test_is_same_product_group():
    a = Product(id=1, name="Guji 250g", roastery_name="R", product_group_id="abc")
    b = Product(id=2, name="Something else 1kg", roastery_name="R", product_group_id="abc")
    c = Product(id=3, name="Guji 1kg", roastery_name="R", product_group_id="def")
    assert is_same_product_group(a, b)
    assert not is_same_product_group(a, c)


def test_is_same_product_group_falls_back_to_base_name():
    a = Product(id=1, name="Guji, 250g", roastery_name="R")
    b = Product(id=2, name="Guji 1kg", roastery_name="R")
    c = Product(id=3, name="Guji 1kg", roastery_name="R", product_group_id="abc")
    assert is_same_product_group(a, b)
    assert not is_same_product_group(a, c)
