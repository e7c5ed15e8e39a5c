import pytest

from coffee_monitor.sizes import base_product_name, extract_size, size_to_grams, sort_sizes


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Ethiopia Guji 250g", "250g"),
        ("Ethiopia Guji 1kg", "1kg"),
        ("Ethiopia Guji 1000g", "1kg"),
        ("Ethiopia Guji 1500 g", "1.5kg"),
        ("Kenya Nyeri 500 gram", "500g"),
        ("Ethiopia Guji", None),
        ("", None),
    ],
)
def test_extract_size(name, expected):
    assert extract_size(name) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Ethiopia Guji, 250g", "Ethiopia Guji"),
        ("Ethiopia Guji, 1kg hele bønner", "Ethiopia Guji"),
        ("Kenya Nyeri 250g hele bønner", "Kenya Nyeri"),
        ("Kenya Nyeri 1kg", "Kenya Nyeri"),
        ("Brazil Cerrado", "Brazil Cerrado"),
    ],
)
def test_base_product_name_strips_size_clauses(name, expected):
    assert base_product_name(name) == expected


def test_size_to_grams():
    assert size_to_grams("250g") == 250
    assert size_to_grams("1kg") == 1000
    assert size_to_grams("1.5kg") == 1500
    assert size_to_grams("bag") is None
    assert size_to_grams(None) is None


def test_sort_sizes_puts_250g_before_1kg():
    assert sort_sizes(["1kg", "250g"]) == ["250g", "1kg"]
    assert sort_sizes(["250g", "1kg"]) == ["250g", "1kg"]
