import itertools

import pytest

from coffee_monitor.aggregator import (
    FAVORITE_AVAILABLE,
    MatchInfo,
    VariantAggregator,
    should_replace,
)

MATCH = MatchInfo(notification_type=FAVORITE_AVAILABLE, label="Ethiopia", matched_terms=("ethiopia",))


@pytest.mark.parametrize("order", list(itertools.permutations([0, 1])))
def test_union_and_organic_representative_regardless_of_order(observe, order):
    offers = [
        (observe("Ethiopia Guji 250g", price=100.0, organic=False), 1),
        (observe("Ethiopia Guji 1kg", price=300.0, organic=True), 2),
    ]
    aggregator = VariantAggregator()
    for index in order:
        observation, product_id = offers[index]
        aggregator.add(observation, product_id, MATCH, group_id="group-1")

    [candidate] = aggregator.candidates()
    assert candidate.product.organic
    assert candidate.product_id == 2
    assert candidate.available_sizes == ["250g", "1kg"]
    assert candidate.size_data["250g"].price == 100.0
    assert candidate.size_data["1kg"].price == 300.0
    assert sorted(candidate.product_ids) == [1, 2]
    assert candidate.group_id == "group-1"


def test_without_group_id_variants_collapse_by_base_name(observe):
    aggregator = VariantAggregator()
    aggregator.add(observe("Kenya Nyeri 250g"), 1, MATCH)
    aggregator.add(observe("Kenya Nyeri 1kg"), 2, MATCH)
    aggregator.add(observe("Kenya Nyeri 250g", roastery="Other"), 3, MATCH)

    candidates = aggregator.candidates()
    assert len(candidates) == 2
    assert candidates[0].base_name == "Kenya Nyeri"
    assert candidates[0].available_sizes == ["250g", "1kg"]
    assert candidates[1].product.roastery_name == "Other"


def test_group_id_merges_differently_named_listings(observe):
    aggregator = VariantAggregator()
    aggregator.add(observe("Guji Hambela 250g"), 1, MATCH, group_id="same")
    aggregator.add(observe("Hambela Washed 1kg"), 2, MATCH, group_id="same")
    assert len(aggregator) == 1


def test_should_replace_rules(observe):
    plain = observe("A 250g")
    organic = observe("A 250g", organic=True)
    assert should_replace(plain, organic, "250g", "250g")
    assert not should_replace(organic, plain, "250g", "1kg")
    assert should_replace(plain, observe("A 1kg"), "250g", "1kg")
    assert not should_replace(observe("A 1kg"), plain, "1kg", "250g")
    assert not should_replace(plain, observe("A 250g"), "250g", "250g")


def test_first_seen_wins_ties(observe):
    aggregator = VariantAggregator()
    first = observe("Kenya Nyeri 250g", price=150.0)
    aggregator.add(first, 1, MATCH)
    aggregator.add(observe("Kenya Nyeri 250g", price=140.0), 2, MATCH)
    [candidate] = aggregator.candidates()
    assert candidate.product is first
    assert candidate.size_data["250g"].price == 140.0
