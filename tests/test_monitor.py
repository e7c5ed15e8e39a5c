import dataclasses
import logging
import sqlite3

import pytest

from coffee_monitor.models import CoffeeTags, RoasterySource
from coffee_monitor.monitor import CoffeeMonitor
from coffee_monitor.notifier import ChannelResult
from coffee_monitor.parsing import FavoriteSeed
from coffee_monitor.reporting import render_status
from coffee_monitor.scraper import ScrapeResult
from coffee_monitor.tagger import CoffeeTagger, TaggingQuotaExceeded

ROASTERIES = [
    RoasterySource(name="Kaffebrenneriet", base_url="https://kaffe.example"),
    RoasterySource(name="Other", base_url="https://other.example"),
]


class FakeSession:
    def __init__(self, listings):
        self.listings = listings
        self.scraped = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def scrape_roastery(self, roastery):
        self.scraped.append(roastery.name)
        result = self.listings.get(roastery.name, [])
        if isinstance(result, Exception):
            raise result
        if isinstance(result, list):
            return ScrapeResult(result)
        return result


class FakeNotifier:
    enabled_channels = ["telegram"]

    def __init__(self):
        self.candidates = []
        self.new_products = []
        self.errors = []

    async def notify_candidate(self, candidate):
        self.candidates.append(candidate)
        return [ChannelResult("telegram", True)]

    async def notify_new_products(self, observations):
        self.new_products.append(list(observations))
        return [ChannelResult("telegram", True)]

    async def notify_error(self, error, context):
        self.errors.append((error, context))
        return [ChannelResult("telegram", True)]


class FakeTagger:
    enabled = True

    def __init__(self, tags_by_name=None, quota_after=None):
        self.tags_by_name = tags_by_name or {}
        self.quota_after = quota_after
        self.calls = []

    async def tag_products(self, items):
        self.calls.append([item.name for item in items])
        pairs = [
            (item, self.tags_by_name.get(item.name, CoffeeTags.empty())) for item in items
        ]
        if self.quota_after is not None:
            raise TaggingQuotaExceeded("quota exceeded", pairs[: self.quota_after])
        return pairs


def make_monitor(settings, store, logger, listings, tagger=None, **kwargs):
    session = FakeSession(listings)
    notifier = FakeNotifier()
    monitor = CoffeeMonitor(
        settings,
        store,
        ROASTERIES,
        notifier,
        tagger or CoffeeTagger(None, logger),
        logger,
        session_factory=lambda: session,
        **kwargs,
    )
    return monitor, session, notifier


@pytest.mark.asyncio
async def test_check_notifies_favorites_once_per_cooldown(settings, store, logger, observe):
    store.add_favorite("Kenya", ["kenya"])
    listings = {"Kaffebrenneriet": [observe("Kenya Nyeri 250g"), observe("Kenya Nyeri 1kg")]}
    monitor, session, notifier = make_monitor(settings, store, logger, listings)

    results = await monitor.check()

    assert results is not None
    assert results.total_checked == 2
    [candidate] = notifier.candidates
    assert candidate.available_sizes == ["250g", "1kg"]
    assert len(notifier.new_products) == 1
    assert session.scraped == ["Kaffebrenneriet", "Other"]
    run = store.last_check_run()
    assert run["status"] == "completed"
    assert run["notifications_sent"] == 2
    assert store.stats()["notifications_sent"] == 2

    await monitor.check()
    assert len(notifier.candidates) == 1
    assert len(notifier.new_products) == 1
    assert not monitor.is_running
    assert monitor.last_check is not None


@pytest.mark.asyncio
async def test_large_new_product_batches_are_not_announced(settings, store, logger, observe):
    settings = dataclasses.replace(settings, max_new_products_notify=1)
    listings = {"Kaffebrenneriet": [observe("Guji"), observe("Nyeri")]}
    monitor, _, notifier = make_monitor(settings, store, logger, listings)
    results = await monitor.check()
    assert len(results.new_products) == 2
    assert notifier.new_products == []


@pytest.mark.asyncio
async def test_failed_roastery_is_counted_and_left_untouched(settings, store, logger, observe):
    listings = {"Kaffebrenneriet": [observe("Guji")], "Other": [observe("Huila", roastery="Other")]}
    monitor, session, _ = make_monitor(settings, store, logger, listings)
    await monitor.check()

    session.listings = {"Kaffebrenneriet": [observe("Guji")], "Other": None}
    results = await monitor.check()

    assert results.errors == 1
    assert results.newly_unavailable == []
    assert {p.name for p in store.available_products()} == {"Guji", "Huila"}
    assert store.last_check_run()["errors"] == 1


@pytest.mark.asyncio
async def test_empty_listing_does_not_mark_products_missing(settings, store, logger, observe):
    listings = {"Kaffebrenneriet": [observe("Guji")]}
    monitor, session, _ = make_monitor(settings, store, logger, listings)
    await monitor.check()

    session.listings = {"Kaffebrenneriet": []}
    results = await monitor.check()
    assert results.newly_unavailable == []


@pytest.mark.asyncio
async def test_truncated_listing_does_not_mark_unlisted_products_missing(
    settings, store, logger, observe
):
    listings = {"Kaffebrenneriet": [observe("Kenya Nyeri"), observe("Guji")]}
    monitor, session, _ = make_monitor(settings, store, logger, listings)
    await monitor.check()

    # a new arrival pushes Guji past the product cap
    session.listings = {
        "Kaffebrenneriet": ScrapeResult(
            [observe("Brazil Cerrado"), observe("Kenya Nyeri")], complete=False
        )
    }
    results = await monitor.check()

    assert results.newly_unavailable == []
    guji = store.find_product("Guji", "Kaffebrenneriet")
    assert store.last_availability_records(guji.id, 1)[0].available


@pytest.mark.asyncio
async def test_complete_listing_still_marks_unlisted_products_missing(
    settings, store, logger, observe
):
    listings = {"Kaffebrenneriet": [observe("Kenya Nyeri"), observe("Guji")]}
    monitor, session, _ = make_monitor(settings, store, logger, listings)
    await monitor.check()

    session.listings = {
        "Kaffebrenneriet": ScrapeResult([observe("Kenya Nyeri")], complete=True)
    }
    results = await monitor.check()

    assert [p.observation.name for p in results.newly_unavailable] == ["Guji"]


@pytest.mark.asyncio
async def test_check_run_bookkeeping_error_keeps_completed_results(
    settings, store, logger, observe, monkeypatch, caplog
):
    listings = {"Kaffebrenneriet": [observe("Guji")]}
    monitor, _, _ = make_monitor(settings, store, logger, listings)

    def broken_finish(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "finish_check_run", broken_finish)
    with caplog.at_level(logging.INFO):
        results = await monitor.check()

    assert results is not None
    assert results.total_checked == 1
    assert not monitor.is_running
    assert "Failed to record check run: database is locked" in caplog.text
    assert "Product check completed" in caplog.text


@pytest.mark.asyncio
async def test_hard_failure_sends_error_and_marks_run_failed(settings, store, logger):
    listings = {"Kaffebrenneriet": RuntimeError("connection pool exhausted")}
    monitor, _, notifier = make_monitor(settings, store, logger, listings)

    assert await monitor.check() is None

    [(error, context)] = notifier.errors
    assert str(error) == "connection pool exhausted"
    assert context == "Product check failed"
    assert store.last_check_run()["status"] == "failed"
    assert not monitor.is_running


@pytest.mark.asyncio
async def test_running_check_is_skipped(settings, store, logger, observe):
    monitor, session, _ = make_monitor(
        settings, store, logger, {"Kaffebrenneriet": [observe("Guji")]}
    )
    monitor.is_running = True
    assert await monitor.check() is None
    assert session.scraped == []
    assert store.last_check_run() is None


@pytest.mark.asyncio
async def test_only_untagged_products_are_sent_to_the_tagger(settings, store, logger, observe):
    tags = CoffeeTags(country_of_origin="Ethiopia", tagged_at="2024-05-01T09:00:00+00:00")
    tagger = FakeTagger({"Guji": tags})
    listings = {"Kaffebrenneriet": [observe("Guji"), observe("Nyeri")]}
    monitor, _, _ = make_monitor(settings, store, logger, listings, tagger=tagger)

    await monitor.check()
    await monitor.check()

    assert tagger.calls == [["Guji", "Nyeri"], ["Nyeri"]]
    guji = store.find_product("Guji", "Kaffebrenneriet")
    assert guji.tags.country_of_origin == "Ethiopia"
    assert guji.product_group_id is not None


@pytest.mark.asyncio
async def test_quota_exhaustion_keeps_completed_tags(settings, store, logger, observe):
    tags = CoffeeTags(country_of_origin="Kenya", tagged_at="2024-05-01T09:00:00+00:00")
    tagger = FakeTagger({"Guji": tags, "Nyeri": tags}, quota_after=1)
    listings = {"Kaffebrenneriet": [observe("Guji"), observe("Nyeri")]}
    monitor, _, _ = make_monitor(settings, store, logger, listings, tagger=tagger)

    results = await monitor.check()

    assert results is not None
    assert results.total_checked == 2
    assert store.find_product("Guji", "Kaffebrenneriet").tags is not None
    assert store.find_product("Nyeri", "Kaffebrenneriet").tags is None


def test_sync_favorites_only_seeds_an_empty_store(settings, store, logger):
    monitor, _, _ = make_monitor(settings, store, logger, {})
    seeds = [FavoriteSeed("Kenya", ("kenya",)), FavoriteSeed("Guji", ("guji",), organic_only=True)]
    assert monitor.sync_favorites(seeds) == 2
    assert store.get_favorite_by_name("Guji").organic_only
    assert monitor.sync_favorites([FavoriteSeed("Peru", ("peru",))]) == 0
    assert store.count_favorites() == 2


def test_status_reports_configuration(settings, store, logger):
    monitor, _, _ = make_monitor(settings, store, logger, {})
    status = monitor.status()
    assert status["is_running"] is False
    assert status["matching"] == "favorites"
    assert status["tagging"] == "disabled"
    assert status["channels"] == ["telegram"]
    assert status["scheduled_pattern"] == "0 9 * * *"
    assert status["last_run"] is None


@pytest.mark.asyncio
async def test_scheduler_registers_single_cron_job(settings, store, logger):
    monitor, _, _ = make_monitor(settings, store, logger, {})
    scheduler = monitor.start_scheduled()
    try:
        job = scheduler.get_job("coffee-check")
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce
        assert monitor.status()["is_scheduled"]
    finally:
        monitor.stop_scheduled()
    assert not monitor.status()["is_scheduled"]


@pytest.mark.asyncio
async def test_status_renders_after_a_check(settings, store, logger, observe):
    store.add_favorite("Kenya", ["kenya"])
    monitor, _, _ = make_monitor(
        settings, store, logger, {"Kaffebrenneriet": [observe("Kenya Nyeri")]}
    )
    await monitor.check()
    text = render_status(monitor.status())
    assert "[completed]" in text
    assert "Available products: 1" in text
    assert "favorite_available" in text
