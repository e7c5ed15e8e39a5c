import json
from types import SimpleNamespace

import pytest

from coffee_monitor import runner
from coffee_monitor.cli import main
from coffee_monitor.config import parse_args
from coffee_monitor.grouping import product_group_id
from coffee_monitor.models import CoffeeTags
from coffee_monitor.tagger import CoffeeTagger


class FakeModels:
    def __init__(self, responses):
        self.responses = list(responses)

    async def generate_content(self, **kwargs):
        return SimpleNamespace(text=self.responses.pop(0), usage_metadata=None)


def fake_tagger(logger, responses):
    client = SimpleNamespace(aio=SimpleNamespace(models=FakeModels(responses)))
    return CoffeeTagger(client, logger)


@pytest.mark.asyncio
async def test_favorites_add_update_list_remove(settings, store, logger, capsys):
    add = parse_args(["favorites", "--add", "Kenya", "--terms", "kenya, nyeri"])
    assert await runner.run_favorites(add, settings, {}, store, logger) == 0
    assert store.get_favorite_by_name("Kenya").terms == ("kenya", "nyeri")

    update = parse_args(["favorites", "--add", "Kenya", "--size-preference", "1kg"])
    assert await runner.run_favorites(update, settings, {}, store, logger) == 0
    favorite = store.get_favorite_by_name("Kenya")
    assert favorite.terms == ("kenya", "nyeri")
    assert favorite.size_preference == "1kg"
    assert store.count_favorites() == 1

    listing = parse_args(["favorites", "--list"])
    await runner.run_favorites(listing, settings, {}, store, logger)
    assert "Kenya (size=1kg): kenya, nyeri" in capsys.readouterr().out

    remove = parse_args(["favorites", "--remove", "Kenya"])
    assert await runner.run_favorites(remove, settings, {}, store, logger) == 0
    assert await runner.run_favorites(remove, settings, {}, store, logger) == 1


@pytest.mark.asyncio
async def test_favorites_term_editing(settings, store, logger, capsys):
    store.add_favorite("Kenya", ["kenya"])

    add_term = parse_args(["favorites", "--add-term", "Kenya", "Nyeri"])
    assert await runner.run_favorites(add_term, settings, {}, store, logger) == 0
    assert store.get_favorite_by_name("Kenya").terms == ("kenya", "Nyeri")
    assert await runner.run_favorites(add_term, settings, {}, store, logger) == 1

    remove_term = parse_args(["favorites", "--remove-term", "Kenya", "nyeri"])
    assert await runner.run_favorites(remove_term, settings, {}, store, logger) == 0
    assert store.get_favorite_by_name("Kenya").terms == ("kenya",)
    assert await runner.run_favorites(remove_term, settings, {}, store, logger) == 1

    last = parse_args(["favorites", "--remove-term", "Kenya", "kenya"])
    assert await runner.run_favorites(last, settings, {}, store, logger) == 1
    assert store.get_favorite_by_name("Kenya").terms == ("kenya",)

    missing = parse_args(["favorites", "--add-term", "Brazil", "cerrado"])
    assert await runner.run_favorites(missing, settings, {}, store, logger) == 1
    assert "Favorite not found: Brazil" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_history_command(settings, store, logger, observe, capsys):
    product_id, _ = store.upsert_product(observe("Guji"))
    store.record_availability(product_id, True, 150.0)
    args = parse_args(["history", str(product_id), "--days", "7"])
    assert await runner.run_history(args, settings, {}, store, logger) == 0
    assert "Guji (Kaffebrenneriet), last 7 days" in capsys.readouterr().out

    missing = parse_args(["history", "999"])
    assert await runner.run_history(missing, settings, {}, store, logger) == 1


@pytest.mark.asyncio
async def test_report_command(settings, store, logger, observe, capsys):
    product_id, _ = store.upsert_product(observe("Guji"))
    store.record_availability(product_id, True, 150.0)
    assert await runner.run_report(parse_args(["report"]), settings, {}, store, logger) == 0
    assert "Guji (Kaffebrenneriet) - 150 kr" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_backfill_groups(settings, store, logger, observe, capsys):
    identity = CoffeeTags(country_of_origin="Kenya", tagged_at="2024-05-01T09:00:00+00:00")
    blank = CoffeeTags(tagged_at="2024-05-01T09:00:00+00:00")
    ids = []
    for name, tags in (("Nyeri 250g", identity), ("Nyeri 1kg", identity), ("Mystery", blank)):
        product_id, _ = store.upsert_product(observe(name))
        store.save_tags(product_id, tags, None)
        ids.append(product_id)

    args = parse_args(["backfill-groups"])
    assert await runner.run_backfill_groups(args, settings, {}, store, logger) == 0

    expected = product_group_id(identity, "Kaffebrenneriet")
    assert store.get_product(ids[0]).product_group_id == expected
    assert store.get_product(ids[1]).size_extracted == "1kg"
    assert store.get_product(ids[2]).product_group_id is None
    output = capsys.readouterr().out
    assert "Updated 2 products, skipped 1" in output
    assert f"{expected}: 2 variants" in output


@pytest.mark.asyncio
async def test_tag_requires_api_key(settings, store, logger, observe):
    store.upsert_product(observe("Guji"))
    assert await runner.run_tag(parse_args(["tag"]), settings, {}, store, logger) == 1


@pytest.mark.asyncio
async def test_tag_saves_tags_and_groups(settings, store, logger, observe, monkeypatch, capsys):
    guji, _ = store.upsert_product(observe("Guji"))
    nyeri, _ = store.upsert_product(observe("Nyeri"))
    response = json.dumps([{"country_of_origin": "Ethiopia"}, {"country_of_origin": "Kenya"}])
    monkeypatch.setattr(
        runner, "build_tagger_from_settings", lambda s, log: fake_tagger(log, [response])
    )

    assert await runner.run_tag(parse_args(["tag"]), settings, {}, store, logger) == 0

    assert store.get_product(guji).tags.country_of_origin == "Ethiopia"
    assert store.get_product(nyeri).product_group_id is not None
    assert "Tagged 2 products" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_tag_dry_run_does_not_save(settings, store, logger, observe, monkeypatch, capsys):
    guji, _ = store.upsert_product(observe("Guji"))
    response = json.dumps({"country_of_origin": "Ethiopia", "confidence": 90})
    monkeypatch.setattr(
        runner, "build_tagger_from_settings", lambda s, log: fake_tagger(log, [response])
    )

    args = parse_args(["tag", "--dry-run"])
    assert await runner.run_tag(args, settings, {}, store, logger) == 0

    assert store.get_product(guji).tags is None
    output = capsys.readouterr().out
    assert "Origin: Ethiopia" in output
    assert "Confidence: 90%" in output


def test_missing_config_exits_with_error(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "missing.json"), "status"])
    assert excinfo.value.code == 1
    assert "Config file not found" in capsys.readouterr().err
