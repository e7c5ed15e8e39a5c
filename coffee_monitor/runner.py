from __future__ import annotations

import argparse
import logging
from typing import Any, Awaitable, Callable

from .config import Settings
from .favorites import parse_terms
from .grouping import product_group_id
from .logging_utils import setup_logging
from .monitor import CoffeeMonitor
from .notifier import Notifier
from .parsing import (
    load_roasteries,
    parse_favorite_seeds,
    parse_notification_config,
    parse_preferences,
)
from .reporting import (
    build_report,
    render_favorites,
    render_history,
    render_report,
    render_status,
    render_tags,
)
from .sizes import extract_size, size_to_grams
from .store import CoffeeStore
from .tagger import CoffeeTagger, TaggingQuotaExceeded, build_tagger

Command = Callable[
    [argparse.Namespace, Settings, dict[str, Any], CoffeeStore, logging.Logger],
    Awaitable[int],
]


def build_tagger_from_settings(settings: Settings, logger: logging.Logger) -> CoffeeTagger:
    return build_tagger(
        settings.gemini_api_key,
        logger,
        model=settings.tagging_model,
        batch_size=settings.tagging_batch_size,
        timeout_s=settings.tagging_timeout_s,
    )


def build_monitor(
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> CoffeeMonitor:
    roasteries = load_roasteries(config, logger)
    logger.info("Loaded %d roasteries", len(roasteries))
    preferences = parse_preferences(config)
    if preferences and preferences.enabled:
        logger.info(
            "Preference matching enabled (%d dimensions, %d constraints)",
            len(preferences.dimensions),
            len(preferences.constraints),
        )
    monitor = CoffeeMonitor(
        settings,
        store,
        roasteries,
        Notifier(
            parse_notification_config(config),
            logger,
            timeout_s=settings.http_timeout_s,
        ),
        build_tagger_from_settings(settings, logger),
        logger,
        preferences=preferences,
    )
    monitor.sync_favorites(parse_favorite_seeds(config))
    return monitor


async def run_check(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    monitor = build_monitor(settings, config, store, logger)
    results = await monitor.check()
    return 0 if results is not None else 1


async def run_start(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    monitor = build_monitor(settings, config, store, logger)
    logger.info("Running initial check before scheduling")
    await monitor.check()
    await monitor.run_forever()
    return 0


async def run_report(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    print(render_report(build_report(store, store.get_favorites())))
    return 0


async def run_status(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    monitor = build_monitor(settings, config, store, logger)
    print(render_status(monitor.status()))
    return 0


async def run_favorites(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    if args.add:
        name = args.add.strip()
        existing = store.get_favorite_by_name(name)
        if existing is not None:
            terms = parse_terms(args.terms, name) if args.terms else list(existing.terms)
            store.update_favorite(
                existing.id,
                terms=terms,
                description=args.description or None,
                size_preference=args.size_preference,
                organic_only=True if args.organic_only else None,
            )
            logger.info("Updated favorite %s", name)
            print(f"Updated favorite: {name} ({', '.join(terms)})")
        else:
            terms = parse_terms(args.terms, name)
            store.add_favorite(
                name, terms, args.description, args.size_preference, args.organic_only
            )
            logger.info("Added favorite %s", name)
            print(f"Added favorite: {name} ({', '.join(terms)})")
        return 0
    if args.add_term or args.remove_term:
        return edit_favorite_term(args, store, logger)
    if args.remove:
        if not store.remove_favorite(args.remove.strip()):
            print(f"Favorite not found: {args.remove}")
            return 1
        logger.info("Removed favorite %s", args.remove)
        print(f"Removed favorite: {args.remove}")
        return 0
    print(render_favorites(store.get_favorites(enabled_only=False)))
    return 0


def edit_favorite_term(
    args: argparse.Namespace, store: CoffeeStore, logger: logging.Logger
) -> int:
    name, term = args.add_term or args.remove_term
    favorite = store.get_favorite_by_name(name.strip())
    if favorite is None:
        print(f"Favorite not found: {name}")
        return 1
    term = term.strip()
    known = {existing.lower() for existing in favorite.terms}
    if args.add_term:
        if not term or term.lower() in known:
            print(f"Term already present or empty: {term!r}")
            return 1
        store.add_term(favorite.id, term)
        logger.info("Added term %s to favorite %s", term, favorite.name)
        print(f"Added term to {favorite.name}: {term}")
        return 0
    term = next((t for t in favorite.terms if t.lower() == term.lower()), term)
    if len(favorite.terms) == 1 and term.lower() in known:
        print(f"Cannot remove the last term of {favorite.name}")
        return 1
    if not store.remove_term(favorite.id, term):
        print(f"Term not found on {favorite.name}: {term}")
        return 1
    logger.info("Removed term %s from favorite %s", term, favorite.name)
    print(f"Removed term from {favorite.name}: {term}")
    return 0


async def run_tag(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    tagger = build_tagger_from_settings(settings, logger)
    if not tagger.enabled:
        logger.error("AI tagging needs GEMINI_API_KEY; nothing tagged")
        return 1
    products = (
        store.all_products(args.limit) if args.force else store.untagged_products(args.limit)
    )
    if not products:
        print("No products to tag.")
        return 0

    if args.dry_run:
        product = products[0]
        print(f"Dry run: {product.name} ({product.roastery_name})")
        try:
            tags = await tagger.tag_product(product.name, product.description)
        except TaggingQuotaExceeded as exc:
            logger.error("Dry run failed: %s", exc)
            return 1
        print(render_tags(tags))
        return 0

    logger.info("Tagging %d products", len(products))
    exit_code = 0
    try:
        pairs = await tagger.tag_products(products)
    except TaggingQuotaExceeded as exc:
        logger.error("Tagging stopped after %d products: %s", len(exc.completed), exc)
        pairs = exc.completed
        exit_code = 1
    tagged = failed = 0
    for product, tags in pairs:
        if not tags.tagged_at:
            failed += 1
            continue
        store.save_tags(product.id, tags, product_group_id(tags, product.roastery_name))
        tagged += 1
    skipped = len(products) - len(pairs)
    print(f"Tagged {tagged} products ({failed} failed, {skipped} not attempted)")
    return exit_code


async def run_backfill_groups(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    updated = skipped = 0
    for product in store.tagged_products():
        group_id = product_group_id(product.tags, product.roastery_name)
        if group_id is None:
            skipped += 1
            continue
        size = extract_size(product.name)
        store.update_group(product.id, group_id, size, size_to_grams(size))
        updated += 1
    logger.info("Backfilled product groups: updated=%d skipped=%d", updated, skipped)
    print(f"Updated {updated} products, skipped {skipped}")
    groups = store.group_stats()
    if groups:
        print("Largest product groups:")
        for group_id, variants, examples in groups:
            names = ", ".join(example.name for example in examples)
            print(f"  {group_id}: {variants} variants ({names})")
    return 0


async def run_history(
    args: argparse.Namespace,
    settings: Settings,
    config: dict[str, Any],
    store: CoffeeStore,
    logger: logging.Logger,
) -> int:
    product = store.get_product(args.product_id)
    if product is None:
        print(f"Product not found: {args.product_id}")
        return 1
    history = store.product_history(product.id, args.days)
    print(render_history(product, history, args.days))
    return 0


COMMANDS: dict[str, Command] = {
    "check": run_check,
    "start": run_start,
    "report": run_report,
    "status": run_status,
    "favorites": run_favorites,
    "tag": run_tag,
    "backfill-groups": run_backfill_groups,
    "history": run_history,
}


async def run(
    args: argparse.Namespace, settings: Settings, config: dict[str, Any]
) -> int:
    setup_logging(settings.log_level, settings.log_path)
    logger = logging.getLogger("coffee_monitor")
    command = COMMANDS[args.command]
    with CoffeeStore(settings.db_path, logger) as store:
        return await command(args, settings, config, store, logger)
