from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .availability import TransitionPolicy
from .config import Settings
from .gate import NotificationGate
from .models import EnrichedObservation, RawObservation, RoasterySource
from .notifier import Notifier
from .parsing import FavoriteSeed
from .preferences import PreferenceConfig
from .processor import CheckResults, ProductProcessor
from .scraper import ScrapeSession
from .store import CoffeeStore, utc_now
from .tagger import CoffeeTagger, TaggingQuotaExceeded

SessionFactory = Callable[[], Any]


class CoffeeMonitor:
    """Runs check cycles: scrape, tag, classify, match and notify."""

    def __init__(
        self,
        settings: Settings,
        store: CoffeeStore,
        roasteries: Sequence[RoasterySource],
        notifier: Notifier,
        tagger: CoffeeTagger,
        logger: logging.Logger,
        preferences: Optional[PreferenceConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.roasteries = list(roasteries)
        self.notifier = notifier
        self.tagger = tagger
        self.preferences = preferences
        self._logger = logger
        self._session_factory = session_factory or (
            lambda: ScrapeSession(settings, logger)
        )
        self.gate = NotificationGate(store, settings.cooldown_hours)
        self.policy = TransitionPolicy(
            report_first_unavailable=settings.report_first_unavailable
        )
        self.is_running = False
        self.last_check: Optional[datetime] = None
        self._sent = 0
        self._scheduler: Optional[AsyncIOScheduler] = None

    def sync_favorites(self, seeds: Sequence[FavoriteSeed]) -> int:
        """Seed favorites from configuration, only on a store that has none."""
        if self.store.count_favorites() > 0:
            self._logger.info("Database has existing favorites; skipping config sync")
            return 0
        self._logger.info("First run detected; syncing favorites from config")
        for seed in seeds:
            self.store.add_favorite(
                seed.name,
                list(seed.terms),
                seed.description,
                seed.size_preference,
                seed.organic_only,
            )
            self._logger.info("Added favorite from config: %s", seed.name)
        return len(seeds)

    async def check(self) -> Optional[CheckResults]:
        if self.is_running:
            self._logger.warning("Check already in progress, skipping")
            return None
        self.is_running = True
        started = utc_now()
        run_id: Optional[int] = None
        self._logger.info("Starting product check")
        try:
            run_id = self.store.start_check_run(started)
            results = await self._run_cycle()
        except Exception as exc:
            self._logger.exception("Product check failed: %s", exc)
            try:
                await self.notifier.notify_error(exc, "Product check failed")
            except Exception as notify_exc:
                self._logger.error("Failed to send error notification: %s", notify_exc)
            if run_id is not None:
                try:
                    self.store.finish_check_run(run_id, "failed", {"errors": 1})
                except sqlite3.Error as store_exc:
                    self._logger.error("Failed to record check run: %s", store_exc)
            return None
        finally:
            self.is_running = False

        self.last_check = utc_now()
        counts = results.counts()
        counts["notifications_sent"] = self._sent
        try:
            self.store.finish_check_run(run_id, "completed", counts)
        except sqlite3.Error as store_exc:
            self._logger.error("Failed to record check run: %s", store_exc)
        self._logger.info(
            "Product check completed in %.1fs: checked=%d new=%d newly_available=%d "
            "newly_unavailable=%d notifications=%d errors=%d",
            (self.last_check - started).total_seconds(),
            results.total_checked,
            len(results.new_products),
            len(results.newly_available),
            len(results.newly_unavailable),
            self._sent,
            results.errors,
        )
        return results

    async def _run_cycle(self) -> CheckResults:
        self._sent = 0
        observations: list[RawObservation] = []
        scraped: list[str] = []
        failed = 0
        async with self._session_factory() as session:
            for roastery in self.roasteries:
                self._logger.info("Scraping products from %s", roastery.name)
                found = await session.scrape_roastery(roastery)
                if found is None:
                    failed += 1
                    self._logger.error("Scrape failed for %s", roastery.name)
                    continue
                if not found.observations:
                    self._logger.warning(
                        "No products found at %s; might be a scraping issue",
                        roastery.name,
                    )
                    continue
                if found.complete:
                    scraped.append(roastery.name)
                else:
                    self._logger.info(
                        "Listing for %s is partial; unlisted products keep their state",
                        roastery.name,
                    )
                observations.extend(found.observations)

        items = await self._enrich(observations)
        processor = ProductProcessor(
            self.store,
            self.gate,
            self._logger,
            favorites=self.store.get_favorites(),
            preferences=self.preferences,
            policy=self.policy,
        )
        results = processor.process(items, scraped)
        results.errors += failed
        await self._send_notifications(results)
        return results

    async def _enrich(
        self, observations: Sequence[RawObservation]
    ) -> list[EnrichedObservation]:
        """Pair each observation with fresh tags when its product is untagged."""
        if not self.tagger.enabled:
            return [EnrichedObservation(observation) for observation in observations]
        to_tag = []
        for observation in observations:
            product = self.store.find_product(observation.name, observation.roastery_name)
            if product is None or product.tags is None:
                to_tag.append(observation)
        if not to_tag:
            return [EnrichedObservation(observation) for observation in observations]

        self._logger.info("Tagging %d untagged products", len(to_tag))
        try:
            pairs = await self.tagger.tag_products(to_tag)
        except TaggingQuotaExceeded as exc:
            self._logger.error(
                "Tagging stopped after %d products: %s", len(exc.completed), exc
            )
            pairs = exc.completed
        tags_by_key = {observation.key: tags for observation, tags in pairs}
        return [
            EnrichedObservation(observation, tags_by_key.get(observation.key))
            for observation in observations
        ]

    async def _send_notifications(self, results: CheckResults) -> None:
        for candidate in results.candidates:
            self._logger.info(
                "Sending %s notification for %s",
                candidate.notification_type,
                candidate.base_name,
            )
            outcome = await self.notifier.notify_candidate(candidate)
            self.gate.record_sent(candidate.product_ids, candidate.notification_type)
            self._sent += 1
            failures = [result for result in outcome if not result.success]
            if failures:
                self._logger.warning(
                    "Notification for %s failed on %s",
                    candidate.base_name,
                    ", ".join(result.channel for result in failures),
                )

        new_count = len(results.new_products)
        if 0 < new_count <= self.settings.max_new_products_notify:
            self._logger.info("Sending new products notification for %d products", new_count)
            await self.notifier.notify_new_products(
                [processed.observation for processed in results.new_products]
            )
            self._sent += 1
        elif new_count:
            self._logger.info(
                "Skipping new products notification for %d products (limit %d)",
                new_count,
                self.settings.max_new_products_notify,
            )

    def start_scheduled(self) -> AsyncIOScheduler:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        trigger = CronTrigger.from_crontab(
            self.settings.check_interval, timezone=self.settings.timezone
        )
        scheduler = AsyncIOScheduler(timezone=self.settings.timezone)
        scheduler.add_job(
            self._scheduled_check,
            trigger,
            id="coffee-check",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self._logger.info(
            "Scheduled checks with pattern %s (%s)",
            self.settings.check_interval,
            self.settings.timezone,
        )
        return scheduler

    async def _scheduled_check(self) -> None:
        self._logger.info("Scheduled check triggered")
        await self.check()

    def stop_scheduled(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._logger.info("Scheduled monitoring stopped")

    async def run_forever(self) -> None:
        self.start_scheduled()
        try:
            await asyncio.Event().wait()
        finally:
            self.stop_scheduled()

    def status(self) -> dict[str, Any]:
        last_run = self.store.last_check_run()
        return {
            "is_running": self.is_running,
            "is_scheduled": self._scheduler is not None,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_run": last_run,
            "available_products": len(self.store.available_products()),
            "total_favorites": len(self.store.get_favorites()),
            "scheduled_pattern": self.settings.check_interval,
            "timezone": self.settings.timezone,
            "matching": "preferences"
            if self.preferences and self.preferences.enabled
            else "favorites",
            "tagging": "enabled" if self.tagger.enabled else "disabled",
            "channels": self.notifier.enabled_channels,
            "stats": self.store.stats(),
            "recent_notifications": self.store.recent_notifications(),
        }
