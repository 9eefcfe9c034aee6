#!/usr/bin/env python3
"""
Subscription scheduler.

Decides which subscriptions are due according to their frequency, runs feed
ingestion over each due subscription's enabled RSS sources, records when each
subscription was last fetched and aggregates the results of a pass. One
failing source or subscription never stops the others.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from config import config, get_logger
from errors import PipelineError, StoreError
from ingestion import DedupIndex, FeedIngestor
from models import ContentStore, IngestStats, PassResult, Subscription, SubscriptionRunResult, SubscriptionStore
from telemetry import MetricsSink, NullMetrics, trace_span
from utils import format_duration

logger = get_logger("scheduler")

FREQUENCY_WINDOWS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

NO_ENABLED_SOURCES = "No enabled RSS sources"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_due(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Whether a subscription should be fetched now.

    Disabled subscriptions are never due, never-fetched ones always are, and
    otherwise the time since the last fetch must exceed the frequency window.
    Unknown frequencies are never due.
    """
    if not subscription.enabled:
        return False
    if subscription.last_fetched_at is None:
        return True
    window = FREQUENCY_WINDOWS.get((subscription.frequency or "").lower())
    if window is None:
        logger.warning(f"Subscription {subscription.id} has unknown frequency '{subscription.frequency}'")
        return False
    now = now or _utcnow()
    last = subscription.last_fetched_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last > window


class SubscriptionScheduler:
    """Runs ingestion passes over subscriptions.

    Subscriptions in a pass run concurrently behind a semaphore and share one
    DedupIndex, so an item two subscriptions both carry is stored once.
    Sources within a subscription run in order.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        contents: ContentStore,
        ingestor: FeedIngestor,
        metrics: Optional[MetricsSink] = None,
        concurrency: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.contents = contents
        self.ingestor = ingestor
        self.metrics = metrics or NullMetrics()
        self.concurrency = concurrency or config.SUBSCRIPTION_CONCURRENCY
        self.clock = clock or _utcnow

    def is_due(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        return is_due(subscription, now or self.clock())

    async def due_subscriptions(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or self.clock()
        enabled = await self.subscriptions.get_enabled_subscriptions()
        return [s for s in enabled if self.is_due(s, now)]

    @trace_span("scheduler.run_due", tracer_name="scheduler")
    async def run_due(self, now: Optional[datetime] = None) -> PassResult:
        """Run every enabled subscription that is due."""
        due = await self.due_subscriptions(now)
        logger.info(f"Found {len(due)} subscriptions due for fetching")
        return await self.run_subscriptions(due)

    async def run_subscriptions(self, subscriptions: Sequence[Subscription]) -> PassResult:
        """Run the given subscriptions concurrently and aggregate their results."""
        result = PassResult(total=len(subscriptions))
        if not subscriptions:
            return result

        started = self.clock()
        dedup = DedupIndex(await self.contents.get_all())
        logger.debug(f"Dedup index holds {len(dedup)} known identities")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_with_semaphore(subscription: Subscription) -> SubscriptionRunResult:
            async with semaphore:
                return await self.run_one(subscription, dedup)

        outcomes = await asyncio.gather(
            *(run_with_semaphore(s) for s in subscriptions),
            return_exceptions=True,
        )

        for subscription, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error running subscription {subscription.name}: {outcome!r}")
                outcome = SubscriptionRunResult(subscription.id, success=False, error=str(outcome))
            result.results.append(outcome)
            if outcome.success:
                result.succeeded += 1
                result.new_item_count += outcome.new_item_count
                logger.info(f"✓ {subscription.name}: {outcome.new_item_count} new items")
            else:
                result.failed += 1
                logger.warning(f"✗ {subscription.name}: {outcome.error}")

        elapsed = (self.clock() - started).total_seconds()
        logger.info(
            f"Pass complete in {format_duration(elapsed)}: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.new_item_count} new items"
        )
        return result

    @trace_span(
        "scheduler.run_one",
        tracer_name="scheduler",
        attr_from_args=lambda self, subscription, dedup=None: {"subscription.id": subscription.id},
    )
    async def run_one(self, subscription: Subscription, dedup: Optional[DedupIndex] = None) -> SubscriptionRunResult:
        """Ingest every enabled RSS source of one subscription, then mark it fetched."""
        try:
            return await self._run_sources(subscription, dedup)
        finally:
            await self._mark_fetched(subscription)

    async def _run_sources(self, subscription: Subscription, dedup: Optional[DedupIndex]) -> SubscriptionRunResult:
        for source in subscription.sources:
            if source.enabled and source.type != "rss":
                logger.warning(f"{subscription.name}: skipping unsupported source type '{source.type}' ({source.url})")
        sources = [s for s in subscription.sources if s.enabled and s.type == "rss"]
        if not sources:
            logger.warning(f"Subscription {subscription.name} has no enabled RSS sources")
            return SubscriptionRunResult(subscription.id, success=False, error=NO_ENABLED_SOURCES)

        if dedup is None:
            try:
                dedup = DedupIndex(await self.contents.get_all())
            except StoreError as e:
                return SubscriptionRunResult(subscription.id, success=False, error=e.describe())

        logger.info(f"Fetching subscription {subscription.name} ({len(sources)} sources)")
        stats = IngestStats()
        new_items = 0
        source_errors: List[PipelineError] = []
        failed_sources = 0

        for source in sources:
            ingest_result = await self.ingestor.ingest(source, subscription, dedup)
            stats.merge(ingest_result.stats)
            new_items += len(ingest_result.created)
            source_errors.extend(ingest_result.errors)
            # Item-level store errors do not make the source itself a failure
            if ingest_result.errors and ingest_result.stats.seen == 0:
                failed_sources += 1

        if failed_sources == len(sources):
            return SubscriptionRunResult(
                subscription.id,
                success=False,
                error=source_errors[-1].describe() if source_errors else "All sources failed",
                source_errors=source_errors,
                stats=stats,
            )
        return SubscriptionRunResult(
            subscription.id,
            success=True,
            new_item_count=new_items,
            source_errors=source_errors,
            stats=stats,
        )

    async def _mark_fetched(self, subscription: Subscription) -> None:
        now = self.clock()
        try:
            await self.subscriptions.update_subscription(subscription.id, {"last_fetched_at": now})
            subscription.last_fetched_at = now
        except StoreError as e:
            logger.error(f"Could not record fetch time for subscription {subscription.id}: {e}")

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_forever(self, interval_minutes: Optional[int] = None, run_immediately: Optional[bool] = None) -> None:
        """Run a pass every ``interval_minutes`` until cancelled."""
        interval = (interval_minutes or config.SCHEDULER_INTERVAL_MINUTES) * 60
        if run_immediately is None:
            run_immediately = config.SCHEDULER_RUN_IMMEDIATELY

        logger.info(f"🚀 Starting scheduler (every {format_duration(interval)})")
        first = True
        while True:
            try:
                if not first or run_immediately:
                    await self.run_due()
                first = False
                logger.info(f"😴 Sleeping {format_duration(interval)} until next pass")
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduled pass: {e}")
                # Keep running; the next pass retries whatever is still due
                await asyncio.sleep(min(interval, 60))
