#!/usr/bin/env python3
"""
Content Library Acquisition Orchestrator

Wires the pipeline together (database, fetcher, extraction chain, feed
ingestion and scheduler) and exposes it as a command-line tool:

- run:        fetch every due subscription once
- run-one:    fetch a single subscription by id, due or not
- scrape:     fetch and extract one URL, printing the article as Markdown
- scheduled:  long-lived loop running a pass every SCHEDULER_INTERVAL_MINUTES
- status:     library and subscription overview
- import:     load subscriptions from a subscriptions.yaml file into the store
"""

import argparse
import asyncio
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from config import config, get_logger
from errors import ExtractionError, FetchError, StoreError
from extraction import ExtractionChain, scrape_url
from fetcher import PageFetcher
from ingestion import FeedIngestor
from models import ContentStore, DatabaseQueue, ExtractedArticle, Subscription, SubscriptionStore
from scheduler import SubscriptionScheduler, is_due
from telemetry import MetricsSink, OpenTelemetryMetrics, init_telemetry, trace_span

logger = get_logger("orchestrator")


class LibraryPipeline:
    """Owns the long-lived resources of the pipeline and its entry points."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        metrics: Optional[MetricsSink] = None,
        fetcher: Optional[PageFetcher] = None,
    ) -> None:
        self.metrics = metrics or OpenTelemetryMetrics()
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.executor = ThreadPoolExecutor()
        self.fetcher = fetcher or PageFetcher(metrics=self.metrics)
        self.chain = ExtractionChain(executor=self.executor)
        self.contents = ContentStore(self.db)
        self.subscriptions = SubscriptionStore(self.db)
        self.ingestor = FeedIngestor(self.fetcher, self.chain, self.contents, metrics=self.metrics, executor=self.executor)
        self.scheduler = SubscriptionScheduler(self.subscriptions, self.contents, self.ingestor, metrics=self.metrics)

    async def __aenter__(self) -> "LibraryPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        await self.db.start()
        await self.fetcher.start()
        logger.info("Pipeline initialized")
        logger.debug(f"Configuration: {config.get_config_summary()}")

    async def close(self) -> None:
        await self.fetcher.close()
        await self.db.stop()
        self.executor.shutdown(wait=False)

    @trace_span("run_all", tracer_name="orchestrator")
    async def run_all(self) -> Dict[str, Any]:
        """Fetch every enabled subscription that is due; returns {total, success, failed, newItems}."""
        logger.info("📡 Fetching due subscriptions")
        result = await self.scheduler.run_due()
        return result.as_dict()

    @trace_span(
        "run_subscription",
        tracer_name="orchestrator",
        attr_from_args=lambda self, subscription_id: {"subscription.id": subscription_id},
    )
    async def run_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch one subscription regardless of due-ness; returns {success, newItems, error?}."""
        subscription = await self.subscriptions.get_subscription(subscription_id)
        if subscription is None:
            return {"success": False, "newItems": 0, "error": f"Subscription '{subscription_id}' not found"}
        result = await self.scheduler.run_one(subscription)
        return result.as_dict()

    async def scrape(self, url: str) -> Union[ExtractedArticle, FetchError, ExtractionError]:
        return await scrape_url(url, fetcher=self.fetcher, chain=self.chain)

    async def import_subscriptions(self, file_path: Optional[str] = None) -> int:
        """Upsert subscriptions declared in YAML; returns how many were saved."""
        saved = 0
        for definition in config.load_subscription_definitions(file_path):
            try:
                subscription = Subscription.from_dict(definition)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping subscription '{definition.get('id')}': {e}")
                continue
            await self.subscriptions.save_subscription(subscription)
            saved += 1
        logger.info(f"Imported {saved} subscriptions")
        return saved

    async def check_status(self) -> Dict[str, Any]:
        """Collect library and subscription status information."""
        now = datetime.now(timezone.utc)
        status: Dict[str, Any] = {"timestamp": now.isoformat(), "checks": {}}
        try:
            subscriptions = await self.subscriptions.list_subscriptions()
            status["checks"]["database"] = {
                "status": "ok",
                "path": self.db.db_path,
                "total_contents": await self.contents.count(),
            }
            status["subscriptions"] = [
                {
                    "id": s.id,
                    "name": s.name,
                    "enabled": s.enabled,
                    "frequency": s.frequency,
                    "sources": len(s.sources),
                    "last_fetched_at": s.last_fetched_at.isoformat() if s.last_fetched_at else None,
                    "due": is_due(s, now),
                }
                for s in subscriptions
            ]
        except StoreError as e:
            status["checks"]["database"] = {"status": "error", "message": str(e)}
            status["subscriptions"] = []
        status["overall_status"] = "healthy" if status["checks"]["database"]["status"] == "ok" else "issues_detected"
        return status


def print_status(status: dict) -> None:
    """Print formatted status information."""
    print(f"\n📊 Content Library Status")
    print(f"⏰ {status['timestamp']}")
    print(f"🏥 Overall: {status['overall_status'].upper()}")

    db = status['checks']['database']
    if db['status'] == 'ok':
        print(f"\n💾 Database: {db['path']}")
        print(f"   📰 Contents: {db['total_contents']}")
    else:
        print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

    subscriptions = status.get('subscriptions') or []
    print(f"\n📬 Subscriptions: {len(subscriptions)}")
    for sub in subscriptions:
        state = "enabled" if sub['enabled'] else "disabled"
        due = " (due)" if sub['due'] else ""
        last = sub['last_fetched_at'] or "never"
        print(f"   • {sub['id']}: {sub['name']} [{sub['frequency']}, {state}, {sub['sources']} sources] last fetched {last}{due}")


def print_article(outcome: Union[ExtractedArticle, FetchError, ExtractionError]) -> bool:
    if not isinstance(outcome, ExtractedArticle):
        print(f"❌ {outcome.describe()}", file=sys.stderr)
        return False
    print(f"# {outcome.title}\n")
    if outcome.author:
        print(f"Author: {outcome.author}")
    if outcome.publish_date:
        print(f"Published: {outcome.publish_date.isoformat()}")
    if outcome.low_confidence:
        print("Note: extracted from page text (low confidence)")
    print()
    print(outcome.body)
    return True


async def _run_mode(args: argparse.Namespace) -> bool:
    async with LibraryPipeline(args.database) as pipeline:
        if args.mode == 'run':
            result = await pipeline.run_all()
            logger.info(
                f"🎉 Pass finished: {result['total']} subscriptions, {result['success']} succeeded, "
                f"{result['failed']} failed, {result['newItems']} new items"
            )
            return result['failed'] == 0

        if args.mode == 'run-one':
            result = await pipeline.run_subscription(args.target)
            if result['success']:
                logger.info(f"✅ {args.target}: {result['newItems']} new items")
            else:
                logger.error(f"❌ {args.target}: {result.get('error')}")
            return result['success']

        if args.mode == 'scrape':
            return print_article(await pipeline.scrape(args.target))

        if args.mode == 'import':
            return await pipeline.import_subscriptions(args.target) > 0

        if args.mode == 'status':
            print_status(await pipeline.check_status())
            return True

        if args.mode == 'scheduled':
            logger.info("🕐 Starting scheduled mode")
            await pipeline.scheduler.run_forever()
            return True

    return False


def main(argv: Optional[list] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Content Library Acquisition Pipeline')
    parser.add_argument('mode', choices=['run', 'run-one', 'scrape', 'scheduled', 'status', 'import'],
                        help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Subscription id (run-one), URL (scrape) or subscriptions YAML path (import)')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (defaults to DATABASE_PATH)')

    args = parser.parse_args(argv)
    if args.mode in ('run-one', 'scrape') and not args.target:
        parser.error(f"{args.mode} requires a target")

    init_telemetry("content-library")

    try:
        success = asyncio.run(_run_mode(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except (StoreError, OSError) as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
