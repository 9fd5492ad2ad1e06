#!/usr/bin/env python3
"""
Article AI-Processing Pipeline - Main Entry Point

Usage:
    python main.py run                          # Run scheduler (batch every N minutes)
    python main.py process                      # Run one batch now
    python main.py process --article-id 42      # Process one article, ignoring cooldown
    python main.py pending                      # List articles waiting for processing
    python main.py mark 42 --source-file a.md   # Queue an article for AI processing
    python main.py create --mode generate "Title"
    python main.py stats                        # Show article statistics
"""

import sys
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Optional

# Project root
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import Settings, get_settings, load_store_path
from article_pipeline.orchestrator import BatchSummary, Orchestrator
from article_pipeline.scheduler import ContentScheduler
from article_pipeline.modules.content_store import ArticleMode, JsonContentStore
from article_pipeline.modules.image_searcher import ImageSearcher
from article_pipeline.modules.media_uploader import MediaUploader, create_r2_client
from article_pipeline.modules.site_notifier import SiteNotifier
from article_pipeline.modules.text_generator import ChatCompletionGenerator
from article_pipeline.modules.thumbnail import ThumbnailDeriver

# Setup logging
def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(PROJECT_ROOT / "logs" / "app.log"),
        ],
    )

logger = logging.getLogger(__name__)


def create_store(store_path: Optional[Path] = None) -> JsonContentStore:
    return JsonContentStore(store_path or load_store_path())


def create_orchestrator(settings: Settings) -> Orchestrator:
    """Create and configure orchestrator."""
    storage = settings.storage
    pipeline = settings.pipeline

    uploader = MediaUploader(
        s3_client=create_r2_client(
            storage.endpoint_url, storage.access_key_id, storage.secret_access_key,
        ),
        bucket_name=storage.bucket_name,
        public_base_url=storage.public_base_url,
        account_id=storage.account_id,
    )

    return Orchestrator(
        store=create_store(settings.paths.article_store),
        generator=ChatCompletionGenerator(
            api_key=settings.ai.api_key,
            base_url=settings.ai.base_url,
            prompts_dir=settings.paths.prompts,
            model=settings.ai.model,
            timeout=settings.ai.timeout,
            max_tokens=settings.ai.max_tokens,
            temperature=settings.ai.temperature,
        ),
        image_searcher=ImageSearcher(
            unsplash_key=settings.images.unsplash_key,
            pexels_key=settings.images.pexels_key,
            timeout=settings.images.timeout,
        ),
        uploader=uploader,
        thumbnailer=ThumbnailDeriver(
            uploader,
            size=(pipeline.thumbnail_width, pipeline.thumbnail_height),
            quality=pipeline.thumbnail_quality,
        ),
        notifier=SiteNotifier(
            site_url=settings.site.site_url,
            revalidate_secret=settings.site.revalidate_secret,
            indexnow_key=settings.site.indexnow_key,
        ),
        batch_size=pipeline.batch_size,
        max_source_chars=pipeline.max_source_chars,
        cooldown_hours=pipeline.cooldown_hours,
        max_attempts=pipeline.max_attempts or None,
        stale_processing_minutes=pipeline.stale_processing_minutes,
        image_workers=pipeline.image_workers,
    )


def print_summary(summary: BatchSummary):
    print(f"\n{'=' * 60}")
    print(f"Batch Summary ({summary.processed} processed)")
    print("=" * 60)
    print(f"  Completed: {summary.completed}")
    print(f"  Failed: {summary.failed}")
    for kind, count in summary.failures_by_kind().items():
        print(f"    - {kind}: {count}")
    print(f"  Skipped: {summary.skipped}")

    for result in summary.results:
        line = f"\n  #{result.article_id} [{result.outcome}] {result.title}"
        if result.outcome == "completed":
            line += f" ({result.content_length} chars, {result.images} images)"
        elif result.error:
            line += f"\n    {result.error}"
        print(line)
    print("=" * 60)


def cmd_process(args):
    """Run one batch now."""
    settings = get_settings()
    setup_logging(settings.log_level)

    with create_orchestrator(settings) as orchestrator:
        summary = orchestrator.run_batch(limit=args.limit, article_id=args.article_id)

    if not summary.results:
        print("Nothing to process.")
        return

    print_summary(summary)
    if summary.failed:
        sys.exit(1)


def cmd_pending(args):
    """List pending articles."""
    setup_logging("WARNING")

    store = create_store()
    articles = store.list_pending()

    if not articles:
        print("No pending articles.")
        return

    print(f"\nPending articles ({len(articles)}):")
    for article in articles:
        last = article.last_attempt_at.strftime("%Y-%m-%d %H:%M") if article.last_attempt_at else "never"
        print(f"  #{article.id} [{article.mode.value}] {article.title} (last attempt: {last})")


def cmd_mark(args):
    """Queue an article for AI processing."""
    setup_logging("WARNING")

    source_text = Path(args.source_file).read_text(encoding="utf-8") if args.source_file else None

    store = create_store()
    try:
        article = store.mark_pending(args.article_id, source_text=source_text)
    except KeyError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Article #{article.id} '{article.title}' marked pending.")


def cmd_create(args):
    """Create articles."""
    setup_logging("WARNING")

    mode = ArticleMode(args.mode)
    source_text = Path(args.source_file).read_text(encoding="utf-8") if args.source_file else None

    store = create_store()
    for title in args.titles:
        try:
            article = store.create(
                title,
                mode,
                category=args.category,
                source_text=source_text,
                custom_prompt=args.prompt,
            )
        except ValueError as e:
            print(f"Skipped '{title}': {e}")
            continue
        print(f"Created #{article.id} [{mode.value}] {article.slug}")


def cmd_stats(args):
    """Show article statistics."""
    setup_logging("WARNING")

    stats = create_store().get_stats()

    print("\n" + "=" * 60)
    print("Article Pipeline - Statistics")
    print("=" * 60)

    print(f"\nArticles: {stats['total_articles']}")
    print("\nBy status:")
    for status, count in stats["by_status"].items():
        print(f"  - {status}: {count}")
    print("\nBy mode:")
    for mode, count in stats["by_mode"].items():
        print(f"  - {mode}: {count}")
    if stats["by_failure_kind"]:
        print("\nFailures:")
        for kind, count in stats["by_failure_kind"].items():
            print(f"  - {kind}: {count}")

    print("\n" + "=" * 60)


async def cmd_run(args):
    """Run scheduler loop."""
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("Starting article pipeline...")

    orchestrator = create_orchestrator(settings)
    scheduler = ContentScheduler(orchestrator)

    interval = args.interval or settings.pipeline.poll_interval_minutes
    scheduler.schedule_polling(interval_minutes=interval)
    scheduler.schedule_recovery(interval_minutes=max(interval, settings.pipeline.stale_processing_minutes // 2))

    # First batch right away instead of waiting a full interval
    await scheduler.run_batch()

    try:
        await scheduler.run_loop()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        scheduler.stop()
        scheduler.clear_all()
        orchestrator.close()

    logger.info("Pipeline stopped")


def main():
    parser = argparse.ArgumentParser(
        description="Article AI-Processing Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run scheduler")
    run_parser.add_argument("--interval", type=int, help="Minutes between batches (default: POLL_INTERVAL_MINUTES)")

    # process command
    proc_parser = subparsers.add_parser("process", help="Run one batch now")
    proc_parser.add_argument("--article-id", type=int, help="Process only this article (ignores cooldown)")
    proc_parser.add_argument("--limit", type=int, help="Batch size override")

    # pending command
    subparsers.add_parser("pending", help="List pending articles")

    # mark command
    mark_parser = subparsers.add_parser("mark", help="Queue an article for AI processing")
    mark_parser.add_argument("article_id", type=int, help="Article id")
    mark_parser.add_argument("--source-file", type=str, help="Replace source text with this file")

    # create command
    create_parser = subparsers.add_parser("create", help="Create articles")
    create_parser.add_argument("titles", nargs="+", help="Article titles")
    create_parser.add_argument("--mode", choices=[m.value for m in ArticleMode], default="generate")
    create_parser.add_argument("--category", type=str, default="", help="Article category")
    create_parser.add_argument("--source-file", type=str, help="Source text for rewrite mode")
    create_parser.add_argument("--prompt", type=str, help="Custom system prompt ({title}, {category})")

    # stats command
    subparsers.add_parser("stats", help="Show article statistics")

    args = parser.parse_args()

    # Ensure logs directory exists
    (PROJECT_ROOT / "logs").mkdir(exist_ok=True)

    if args.command == "run":
        asyncio.run(cmd_run(args))
    elif args.command == "process":
        cmd_process(args)
    elif args.command == "pending":
        cmd_pending(args)
    elif args.command == "mark":
        cmd_mark(args)
    elif args.command == "create":
        cmd_create(args)
    elif args.command == "stats":
        cmd_stats(args)
    else:
        # Default: show help
        parser.print_help()


if __name__ == "__main__":
    main()
