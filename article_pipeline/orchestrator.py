"""
Article Orchestrator - main pipeline coordinator.

Coordinates the AI processing workflow for each selected article:
1. Admission checks (source length, cooldown)
2. Rehost images found in the source text (rewrite mode)
3. Generate article text
4. Resolve and rehost images, put them into the text
5. Derive cover thumbnail
6. Persist the result and notify the public site

Articles in a batch run one after another. A failing article is recorded as
failed and the batch moves on.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import ContentTooLongError, FailureKind, classify_failure
from .modules.content_store import (
    Article,
    ArticleMode,
    ArticleStatus,
    ContentStore,
    EligibilityFilter,
    utc_now,
)
from .modules.image_searcher import ImageSearcher
from .modules.media_uploader import MediaUploader
from .modules.placeholder_codec import (
    ImageEntry,
    decode,
    encode,
    extract_generation_markers,
    fill_generation_markers,
)
from .modules.site_notifier import SiteNotifier
from .modules.text_generator import ArticleGenerator
from .modules.thumbnail import ThumbnailDeriver

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200


def reading_time(text: str) -> int:
    """Estimated reading time in minutes."""
    return max(1, math.ceil(len(text.split()) / WORDS_PER_MINUTE))


@dataclass
class ArticleResult:
    """Outcome of one article in a batch."""
    article_id: int
    title: str
    outcome: str  # "completed", "failed" or "skipped"
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    images: int = 0
    content_length: int = 0


@dataclass
class BatchSummary:
    """Results of one run_batch() call."""
    results: list[ArticleResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)

    def _count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def completed(self) -> int:
        return self._count("completed")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    def failures_by_kind(self) -> dict[str, int]:
        """Failed articles grouped into admission/content/transient."""
        counts: dict[str, int] = {}
        for r in self.results:
            if r.outcome == "failed" and r.failure_kind:
                counts[r.failure_kind.value] = counts.get(r.failure_kind.value, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures_by_kind": self.failures_by_kind(),
            "results": [
                {
                    "id": r.article_id,
                    "title": r.title,
                    "outcome": r.outcome,
                    "failure_kind": r.failure_kind.value if r.failure_kind else None,
                    "error": r.error,
                    "images": r.images,
                    "content_length": r.content_length,
                }
                for r in self.results
            ],
        }


@dataclass
class _Attempt:
    """Working state of one processing attempt."""
    images: list[ImageEntry] = field(default_factory=list)
    upgraded_source: Optional[str] = None


class Orchestrator:
    """
    Runs the AI processing state machine over stored articles.

    pending -> processing -> completed | failed

    Only this class changes article status. It writes each article twice per
    attempt: when processing starts and when it ends.
    """

    def __init__(
        self,
        store: ContentStore,
        generator: ArticleGenerator,
        image_searcher: ImageSearcher,
        uploader: MediaUploader,
        thumbnailer: Optional[ThumbnailDeriver] = None,
        notifier: Optional[SiteNotifier] = None,
        # Settings
        batch_size: int = 10,
        max_source_chars: int = 50_000,
        cooldown_hours: int = 24,
        max_attempts: Optional[int] = 5,
        stale_processing_minutes: int = 120,
        image_workers: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize orchestrator with all dependencies.

        Args:
            store: Article storage
            generator: Text generation adapter
            image_searcher: Stock photo resolver
            uploader: Object storage uploader
            thumbnailer: Cover image deriver (None disables covers)
            notifier: Site cache invalidation (None disables notifications)
            batch_size: Articles per automatic batch
            max_source_chars: Longest source text admitted for processing
            cooldown_hours: Minimum hours between automatic attempts
            max_attempts: Attempts before automatic batches give up (None = unlimited)
            stale_processing_minutes: Age after which a processing article is considered crashed
            image_workers: Parallel image uploads per article
            clock: Returns the current UTC time
        """
        self.store = store
        self.generator = generator
        self.image_searcher = image_searcher
        self.uploader = uploader
        self.thumbnailer = thumbnailer
        self.notifier = notifier

        self.batch_size = batch_size
        self.max_source_chars = max_source_chars
        self.cooldown = timedelta(hours=cooldown_hours)
        self.max_attempts = max_attempts
        self.stale_after = timedelta(minutes=stale_processing_minutes)
        self.image_workers = max(1, image_workers)
        self.clock = clock

        logger.info(
            f"Orchestrator initialized: batch={batch_size}, cooldown={cooldown_hours}h, "
            f"max_chars={max_source_chars}, max_attempts={max_attempts}"
        )

    # ------------------------------------------------------------------
    # Batch entry points
    # ------------------------------------------------------------------

    def run_batch(
        self,
        limit: Optional[int] = None,
        article_id: Optional[int] = None,
    ) -> BatchSummary:
        """
        Process a batch of articles.

        Args:
            limit: Batch size override for automatic selection
            article_id: Process only this article, ignoring the cooldown

        Returns:
            BatchSummary with one result per selected article
        """
        summary = BatchSummary(started_at=self.clock())

        if article_id is not None:
            article = self.store.get(article_id)
            if article is None:
                logger.warning(f"Article {article_id} not found")
                return summary
            articles = [article]
        else:
            self.recover_stale()
            criteria = EligibilityFilter(
                max_attempts=self.max_attempts,
                attempted_before=self.clock() - self.cooldown,
            )
            articles = self.store.find_eligible(criteria, limit or self.batch_size)

        if not articles:
            logger.info("No articles pending AI processing")
            return summary

        logger.info(f"=== Starting batch: {len(articles)} article(s) ===")

        for article in articles:
            result = self.process_article(article, bypass_cooldown=article_id is not None)
            summary.results.append(result)

        logger.info(
            f"Batch finished: {summary.completed} completed, {summary.failed} failed, "
            f"{summary.skipped} skipped {summary.failures_by_kind() or ''}".rstrip()
        )
        return summary

    def recover_stale(self) -> int:
        """
        Fail articles left in processing by a crashed run.

        They become regular transient failures and are retried after the
        cooldown, counted from the interrupted attempt.

        Returns:
            Number of recovered articles
        """
        criteria = EligibilityFilter(
            statuses=(ArticleStatus.PROCESSING,),
            exclude_failure_kinds=(),
            attempted_before=self.clock() - self.stale_after,
        )
        recovered = 0

        for article in self.store.find_eligible(criteria):
            logger.warning(f"Article {article.id} stuck in processing, marking failed")
            self.store.update(
                article.id,
                status=ArticleStatus.FAILED,
                failure_kind=FailureKind.TRANSIENT,
                failure_reason="Processing interrupted before completion",
            )
            recovered += 1

        return recovered

    # ------------------------------------------------------------------
    # Single article
    # ------------------------------------------------------------------

    def process_article(self, article: Article, bypass_cooldown: bool = False) -> ArticleResult:
        """
        Run admission checks and, if admitted, the full processing sequence.

        Never raises for processing errors; they end up in the result and
        in the article's failure fields.
        """
        if article.mode == ArticleMode.MANUAL:
            return self._skip(article, "manual article")
        if article.status == ArticleStatus.PROCESSING:
            return self._skip(article, "already processing")

        length = len(article.source_text or "")
        if length > self.max_source_chars:
            return self._fail(article, ContentTooLongError(length, self.max_source_chars))

        if not bypass_cooldown and self._in_cooldown(article):
            return self._skip(article, "cooldown")

        logger.info(f"Processing article {article.id} ({article.mode.value}): {article.title}")

        attempt = _Attempt()
        try:
            self.store.update(
                article.id,
                status=ArticleStatus.PROCESSING,
                last_attempt_at=self.clock(),
                attempt_count=article.attempt_count + 1,
            )
            final_text = self._run_sequence(article, attempt)
            cover_url = self.thumbnailer.derive(final_text, article.slug) if self.thumbnailer else None
            self._complete(article, final_text, cover_url, attempt)
        except Exception as e:
            logger.error(f"Error processing article {article.id}: {e}")
            return self._fail(article, e, attempt.upgraded_source)

        self._notify(article)

        logger.info(f"Article {article.id} completed: {len(final_text)} chars")
        return ArticleResult(
            article_id=article.id,
            title=article.title,
            outcome="completed",
            images=sum(1 for e in attempt.images if e.resolved_url),
            content_length=len(final_text),
        )

    def _run_sequence(self, article: Article, attempt: _Attempt) -> str:
        """Generate the article and resolve its images. Returns final markdown."""
        if article.mode == ArticleMode.REWRITE:
            decoded = decode(article.source_text or "")
            attempt.images = decoded.images

            if decoded.images:
                logger.info(f"Rehosting {len(decoded.images)} source images")
                self._run_for_images(decoded.images, lambda e: self.uploader.upload_from_url(
                    e.source_url, e.alt_text, e.index, article.slug,
                ))
                if any(e.resolved_url and e.resolved_url != e.source_url for e in decoded.images):
                    attempt.upgraded_source = encode(decoded.text, decoded.images)

            generated = self.generator.generate(ArticleMode.REWRITE, article, source_text=decoded.text)
            return encode(generated, decoded.images)

        generated = self.generator.generate(ArticleMode.GENERATE, article)
        attempt.images = extract_generation_markers(generated)
        logger.info(f"Found {len(attempt.images)} image placeholders")

        def find_and_upload(entry: ImageEntry) -> Optional[str]:
            found = self.image_searcher.resolve(entry.alt_text, article.title)
            if not found:
                logger.info(f"No image found for placeholder {entry.index}")
                return None
            return self.uploader.upload_from_url(found, entry.alt_text, entry.index, article.slug)

        self._run_for_images(attempt.images, find_and_upload)
        return fill_generation_markers(generated, attempt.images)

    def _run_for_images(
        self,
        images: list[ImageEntry],
        task: Callable[[ImageEntry], Optional[str]],
    ) -> None:
        """
        Run ``task`` for every image on a bounded pool and store its URL.

        Returns only when all images are done. A failing image keeps
        resolved_url = None.
        """
        if not images:
            return

        with ThreadPoolExecutor(max_workers=min(self.image_workers, len(images))) as pool:
            futures = {pool.submit(task, entry): entry for entry in images}
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    entry.resolved_url = future.result()
                except Exception as e:
                    logger.error(f"Error processing image {entry.index}: {e}")

    def _complete(
        self,
        article: Article,
        final_text: str,
        cover_url: Optional[str],
        attempt: _Attempt,
    ) -> None:
        changes = {
            "status": ArticleStatus.COMPLETED,
            "rendered_text": final_text,
            "reading_time": reading_time(final_text),
            "published": True,
            "failure_kind": None,
            "failure_reason": None,
        }
        if cover_url:
            changes["cover_image_ref"] = cover_url
        if article.published_at is None:
            changes["published_at"] = self.clock()
        if attempt.upgraded_source is not None:
            changes["source_text"] = attempt.upgraded_source

        self.store.update(article.id, **changes)

    def _notify(self, article: Article) -> None:
        if not self.notifier:
            return
        # Article is already completed; notification problems are only logged
        try:
            self.notifier.notify(f"/{article.slug}")
            self.notifier.submit_to_indexnow(self.notifier.page_url(article.slug))
        except Exception as e:
            logger.warning(f"Site notification failed for article {article.id}: {e}")

    def _in_cooldown(self, article: Article) -> bool:
        if article.last_attempt_at is None:
            return False
        return self.clock() - article.last_attempt_at < self.cooldown

    def _skip(self, article: Article, reason: str) -> ArticleResult:
        logger.info(f"Skipping article {article.id}: {reason}")
        return ArticleResult(
            article_id=article.id,
            title=article.title,
            outcome="skipped",
            error=reason,
        )

    def _fail(
        self,
        article: Article,
        error: Exception,
        upgraded_source: Optional[str] = None,
    ) -> ArticleResult:
        kind = classify_failure(error)
        reason = str(error)[:500] or type(error).__name__

        changes = {
            "status": ArticleStatus.FAILED,
            "last_attempt_at": self.clock(),
            "failure_kind": kind,
            "failure_reason": reason,
        }
        if upgraded_source is not None:
            changes["source_text"] = upgraded_source

        logger.warning(f"Article {article.id} failed ({kind.value}): {reason}")

        try:
            self.store.update(article.id, **changes)
        except Exception as e:
            # Left in processing; recover_stale() picks it up later
            logger.error(f"Could not record failure for article {article.id}: {e}")

        return ArticleResult(
            article_id=article.id,
            title=article.title,
            outcome="failed",
            failure_kind=kind,
            error=reason,
        )

    # ------------------------------------------------------------------

    def close(self):
        """Clean up resources."""
        for component in (self.generator, self.image_searcher, self.uploader, self.notifier):
            close = getattr(component, "close", None)
            if close:
                close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
