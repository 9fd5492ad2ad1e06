"""Tests for article_pipeline.orchestrator."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

from article_pipeline.errors import (
    EmptyGenerationError,
    FailureKind,
    GenerationError,
    InputTooLongError,
)
from article_pipeline.modules.content_store import (
    Article,
    ArticleMode,
    ArticleStatus,
    JsonContentStore,
)
from article_pipeline.orchestrator import Orchestrator, reading_time

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
CDN = "https://cdn.example.com"


class FakeGenerator:
    """Returns queued outputs (or raises queued errors) and records calls."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.calls: list[tuple[ArticleMode, int, Optional[str]]] = []

    def generate(self, mode: ArticleMode, article: Article, source_text: Optional[str] = None) -> str:
        self.calls.append((mode, article.id, source_text))
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


class FakeUploader:
    """Rehosts every URL under the CDN unless it is listed as broken."""

    def __init__(self, broken: tuple = ()):
        self.broken = set(broken)
        self.uploaded: list[str] = []

    def upload_from_url(self, url: str, alt_text: str, index: int, article_slug: str) -> Optional[str]:
        if url in self.broken:
            return None
        self.uploaded.append(url)
        return f"{CDN}/{article_slug}-{index}.jpg"


class FailingStore(JsonContentStore):
    """Raises when the given article is moved to processing."""

    def __init__(self, store_path: Path, broken_id: int):
        super().__init__(store_path)
        self.broken_id = broken_id

    def update(self, article_id: int, **changes):
        if article_id == self.broken_id and changes.get("status") == ArticleStatus.PROCESSING:
            raise OSError("disk full")
        return super().update(article_id, **changes)


@pytest.fixture
def store(tmp_path: Path) -> JsonContentStore:
    return JsonContentStore(tmp_path / "articles.json")


def _orchestrator(store, generator, uploader=None, searcher=None, thumbnailer=None, notifier=None, **kwargs):
    return Orchestrator(
        store=store,
        generator=generator,
        image_searcher=searcher or MagicMock(),
        uploader=uploader or FakeUploader(),
        thumbnailer=thumbnailer,
        notifier=notifier,
        clock=lambda: NOW,
        **kwargs,
    )


class TestRewrite:
    def test_happy_path(self, store: JsonContentStore) -> None:
        article = store.create(
            "Spring in Paris", ArticleMode.REWRITE,
            source_text="Visit ![Paris](http://x/paris.jpg) in spring.",
        )
        generator = FakeGenerator("## Paris\n\nSpring is lovely. [[IMG_1]]")
        thumbnailer = MagicMock()
        thumbnailer.derive.return_value = f"{CDN}/cover.jpg"
        notifier = MagicMock()
        notifier.page_url.return_value = "https://site/spring-in-paris"

        summary = _orchestrator(store, generator, thumbnailer=thumbnailer, notifier=notifier).run_batch()

        assert summary.completed == 1
        saved = store.get(article.id)
        new_url = f"{CDN}/spring-in-paris-1.jpg"
        assert saved.status == ArticleStatus.COMPLETED
        assert saved.rendered_text == f"## Paris\n\nSpring is lovely. ![Paris]({new_url})"
        assert saved.source_text == f"Visit ![Paris]({new_url}) in spring."
        assert saved.cover_image_ref == f"{CDN}/cover.jpg"
        assert saved.published is True
        assert saved.published_at == NOW
        assert saved.last_attempt_at == NOW
        assert saved.attempt_count == 1
        assert saved.reading_time == 1
        assert saved.failure_kind is None

        assert generator.calls == [(ArticleMode.REWRITE, article.id, "Visit [[IMG_1]] in spring.")]
        thumbnailer.derive.assert_called_once_with(saved.rendered_text, "spring-in-paris")
        notifier.notify.assert_called_once_with("/spring-in-paris")
        notifier.submit_to_indexnow.assert_called_once_with("https://site/spring-in-paris")

    def test_dropped_token_is_restored(self, store: JsonContentStore) -> None:
        store.create(
            "Trip", ArticleMode.REWRITE,
            source_text="![a](http://x/a.jpg)\n\nText.",
        )
        generator = FakeGenerator("Rewritten without images.")

        _orchestrator(store, generator).run_batch()

        saved = store.get(1)
        assert saved.rendered_text == f"Rewritten without images.\n\n---\n\n![a]({CDN}/trip-1.jpg)\n"

    def test_failed_upload_keeps_original_image(self, store: JsonContentStore) -> None:
        source = "One ![a](http://x/a.jpg) two ![b](http://x/b.jpg)"
        store.create("Trip", ArticleMode.REWRITE, source_text=source)
        generator = FakeGenerator("[[IMG_1]] [[IMG_2]]")
        uploader = FakeUploader(broken=("http://x/b.jpg",))

        _orchestrator(store, generator, uploader=uploader).run_batch()

        saved = store.get(1)
        assert saved.rendered_text == f"![a]({CDN}/trip-1.jpg) ![b](http://x/b.jpg)"
        assert saved.source_text == f"One ![a]({CDN}/trip-1.jpg) two ![b](http://x/b.jpg)"

    def test_source_unchanged_when_nothing_rehosted(self, store: JsonContentStore) -> None:
        source = "One ![a](http://x/a.jpg)"
        store.create("Trip", ArticleMode.REWRITE, source_text=source)
        generator = FakeGenerator("[[IMG_1]]")
        uploader = FakeUploader(broken=("http://x/a.jpg",))

        _orchestrator(store, generator, uploader=uploader).run_batch()

        assert store.get(1).source_text == source

    def test_published_at_not_restamped(self, store: JsonContentStore) -> None:
        article = store.create("Trip", ArticleMode.REWRITE, source_text="text")
        first = datetime(2023, 1, 1, tzinfo=timezone.utc)
        store.update(article.id, published=True, published_at=first)

        _orchestrator(store, FakeGenerator("new text")).run_batch()

        assert store.get(article.id).published_at == first


class TestGenerate:
    def test_markers_resolved_and_filled(self, store: JsonContentStore) -> None:
        article = store.create("Batumi Guide", ArticleMode.GENERATE, category="Travel")
        generator = FakeGenerator(
            "# Batumi\n\n![Old town](IMAGE_PLACEHOLDER_1)\n\nText.\n\n![Beach](IMAGE_PLACEHOLDER_2)\n"
        )
        searcher = MagicMock()
        searcher.resolve.side_effect = lambda alt, title: (
            "https://unsplash/old.jpg" if alt == "Old town" else None
        )
        uploader = FakeUploader()

        summary = _orchestrator(store, generator, uploader=uploader, searcher=searcher).run_batch()

        saved = store.get(article.id)
        assert saved.status == ArticleStatus.COMPLETED
        assert f"![Old town]({CDN}/batumi-guide-1.jpg)" in saved.rendered_text
        assert "IMAGE_PLACEHOLDER" not in saved.rendered_text
        assert "Beach" not in saved.rendered_text
        assert uploader.uploaded == ["https://unsplash/old.jpg"]
        assert generator.calls == [(ArticleMode.GENERATE, article.id, None)]
        assert summary.results[0].images == 1


class TestAdmission:
    def test_too_long_fails_without_generation(self, store: JsonContentStore) -> None:
        article = store.create("Huge", ArticleMode.REWRITE, source_text="x" * 60_000)
        generator = FakeGenerator()
        orchestrator = _orchestrator(store, generator)

        summary = orchestrator.run_batch()

        saved = store.get(article.id)
        assert saved.status == ArticleStatus.FAILED
        assert saved.failure_kind == FailureKind.ADMISSION
        assert "60000" in saved.failure_reason
        assert saved.attempt_count == 0
        assert generator.calls == []
        assert summary.failures_by_kind() == {"admission": 1}

        again = orchestrator.run_batch()

        assert again.results == []
        assert store.get(article.id).updated_at == saved.updated_at

    def test_explicit_request_still_guarded(self, store: JsonContentStore) -> None:
        article = store.create("Huge", ArticleMode.REWRITE, source_text="x" * 60_000)
        generator = FakeGenerator()

        summary = _orchestrator(store, generator).run_batch(article_id=article.id)

        assert summary.failed == 1
        assert generator.calls == []

    def test_cooldown_skips_automatic_selection(self, store: JsonContentStore) -> None:
        article = store.create("Recent", ArticleMode.GENERATE)
        store.update(article.id, last_attempt_at=NOW - timedelta(hours=2))
        generator = FakeGenerator("# Done")
        orchestrator = _orchestrator(store, generator)

        summary = orchestrator.run_batch()

        assert summary.results == []
        assert generator.calls == []
        assert store.get(article.id).status == ArticleStatus.PENDING

        explicit = orchestrator.run_batch(article_id=article.id)

        assert explicit.completed == 1
        assert store.get(article.id).status == ArticleStatus.COMPLETED

    def test_recently_failed_waits_unless_named(self, store: JsonContentStore) -> None:
        article = store.create("Flaky", ArticleMode.GENERATE)
        store.update(
            article.id,
            status=ArticleStatus.FAILED,
            failure_kind=FailureKind.TRANSIENT,
            last_attempt_at=NOW,
            attempt_count=1,
        )
        generator = FakeGenerator("# Done")
        orchestrator = _orchestrator(store, generator)

        assert orchestrator.run_batch().results == []
        assert generator.calls == []
        assert store.get(article.id).status == ArticleStatus.FAILED

        explicit = orchestrator.run_batch(article_id=article.id)

        assert explicit.completed == 1
        assert store.get(article.id).attempt_count == 2

    def test_cooldown_expired(self, store: JsonContentStore) -> None:
        article = store.create("Old", ArticleMode.GENERATE)
        store.update(article.id, last_attempt_at=NOW - timedelta(hours=25))

        summary = _orchestrator(store, FakeGenerator("# Done")).run_batch()

        assert summary.completed == 1

    def test_manual_article_never_processed(self, store: JsonContentStore) -> None:
        article = store.create("Hand written", ArticleMode.MANUAL)
        generator = FakeGenerator()

        summary = _orchestrator(store, generator).run_batch(article_id=article.id)

        assert summary.skipped == 1
        assert generator.calls == []

    def test_unknown_article_id(self, store: JsonContentStore) -> None:
        summary = _orchestrator(store, FakeGenerator()).run_batch(article_id=404)
        assert summary.results == []


class TestFailures:
    def test_empty_generation_is_content_failure(self, store: JsonContentStore) -> None:
        article = store.create("Trip", ArticleMode.REWRITE, source_text="text")
        store.update(article.id, rendered_text="previous body")
        generator = FakeGenerator(EmptyGenerationError("AI returned empty content"))

        _orchestrator(store, generator).run_batch()

        saved = store.get(article.id)
        assert saved.status == ArticleStatus.FAILED
        assert saved.failure_kind == FailureKind.CONTENT
        assert saved.failure_reason == "AI returned empty content"
        assert saved.rendered_text == "previous body"
        assert saved.last_attempt_at == NOW
        assert saved.attempt_count == 1

    def test_input_too_long_is_content_failure(self, store: JsonContentStore) -> None:
        store.create("Trip", ArticleMode.REWRITE, source_text="text")
        _orchestrator(store, FakeGenerator(InputTooLongError("context length"))).run_batch()
        assert store.get(1).failure_kind == FailureKind.CONTENT

    def test_generation_error_is_transient(self, store: JsonContentStore) -> None:
        store.create("Trip", ArticleMode.GENERATE)
        _orchestrator(store, FakeGenerator(GenerationError("HTTP error: 503"))).run_batch()
        assert store.get(1).failure_kind == FailureKind.TRANSIENT

    def test_rehosted_source_kept_when_generation_fails(self, store: JsonContentStore) -> None:
        store.create("Trip", ArticleMode.REWRITE, source_text="![a](http://x/a.jpg)")
        _orchestrator(store, FakeGenerator(GenerationError("down"))).run_batch()
        assert store.get(1).source_text == f"![a]({CDN}/trip-1.jpg)"

    def test_thumbnail_failure_is_soft(self, store: JsonContentStore) -> None:
        article = store.create("Trip", ArticleMode.REWRITE, source_text="![a](http://x/a.jpg)")
        store.update(article.id, cover_image_ref="https://old/cover.jpg")
        thumbnailer = MagicMock()
        thumbnailer.derive.return_value = None

        _orchestrator(store, FakeGenerator("[[IMG_1]]"), thumbnailer=thumbnailer).run_batch()

        saved = store.get(article.id)
        assert saved.status == ArticleStatus.COMPLETED
        assert saved.cover_image_ref == "https://old/cover.jpg"

    def test_batch_continues_after_failure(self, store: JsonContentStore) -> None:
        store.create("First", ArticleMode.GENERATE)
        store.create("Second", ArticleMode.GENERATE)
        generator = FakeGenerator(GenerationError("timeout"), "# Second")

        summary = _orchestrator(store, generator).run_batch()

        assert (summary.failed, summary.completed) == (1, 1)
        assert store.get(1).status == ArticleStatus.FAILED
        assert store.get(2).status == ArticleStatus.COMPLETED

    def test_store_error_on_processing_write_is_contained(self, tmp_path: Path) -> None:
        store = FailingStore(tmp_path / "articles.json", broken_id=1)
        store.create("First", ArticleMode.GENERATE)
        store.create("Second", ArticleMode.GENERATE)
        generator = FakeGenerator("# Second")

        summary = _orchestrator(store, generator).run_batch()

        assert (summary.failed, summary.completed) == (1, 1)
        first = store.get(1)
        assert first.status == ArticleStatus.FAILED
        assert first.failure_kind == FailureKind.TRANSIENT
        assert first.failure_reason == "disk full"
        assert store.get(2).status == ArticleStatus.COMPLETED
        assert [call[1] for call in generator.calls] == [2]

    def test_notifier_error_keeps_completion(self, store: JsonContentStore) -> None:
        store.create("First", ArticleMode.GENERATE)
        store.create("Second", ArticleMode.GENERATE)
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("revalidate endpoint down")

        summary = _orchestrator(store, FakeGenerator("# One", "# Two"), notifier=notifier).run_batch()

        assert summary.completed == 2
        assert summary.failed == 0
        assert store.get(1).status == ArticleStatus.COMPLETED
        assert store.get(2).status == ArticleStatus.COMPLETED
        assert notifier.notify.call_count == 2

    def test_failed_article_retried_after_cooldown(self, store: JsonContentStore) -> None:
        article = store.create("Trip", ArticleMode.GENERATE)
        store.update(
            article.id,
            status=ArticleStatus.FAILED,
            failure_kind=FailureKind.TRANSIENT,
            last_attempt_at=NOW - timedelta(days=2),
            attempt_count=1,
        )

        summary = _orchestrator(store, FakeGenerator("# Ok")).run_batch()

        saved = store.get(article.id)
        assert summary.completed == 1
        assert saved.attempt_count == 2
        assert saved.failure_kind is None

    def test_attempt_ceiling(self, store: JsonContentStore) -> None:
        article = store.create("Trip", ArticleMode.GENERATE)
        store.update(article.id, status=ArticleStatus.FAILED, attempt_count=5,
                     failure_kind=FailureKind.TRANSIENT)
        generator = FakeGenerator()

        summary = _orchestrator(store, generator, max_attempts=5).run_batch()

        assert summary.results == []
        assert generator.calls == []


class TestBatching:
    def test_batch_size_limits_selection(self, store: JsonContentStore) -> None:
        for i in range(4):
            store.create(f"Article {i}", ArticleMode.GENERATE)
        generator = FakeGenerator("# a", "# b", "# c")

        summary = _orchestrator(store, generator, batch_size=3).run_batch()

        assert summary.processed == 3
        assert len(_orchestrator(store, FakeGenerator("# d")).run_batch(limit=1).results) == 1

    def test_stale_processing_recovered(self, store: JsonContentStore) -> None:
        stuck = store.create("Stuck", ArticleMode.GENERATE)
        busy = store.create("Busy", ArticleMode.GENERATE)
        store.update(stuck.id, status=ArticleStatus.PROCESSING, last_attempt_at=NOW - timedelta(hours=5))
        store.update(busy.id, status=ArticleStatus.PROCESSING, last_attempt_at=NOW - timedelta(minutes=5))

        recovered = _orchestrator(store, FakeGenerator()).recover_stale()

        assert recovered == 1
        saved = store.get(stuck.id)
        assert saved.status == ArticleStatus.FAILED
        assert saved.failure_kind == FailureKind.TRANSIENT
        assert saved.last_attempt_at == NOW - timedelta(hours=5)
        assert store.get(busy.id).status == ArticleStatus.PROCESSING

    def test_summary_to_dict(self, store: JsonContentStore) -> None:
        store.create("First", ArticleMode.GENERATE)
        summary = _orchestrator(store, FakeGenerator("# a")).run_batch()

        data = summary.to_dict()

        assert data["completed"] == 1
        assert data["results"][0]["outcome"] == "completed"
        assert data["results"][0]["failure_kind"] is None


class TestReadingTime:
    def test_minimum_one_minute(self) -> None:
        assert reading_time("") == 1
        assert reading_time("word " * 10) == 1

    def test_rounds_up(self) -> None:
        assert reading_time("word " * 201) == 2
        assert reading_time("word " * 400) == 2
