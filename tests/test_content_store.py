"""Tests for article_pipeline.modules.content_store."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from article_pipeline.errors import FailureKind
from article_pipeline.modules.content_store import (
    ArticleMode,
    ArticleStatus,
    EligibilityFilter,
    JsonContentStore,
    slugify,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> JsonContentStore:
    return JsonContentStore(tmp_path / "articles.json")


class TestCreate:
    def test_creates_pending_with_slug(self, store: JsonContentStore) -> None:
        article = store.create("Batumi Guide!", ArticleMode.GENERATE, category="Travel")
        assert article.id == 1
        assert article.slug == "batumi-guide"
        assert article.status == ArticleStatus.PENDING
        assert article.attempt_count == 0

    def test_slugs_are_unique(self, store: JsonContentStore) -> None:
        store.create("Same", ArticleMode.GENERATE)
        second = store.create("Same", ArticleMode.GENERATE)
        third = store.create("Same", ArticleMode.GENERATE)
        assert (second.slug, third.slug) == ("same-1", "same-2")

    def test_rewrite_needs_source(self, store: JsonContentStore) -> None:
        with pytest.raises(ValueError):
            store.create("Title", ArticleMode.REWRITE)

    def test_empty_title_rejected(self, store: JsonContentStore) -> None:
        with pytest.raises(ValueError):
            store.create("   ", ArticleMode.GENERATE)

    def test_slugify(self) -> None:
        assert slugify("  Hello, World: Part_2 ") == "hello-world-part-2"
        assert slugify("!!!") == "article"


class TestPersistence:
    def test_round_trip_through_file(self, tmp_path: Path) -> None:
        path = tmp_path / "articles.json"
        store = JsonContentStore(path)
        article = store.create("Title", ArticleMode.REWRITE, source_text="Body")
        store.update(
            article.id,
            status=ArticleStatus.FAILED,
            failure_kind=FailureKind.CONTENT,
            last_attempt_at=NOW,
        )

        reloaded = JsonContentStore(path).get(article.id)

        assert reloaded.status == ArticleStatus.FAILED
        assert reloaded.failure_kind == FailureKind.CONTENT
        assert reloaded.last_attempt_at == NOW
        assert reloaded.source_text == "Body"

    def test_file_format(self, tmp_path: Path) -> None:
        path = tmp_path / "articles.json"
        JsonContentStore(path).create("Title", ArticleMode.GENERATE)

        data = json.loads(path.read_text(encoding="utf-8"))

        assert data["articles"][0]["mode"] == "generate"
        assert data["articles"][0]["status"] == "pending"

    def test_get_returns_copy(self, store: JsonContentStore) -> None:
        article = store.create("Title", ArticleMode.GENERATE)
        copy = store.get(article.id)
        copy.title = "Changed"
        assert store.get(article.id).title == "Title"

    def test_get_missing(self, store: JsonContentStore) -> None:
        assert store.get(99) is None


class TestUpdate:
    def test_missing_article(self, store: JsonContentStore) -> None:
        with pytest.raises(KeyError):
            store.update(99, status=ArticleStatus.FAILED)

    def test_unknown_field(self, store: JsonContentStore) -> None:
        article = store.create("Title", ArticleMode.GENERATE)
        with pytest.raises(AttributeError):
            store.update(article.id, colour="red")


class TestFindEligible:
    def test_filters_and_orders(self, store: JsonContentStore) -> None:
        fresh = store.create("Fresh", ArticleMode.GENERATE)
        old = store.create("Old", ArticleMode.GENERATE)
        recent = store.create("Recent", ArticleMode.GENERATE)
        manual = store.create("Manual", ArticleMode.MANUAL)
        admission = store.create("Huge", ArticleMode.REWRITE, source_text="x")
        done = store.create("Done", ArticleMode.GENERATE)

        store.update(old.id, status=ArticleStatus.FAILED, failure_kind=FailureKind.TRANSIENT,
                     last_attempt_at=NOW - timedelta(days=3))
        store.update(recent.id, status=ArticleStatus.FAILED, failure_kind=FailureKind.CONTENT,
                     last_attempt_at=NOW - timedelta(days=1))
        store.update(admission.id, status=ArticleStatus.FAILED, failure_kind=FailureKind.ADMISSION)
        store.update(done.id, status=ArticleStatus.COMPLETED)

        found = store.find_eligible(EligibilityFilter())

        assert [a.id for a in found] == [fresh.id, old.id, recent.id]
        assert manual.id not in [a.id for a in found]

    def test_limit(self, store: JsonContentStore) -> None:
        for i in range(5):
            store.create(f"Article {i}", ArticleMode.GENERATE)
        assert len(store.find_eligible(EligibilityFilter(), limit=2)) == 2

    def test_cooldown_cutoff(self, store: JsonContentStore) -> None:
        recent = store.create("Recent", ArticleMode.GENERATE)
        old = store.create("Old", ArticleMode.GENERATE)
        never = store.create("Never", ArticleMode.GENERATE)
        store.update(recent.id, status=ArticleStatus.FAILED, last_attempt_at=NOW)
        store.update(old.id, status=ArticleStatus.FAILED, last_attempt_at=NOW - timedelta(days=2))

        found = store.find_eligible(EligibilityFilter(attempted_before=NOW - timedelta(hours=24)))

        assert [a.id for a in found] == [never.id, old.id]

    def test_max_attempts(self, store: JsonContentStore) -> None:
        article = store.create("Title", ArticleMode.GENERATE)
        store.update(article.id, attempt_count=5)
        assert store.find_eligible(EligibilityFilter(max_attempts=5)) == []
        assert len(store.find_eligible(EligibilityFilter(max_attempts=6))) == 1


class TestMarkPending:
    def test_resets_failure_and_keeps_last_attempt(self, store: JsonContentStore) -> None:
        article = store.create("Huge", ArticleMode.REWRITE, source_text="x" * 10)
        store.update(
            article.id,
            status=ArticleStatus.FAILED,
            failure_kind=FailureKind.ADMISSION,
            failure_reason="too long",
            attempt_count=3,
            last_attempt_at=NOW,
        )

        marked = store.mark_pending(article.id, source_text="shorter")

        assert marked.status == ArticleStatus.PENDING
        assert marked.failure_kind is None
        assert marked.failure_reason is None
        assert marked.attempt_count == 0
        assert marked.last_attempt_at == NOW
        assert marked.source_text == "shorter"

    def test_list_pending(self, store: JsonContentStore) -> None:
        pending = store.create("Pending", ArticleMode.GENERATE)
        failed = store.create("Failed", ArticleMode.GENERATE)
        store.update(failed.id, status=ArticleStatus.FAILED)
        assert [a.id for a in store.list_pending()] == [pending.id]


class TestStats:
    def test_counts(self, store: JsonContentStore) -> None:
        store.create("A", ArticleMode.GENERATE)
        b = store.create("B", ArticleMode.MANUAL)
        c = store.create("C", ArticleMode.REWRITE, source_text="x")
        store.update(b.id, status=ArticleStatus.COMPLETED)
        store.update(c.id, status=ArticleStatus.FAILED, failure_kind=FailureKind.TRANSIENT)

        stats = store.get_stats()

        assert stats["total_articles"] == 3
        assert stats["by_status"] == {"pending": 1, "completed": 1, "failed": 1}
        assert stats["by_mode"] == {"generate": 1, "manual": 1, "rewrite": 1}
        assert stats["by_failure_kind"] == {"transient": 1}
