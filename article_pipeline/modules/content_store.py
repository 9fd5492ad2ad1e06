"""
Article content store.

The pipeline talks to storage through the small ContentStore protocol:
find_eligible(), get() and update(). JsonContentStore is the bundled
implementation, persisting every article to a single JSON file, and adds the
editor-side operations (create, mark pending, listing, stats).
"""

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from ..errors import FailureKind

logger = logging.getLogger(__name__)


class ArticleMode(Enum):
    """How an article's body is produced. Fixed at creation."""
    MANUAL = "manual"
    REWRITE = "rewrite"
    GENERATE = "generate"


class ArticleStatus(Enum):
    """Processing state, only changed by the orchestrator."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Article:
    """Stored article record."""
    id: int
    title: str
    slug: str
    mode: ArticleMode
    category: str = ""
    status: ArticleStatus = ArticleStatus.PENDING
    source_text: Optional[str] = None
    rendered_text: str = ""
    cover_image_ref: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    custom_prompt: Optional[str] = None
    reading_time: Optional[int] = None
    published: bool = False
    published_at: Optional[datetime] = None
    attempt_count: int = 0
    failure_kind: Optional[FailureKind] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Article":
        data = dict(data)
        data["mode"] = ArticleMode(data["mode"])
        data["status"] = ArticleStatus(data.get("status", "pending"))
        if data.get("failure_kind"):
            data["failure_kind"] = FailureKind(data["failure_kind"])
        for key in ("last_attempt_at", "published_at", "created_at", "updated_at"):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class EligibilityFilter:
    """Which articles a batch may pick up."""
    modes: tuple[ArticleMode, ...] = (ArticleMode.REWRITE, ArticleMode.GENERATE)
    statuses: tuple[ArticleStatus, ...] = (ArticleStatus.PENDING, ArticleStatus.FAILED)
    exclude_failure_kinds: tuple[FailureKind, ...] = (FailureKind.ADMISSION,)
    max_attempts: Optional[int] = None
    attempted_before: Optional[datetime] = None  # cooldown cutoff

    def matches(self, article: Article) -> bool:
        if article.mode not in self.modes or article.status not in self.statuses:
            return False
        if article.failure_kind in self.exclude_failure_kinds:
            return False
        if self.max_attempts is not None and article.attempt_count >= self.max_attempts:
            return False
        if (
            self.attempted_before is not None
            and article.last_attempt_at is not None
            and article.last_attempt_at > self.attempted_before
        ):
            return False
        return True


def attempt_order(article: Article) -> tuple:
    """Sort key: never attempted first, then oldest attempt first."""
    attempted = article.last_attempt_at is not None
    stamp = article.last_attempt_at or datetime.min.replace(tzinfo=timezone.utc)
    return (attempted, stamp, article.id)


class ContentStore(Protocol):
    """Storage operations used by the orchestrator."""

    def find_eligible(self, criteria: EligibilityFilter, limit: Optional[int] = None) -> list[Article]:
        ...

    def get(self, article_id: int) -> Optional[Article]:
        ...

    def update(self, article_id: int, **changes: Any) -> Article:
        ...


def slugify(title: str) -> str:
    """URL slug from a title."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-") or "article"


@dataclass
class JsonContentStore:
    """
    Article store persisted to a JSON file.

    Returned articles are copies; all changes go through update().
    """
    store_path: Path

    # Internal state
    articles: dict[int, Article] = field(default_factory=dict)

    def __post_init__(self):
        """Load existing articles from file."""
        self.store_path = Path(self.store_path)
        self._load()

    def _load(self) -> None:
        """Load articles from JSON file."""
        if not self.store_path.exists():
            logger.info(f"No article store found at {self.store_path}, starting fresh")
            return

        try:
            with open(self.store_path, "r", encoding="utf-8") as f:
                data = json.load(f)

            for article_data in data.get("articles", []):
                article = Article.from_dict(article_data)
                self.articles[article.id] = article

            logger.info(f"Loaded {len(self.articles)} articles from {self.store_path}")

        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Failed to load articles from {self.store_path}: {e}")
            raise

    def save(self) -> None:
        """Save articles to JSON file."""
        self.store_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "articles": [a.to_dict() for a in sorted(self.articles.values(), key=lambda a: a.id)],
        }

        tmp_path = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self.store_path)

        logger.debug(f"Saved {len(self.articles)} articles to {self.store_path}")

    def find_eligible(self, criteria: EligibilityFilter, limit: Optional[int] = None) -> list[Article]:
        """
        Articles matching the filter, oldest attempt first.

        Args:
            criteria: Eligibility filter
            limit: Maximum number of articles (None for all)

        Returns:
            Copies of matching articles
        """
        matching = sorted(
            (a for a in self.articles.values() if criteria.matches(a)),
            key=attempt_order,
        )
        if limit is not None:
            matching = matching[:limit]
        return [replace(a) for a in matching]

    def get(self, article_id: int) -> Optional[Article]:
        article = self.articles.get(article_id)
        return replace(article) if article else None

    def update(self, article_id: int, **changes: Any) -> Article:
        """
        Apply field changes and persist.

        Raises:
            KeyError: If the article does not exist
            AttributeError: If a change names an unknown field
        """
        article = self.articles.get(article_id)
        if article is None:
            raise KeyError(f"Article {article_id} not found")

        known = {f.name for f in fields(Article)}
        unknown = set(changes) - known
        if unknown:
            raise AttributeError(f"Unknown article fields: {', '.join(sorted(unknown))}")

        for name, value in changes.items():
            setattr(article, name, value)
        article.updated_at = utc_now()

        self.save()
        return replace(article)

    def create(
        self,
        title: str,
        mode: ArticleMode,
        category: str = "",
        source_text: Optional[str] = None,
        custom_prompt: Optional[str] = None,
    ) -> Article:
        """
        Create a new pending article with a unique slug.

        Raises:
            ValueError: If the title is empty or a rewrite has no source text
        """
        title = title.strip()
        if not title:
            raise ValueError("Title is empty")
        if mode == ArticleMode.REWRITE and not source_text:
            raise ValueError("Rewrite articles need source text")

        article = Article(
            id=max(self.articles, default=0) + 1,
            title=title,
            slug=self._unique_slug(slugify(title)),
            mode=mode,
            category=category,
            source_text=source_text,
            custom_prompt=custom_prompt,
        )
        self.articles[article.id] = article
        self.save()

        logger.info(f"Created {mode.value} article {article.id}: {article.slug}")
        return replace(article)

    def mark_pending(self, article_id: int, source_text: Optional[str] = None) -> Article:
        """
        Queue an article for AI processing.

        Clears previous failure state and the attempt counter; last_attempt_at
        is kept, so the cooldown still applies to automatic batches.
        """
        article = self.articles.get(article_id)
        if article is None:
            raise KeyError(f"Article {article_id} not found")

        changes: dict[str, Any] = {
            "status": ArticleStatus.PENDING,
            "failure_kind": None,
            "failure_reason": None,
            "attempt_count": 0,
        }
        if source_text:
            changes["source_text"] = source_text

        logger.info(f"Article {article_id} marked for AI processing")
        return self.update(article_id, **changes)

    def list_pending(self) -> list[Article]:
        """Pending rewrite/generate articles, oldest attempt first."""
        criteria = EligibilityFilter(statuses=(ArticleStatus.PENDING,), exclude_failure_kinds=())
        return self.find_eligible(criteria)

    def get_stats(self) -> dict:
        """Get article counts."""
        by_status: dict[str, int] = {}
        by_mode: dict[str, int] = {}
        by_failure: dict[str, int] = {}

        for article in self.articles.values():
            by_status[article.status.value] = by_status.get(article.status.value, 0) + 1
            by_mode[article.mode.value] = by_mode.get(article.mode.value, 0) + 1
            if article.status == ArticleStatus.FAILED and article.failure_kind:
                kind = article.failure_kind.value
                by_failure[kind] = by_failure.get(kind, 0) + 1

        return {
            "total_articles": len(self.articles),
            "by_status": by_status,
            "by_mode": by_mode,
            "by_failure_kind": by_failure,
        }

    def _unique_slug(self, base: str) -> str:
        taken = {a.slug for a in self.articles.values()}
        slug = base
        counter = 1
        while slug in taken:
            slug = f"{base}-{counter}"
            counter += 1
        return slug
