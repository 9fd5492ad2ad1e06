"""
Stock photo lookup for article images.

Providers, in priority order:
1. Unsplash (urls.regular, ~1080px)
2. Pexels (src.large)

A lookup walks query variants built from the image alt text and the article
title; each variant asks every provider in order. A provider without a key is
skipped, and a provider error only means "no hit from this provider".
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

UNSPLASH_SEARCH_URL = "https://api.unsplash.com/search/photos"
PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"

MAX_QUERY_LENGTH = 80
MIN_QUERY_LENGTH = 3


@dataclass
class ImageResult:
    """First photo returned by a provider."""
    id: str
    url: str
    author: str
    source: str  # "unsplash" or "pexels"
    description: Optional[str] = None


def refine_keywords(text: str) -> str:
    """
    Clean text for use as a search query.

    Unwraps markdown image syntax, drops markdown symbols,
    turns punctuation into spaces and collapses whitespace.
    """
    text = re.sub(r"!\[([^\]]*)\]", r"\1", text)
    text = re.sub(r"[#*`_]", "", text)
    text = re.sub(r"[.,!?;:]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def build_queries(alt_text: str, article_title: str) -> list[str]:
    """
    Build query variants, most specific first.

    1. alt text + title
    2. alt text alone
    3. title + first words of alt text
    4. title alone
    """
    clean_alt = refine_keywords(alt_text)
    clean_title = refine_keywords(article_title)
    alt_head = " ".join(clean_alt.split()[:3])

    candidates = [
        f"{clean_alt} {clean_title}"[:MAX_QUERY_LENGTH],
        clean_alt[:MAX_QUERY_LENGTH],
        f"{clean_title} {alt_head}"[:MAX_QUERY_LENGTH],
        clean_title[:MAX_QUERY_LENGTH],
    ]

    # Remove short/duplicate queries
    seen = set()
    queries = []
    for q in candidates:
        q_clean = q.strip()
        if len(q_clean) < MIN_QUERY_LENGTH or q_clean.lower() in seen:
            continue
        seen.add(q_clean.lower())
        queries.append(q_clean)

    return queries


def _parse_unsplash(data: dict) -> Optional[ImageResult]:
    photos = data.get("results") or []
    if not photos:
        return None
    photo = photos[0]
    return ImageResult(
        id=str(photo["id"]),
        url=photo["urls"]["regular"],
        author=(photo.get("user") or {}).get("name", "Unknown"),
        source="unsplash",
        description=photo.get("alt_description") or photo.get("description"),
    )


def _parse_pexels(data: dict) -> Optional[ImageResult]:
    photos = data.get("photos") or []
    if not photos:
        return None
    photo = photos[0]
    return ImageResult(
        id=str(photo["id"]),
        url=photo["src"]["large"],
        author=photo.get("photographer", "Unknown"),
        source="pexels",
        description=photo.get("alt"),
    )


class ImageSearcher:
    """Resolves image descriptions to stock photo URLs."""

    def __init__(
        self,
        unsplash_key: Optional[str] = None,
        pexels_key: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            unsplash_key: Unsplash access key (primary)
            pexels_key: Pexels API key (fallback)
            timeout: Per-request timeout in seconds
            session: Optional preconfigured HTTP session
        """
        self.unsplash_key = unsplash_key
        self.pexels_key = pexels_key
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "ArticlePipeline/1.0 (article image search)"})

        if not unsplash_key and not pexels_key:
            logger.warning("No image API keys configured, image search will find nothing")

    def _providers(self) -> list[tuple[str, Optional[str], Callable[[str, str], Optional[ImageResult]]]]:
        return [
            ("Unsplash", self.unsplash_key, self._search_unsplash),
            ("Pexels", self.pexels_key, self._search_pexels),
        ]

    def resolve(self, alt_text: str, article_title: str) -> Optional[str]:
        """
        Find a photo URL for an article image.

        Args:
            alt_text: Image alt text (description of the wanted photo)
            article_title: Title of the article the image belongs to

        Returns:
            URL of the first matching photo, or None if nothing was found
        """
        queries = build_queries(alt_text, article_title)

        for attempt, query in enumerate(queries, start=1):
            logger.info(f"Image search {attempt}/{len(queries)}: '{query}'")
            hit = self.search(query)
            if hit:
                logger.info(f"Found {hit.source} photo {hit.id} for '{query}'")
                return hit.url

        logger.warning(f"No image found for '{alt_text}'")
        return None

    def search(self, query: str, orientation: str = "landscape") -> Optional[ImageResult]:
        """
        Ask each configured provider in priority order; first hit wins.

        Never raises for provider errors.
        """
        for name, key, lookup in self._providers():
            if not key:
                logger.debug(f"{name} key not configured, skipping")
                continue
            try:
                hit = lookup(query, orientation)
            except (requests.RequestException, ValueError, KeyError, TypeError) as e:
                logger.warning(f"{name} search failed for '{query}': {e}")
                continue
            if hit:
                return hit
            logger.debug(f"{name}: no results for '{query}'")

        return None

    def _search_unsplash(self, query: str, orientation: str) -> Optional[ImageResult]:
        response = self.session.get(
            UNSPLASH_SEARCH_URL,
            params={"query": query, "page": 1, "per_page": 1, "orientation": orientation},
            headers={"Authorization": f"Client-ID {self.unsplash_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return _parse_unsplash(response.json())

    def _search_pexels(self, query: str, orientation: str) -> Optional[ImageResult]:
        # Pexels takes the bare key, no scheme prefix
        response = self.session.get(
            PEXELS_SEARCH_URL,
            params={"query": query, "per_page": 1, "orientation": orientation},
            headers={"Authorization": self.pexels_key},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return _parse_pexels(response.json())

    def close(self):
        """Close HTTP session."""
        self.session.close()
