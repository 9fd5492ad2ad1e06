"""
Notifies the public site after an article is published.

- notify(path): asks the site to revalidate its cached page
- submit_to_indexnow(url): pings IndexNow so search engines recrawl

Both are fire-and-forget: failures are logged and never raised.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

INDEXNOW_ENDPOINT = "https://www.indexnow.org/indexnow"


class SiteNotifier:
    """Cache invalidation and search engine pings for the public site."""

    def __init__(
        self,
        site_url: str,
        revalidate_secret: Optional[str] = None,
        indexnow_key: Optional[str] = None,
        timeout: int = 10,
        client: Optional[httpx.Client] = None,
    ):
        self.site_url = site_url.rstrip("/")
        self.revalidate_secret = revalidate_secret
        self.indexnow_key = indexnow_key
        self.client = client or httpx.Client(timeout=timeout)

    def page_url(self, path: str) -> str:
        return f"{self.site_url}/{path.lstrip('/')}"

    def notify(self, path: str) -> bool:
        """
        Revalidate the cached page at ``path``.

        Returns:
            True if the site accepted the request
        """
        params = {"path": path}
        if self.revalidate_secret:
            params["secret"] = self.revalidate_secret

        try:
            response = self.client.post(f"{self.site_url}/api/revalidate", params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Revalidation failed for {path}: {e}")
            return False

        logger.info(f"Revalidated path: {path}")
        return True

    def submit_to_indexnow(self, url: str) -> bool:
        """
        Submit a URL to IndexNow.

        Returns:
            True if submitted, False if skipped or failed
        """
        if not self.indexnow_key:
            logger.debug("INDEXNOW_KEY not configured, skipping submission")
            return False

        try:
            response = self.client.post(
                INDEXNOW_ENDPOINT,
                json={
                    "host": urlparse(self.site_url).hostname,
                    "key": self.indexnow_key,
                    "urlList": [url],
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"IndexNow submission failed for {url}: {e}")
            return False

        logger.info(f"Submitted to IndexNow: {url}")
        return True

    def close(self):
        """Close HTTP client."""
        self.client.close()
