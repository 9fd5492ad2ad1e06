"""
Media Uploader - rehosts article images on Cloudflare R2.

R2 speaks the S3 API, so uploads go through a boto3 S3 client. Objects are
stored under article/<YYYY-MM-DD>/ with unique names, so retried attempts
never overwrite earlier uploads. Public URLs use the CDN base when configured.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"  # 1 year
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_R2_PATH_RE = re.compile(r"\.r2\.(?:cloudflarestorage\.com|dev)/(.+)$")

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}


def create_r2_client(endpoint_url: str, access_key_id: str, secret_access_key: str):
    """Create S3 client for an R2 account endpoint."""
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name="auto",
        config=Config(connect_timeout=10, read_timeout=60, retries={"max_attempts": 3}),
    )


def detect_content_type(url: str, data: bytes, header: Optional[str] = None) -> str:
    """
    Guess image MIME type.

    Order: URL extension, magic bytes, response header, then image/png.
    """
    path = urlparse(url).path.lower()
    if path.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if path.endswith(".png"):
        return "image/png"
    if path.endswith(".gif"):
        return "image/gif"
    if path.endswith(".webp"):
        return "image/webp"
    if path.endswith(".svg"):
        return "image/svg+xml"

    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"GIF":
        return "image/gif"
    if data[8:12] == b"WEBP":
        return "image/webp"

    if header:
        mime = header.split(";")[0].strip().lower()
        if mime in _EXTENSIONS:
            return mime

    return "image/png"


def build_file_name(alt_text: str, url: str, index: int) -> str:
    """
    Base file name (no extension) from alt text, URL path, or index.
    """
    base = alt_text.lower()
    base = re.sub(r"[^a-z0-9\s-]", "", base)
    base = re.sub(r"\s+", "-", base)
    base = re.sub(r"-+", "-", base).strip("-")[:50]

    if len(base) < 3:
        name = urlparse(url).path.rsplit("/", 1)[-1]
        name = re.sub(r"\.[a-z0-9]{2,4}$", "", name, flags=re.IGNORECASE)
        name = re.sub(r"[^a-z0-9-]", "-", name, flags=re.IGNORECASE)
        base = re.sub(r"-+", "-", name).strip("-")[:50].lower()

    if len(base) < 3:
        base = f"image-{index}"

    return base


def build_object_key(file_name: str, now: Optional[datetime] = None) -> str:
    """R2 object key: article/<YYYY-MM-DD>/<file_name>."""
    now = now or datetime.now()
    return f"article/{now.strftime('%Y-%m-%d')}/{file_name}"


class MediaUploader:
    """
    Uploads article images to R2 and returns public URLs.

    Failures are logged and reported as None; callers keep the original
    image in that case.
    """

    def __init__(
        self,
        s3_client,
        bucket_name: str,
        public_base_url: Optional[str] = None,
        account_id: Optional[str] = None,
        download_timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize uploader.

        Args:
            s3_client: boto3 S3 client pointed at R2
            bucket_name: Target bucket
            public_base_url: CDN or custom-domain base for public URLs
            account_id: R2 account, used for URLs when no public base is set
            download_timeout: Timeout for fetching remote images
            session: Optional HTTP session for downloads
        """
        self.s3 = s3_client
        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.account_id = account_id
        self.download_timeout = download_timeout

        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": BROWSER_UA})

        if not self.public_base_url:
            logger.warning("CDN_BASE_URL not set, public URLs will use the raw R2 endpoint")

    def durable_url(self, url: str) -> Optional[str]:
        """
        Return the CDN form of a URL that already lives in R2, else None.
        """
        if self.public_base_url and url.startswith(self.public_base_url):
            return url

        match = _R2_PATH_RE.search(url)
        if not match:
            return None

        if self.public_base_url:
            cdn_url = f"{self.public_base_url}/{match.group(1)}"
            logger.info(f"Converted R2 URL to CDN: {url} -> {cdn_url}")
            return cdn_url

        return url

    def upload_from_url(
        self,
        url: str,
        alt_text: str,
        index: int,
        article_slug: str,
    ) -> Optional[str]:
        """
        Copy a remote image into R2.

        Args:
            url: Source image URL
            alt_text: Alt text, used for the object name
            index: Image index within the article
            article_slug: Article slug, used for the object name

        Returns:
            Public URL, or None on failure
        """
        existing = self.durable_url(url)
        if existing:
            logger.info(f"Image {index} already in storage: {existing}")
            return existing

        try:
            logger.info(f"Downloading image {index}: {url}")
            response = self.session.get(url, timeout=self.download_timeout)
            response.raise_for_status()
            data = response.content
            if not data:
                logger.error(f"Empty image body for {url}")
                return None

            content_type = detect_content_type(url, data, response.headers.get("Content-Type"))
            base = build_file_name(alt_text, url, index)
            file_name = f"{article_slug}-{index}-{uuid.uuid4().hex[:8]}-{base}.{_EXTENSIONS[content_type]}"

            return self._put(build_object_key(file_name), data, content_type)

        except requests.RequestException as e:
            logger.error(f"Failed to download image {index} ({url}): {e}")
            return None
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to upload image {index} ({url}): {e}")
            return None

    def upload_from_bytes(self, data: bytes, filename: str, mime_type: str) -> Optional[str]:
        """
        Store a byte buffer in R2.

        Returns:
            Public URL, or None on failure
        """
        try:
            return self._put(build_object_key(filename), data, mime_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to upload {filename}: {e}")
            return None

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        logger.info(f"Uploading to: {key}")
        self.s3.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl=CACHE_CONTROL,
        )

        if self.public_base_url:
            public_url = f"{self.public_base_url}/{key}"
        else:
            public_url = f"https://{self.account_id}.r2.cloudflarestorage.com/{key}"

        logger.info(f"Uploaded {len(data) / 1024:.1f} KB -> {public_url}")
        return public_url

    def close(self):
        """Close HTTP session."""
        self.session.close()
