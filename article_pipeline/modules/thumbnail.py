"""
Cover thumbnail derivation.

Takes the first image of a finished article, crops it to the cover size
(fill and center, no letterboxing), re-encodes as JPEG and uploads it.
Every failure is soft: the article simply keeps its previous cover.
"""

import io
import logging
from datetime import datetime
from typing import Optional

import pillow_heif
import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from .media_uploader import BROWSER_UA, MediaUploader
from .placeholder_codec import first_image_url

logger = logging.getLogger(__name__)

# AVIF/HEIF sources (some CDNs serve these regardless of extension)
pillow_heif.register_heif_opener()

COVER_SIZE = (375, 200)
COVER_QUALITY = 85


def make_cover(data: bytes, size: tuple[int, int] = COVER_SIZE, quality: int = COVER_QUALITY) -> bytes:
    """
    Resize and crop image bytes to a JPEG cover.

    Raises:
        PIL.UnidentifiedImageError: If the bytes are not a readable image
    """
    with Image.open(io.BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img)  # Fix rotation from EXIF metadata
        if img.mode != "RGB":
            img = img.convert("RGB")

        cover = ImageOps.fit(img, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))

        out = io.BytesIO()
        cover.save(out, format="JPEG", quality=quality, optimize=True)
        return out.getvalue()


class ThumbnailDeriver:
    """Builds and uploads article cover images."""

    def __init__(
        self,
        uploader: MediaUploader,
        size: tuple[int, int] = COVER_SIZE,
        quality: int = COVER_QUALITY,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.uploader = uploader
        self.size = size
        self.quality = quality
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": BROWSER_UA})

    def derive(self, final_text: str, slug: str) -> Optional[str]:
        """
        Create a cover from the first image in the article.

        Args:
            final_text: Finished article markdown
            slug: Article slug, used in the file name

        Returns:
            Public cover URL, or None if no cover could be made
        """
        image_url = first_image_url(final_text)
        if not image_url:
            logger.info(f"No image in article '{slug}', skipping cover")
            return None

        logger.info(f"Generating cover image from: {image_url}")

        try:
            response = self.session.get(image_url, timeout=self.timeout)
            response.raise_for_status()
            cover = make_cover(response.content, self.size, self.quality)
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch cover source {image_url}: {e}")
            return None
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.warning(f"Failed to decode cover source {image_url}: {e}")
            return None

        width, height = self.size
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        filename = f"{slug}-cover-{width}x{height}-{timestamp}.jpg"

        cover_url = self.uploader.upload_from_bytes(cover, filename, "image/jpeg")
        if cover_url:
            logger.info(f"Cover image generated: {cover_url}")
        else:
            logger.warning(f"Cover upload failed for '{slug}'")
        return cover_url
