"""
Configuration management for the article AI-processing pipeline.

Loads settings from .env file and provides typed access to all configuration values.
"""

import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# Project root directory (parent of config/)
PROJECT_ROOT = Path(__file__).parent.parent.resolve()

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class AIConfig:
    """Text generation API settings (DeepSeek or OpenAI-compatible)."""
    api_key: str
    base_url: str
    model: str
    timeout: int = 120
    max_tokens: int = 4000
    temperature: float = 0.7


@dataclass
class ImageSearchConfig:
    """Stock photo API credentials."""
    unsplash_key: Optional[str] = None
    pexels_key: Optional[str] = None
    timeout: int = 30


@dataclass
class StorageConfig:
    """Cloudflare R2 (S3-compatible) object storage settings."""
    account_id: str
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    public_base_url: Optional[str] = None

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass
class SiteConfig:
    """Public site used for cache revalidation and IndexNow."""
    site_url: str
    revalidate_secret: Optional[str] = None
    indexnow_key: Optional[str] = None


@dataclass
class PipelineConfig:
    """Batch selection, admission and thumbnail settings."""
    batch_size: int = 10
    max_source_chars: int = 50_000
    cooldown_hours: int = 24
    max_attempts: int = 5
    stale_processing_minutes: int = 120
    image_workers: int = 3
    poll_interval_minutes: int = 30
    thumbnail_width: int = 375
    thumbnail_height: int = 200
    thumbnail_quality: int = 85


@dataclass
class PathsConfig:
    """File system paths."""
    article_store: Path
    prompts: Path
    logs: Path


@dataclass
class Settings:
    """Main settings container."""
    ai: AIConfig
    images: ImageSearchConfig
    storage: StorageConfig
    site: SiteConfig
    pipeline: PipelineConfig
    paths: PathsConfig
    log_level: str


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """
    Load settings from .env file.

    DeepSeek is used when DEEPSEEK_API_KEY is set, otherwise OPENAI_API_KEY.

    Args:
        env_path: Optional path to .env file. Defaults to PROJECT_ROOT/.env

    Returns:
        Settings object with all configuration values

    Raises:
        ValueError: If required environment variables are missing
    """
    if env_path is None:
        env_path = PROJECT_ROOT / ".env"

    load_dotenv(env_path)

    def get_required(key: str) -> str:
        """Get required environment variable or raise error."""
        value = os.getenv(key)
        if not value:
            raise ValueError(f"Required environment variable {key} is not set")
        return value

    def get_optional(key: str, default: str = "") -> str:
        """Get optional environment variable with default."""
        return os.getenv(key, default)

    def get_int(key: str, default: int) -> int:
        """Get integer environment variable with default."""
        value = os.getenv(key)
        return int(value) if value else default

    deepseek_key = get_optional("DEEPSEEK_API_KEY")
    openai_key = get_optional("OPENAI_API_KEY")
    if not deepseek_key and not openai_key:
        raise ValueError("AI API key not configured (DEEPSEEK_API_KEY or OPENAI_API_KEY)")

    if deepseek_key:
        api_key, base_url, model = deepseek_key, DEEPSEEK_BASE_URL, "deepseek-chat"
    else:
        api_key, base_url, model = openai_key, OPENAI_BASE_URL, "gpt-4o-mini"

    ai = AIConfig(
        api_key=api_key,
        base_url=get_optional("AI_BASE_URL", base_url).rstrip("/"),
        model=get_optional("AI_MODEL", model),
        timeout=get_int("AI_TIMEOUT_SECONDS", 120),
        max_tokens=get_int("AI_MAX_TOKENS", 4000),
    )

    images = ImageSearchConfig(
        unsplash_key=get_optional("UNSPLASH_ACCESS_KEY") or None,
        pexels_key=get_optional("PEXELS_API_KEY") or None,
    )

    storage = StorageConfig(
        account_id=get_required("CLOUDFLARE_ACCOUNT_ID"),
        access_key_id=get_required("CLOUDFLARE_R2_ACCESS_KEY_ID"),
        secret_access_key=get_required("CLOUDFLARE_R2_SECRET_ACCESS_KEY"),
        bucket_name=get_optional("CLOUDFLARE_R2_BUCKET_NAME", "articles"),
        # CDN_BASE_URL wins over the raw R2 public URL
        public_base_url=(
            get_optional("CDN_BASE_URL") or get_optional("CLOUDFLARE_R2_PUBLIC_URL") or None
        ),
    )

    site = SiteConfig(
        site_url=get_optional("SITE_URL", "http://localhost:3000").rstrip("/"),
        revalidate_secret=get_optional("REVALIDATE_SECRET") or None,
        indexnow_key=get_optional("INDEXNOW_KEY") or None,
    )

    pipeline = PipelineConfig(
        batch_size=get_int("BATCH_SIZE", 10),
        max_source_chars=get_int("MAX_SOURCE_CHARS", 50_000),
        cooldown_hours=get_int("COOLDOWN_HOURS", 24),
        max_attempts=get_int("MAX_ATTEMPTS", 5),
        stale_processing_minutes=get_int("STALE_PROCESSING_MINUTES", 120),
        image_workers=get_int("IMAGE_WORKERS", 3),
        poll_interval_minutes=get_int("POLL_INTERVAL_MINUTES", 30),
        thumbnail_width=get_int("THUMBNAIL_WIDTH", 375),
        thumbnail_height=get_int("THUMBNAIL_HEIGHT", 200),
        thumbnail_quality=get_int("THUMBNAIL_QUALITY", 85),
    )

    paths = PathsConfig(
        article_store=PROJECT_ROOT / get_optional("ARTICLE_STORE_PATH", "data/articles.json"),
        prompts=PROJECT_ROOT / "article_pipeline" / "prompts",
        logs=PROJECT_ROOT / "logs",
    )

    return Settings(
        ai=ai,
        images=images,
        storage=storage,
        site=site,
        pipeline=pipeline,
        paths=paths,
        log_level=get_optional("LOG_LEVEL", "INFO"),
    )


def load_store_path(env_path: Optional[Path] = None) -> Path:
    """
    Load only the article store location.

    Store-only commands (listing, marking, creating) use this, so they work
    without AI or storage credentials.
    """
    if env_path is None:
        env_path = PROJECT_ROOT / ".env"

    load_dotenv(env_path)
    return PROJECT_ROOT / (os.getenv("ARTICLE_STORE_PATH") or "data/articles.json")


def get_settings() -> Settings:
    """
    Get settings singleton.

    For testing, use load_settings() directly with custom env_path.
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


# Global settings singleton (lazy loaded)
_settings: Optional[Settings] = None
