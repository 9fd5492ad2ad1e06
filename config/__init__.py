"""Configuration package for the article AI-processing pipeline."""

from .settings import Settings, load_settings, load_store_path, get_settings

__all__ = ["Settings", "load_settings", "load_store_path", "get_settings"]
